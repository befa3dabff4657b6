"""Oracle Database Prometheus Exporter.

Prometheus exporter that runs configurable SQL queries against an Oracle
database and republishes every result row as gauge, counter or histogram
metrics.
"""

__version__ = "0.1.0"
