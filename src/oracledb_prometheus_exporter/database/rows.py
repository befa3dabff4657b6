"""Row decoding for query results.

Turns each row of a DB-API cursor into a mapping from lower-cased column
name to the textual form of the value, so that metric definitions can look
columns up without caring about case or native column types. CLOB and BLOB
columns are read in full; raw bytes are decoded as UTF-8.
"""

from collections.abc import Iterator
from typing import Any

import oracledb

DecodedRow = dict[str, str]


def _to_text(value: Any) -> str:
    """Render a column value as text; SQL NULL becomes an empty string."""
    if value is None:
        return ""
    if isinstance(value, oracledb.LOB):
        value = value.read()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def decode_rows(cursor: Any) -> Iterator[DecodedRow]:
    """Lazily decode every row of an executed cursor.

    The iterator makes a single pass over the cursor and cannot be restarted.
    Errors raised by the cursor while fetching propagate to the caller.

    Args:
        cursor: DB-API cursor on which a query has been executed.

    Yields:
        Mapping of lower-cased column name to textual value.
    """
    columns = [description[0].lower() for description in cursor.description or ()]
    for row in cursor:
        yield {
            column: _to_text(value) for column, value in zip(columns, row, strict=True)
        }
