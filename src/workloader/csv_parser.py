"""CSV reading and writing for import and export commands.

Import files are read positionally: row 0 is always the header row and is
mapped to canonical fields by :mod:`workloader.headers`. Export files are
written with the header row the paired import command expects.
"""

from __future__ import annotations

import csv
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path


class CSVParserError(Exception):
    """Base exception for CSV parsing errors."""

    pass


class FileNotFoundError(CSVParserError):
    """Raised when a CSV file is not found."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"CSV file not found: {path}")


class ParseError(CSVParserError):
    """Raised when CSV parsing fails."""

    def __init__(self, path: Path, message: str, row: int | None = None) -> None:
        self.path = path
        self.row = row
        row_info = f" (row {row})" if row is not None else ""
        super().__init__(f"Failed to parse {path}{row_info}: {message}")


def _read_rows(path: Path, encoding: str) -> list[list[str]]:
    with path.open("r", encoding=encoding, newline="") as f:
        return [row for row in csv.reader(f)]


def read_csv(path: str | Path) -> list[list[str]]:
    """Read a CSV file into a list of rows.

    Handles UTF-8 with or without BOM and falls back to latin-1 for legacy
    exports. Blank lines are dropped. Values are stripped of surrounding
    whitespace.

    Args:
        path: Path to the CSV file.

    Returns:
        All rows including the header row.

    Raises:
        FileNotFoundError: If the file does not exist.
        ParseError: If the file cannot be parsed or has no header row.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    try:
        # Try UTF-8 with BOM first (common in spreadsheet exports)
        rows = _read_rows(path, "utf-8-sig")
    except UnicodeDecodeError:
        try:
            rows = _read_rows(path, "latin-1")
        except csv.Error as e:
            raise ParseError(path, str(e)) from e
    except csv.Error as e:
        raise ParseError(path, str(e)) from e

    rows = [[cell.strip() for cell in row] for row in rows if any(cell.strip() for cell in row)]
    if not rows:
        raise ParseError(path, "file is empty, expected a header row")

    return rows


def write_csv(path: str | Path, rows: Iterable[Sequence[str]]) -> Path:
    """Write rows (header first) to a CSV file.

    Returns:
        The path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerows(rows)
    return path


def output_filename(command: str, now: datetime | None = None) -> str:
    """Default output file name for a command.

    Example:
        >>> output_filename("wkld-export", datetime(2024, 3, 1, 9, 30, 5))
        'workloader-wkld-export-20240301_093005.csv'
    """
    now = now or datetime.now()
    return f"workloader-{command}-{now.strftime('%Y%m%d_%H%M%S')}.csv"
