"""Unit tests for the CSV parser module."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from workloader.csv_parser import (
    FileNotFoundError,
    ParseError,
    output_filename,
    read_csv,
    write_csv,
)


class TestReadCSV:
    """Test read_csv."""

    def test_file_not_found_raises_error(self, temp_dir: Path) -> None:
        """Test that missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError) as exc_info:
            read_csv(temp_dir / "nonexistent.csv")

        assert exc_info.value.path == temp_dir / "nonexistent.csv"
        assert "not found" in str(exc_info.value)

    def test_read_basic(self, temp_dir: Path) -> None:
        """Test rows are returned with the header row first."""
        path = temp_dir / "wkld.csv"
        path.write_text("hostname,role\nweb1,web\ndb1,db\n", encoding="utf-8")

        rows = read_csv(path)

        assert rows == [["hostname", "role"], ["web1", "web"], ["db1", "db"]]

    def test_read_with_bom(self, temp_dir: Path) -> None:
        """Test that a UTF-8 BOM does not end up in the first header."""
        path = temp_dir / "wkld.csv"
        path.write_text("\ufeffhostname,role\nweb1,web\n", encoding="utf-8")

        rows = read_csv(path)

        assert rows[0][0] == "hostname"

    def test_read_latin1_fallback(self, temp_dir: Path) -> None:
        """Test that a latin-1 file is decoded."""
        path = temp_dir / "wkld.csv"
        path.write_bytes("hostname,loc\nweb1,Montr\xe9al\n".encode("latin-1"))

        rows = read_csv(path)

        assert rows[1][1] == "Montréal"

    def test_blank_lines_dropped_and_cells_stripped(self, temp_dir: Path) -> None:
        """Test whitespace handling."""
        path = temp_dir / "wkld.csv"
        path.write_text("hostname , role\n\n web1 , web \n,\n", encoding="utf-8")

        rows = read_csv(path)

        assert rows == [["hostname", "role"], ["web1", "web"]]

    def test_empty_file_raises_parse_error(self, temp_dir: Path) -> None:
        """Test that an empty file has no header row."""
        path = temp_dir / "empty.csv"
        path.write_text("", encoding="utf-8")

        with pytest.raises(ParseError) as exc_info:
            read_csv(path)

        assert "empty" in str(exc_info.value)


class TestWriteCSV:
    """Test write_csv."""

    def test_write_then_read(self, temp_dir: Path) -> None:
        """Test that values with commas and quotes survive."""
        path = temp_dir / "out" / "export.csv"
        rows = [["name", "description"], ["svc", 'has, comma and "quotes"']]

        written = write_csv(path, rows)

        assert written == path
        assert read_csv(path) == rows


class TestOutputFilename:
    """Test output_filename."""

    def test_timestamped_name(self) -> None:
        """Test the default output name format."""
        name = output_filename("wkld-export", datetime(2024, 3, 1, 9, 30, 5))

        assert name == "workloader-wkld-export-20240301_093005.csv"
