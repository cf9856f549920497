"""Output formatting for the command line tool."""

from collections.abc import Generator
import sys
from typing import Any, TextIO

import yaml

PADDING = 4


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the header and rows aligned to the widest value of each column."""
    data = [headers] + rows
    widths = [max(len(row[i]) for row in data) for i in range(len(headers))]
    for row in data:
        yield "".join(
            value.ljust(width + PADDING) for value, width in zip(row, widths)
        ).rstrip()


class PrintFormatter:
    """Prints rows of a table for a human reader."""

    def __init__(self, keys: list[str]) -> None:
        """Initialize the PrintFormatter with the columns to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        if not data:
            return
        rows = [[str(row.get(key, "")) for key in self._keys] for row in data]
        yield from format_columns([key.upper() for key in self._keys], rows)

    def print(self, data: list[dict[str, Any]], file: TextIO | None = None) -> None:
        for line in self.format(data):
            print(line, file=file or sys.stdout)


class YamlFormatter:
    """Prints resource descriptors as a multi-document YAML stream."""

    def format(self, data: list[dict[str, Any]]) -> str:
        return yaml.dump_all(data, sort_keys=False, explicit_start=True)

    def print(self, data: list[dict[str, Any]], file: TextIO | None = None) -> None:
        print(self.format(data), end="", file=file or sys.stdout)
