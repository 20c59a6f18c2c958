"""Library for formatting command output as columns or yaml."""

from collections.abc import Generator
import sys
from typing import Any, TextIO

import yaml

__all__ = [
    "PrintFormatter",
    "YamlFormatter",
]

PADDING = 4


def column_format_string(rows: list[list[str]]) -> str:
    """Produce a format string based on max width of columns."""
    widths = [0] * len(rows[0])
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    return "".join([f"{{:{w + PADDING}}}" for w in widths])


class PrintFormatter:
    """A formatter that prints human readable console output."""

    def __init__(self, keys: list[str]) -> None:
        """Initialize the PrintFormatter with the keys to print as columns."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects, one row per object."""
        rows = [[str(row.get(key) or "") for key in self._keys] for row in data]
        table = [[key.upper() for key in self._keys]] + rows
        format_string = column_format_string(table)
        for row in table:
            yield format_string.format(*row).rstrip()

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        """Output the data objects."""
        for line in self.format(data):
            print(line, file=file)


class YamlFormatter:
    """A formatter that prints a yaml document."""

    def print(self, data: Any, file: TextIO = sys.stdout) -> None:
        """Output the data as a yaml document."""
        print(yaml.dump(data, sort_keys=False, explicit_start=True), end="", file=file)
