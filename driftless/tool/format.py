"""Output formatting for the command line tool."""

from abc import ABC, abstractmethod
from collections.abc import Generator
import json
import sys
from typing import Any, TextIO

import yaml

__all__ = [
    "PrintFormatter",
    "StructFormatter",
    "YamlFormatter",
    "JsonFormatter",
    "struct_formatter",
]

PADDING = 3


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the header and rows padded to the widest value of each column."""
    data = [headers] + rows
    widths = [max(len(row[i]) for row in data) for i in range(len(headers))]
    for row in data:
        line = "".join(
            value.ljust(width + PADDING) for value, width in zip(row, widths)
        )
        yield line.rstrip()


class PrintFormatter:
    """Prints rows of key/value records as aligned columns."""

    def __init__(self, keys: list[str] | None = None) -> None:
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [[str(record.get(key, "")) for key in keys] for record in data]
        yield from format_columns([key.upper() for key in keys], rows)

    def print(self, data: list[dict[str, Any]], file: TextIO | None = None) -> None:
        out = file or sys.stdout
        for line in self.format(data):
            print(line, file=out)


class StructFormatter(ABC):
    """Prints a structured document."""

    @abstractmethod
    def dumps(self, data: Any) -> str:
        """Serialize the document."""

    def print(self, data: Any, file: TextIO | None = None) -> None:
        print(self.dumps(data), end="", file=file or sys.stdout)


class YamlFormatter(StructFormatter):
    """Prints a YAML document."""

    def dumps(self, data: Any) -> str:
        return yaml.dump(data, sort_keys=False, explicit_start=True)


class JsonFormatter(StructFormatter):
    """Prints a JSON document."""

    def dumps(self, data: Any) -> str:
        return json.dumps(data, indent=2, sort_keys=False) + "\n"


def struct_formatter(output: str) -> StructFormatter:
    """Return the formatter for an `--output` value other than text."""
    if output == "json":
        return JsonFormatter()
    return YamlFormatter()
