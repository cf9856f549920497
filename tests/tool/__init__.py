"""Test helpers for validator-lab tools."""

from typing import Any

from validator_lab.tool.validator_lab import _make_parser


def parse_args(args: list[str]) -> dict[str, Any]:
    """Parse a command line into the keyword arguments of an action."""
    return vars(_make_parser().parse_args(args))
