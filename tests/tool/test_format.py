"""Tests for output formatting."""

import io

import pytest

from validator_lab.tool.format import PrintFormatter, YamlFormatter, format_columns


def test_format_columns() -> None:
    lines = list(format_columns(["NAME", "ROLE"], [["validator-service-v1-0", "validator"]]))
    assert lines == [
        "NAME" + " " * 22 + "ROLE",
        "validator-service-v1-0    validator",
    ]


def test_print_formatter() -> None:
    out = io.StringIO()
    PrintFormatter(["name", "phase"]).print(
        [{"name": "a", "phase": "Running"}, {"name": "bbbb", "phase": "Pending"}],
        file=out,
    )
    assert out.getvalue().splitlines() == [
        "NAME    PHASE",
        "a       Running",
        "bbbb    Pending",
    ]


def test_yaml_formatter() -> None:
    content = YamlFormatter().format(
        [{"kind": "Service", "metadata": {"name": "a"}}, {"kind": "Secret"}]
    )
    assert content == "---\nkind: Service\nmetadata:\n  name: a\n---\nkind: Secret\n"


def test_print_to_current_stdout(capsys: pytest.CaptureFixture[str]) -> None:
    """Test output follows the stdout in effect when printing."""
    PrintFormatter(["name"]).print([{"name": "a"}])
    YamlFormatter().print([{"kind": "Secret"}])
    assert capsys.readouterr().out == "NAME\na\n---\nkind: Secret\n"
