"""Tests for the command-line interface."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from sparql_bridge.cli import cli, parse_header_options, render_table
from sparql_bridge.config import CONFIG_ENV_VAR
from sparql_bridge.errors import ErrorKind, QueryError
from sparql_bridge.models import BooleanResult, Cell, CellKind, TabularResult

CONFIG_YAML = """
endpoints:
  - id: local
    label: Local Fuseki
    sparql_url: "http://localhost:3030/ds/sparql"
"""


@pytest.fixture
def config_file(tmp_path, monkeypatch, reset_config_cache):
    path = tmp_path / "bridge.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
    return path


def _table():
    row = {"s": Cell(CellKind.IRI, "http://example.org/a", display_value="ex:a")}
    return TabularResult(columns=("s", "o"), rows=(row,), truncated=True, total_available=None)


def test_parse_header_options():
    assert parse_header_options(["Authorization: Bearer x", "X-A:b"]) == {"Authorization": "Bearer x", "X-A": "b"}


def test_render_table():
    lines = render_table(_table())
    assert lines[0].startswith("s")
    assert "ex:a" in lines[2]
    assert lines[-1] == "Total: 1 row(s) (truncated)"
    assert render_table(BooleanResult(True)) == ["Result: true"]


def test_query_command_table_output(config_file):
    with patch("sparql_bridge.cli.ProtocolClient") as client_cls:
        client = client_cls.return_value
        client.execute.return_value = _table()
        result = CliRunner().invoke(cli, ["query", "local", "-", "--header", "X-Trace: 1"], input="SELECT * {}")

    assert result.exit_code == 0, result.output
    assert "ex:a" in result.output
    endpoint, query = client.request.call_args.args
    assert endpoint == "http://localhost:3030/ds/sparql"
    assert query == "SELECT * {}"
    assert client.request.call_args.kwargs["extra_headers"] == {"X-Trace": "1"}


def test_query_command_json_output(config_file):
    with patch("sparql_bridge.cli.ProtocolClient") as client_cls:
        client_cls.return_value.execute.return_value = BooleanResult(False)
        result = CliRunner().invoke(
            cli, ["query", "http://example.org/sparql", "--output", "json", "--max-rows", "5"], input="ASK {}"
        )

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"type": "boolean", "value": False}
    assert client_cls.return_value.execute.call_args.kwargs["row_cap"] == 5


def test_query_command_reports_errors(config_file):
    error = QueryError(ErrorKind.HTTP_STATUS, "Service Unavailable", http_status=503, details="try later")
    with patch("sparql_bridge.cli.ProtocolClient") as client_cls:
        client_cls.return_value.execute.side_effect = error
        result = CliRunner().invoke(cli, ["query", "local"], input="SELECT * {}")

    assert result.exit_code == 1
    assert "Error [http_status]: Service Unavailable" in result.output
    assert "try later" in result.output


def test_query_command_rejects_empty_query(config_file):
    with patch("sparql_bridge.cli.ProtocolClient") as client_cls:
        result = CliRunner().invoke(cli, ["query", "local"], input="   ")
    assert result.exit_code == 2
    client_cls.return_value.execute.assert_not_called()


def test_endpoints_command(config_file):
    result = CliRunner().invoke(cli, ["endpoints", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "local\tLocal Fuseki\thttp://localhost:3030/ds/sparql" in result.output
