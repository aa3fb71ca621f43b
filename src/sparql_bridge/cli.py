from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import click

from sparql_bridge.client import ProtocolClient
from sparql_bridge.config import ConfigError, get_endpoint, load_config
from sparql_bridge.errors import QueryError
from sparql_bridge.models import (
    BooleanResult,
    Cell,
    GraphResult,
    TabularResult,
    UnifiedResult,
    UpdateResult,
)

COLUMN_WIDTH = 30


def parse_header_options(values: Iterable[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for value in values:
        name, sep, content = value.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"Header must look like 'Name: value', got {value!r}.", param_hint="--header")
        headers[name.strip()] = content.strip()
    return headers


def _cell_json(cell: Cell) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": cell.kind.value, "value": cell.lexical_value, "display": cell.display_value}
    if cell.datatype:
        payload["datatype"] = cell.datatype
    if cell.language:
        payload["language"] = cell.language
    return payload


def result_to_json(result: UnifiedResult) -> Dict[str, Any]:
    if isinstance(result, TabularResult):
        return {
            "type": "table",
            "columns": list(result.columns),
            "rows": [{var: _cell_json(cell) for var, cell in row.items()} for row in result.rows],
            "truncated": result.truncated,
            "total_available": result.total_available,
        }
    if isinstance(result, BooleanResult):
        return {"type": "boolean", "value": result.value}
    if isinstance(result, GraphResult):
        return {
            "type": "graph",
            "triples": [[_cell_json(term) for term in triple] for triple in result.triples],
            "truncated": result.truncated,
        }
    if isinstance(result, UpdateResult):
        return {"type": "update", "status": result.status}
    raise TypeError(f"Unknown result type: {type(result).__name__}")


def _fit(text: str) -> str:
    return f"{text[:COLUMN_WIDTH]:{COLUMN_WIDTH}}"


def render_table(result: UnifiedResult) -> List[str]:
    lines: List[str] = []
    if isinstance(result, TabularResult):
        lines.append(" | ".join(_fit(c) for c in result.columns))
        lines.append("-" * max(len(lines[0]), 10))
        for row in result.rows:
            cells = [row[c].display_value if c in row else "" for c in result.columns]
            lines.append(" | ".join(_fit(v) for v in cells))
        lines.append("-" * max(len(lines[0]), 10))
        suffix = " (truncated)" if result.truncated else ""
        lines.append(f"Total: {len(result.rows)} row(s){suffix}")
    elif isinstance(result, BooleanResult):
        lines.append(f"Result: {str(result.value).lower()}")
    elif isinstance(result, GraphResult):
        for s, p, o in result.triples:
            lines.append(f"  {s.display_value} {p.display_value} {o.display_value}")
        suffix = " (truncated)" if result.truncated else ""
        lines.append(f"Result: {len(result.triples)} triple(s){suffix}")
    elif isinstance(result, UpdateResult):
        lines.append(f"Update accepted (HTTP {result.status})")
    else:
        raise TypeError(f"Unknown result type: {type(result).__name__}")
    return lines


def _resolve_endpoint(endpoint: str) -> str:
    configured = get_endpoint(endpoint)
    return configured["sparql_url"] if configured else endpoint


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Run SPARQL queries against remote endpoints."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)


@cli.command("query")
@click.argument("endpoint")
@click.argument("query_file", type=click.File("r", encoding="utf-8"), default="-")
@click.option(
    "--max-rows",
    type=click.IntRange(1, None),
    default=None,
    help="Row cap (defaults to limits.max_rows from the config).",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(1, None),
    default=None,
    help="Wall-clock timeout in milliseconds (defaults to http.timeout_ms).",
)
@click.option(
    "--header",
    "headers",
    multiple=True,
    help="Extra request header 'Name: value' (repeat for multiple).",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="Output format.",
)
def query_command(
    endpoint: str,
    query_file,
    max_rows: Optional[int],
    timeout_ms: Optional[int],
    headers: Tuple[str, ...],
    output: str,
) -> None:
    """Execute the query in QUERY_FILE (or stdin) against ENDPOINT (URL or configured id)."""
    try:
        config = load_config()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    query_text = query_file.read()
    if not query_text.strip():
        raise click.BadParameter("Query text is empty.", param_hint="QUERY_FILE")

    client = ProtocolClient(config=config)
    request_kwargs: Dict[str, Any] = {"extra_headers": parse_header_options(headers)}
    if timeout_ms is not None:
        request_kwargs["timeout_ms"] = timeout_ms
    request = client.request(_resolve_endpoint(endpoint), query_text, **request_kwargs)

    try:
        result = client.execute(request, row_cap=max_rows)
    except QueryError as exc:
        click.echo(f"Error [{exc.kind.value}]: {exc.message}", err=True)
        if exc.details:
            click.echo(exc.details, err=True)
        sys.exit(1)

    if result is None:
        click.echo("Query cancelled.", err=True)
        sys.exit(1)

    if output == "json":
        click.echo(json.dumps(result_to_json(result), indent=2))
    else:
        for line in render_table(result):
            click.echo(line)


@cli.command("endpoints")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read endpoints from this YAML file instead of the default config.",
)
def endpoints_command(config_path: Optional[Path]) -> None:
    """List configured endpoints."""
    try:
        config = load_config(path=config_path) if config_path else load_config()
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if not config.endpoints:
        click.echo("No endpoints configured.")
        return
    for endpoint in config.endpoints:
        click.echo(f"{endpoint['id']}\t{endpoint['label']}\t{endpoint['sparql_url']}")


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
