"""Typer CLI entrypoints for relaybus."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Optional

import typer

from relaybus.config import (
    ProjectConfigError,
    initialize_project_config,
    load_settings,
    project_config_exists,
    resolve_project_config_root,
)
from relaybus.kernel.runtime import BusRuntime
from relaybus.ui.render import (
    render_doctor_text,
    render_listeners,
    render_notice,
    render_plugin_report,
)

app = typer.Typer(
    no_args_is_help=True,
    help="relaybus: in-process event bus tooling",
)


def _missing_config_message() -> str:
    return render_notice(
        "error",
        "missing project config directory: {0}. Run `relaybus init` first.".format(
            resolve_project_config_root()
        ),
    )


def _open_runtime() -> BusRuntime:
    if not project_config_exists():
        typer.echo(_missing_config_message(), err=True)
        raise typer.Exit(code=2)
    try:
        settings = load_settings()
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    return BusRuntime(settings)


def _parse_payload(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.echo(render_notice("error", "payload is not valid JSON: {0}".format(exc)), err=True)
        raise typer.Exit(code=2)


@app.command("init")
def init_cmd(
    force: bool = typer.Option(False, "--force", help="Recreate the config directory if it exists"),
) -> None:
    try:
        config_root = initialize_project_config(force=force)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(render_notice("success", "initialized {0}".format(config_root)))


@app.command("doctor")
def doctor_cmd(
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed diagnostics"),
    output_format: str = typer.Option("json", "--format", help="Output format: json|text"),
) -> None:
    normalized_format = output_format.strip().lower()
    if normalized_format not in {"json", "text"}:
        typer.echo(render_notice("error", "unsupported format: {0}".format(output_format)), err=True)
        raise typer.Exit(code=2)

    runtime = _open_runtime()
    try:
        report = runtime.doctor(verbose=verbose)
        if normalized_format == "json":
            typer.echo(json.dumps(report, ensure_ascii=True, indent=2))
            return
        typer.echo(render_doctor_text(report))
    finally:
        runtime.close()


@app.command("plugins")
def plugins_cmd() -> None:
    runtime = _open_runtime()
    try:
        typer.echo(render_plugin_report(runtime.plugin_report))
    finally:
        runtime.close()


@app.command("listeners")
def listeners_cmd(
    event: Optional[str] = typer.Argument(None, help="Only show patterns matching this event name"),
) -> None:
    runtime = _open_runtime()
    try:
        render_listeners(runtime.bus.get_listeners(event), sys.stdout)
    finally:
        runtime.close()


@app.command("emit")
def emit_cmd(
    event: str = typer.Argument(..., help="Event name to emit"),
    payload: Optional[str] = typer.Option(None, "--payload", help="JSON payload"),
) -> None:
    data = _parse_payload(payload)
    runtime = _open_runtime()
    try:

        async def _run():
            await runtime.start()
            return await runtime.bus.dispatch(event, data)

        result = asyncio.run(_run())
        typer.echo(
            "event={0} handlers={1} failed={2} retired={3}".format(
                event,
                result.executed,
                result.failed_count,
                len(result.listeners_to_remove),
            )
        )
        if result.failures:
            raise typer.Exit(code=1)
    finally:
        runtime.close()


if __name__ == "__main__":
    app()
