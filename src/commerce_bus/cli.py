"""CLI entry point for the commerce event bus."""

from __future__ import annotations

import json

import click
from pydantic import ValidationError

from .core.errors import BusError


def _settings(config: str | None):
    from .core.config import load_settings
    from .observability.logger import setup_logging

    settings = load_settings(config_path=config)
    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
    )
    return settings


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--header")
        headers[key.strip()] = value.strip()
    return headers


@click.group()
def main() -> None:
    """Commerce integration-event bus."""


@main.command()
@click.argument("event_type")
@click.argument("payload")
@click.option("--header", "headers", multiple=True, help="Extra header as key=value (repeatable)")
@click.option("--config", default=None, help="Config file path")
def publish(event_type: str, payload: str, headers: tuple[str, ...], config: str | None) -> None:
    """Publish EVENT_TYPE with the JSON object PAYLOAD."""
    import asyncio

    from .bus.factory import create_event_bus
    from .bus.registry import EventTypeRegistry
    from .contracts import register_contracts

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="PAYLOAD") from e
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="PAYLOAD")
    extra = _parse_headers(headers)

    settings = _settings(config)
    registry = EventTypeRegistry()
    register_contracts(registry)

    async def _run() -> str:
        bus = create_event_bus(settings, type_registry=registry)
        async with bus:
            envelope = await bus.publish_raw(event_type, data, headers=extra or None)
        return envelope.message_id

    try:
        message_id = asyncio.run(_run())
    except ValidationError as e:
        raise click.ClickException(f"Invalid {event_type} payload: {e}") from e
    except BusError as e:
        raise click.ClickException(str(e)) from e
    click.echo(message_id)


@main.command("dead-letters")
@click.option("--count", default=20, type=int, help="Number of entries to show")
@click.option("--config", default=None, help="Config file path")
def dead_letters(count: int, config: str | None) -> None:
    """List dead-lettered messages, newest first."""
    import asyncio

    from .bus.factory import create_transport

    settings = _settings(config)

    async def _run():
        transport = create_transport(settings)
        await transport.start()
        try:
            return await transport.read_dead_letters(count)
        finally:
            await transport.stop(settings.consumer.shutdown_timeout_seconds)

    try:
        entries = asyncio.run(_run())
    except BusError as e:
        raise click.ClickException(str(e)) from e

    if not entries:
        click.echo("No dead letters.")
        return
    for entry in entries:
        click.echo(
            json.dumps(
                {
                    "event_type": entry.event_type,
                    "group": entry.group,
                    "message_id": entry.message_id,
                    "reason": entry.reason.value,
                    "attempts": entry.attempts,
                    "error": entry.error,
                    "timestamp": entry.timestamp,
                }
            )
        )


@main.command()
@click.option("--config", default=None, help="Config file path")
def health(config: str | None) -> None:
    """Check broker and idempotency store connectivity."""
    import asyncio

    from .observability.health import build_health_checker

    settings = _settings(config)
    results = asyncio.run(build_health_checker(settings).check_all())

    for r in results:
        status = "ok" if r.healthy else "FAIL"
        click.echo(f"{r.component:<20} {status:<5} {r.latency_ms:8.1f}ms  {r.message}")
    if not all(r.healthy for r in results):
        raise SystemExit(1)


@main.command()
@click.option("--config", default=None, help="Config file path")
def settings(config: str | None) -> None:
    """Print the resolved settings as JSON."""
    from .core.config import load_settings

    click.echo(load_settings(config_path=config).model_dump_json(indent=2))
