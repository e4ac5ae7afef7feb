"""Click CLI for the shop-floor board.

Entry point registered in ``pyproject.toml`` as ``shopfloor-board``.

Subcommands::

    shopfloor-board watch                 # stream machine changes as NDJSON
    shopfloor-board set S1 -c mechanical -r Selectores
    shopfloor-board snapshot              # shift handover wizard
    shopfloor-board snapshots             # list recorded handovers
    shopfloor-board register TOKEN        # register a push endpoint
    shopfloor-board hub                   # run the board document hub
    shopfloor-board push-server           # run the push fan-out API
    shopfloor-board secrets init|set|list|delete|rekey
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Optional

import aiohttp
import click
import orjson
from aiohttp import web

from shopfloor_board import __version__
from shopfloor_board.board import BoardClient
from shopfloor_board.catalog import (
    OTHER_REASON,
    Category,
    reason_index,
    reasons_for,
    resolve_label,
)
from shopfloor_board.codec import decode_board
from shopfloor_board.config import AppConfig, LogFileConfig, load_config
from shopfloor_board.connection import HubConnection
from shopfloor_board.documents import RemoteError
from shopfloor_board.filter import StatusFilter
from shopfloor_board.output import FileSink, StdoutSink
from shopfloor_board.push import FcmTransport, register_endpoint
from shopfloor_board.redactor import SecretRedactingFilter, collect_secret_values
from shopfloor_board.snapshot import (
    SnapshotArchive,
    SnapshotDraft,
    SnapshotExistsError,
    SnapshotRecord,
    SnapshotWizard,
    WizardError,
    format_key,
)
from shopfloor_board.transform import ChangeTransformer

logger = logging.getLogger("shopfloor_board")

DEFAULT_CONFIG = "/etc/shopfloor-board/config.json"
DEFAULT_SECRETS = "/etc/shopfloor-board/.secrets.enc"

LOAD_TIMEOUT_S = 15.0
DRY_RUN_RECORDS = 5


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger with JSON output on stderr + optional file + redaction."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    redactor = SecretRedactingFilter(secret_values)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_JsonFormatter())
    stderr_handler.addFilter(redactor)
    root.addHandler(stderr_handler)

    if log_file_config and log_file_config.enabled:
        from logging.handlers import RotatingFileHandler

        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(_JsonFormatter())
        file_handler.addFilter(redactor)
        root.addHandler(file_handler)


def _install_signal_handlers(callback: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        callback()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows


def _load_secrets() -> dict[str, str]:
    key_file = os.environ.get("SHOPFLOOR_KEY_FILE")
    secrets_file = os.environ.get("SHOPFLOOR_SECRETS_FILE", DEFAULT_SECRETS)
    if key_file and Path(key_file).exists() and Path(secrets_file).exists():
        from shopfloor_board.secrets import load_secrets
        return load_secrets(secrets_file, key_file)
    return {}


def _resolve_config(
    config_path: Optional[str],
    overrides: dict[str, str],
) -> AppConfig:
    explicit = config_path or os.environ.get("SHOPFLOOR_CONFIG")
    path = explicit or DEFAULT_CONFIG
    if not explicit and not Path(path).exists():
        return AppConfig()
    return load_config(path, overrides=overrides, secrets=_load_secrets())


def _cfg(ctx: click.Context) -> AppConfig:
    return ctx.find_root().obj["config"]


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--hub-url", default=None, help="Override SHOPFLOOR_HUB_URL.")
@click.option("--hub-token", default=None, help="Override SHOPFLOOR_HUB_TOKEN.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    validate_only: bool,
    hub_url: Optional[str],
    hub_token: Optional[str],
) -> None:
    """Shop-floor machine status board."""
    ctx.ensure_object(dict)
    if ctx.invoked_subcommand == "secrets":
        return  # needs no config

    overrides: dict[str, str] = {}
    if hub_url:
        overrides["SHOPFLOOR_HUB_URL"] = hub_url
    if hub_token:
        overrides["SHOPFLOOR_HUB_TOKEN"] = hub_token

    try:
        cfg = _resolve_config(config_path, overrides)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    effective_level = log_level or os.environ.get("SHOPFLOOR_LOG_LEVEL") or cfg.logging.level
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    _setup_logging(effective_level, secret_values, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    ctx.obj["config"] = cfg


# ── watch ───────────────────────────────────────────────────────────


@main.command()
@click.option("-o", "--output", "output_mode", type=click.Choice(["stdout", "file"]),
              default="stdout", show_default=True, help="Where change records go.")
@click.option("-d", "--output-dir", default=None, help="Override output directory.")
@click.option("--dry-run", is_flag=True, help=f"Exit after {DRY_RUN_RECORDS} records.")
@click.pass_context
def watch(ctx: click.Context, output_mode: str, output_dir: Optional[str], dry_run: bool) -> None:
    """Stream machine status changes as NDJSON."""
    cfg = _cfg(ctx)
    if output_dir:
        cfg.output.file.output_dir = output_dir
    logger.info(
        "Starting shopfloor-board %s watch (client=%s, output=%s)",
        __version__, cfg.client_id, output_mode,
    )
    asyncio.run(_run_watch(cfg, output_mode, dry_run))


async def _run_watch(cfg: AppConfig, output_mode: str, dry_run: bool) -> None:
    """Core loop: subscribe → decode → diff/filter → output."""
    conn = HubConnection(cfg.hub)
    wc = cfg.watch
    xform = ChangeTransformer(
        client_id=cfg.client_id,
        status_filter=StatusFilter(wc.exclude_categories, wc.drop_machine_ids, wc.keep_machine_ids),
    )
    sink = StdoutSink() if output_mode == "stdout" else FileSink.from_config(cfg.output.file, cfg.client_id)
    _install_signal_handlers(conn.request_shutdown)

    count = 0
    try:
        async for payload in conn.subscribe(cfg.hub.document_path):
            for line in xform.diff(decode_board(payload)):
                try:
                    sink.write(line)
                except BrokenPipeError:
                    return
                count += 1
            if dry_run and count >= DRY_RUN_RECORDS:
                logger.info("Dry run complete, wrote %d records", count)
                return
    finally:
        sink.close()
        logger.info("Watch shut down (wrote %d records, %d malformed frames)",
                    count, conn.malformed_count)


# ── set ─────────────────────────────────────────────────────────────


def _parse_reason(category: Category, reason: Optional[str]) -> Optional[int]:
    if reason is None:
        return None
    if reason.isdigit():
        return int(reason)
    return reason_index(category, reason)


@main.command("set")
@click.argument("machine_id")
@click.option("-c", "--category", required=True,
              help="Category name or code (mechanical, barring, electronic, producing, ...).")
@click.option("-r", "--reason", default=None, help="Reason label or index.")
@click.option("-t", "--text", default=None, help="Free text for the 'Otros' reason.")
@click.option("--push-token", envvar="SHOPFLOOR_PUSH_TOKEN", default=None,
              help="Registered push token; without it no notification is sent.")
@click.pass_context
def set_machine(
    ctx: click.Context,
    machine_id: str,
    category: str,
    reason: Optional[str],
    text: Optional[str],
    push_token: Optional[str],
) -> None:
    """Set the status of one machine on the shared board."""
    try:
        cat = Category.parse(category)
        idx = _parse_reason(cat, reason)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    asyncio.run(_run_set(_cfg(ctx), machine_id, cat, idx, text, push_token))
    click.echo(f"{machine_id}: {resolve_label(cat, idx, text)}")


async def _run_set(
    cfg: AppConfig,
    machine_id: str,
    category: Category,
    idx: Optional[int],
    text: Optional[str],
    push_token: Optional[str],
) -> None:
    client = BoardClient(cfg, HubConnection(cfg.hub))
    if push_token:
        client.dispatcher.set_token(push_token)
    await client.start()
    try:
        if not await client.wait_loaded(LOAD_TIMEOUT_S):
            raise click.ClickException("Board did not load; not overwriting it blind")
        try:
            client.set_machine(machine_id, category, idx, text)
        except ValueError as exc:
            raise click.BadParameter(str(exc)) from exc
    finally:
        await client.close()


# ── snapshots ───────────────────────────────────────────────────────


def _prompt_log(wizard: SnapshotWizard) -> None:
    names = [c.name.lower() for c in Category]
    while True:
        machine_id = click.prompt("Machine reviewed (empty to finish)", default="", show_default=False)
        if not machine_id.strip():
            return
        cat = Category.parse(click.prompt("Category", type=click.Choice(names)))
        options = reasons_for(cat)
        idx = None
        text = None
        if options:
            for i, option in enumerate(options):
                click.echo(f"  {i}: {option}")
            idx = click.prompt("Reason", type=click.IntRange(0, len(options) - 1))
            if options[idx] == OTHER_REASON:
                text = click.prompt("Describe")
        try:
            entry = wizard.add_log_entry(machine_id, cat, idx, text)
        except WizardError as exc:
            click.echo(f"  {exc}", err=True)
            continue
        click.echo(f"  {entry.machine_id}: {resolve_label(cat, idx, text)}")


@main.command()
@click.pass_context
def snapshot(ctx: click.Context) -> None:
    """Record a shift handover snapshot."""
    cfg = _cfg(ctx)
    wizard = SnapshotWizard(cfg.snapshot.operators, cfg.snapshot.observations_only_operator)

    click.echo("Operators: " + ", ".join(wizard.operators))
    wizard.select_operator(click.prompt("Operator"))
    if not wizard.observations_only:
        _prompt_log(wizard)
    wizard.set_observations(click.prompt("Observations", default="", show_default=False))

    draft = wizard.review()
    click.echo(f"Operator: {draft.operator}")
    for entry in draft.log.values():
        click.echo(f"  {entry.machine_id}: {resolve_label(entry.status.category, entry.status.reason_index, entry.status.reason_text)}")
    if draft.observations:
        click.echo(f"Observations: {draft.observations}")
    if not click.confirm("Record this snapshot?", default=True):
        wizard.cancel()
        click.echo("Cancelled.")
        return

    draft = wizard.confirm()
    record = asyncio.run(_run_snapshot(cfg, draft))
    click.echo(f"Recorded {format_key(record.key)} ({len(record.machines)} machines)")


async def _run_snapshot(cfg: AppConfig, draft: SnapshotDraft) -> SnapshotRecord:
    client = BoardClient(cfg, HubConnection(cfg.hub))
    await client.start()
    try:
        if not await client.wait_loaded(LOAD_TIMEOUT_S):
            raise click.ClickException("Board did not load")
        try:
            return await client.recorder.record(draft)
        except (SnapshotExistsError, RemoteError) as exc:
            raise click.ClickException(str(exc)) from exc
    finally:
        await client.close()


@main.command()
@click.option("-n", "--limit", default=20, show_default=True, help="How many to show.")
@click.pass_context
def snapshots(ctx: click.Context, limit: int) -> None:
    """List recorded snapshots, newest first."""
    cfg = _cfg(ctx)
    try:
        records = asyncio.run(SnapshotArchive(HubConnection(cfg.hub)).list())
    except RemoteError as exc:
        raise click.ClickException(str(exc)) from exc
    for record in records[:limit]:
        click.echo(f"{format_key(record.key)}  {record.operator or '-'}  ({len(record.machines)} machines)")
        for mid, entry in sorted(record.machines.items()):
            reason = entry.get("reason")
            click.echo(f"    {mid}: {entry.get('category', '')}" + (f" - {reason}" if reason else ""))
        observations = record.notes.get("observations")
        if observations:
            click.echo(f"    {observations}")


# ── push ────────────────────────────────────────────────────────────


@main.command()
@click.argument("token")
@click.option("--user-agent", default="shopfloor-board", show_default=True)
@click.pass_context
def register(ctx: click.Context, token: str, user_agent: str) -> None:
    """Register a push endpoint token."""
    cfg = _cfg(ctx)
    try:
        asyncio.run(register_endpoint(HubConnection(cfg.hub), token, user_agent, cfg.push.tokens_path))
    except RemoteError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Registered.")


@main.command("push-server")
@click.option("--port", default=None, type=int, help="Override push_server.port.")
@click.pass_context
def push_server(ctx: click.Context, port: Optional[int]) -> None:
    """Run the push fan-out HTTP API."""
    cfg = _cfg(ctx)
    if port:
        cfg.push_server.port = port
    asyncio.run(_run_push_server(cfg))


async def _run_push_server(cfg: AppConfig) -> None:
    from shopfloor_board.push_api import create_app

    stop = asyncio.Event()
    _install_signal_handlers(stop.set)
    async with aiohttp.ClientSession() as session:
        app = create_app(HubConnection(cfg.hub), FcmTransport(cfg.push, session), cfg.push)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, cfg.push_server.host, cfg.push_server.port)
        await site.start()
        logger.info("Push API listening on %s:%d", cfg.push_server.host, cfg.push_server.port)
        try:
            await stop.wait()
        finally:
            await runner.cleanup()


@main.command()
@click.pass_context
def hub(ctx: click.Context) -> None:
    """Run the board document hub."""
    from shopfloor_board.hub import serve

    cfg = _cfg(ctx)

    async def _run() -> None:
        stop = asyncio.Event()
        _install_signal_handlers(stop.set)
        await serve(cfg.hub_server, stop)

    asyncio.run(_run())


# ── secrets subcommand group ────────────────────────────────────────


_key_file_option = click.option(
    "--key-file", envvar="SHOPFLOOR_KEY_FILE", required=True, help="Path to the master key.",
)
_secrets_file_option = click.option(
    "--secrets-file", envvar="SHOPFLOOR_SECRETS_FILE", default=DEFAULT_SECRETS,
    show_default=True, help="Encrypted secrets file.",
)


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@_secrets_file_option
@_key_file_option
def secrets_init(secrets_file: str, key_file: str) -> None:
    """Create an empty encrypted secrets file (and key, if missing)."""
    from shopfloor_board.secrets import init_secrets
    init_secrets(secrets_file, key_file)
    click.echo(f"Initialized: {secrets_file} (key: {key_file})")


@secrets.command("set")
@click.argument("name")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@_secrets_file_option
@_key_file_option
def secrets_set(name: str, value: str, secrets_file: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    from shopfloor_board.secrets import SecretsError, set_secret
    try:
        set_secret(secrets_file, key_file, name, value)
    except (SecretsError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Set: {name}")


@secrets.command("list")
@_secrets_file_option
@_key_file_option
def secrets_list(secrets_file: str, key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    from shopfloor_board.secrets import SecretsError, list_secrets
    try:
        names = list_secrets(secrets_file, key_file)
    except (SecretsError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    for name in names:
        click.echo(name)


@secrets.command("delete")
@click.argument("name")
@_secrets_file_option
@_key_file_option
def secrets_delete(name: str, secrets_file: str, key_file: str) -> None:
    """Remove a secret from the encrypted file."""
    from shopfloor_board.secrets import SecretsError, delete_secret
    try:
        removed = delete_secret(secrets_file, key_file, name)
    except (SecretsError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not removed:
        raise click.ClickException(f"No such secret: {name}")
    click.echo(f"Deleted: {name}")


@secrets.command("rekey")
@_secrets_file_option
@_key_file_option
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(secrets_file: str, key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    from shopfloor_board.secrets import rekey
    rekey(secrets_file, key_file, new_key_file)
    click.echo(f"Re-keyed with: {new_key_file}")

