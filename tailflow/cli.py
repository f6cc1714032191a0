import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import Config, default_config_yaml, load_config
from .errors import ConfigurationError
from .splitter import MultilineSplitterFactory


app = typer.Typer(help="Tailflow: fingerprint-tracking file tailer for log collection")

logger = logging.getLogger("tailflow.cli")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _resolve_config(
    config: Optional[Path],
    include: Optional[List[str]],
    exclude: Optional[List[str]],
    start_at: Optional[str],
    poll: Optional[str],
    fingerprint_size: Optional[str],
    max_log_size: Optional[str],
    max_concurrent_files: Optional[int],
    delete_after_read: Optional[bool],
    encoding: Optional[str],
) -> Config:
    data = {}
    if config is not None:
        base = load_config(config).to_dict()
        data.update(base)
    overrides = {
        "include": include or None,
        "exclude": exclude or None,
        "start_at": start_at,
        "poll_interval": poll,
        "fingerprint_size": fingerprint_size,
        "max_log_size": max_log_size,
        "max_concurrent_files": max_concurrent_files,
        "delete_after_read": delete_after_read,
        "encoding": encoding,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return Config.from_dict(data)


@app.command()
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file", metavar="PATH"),
    include: Optional[List[str]] = typer.Option(None, "--include", help="Glob of files to tail (can pass multiple)", metavar="GLOB"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", help="Glob of files to skip (can pass multiple)", metavar="GLOB"),
    start_at: Optional[str] = typer.Option(None, "--start-at", help="beginning | end"),
    poll: Optional[str] = typer.Option(None, "--poll", help="Polling interval, e.g. 200ms or 1s"),
    fingerprint_size: Optional[str] = typer.Option(None, "--fingerprint-size", help="Bytes used for file identity"),
    max_log_size: Optional[str] = typer.Option(None, "--max-log-size", help="Largest record, e.g. 1MiB"),
    max_concurrent_files: Optional[int] = typer.Option(None, "--max-concurrent-files", help="Cap on open files"),
    delete_after_read: Optional[bool] = typer.Option(None, "--delete-after-read/--keep-files", help="Delete files once fully read"),
    encoding: Optional[str] = typer.Option(None, "--encoding", help="Text encoding of the files, or 'nop'"),
    feature_gates: Optional[str] = typer.Option(None, "--feature-gates", help="Comma-separated gates, e.g. +filelog.allowFileDeletion"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Append records as JSON lines to this file instead of stdout", metavar="FILE"),
    log_level: str = typer.Option("info", "--log-level", help="debug | info | warning | error"),
):
    """Tail matching files and print each record as a JSON line."""
    from .featuregate import get_global_registry
    from .output import JsonLinesSink

    _setup_logging(log_level)
    sink = None
    try:
        get_global_registry().apply(feature_gates)
        cfg = _resolve_config(config, include, exclude, start_at, poll, fingerprint_size,
                              max_log_size, max_concurrent_files, delete_after_read, encoding)
        sink = JsonLinesSink(path=output)
        manager = cfg.build(sink.emit)
    except ConfigurationError as e:
        if sink is not None:
            sink.close()
        typer.echo(f"configuration error: {e}", err=True)
        raise typer.Exit(code=1)

    logger.info(f"Tailing {cfg.include} every {cfg.poll_interval}s. Press Ctrl-C to stop.")
    try:
        asyncio.run(manager.run())
    except KeyboardInterrupt:
        manager.close()
    finally:
        sink.close()
        logger.info(f"Stopped after {sink.count} records.")


@app.command()
def validate(
    config: Path = typer.Option(..., "--config", "-c", help="YAML config file", metavar="PATH"),
):
    """Check a config file and print it with defaults filled in."""
    try:
        cfg = load_config(config)
        cfg.validate()
        # splitter options are only checked when building
        MultilineSplitterFactory(cfg.splitter).build(cfg.max_log_size)
    except ConfigurationError as e:
        typer.echo(json.dumps({"ok": False, "error": str(e)}))
        raise typer.Exit(code=1)
    typer.echo(json.dumps({"ok": True, "config": cfg.to_dict()}, indent=2))


@app.command()
def gates():
    """List feature gates and whether they are enabled."""
    from .featuregate import get_global_registry
    rows = [
        {"id": g.id, "stage": g.stage, "enabled": g.enabled, "description": g.description}
        for g in get_global_registry().list()
    ]
    typer.echo(json.dumps(rows, indent=2))


@app.command("default-config")
def default_config():
    """Print a starter YAML config."""
    typer.echo(default_config_yaml().lstrip("\n"), nl=False)


if __name__ == "__main__":
    app()


def main():
    """Entry point for console_scripts."""
    app()
