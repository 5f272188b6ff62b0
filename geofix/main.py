"""Command-line entrypoints for the geofix pipeline."""
from __future__ import annotations

import argparse
import contextlib
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import orjson
import structlog
import tomllib
from dotenv import load_dotenv

from geofix.admin.status import summarise_runs
from geofix.normalize.geo import CachingResolver, GeoResolver, NullResolver, TableResolver
from geofix.observability.log import configure_logging
from geofix.observability.metrics import MetricsRegistry, record_duration
from geofix.observability.tracing import clear_context, set_context, span
from geofix.pipeline.stage import GeoFixStage
from geofix.pipeline.stream import Stream
from geofix.reporting.plugin import MonitoredPlugin
from geofix.storage.writers import JsonlSink, read_messages

LOGGER = structlog.get_logger(__name__)

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_LOGGING = Path("config/logging.yaml")


def load_settings(path: Path) -> Dict[str, object]:
    """Read the TOML configuration file."""
    with path.open("rb") as handle:
        return tomllib.load(handle)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="geofix", description="Attach coordinates to message streams")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Geo-fix a JSONL file of messages")
    run.add_argument("--input", required=True, help="JSONL file with one message per line")
    run.add_argument("--output", help="Destination JSONL file (defaults under app.output_dir)")
    run.add_argument("--table", help="YAML coordinate table overriding resolver.table")
    run.add_argument("--key-field", help="Message field looked up in the table")
    run.add_argument("--run-id", help="Identifier used for the manifest and metrics files")

    status = sub.add_parser("status", help="Summarise run manifests")
    status.add_argument("--manifests", help="Manifest directory (defaults to app.manifest_dir)")

    return parser


def build_resolver(args: argparse.Namespace, settings: Dict[str, object]) -> GeoResolver:
    """Create the coordinate resolver described by the CLI and settings."""
    resolver_cfg = settings.get("resolver", {})
    table = getattr(args, "table", None) or resolver_cfg.get("table")
    key_field = getattr(args, "key_field", None) or resolver_cfg.get("key_field", "location")
    if not table:
        LOGGER.warning("resolver_missing_table", detail="messages will pass through unresolved")
        return NullResolver()
    table_resolver = TableResolver.from_yaml(Path(table), key_field=key_field)
    if resolver_cfg.get("cache", True):
        return CachingResolver(table_resolver, key=table_resolver.key_for)
    return table_resolver


def run_pipeline(args: argparse.Namespace, settings: Dict[str, object]) -> Dict[str, object]:
    """Stream messages through the geo-fix stage and write the run manifest."""
    app_cfg = settings["app"]
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Failed to load messages: {input_path} does not exist")
    try:
        resolver = build_resolver(args, settings)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(f"Failed to load coordinate table: {exc}")

    run_id = getattr(args, "run_id", None) or datetime.utcnow().strftime("%Y%m%dT%H%M%S")
    output_path = Path(args.output) if getattr(args, "output", None) else Path(app_cfg["output_dir"]) / f"messages-{run_id}.jsonl"

    metrics = MetricsRegistry()
    plugin = MonitoredPlugin("geofix", metrics=metrics)
    sink = JsonlSink(output_path, metrics=metrics)
    crash: Optional[Exception] = None

    set_context(run_id=run_id, stage=plugin.name)
    try:
        with contextlib.closing(read_messages(input_path, metrics=metrics)) as messages:
            with record_duration(metrics, "run_duration_ms"), span(name="geofix"):
                Stream.from_iterable(messages).lift(GeoFixStage(plugin, resolver)).subscribe(sink)
    except Exception as exc:
        # Only reporter failures escape subscribe().
        crash = exc
        LOGGER.exception("run_crashed", run_id=run_id)
    finally:
        sink.close()
        clear_context()

    error = sink.error if sink.error is not None else crash
    if error is not None:
        LOGGER.error("run_failed", run_id=run_id, error=str(error))
    status = "errored" if error is not None else "completed"
    manifest: Dict[str, object] = {
        "run_id": run_id,
        "status": status,
        "input": str(input_path),
        "output": str(output_path),
        "counts": {
            "read": metrics.get("messages_read"),
            "written": metrics.get("messages_written"),
            "located": metrics.get("messages_located"),
        },
        "error": str(error) if error is not None else None,
        "plugin": plugin.snapshot(),
        "exit_code": 0 if error is None else 1,
    }
    manifest_dir = Path(app_cfg["manifest_dir"])
    manifest_dir.mkdir(parents=True, exist_ok=True)
    (manifest_dir / f"run-{run_id}.json").write_bytes(orjson.dumps(manifest, option=orjson.OPT_INDENT_2))
    metrics.export(path=Path(app_cfg["metrics_dir"]) / f"run_{run_id}.json", run_id=run_id)
    if crash is not None:
        raise crash
    return manifest


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(Path(os.environ.get("GEOFIX_SETTINGS", DEFAULT_SETTINGS)))
    configure_logging(DEFAULT_LOGGING)

    if args.command == "run":
        manifest = run_pipeline(args, settings)
        print(json.dumps({key: manifest[key] for key in ("run_id", "status", "output", "counts", "error")}, indent=2))
        if manifest["exit_code"]:
            raise SystemExit(1)
        return

    if args.command == "status":
        manifest_dir = Path(args.manifests or settings["app"]["manifest_dir"])
        print(json.dumps(summarise_runs(manifest_dir), indent=2))


if __name__ == "__main__":
    main()
