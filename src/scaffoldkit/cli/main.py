#!/usr/bin/env python3
"""Entry point for the scaffoldkit CLI."""

from __future__ import annotations

import argparse
import json
import sys
from collections import deque
from pathlib import Path
from typing import Any, Dict

from scaffoldkit import __version__
from scaffoldkit.app.pipeline import PipelineRequest, ScaffoldPipeline
from scaffoldkit.app.resolver.service import FetchOptions
from scaffoldkit.domain.errors import ScaffoldError
from scaffoldkit.settings import RuntimeSettings, load_settings
from scaffoldkit.utils.telemetry import clear as telemetry_clear
from scaffoldkit.utils.telemetry import iter_events as telemetry_iter
from scaffoldkit.utils.telemetry import summarize as telemetry_summarize

HELP_OVERVIEW = """\
Scaffold a project from a template.

Template references:
  ./path/to/template              local directory
  owner/repo[#ref][/subpath]      GitHub shorthand
  https://host/owner/repo[/tree/ref/subpath]
  https://host/file.tar.gz        archive download
  registry/template               alias from the config file registries
"""


def _settings() -> RuntimeSettings:
    return load_settings()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _new_cmd(args: argparse.Namespace) -> int:
    try:
        settings = _settings()
    except ScaffoldError as exc:
        print(f"scaffoldkit: {exc.message}", file=sys.stderr)
        return 1
    pipeline = ScaffoldPipeline(settings)
    request = PipelineRequest(
        reference=args.reference,
        project_dir=Path(args.directory),
        options=tuple(args.options),
        placeholders=tuple(args.placeholders),
        selection_path=Path(args.selection) if args.selection else None,
        no_cache=args.no_cache,
        dry_run=args.dry_run,
    )
    result = pipeline.run(request)
    if args.json:
        payload = result.to_dict()
        if args.show_selection and result.selection is not None:
            payload["selection"] = result.selection.to_dict(mask_sensitive=True)
        _print_json(payload)
        return 0 if result.ok else 1
    if not result.ok:
        print(f"scaffoldkit: {result.kind} error: {result.message}", file=sys.stderr)
        if result.partial_cleanup_performed:
            print("scaffoldkit: partial output was removed", file=sys.stderr)
        return 1
    if result.dry_run:
        print(f"Would create {result.project_dir}")
        for name in result.planned_files:
            print(f"  {name}")
    else:
        print(f"Created {result.project_dir}")
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if args.show_selection and result.selection is not None:
        _print_json(result.selection.to_dict(mask_sensitive=True))
    return 0


def _validate_cmd(args: argparse.Namespace) -> int:
    try:
        pipeline = ScaffoldPipeline(_settings())
        resolved = pipeline.resolver().resolve(args.reference, FetchOptions(no_cache=args.no_cache))
    except ScaffoldError as exc:
        _print_json({"ok": False, **exc.to_dict()})
        return 1
    manifest = resolved.manifest
    _print_json(
        {
            "ok": True,
            "templateId": manifest.id,
            "name": manifest.name,
            "root": str(resolved.root),
            "checksum": resolved.checksum,
            "dimensions": sorted(manifest.dimensions),
            "placeholders": sorted(manifest.placeholders),
            "warnings": list(resolved.warnings),
        }
    )
    return 0


def _cache_cmd(args: argparse.Namespace) -> int:
    try:
        cache = ScaffoldPipeline(_settings()).cache_manager()
    except ScaffoldError as exc:
        print(f"scaffoldkit: {exc.message}", file=sys.stderr)
        return 1
    if args.cache_command == "list":
        _print_json([entry.to_dict() for entry in cache.list_entries()])
        return 0
    if args.cache_command == "clear":
        if args.all:
            removed = sum(1 for entry in cache.list_entries() if cache.purge(entry.cache_key))
        else:
            removed = cache.clear_expired()
        _print_json({"removed": removed})
        return 0
    print("Unsupported cache command", file=sys.stderr)
    return 2


def _diagnostics_cmd(args: argparse.Namespace) -> int:
    settings = _settings()
    if args.clear:
        telemetry_clear(settings)
        print("Diagnostics log cleared")
        return 0
    if args.tail:
        window: deque[Dict[str, Any]] = deque(maxlen=args.tail)
        for evt in telemetry_iter(settings):
            window.append(evt)
        for evt in window:
            print(json.dumps(evt, ensure_ascii=False))
        return 0
    _print_json(telemetry_summarize(telemetry_iter(settings)))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scaffoldkit",
        description=HELP_OVERVIEW,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"scaffoldkit {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    new_cmd = sub.add_parser("new", help="Create a project from a template")
    new_cmd.add_argument("reference", help="Template reference")
    new_cmd.add_argument("directory", help="Target project directory (must be missing or empty)")
    new_cmd.add_argument("--option", dest="options", action="append", default=[], metavar="DIM=VALUE", help="Select a dimension value")
    new_cmd.add_argument(
        "--placeholder",
        dest="placeholders",
        action="append",
        default=[],
        metavar="TOKEN=VALUE",
        help="Set a placeholder value",
    )
    new_cmd.add_argument("--selection", help="Selection document (JSON or YAML)")
    new_cmd.add_argument("--no-cache", action="store_true", help="Fetch the template even when a fresh cache entry exists")
    new_cmd.add_argument("--dry-run", action="store_true", help="List the files that would be written without writing them")
    new_cmd.add_argument("--json", action="store_true", help="Print the pipeline result as JSON")
    new_cmd.add_argument("--show-selection", action="store_true", help="Print the resolved selection document")
    new_cmd.set_defaults(func=_new_cmd)

    validate_cmd = sub.add_parser("validate", help="Resolve a template and validate its manifest")
    validate_cmd.add_argument("reference", help="Template reference")
    validate_cmd.add_argument("--no-cache", action="store_true")
    validate_cmd.set_defaults(func=_validate_cmd)

    cache_cmd = sub.add_parser("cache", help="Inspect the template cache")
    cache_sub = cache_cmd.add_subparsers(dest="cache_command", required=True)
    cache_list = cache_sub.add_parser("list", help="List cache entries")
    cache_list.set_defaults(func=_cache_cmd)
    cache_clear = cache_sub.add_parser("clear", help="Remove expired and corrupted entries")
    cache_clear.add_argument("--all", action="store_true", help="Remove every entry")
    cache_clear.set_defaults(func=_cache_cmd)

    diagnostics_cmd = sub.add_parser("diagnostics", help="Summarise the local diagnostics log")
    diagnostics_cmd.add_argument("--clear", action="store_true", help="Remove the diagnostics log")
    diagnostics_cmd.add_argument("--tail", type=int, default=0, metavar="N", help="Print the last N events")
    diagnostics_cmd.set_defaults(func=_diagnostics_cmd)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
