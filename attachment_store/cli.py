"""CLI entrypoint."""

from __future__ import annotations

import argparse
from dataclasses import replace
import mimetypes
from pathlib import Path
import sys

from attachment_store.config import load_config, AppConfig
from attachment_store.errors import AttachmentStoreError
from attachment_store.pipeline.store import build_store
from attachment_store.util.json import json_dumps_safe
from attachment_store.util.logging import configure_logging
from attachment_store.util.time import parse_datetime


def _build_config(base: AppConfig, args: argparse.Namespace) -> AppConfig:
    return replace(
        base,
        db_url=args.db_url or base.db_url,
        storage_root=args.storage_root or base.storage_root,
        log_level=args.log_level or base.log_level,
    )


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db-url", help="Database URL override")
    common.add_argument("--storage-root", help="Storage root override")
    common.add_argument("--log-level", help="Log level override")

    parser = argparse.ArgumentParser(prog="attachment-store")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest_parser = subparsers.add_parser("ingest", parents=[common], help="Store a file")
    ingest_parser.add_argument("path", help="File to upload")
    ingest_parser.add_argument("--name", help="Original name (defaults to the file name)")
    ingest_parser.add_argument("--mime", help="MIME type (guessed from the name if omitted)")
    ingest_parser.add_argument("--disk", help="Target disk")
    ingest_parser.add_argument("--path-hint", help="Logical subdirectory for the file")
    ingest_parser.add_argument(
        "--allow-duplicates",
        action="store_true",
        default=None,
        help="Store a private copy even if identical content exists",
    )

    remove_parser = subparsers.add_parser("remove", parents=[common], help="Remove an attachment")
    remove_parser.add_argument("attachment_id")

    show_parser = subparsers.add_parser("show", parents=[common], help="Show an attachment record")
    show_parser.add_argument("attachment_id")

    url_parser = subparsers.add_parser("url", parents=[common], help="Print the URL of an attachment")
    url_parser.add_argument("attachment_id")
    url_parser.add_argument("--no-check", action="store_true", help="Skip the existence check")

    list_parser = subparsers.add_parser("list", parents=[common], help="List attachment records")
    list_parser.add_argument("--disk", help="Only records on this disk")
    list_parser.add_argument("--since", help="Only records created after this datetime (ISO)")
    list_parser.add_argument("--limit", type=int, help="Max records to list")

    audit_parser = subparsers.add_parser("audit", parents=[common], help="Report orphaned and missing files")
    audit_parser.add_argument("--disk", help="Only audit this disk")

    return parser


def run(args: argparse.Namespace, config: AppConfig) -> object:
    store = build_store(config)
    try:
        return _dispatch(store, args)
    finally:
        store.close()


def _dispatch(store, args: argparse.Namespace) -> object:
    if args.command == "ingest":
        path = Path(args.path)
        name = args.name or path.name
        mime = args.mime or mimetypes.guess_type(name)[0]
        with path.open("rb") as handle:
            return store.ingest(
                handle,
                original_name=name,
                mime=mime,
                size=path.stat().st_size,
                disk_name=args.disk,
                upload_path_hint=args.path_hint,
                allow_duplicates=args.allow_duplicates,
            )
    if args.command == "remove":
        store.remove(args.attachment_id)
        return {"removed": args.attachment_id}
    if args.command == "show":
        return store.get(args.attachment_id)
    if args.command == "url":
        return {"url": store.url_for(args.attachment_id, check_exists=not args.no_check)}
    if args.command == "list":
        return store.list_records(
            disk_name=args.disk,
            since=parse_datetime(args.since),
            limit=args.limit,
        )
    if args.command == "audit":
        return {
            "orphans": [{"disk": disk, "key": key} for disk, key in store.find_orphans(args.disk)],
            "missing": store.find_missing(args.disk),
        }
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = _build_config(load_config(), args)
    configure_logging(config.log_level, config.log_file)

    try:
        result = run(args, config)
    except AttachmentStoreError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json_dumps_safe(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
