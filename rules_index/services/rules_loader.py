"""
CLI entry-point for the rules indexing pipeline.

Usage
-----
    python -m rules_index.services.rules_loader add --campaign C1 --title "Core Rules" --pdf ./core.pdf
    python -m rules_index.services.rules_loader add --campaign C1 --title "House Rules" --text-file ./house.txt
    python -m rules_index.services.rules_loader index <source-id>
    python -m rules_index.services.rules_loader stats <source-id>
    python -m rules_index.services.rules_loader list --campaign C1
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _store():
    from rules_index.ingestion.pipeline import get_store

    return get_store()


def _resolve(path: str) -> Path:
    """Paths that do not exist as given are looked up under the rulebook data dir."""
    from rules_index.config import settings

    candidate = Path(path)
    if not candidate.exists() and (settings.data_dir / candidate).exists():
        return settings.data_dir / candidate
    return candidate


def cmd_add(args: argparse.Namespace) -> None:
    from rules_index.services import source_registry

    store = _store()
    if args.pdf:
        source = source_registry.create_pdf_source(store, args.campaign, args.title, _resolve(args.pdf), args.tag)
    elif args.text_file:
        text = _resolve(args.text_file).read_text(encoding="utf-8")
        source = source_registry.create_pasted_source(store, args.campaign, args.title, text, args.tag)
    else:
        payload = json.loads(_resolve(args.json_file).read_text(encoding="utf-8"))
        source = source_registry.create_json_source(store, args.campaign, args.title, payload, args.tag)

    print(f"Registered source {source.id} ({source.type.value}): {source.title}")


def cmd_index(args: argparse.Namespace) -> None:
    from rules_index.ingestion.errors import RulesIndexError
    from rules_index.ingestion.pipeline import index_source

    try:
        result = index_source(args.source_id, store=_store())
    except RulesIndexError as exc:
        logger.error("%s", exc.message)
        sys.exit(1)

    print("\n══════════════ Indexing Summary ══════════════")
    if not result.success:
        print(f"  FAILED at stage : {result.error.stage}")
        print(f"  Message         : {result.error.message}")
        print("══════════════════════════════════════════════")
        sys.exit(1)

    stats = result.stats
    print(f"  Pages           : {stats.pages} ({stats.empty_pages} empty)")
    print(f"  Sections        : {stats.sections}")
    print(f"  Chunks          : {stats.chunks}")
    print(f"  Tables H/M/L    : {stats.tables_high}/{stats.tables_medium}/{stats.tables_low}")
    print(f"  Datasets        : {stats.datasets} ({stats.dataset_rows} rows)")
    if stats.scanned_suspect:
        print("  WARNING         : source looks scanned (little or no text layer)")
    print(f"  Elapsed         : {result.duration_seconds:.1f}s")
    print("══════════════════════════════════════════════")


def cmd_stats(args: argparse.Namespace) -> None:
    from rules_index.ingestion.errors import SourceNotFoundError

    store = _store()
    try:
        source = store.get_source(args.source_id)
    except SourceNotFoundError as exc:
        logger.error("%s", exc.message)
        sys.exit(1)

    print(f"\n══════════════ {source.title} ══════════════")
    print(f"  Status : {source.index_status.value}")
    if source.index_error:
        print(f"  Error  : [{source.index_error.stage}] {source.index_error.message}")
    for name, count in store.entity_counts(source.id).items():
        print(f"  {name}: {count}")
    if source.index_stats:
        print(json.dumps(source.index_stats.model_dump(by_alias=True), indent=2))


def cmd_list(args: argparse.Namespace) -> None:
    sources = _store().list_sources(args.campaign)
    if not sources:
        print("No sources registered.")
        return
    for source in sources:
        tags = f" [{', '.join(source.tags)}]" if source.tags else ""
        print(f"{source.id}  {source.index_status.value:<12} {source.type.value:<14} {source.title}{tags}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Rules Indexing Pipeline CLI",
        prog="python -m rules_index.services.rules_loader",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # add
    p_add = sub.add_parser("add", help="Register a rulebook source with its raw input")
    p_add.add_argument("--campaign", required=True, help="Campaign id the source belongs to")
    p_add.add_argument("--title", required=True, help="Source title")
    p_add.add_argument("--tag", action="append", default=[], help="Tag (repeatable)")
    inputs = p_add.add_mutually_exclusive_group(required=True)
    inputs.add_argument("--pdf", type=str, help="Path to a PDF rulebook")
    inputs.add_argument("--text-file", type=str, help="Path to a plain-text file to paste")
    inputs.add_argument("--json-file", type=str, help="Path to an external JSON page dump")
    p_add.set_defaults(func=cmd_add)

    # index
    p_index = sub.add_parser("index", help="Index (or re-index) a source")
    p_index.add_argument("source_id", type=str)
    p_index.set_defaults(func=cmd_index)

    # stats
    p_stats = sub.add_parser("stats", help="Show index status and entity counts")
    p_stats.add_argument("source_id", type=str)
    p_stats.set_defaults(func=cmd_stats)

    # list
    p_list = sub.add_parser("list", help="List sources")
    p_list.add_argument("--campaign", type=str, default=None, help="Only this campaign")
    p_list.set_defaults(func=cmd_list)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
