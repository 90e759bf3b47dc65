from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

from chatrag.config import get_settings
from chatrag.logging_config import setup_logging
from chatrag.services.rag.reindex_job_runner import run_reindex_job


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="chatrag-ingest",
        description="Rebuild the local chat archive index from plain-text exports",
    )
    parser.add_argument(
        "--data-dir",
        default=settings.data_dir,
        help="Directory containing exported .txt conversations",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=settings.chunk_size,
        help="Maximum chunk size in characters",
    )
    parser.add_argument(
        "--chunk-overlap",
        type=int,
        default=settings.chunk_overlap,
        help="Characters of the previous chunk repeated at the start of the next",
    )
    parser.add_argument(
        "--store-path",
        default=settings.store_path,
        help="Output path of the persisted index",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the rebuild metrics as JSON",
    )
    return parser


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        metrics = run_reindex_job(
            data_dir=Path(args.data_dir),
            store_path=Path(args.store_path),
            chunk_size=args.chunk_size,
            chunk_overlap=args.chunk_overlap,
            settings=settings,
        )
    except Exception as exc:
        print(f"[chatrag-ingest] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    if args.json:
        print(json.dumps(metrics), flush=True)
        return

    print(
        "[chatrag-ingest] completed "
        f"documents={metrics['documents']} "
        f"chunks={metrics['chunks']} "
        f"failed={len(metrics['failed'])} "
        f"store_path={metrics['store_path']}",
        flush=True,
    )
    for failure in metrics["failed"]:
        print(f"[chatrag-ingest] skipped {failure['source_path']}: {failure['error']}", flush=True)


if __name__ == "__main__":
    main()
