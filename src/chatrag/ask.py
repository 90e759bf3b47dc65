from __future__ import annotations

import argparse
from dataclasses import replace
import json
from pathlib import Path
import sys

from chatrag.config import Settings, get_settings
from chatrag.errors import (
    CorruptStoreError,
    EmbeddingError,
    EmptyStoreError,
    GenerationError,
    OperationCancelledError,
    StoreNotFoundError,
)
from chatrag.llm import build_generator
from chatrag.logging_config import setup_logging
from chatrag.services.rag.embedding_client import build_embedding_client
from chatrag.services.rag.gateway import build_gateway
from chatrag.services.rag.reindex_job_runner import open_or_build
from chatrag.services.rag.session import RetrievalSession
from chatrag.services.rag.types import AskResult


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="chatrag-ask",
        description="Ask a question about your chat archive",
    )
    parser.add_argument("query", help="Natural-language question")
    parser.add_argument(
        "--top-k",
        type=int,
        default=settings.top_k,
        help="Number of chat excerpts to retrieve",
    )
    parser.add_argument(
        "--data-dir",
        default=settings.data_dir,
        help="Export directory ingested when no index exists yet",
    )
    parser.add_argument(
        "--store-dir",
        default=None,
        help="Directory holding index.db (defaults to CHATRAG_STORE_PATH)",
    )
    parser.add_argument(
        "--no-generate",
        action="store_true",
        help="Return the retrieved excerpts without calling the language model",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        default=settings.stream,
        help="Print the answer as it is generated",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.ask_timeout_seconds,
        help="Abort the question after this many seconds",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the answer and sources as JSON",
    )
    return parser


def _print_result(result: AskResult, *, answer_already_printed: bool) -> None:
    if answer_already_printed:
        print(flush=True)
    else:
        print(result.answer, flush=True)

    if not result.sources:
        return
    print("\nSources:", flush=True)
    for position, hit in enumerate(result.sources, start=1):
        chunk = hit.chunk
        print(
            f"  {position}. {chunk.document_id} "
            f"{chunk.start_time:%Y-%m-%d %H:%M} .. {chunk.end_time:%Y-%m-%d %H:%M} "
            f"score={hit.score:.3f}",
            flush=True,
        )


def run_ask(args: argparse.Namespace, settings: Settings) -> AskResult:
    if args.stream:
        settings = replace(settings, stream=True)
    store_path = (
        Path(args.store_dir) / "index.db" if args.store_dir is not None else Path(settings.store_path)
    )

    embedding_client = build_embedding_client(settings)
    store = open_or_build(
        settings,
        embedding_client=embedding_client,
        data_dir=Path(args.data_dir),
        store_path=store_path,
    )
    session = RetrievalSession(
        store,
        build_gateway(settings, embedding_client),
        None if args.no_generate else build_generator(settings),
        default_k=settings.top_k,
    )

    streaming = args.stream and not args.json and not args.no_generate
    result = session.ask(
        args.query,
        args.top_k,
        timeout_seconds=args.timeout,
        on_fragment=(lambda fragment: print(fragment, end="", flush=True)) if streaming else None,
    )

    if args.json:
        print(
            json.dumps(
                {
                    "answer": result.answer,
                    "sources": [hit.to_dict() for hit in result.sources],
                    "model": result.model,
                    "generated": result.generated,
                },
                ensure_ascii=False,
            ),
            flush=True,
        )
    else:
        _print_result(result, answer_already_printed=streaming)
    return result


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        run_ask(args, settings)
    except (StoreNotFoundError, EmptyStoreError) as exc:
        print(f"[chatrag-ask] nothing to search: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(2) from exc
    except CorruptStoreError as exc:
        print(
            f"[chatrag-ask] index is corrupt, rebuild it with chatrag-ingest: {exc}",
            file=sys.stderr,
            flush=True,
        )
        raise SystemExit(3) from exc
    except EmbeddingError as exc:
        print(f"[chatrag-ask] embedding provider failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(4) from exc
    except GenerationError as exc:
        print(f"[chatrag-ask] language model failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(4) from exc
    except OperationCancelledError as exc:
        print(f"[chatrag-ask] {exc}", file=sys.stderr, flush=True)
        raise SystemExit(130) from exc
    except Exception as exc:
        print(f"[chatrag-ask] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
