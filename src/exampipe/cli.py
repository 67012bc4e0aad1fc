"""Command line entrypoint for analysing a single paper."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv
import httpx

from .config import load_config
from .database import init_pool
from .errors import ConfigurationError, DocumentFetchError, PaperNotFoundError
from .logger import setup_logger
from .pipeline import AnalysisRequest, build_pipeline

load_dotenv()


def main(argv: list[str] | None = None) -> int:
    """Entrypoint used by the CLI script."""

    args = _parse_args(argv)
    logger = setup_logger(level=args.log_level)
    request = AnalysisRequest(
        paper_id=args.paper_id,
        document_url=args.pdf_url,
        answer_key_url=args.answer_key_url,
        category=args.category,
        start_page=args.start_page,
        end_page=args.end_page,
    )
    try:
        summary = asyncio.run(_run(request))
    except (ConfigurationError, PaperNotFoundError, DocumentFetchError) as exc:
        logger.error("%s", exc)
        return 1
    print(json.dumps(summary, indent=2))
    return 0


async def _run(request: AnalysisRequest) -> dict[str, object]:
    config = load_config()
    pool = init_pool(config.database)
    await pool.open()
    try:
        async with httpx.AsyncClient(timeout=config.pipeline.http_timeout_seconds) as http:
            pipeline = build_pipeline(config, http, pool)
            summary = await pipeline.run(request)
    finally:
        await pool.close()
    return summary.to_response()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    """Parse CLI arguments."""

    parser = argparse.ArgumentParser(
        description="Extract questions from an exam paper PDF into PostgreSQL.",
    )
    parser.add_argument("--paper-id", required=True, help="Id of the papers row to populate.")
    parser.add_argument("--pdf-url", required=True, help="URL of the question paper PDF.")
    parser.add_argument("--answer-key-url", default=None, help="URL of the mark scheme PDF.")
    parser.add_argument(
        "--category",
        choices=("structured", "mcq"),
        default="structured",
        help="Question style of the paper (default: structured).",
    )
    parser.add_argument("--start-page", type=int, default=None)
    parser.add_argument("--end-page", type=int, default=None)
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: LOG_LEVEL or INFO).",
    )
    return parser.parse_args(argv)


if __name__ == "__main__":
    sys.exit(main())
