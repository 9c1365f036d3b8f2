"""
Command-line interface for the classification spine.

Usage:
    python -m docspine classify-dir --directory ocr_texts/ [OPTIONS]
"""

import argparse
import asyncio
import glob
import hashlib
import json
import logging
import os
import sys
from typing import List, Optional

from pydantic import ValidationError

from docspine.config import get_settings
from docspine.db.document_records import SupabaseClassificationSink
from docspine.db.supabase_client import get_supabase_client
from docspine.models.gatekeeper import DocumentSource
from docspine.services.auto_attach import should_auto_attach
from docspine.services.batch_classifier import BatchItemResult, classify_batch
from docspine.services.gatekeeper import Gatekeeper
from docspine.services.gemini_classifier import GeminiClassifier
from docspine.services.gemini_client import get_gemini_client
from docspine.services.spine import ClassificationSpine
from docspine.utils.logging import configure_logging, log_startup

logger = logging.getLogger(__name__)

SUMMARY_FILENAME = "_classification_summary.json"


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="docspine",
        description="Document classification spine CLI"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    classify_parser = subparsers.add_parser(
        "classify-dir",
        help="Classify every OCR text file in a directory"
    )
    classify_parser.add_argument(
        "--directory",
        "-d",
        type=str,
        required=True,
        help="Directory containing OCR text files"
    )
    classify_parser.add_argument(
        "--pattern",
        "-p",
        type=str,
        default="*.txt",
        help="Glob pattern for OCR text files (default: *.txt)"
    )
    classify_parser.add_argument(
        "--concurrency",
        "-c",
        type=int,
        default=None,
        help="Documents classified in parallel (default: from env or 4)"
    )
    classify_parser.add_argument(
        "--no-llm",
        action="store_true",
        help="Deterministic tiers only; fall-throughs go to review"
    )
    classify_parser.add_argument(
        "--shadow",
        action="store_true",
        help="Log shadow routing comparisons (default: from env)"
    )
    classify_parser.add_argument(
        "--persist",
        action="store_true",
        help="Stamp results on deal_documents and use the gatekeeper cache "
             "(file names must be document ids)"
    )
    classify_parser.add_argument(
        "--bank-id",
        type=str,
        default=None,
        help="Bank id used as the gatekeeper cache scope"
    )

    return parser


def load_sources(directory: str, pattern: str, bank_id: Optional[str] = None) -> List[DocumentSource]:
    """Read OCR text files into DocumentSources, sorted by filename."""
    sources = []
    for path in sorted(glob.glob(os.path.join(directory, pattern))):
        if os.path.basename(path) == SUMMARY_FILENAME:
            continue
        with open(path, "rb") as fh:
            raw = fh.read()
        sources.append(DocumentSource(
            document_id=os.path.splitext(os.path.basename(path))[0],
            bank_id=bank_id,
            sha256=hashlib.sha256(raw).hexdigest(),
            ocr_text=raw.decode("utf-8", errors="replace"),
            mime_type="text/plain",
            filename=os.path.basename(path),
        ))
    return sources


def summarize(items: List[BatchItemResult]) -> dict:
    """Build the JSON summary written next to the classified files."""
    documents = []
    for item in items:
        entry = {
            "document_id": item.document_id,
            **item.result.to_record_fields(),
            "route": item.result.route,
            "auto_attach": should_auto_attach(item.result),
            "reason": item.result.reason,
        }
        if item.shadow is not None:
            entry["shadow"] = item.shadow.model_dump()
        documents.append(entry)

    tiers = {}
    for item in items:
        tiers[item.result.tier] = tiers.get(item.result.tier, 0) + 1

    return {
        "total": len(items),
        "needs_review": sum(1 for i in items if i.result.needs_review),
        "by_tier": tiers,
        "documents": documents,
    }


async def classify_dir_command(args: argparse.Namespace) -> int:
    """
    Execute the classify-dir command.

    Args:
        args: Parsed command-line arguments

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    directory = args.directory
    if not os.path.isdir(directory):
        print(f"Error: Not a directory: {directory}")
        return 1

    concurrency = args.concurrency
    shadow_enabled = args.shadow
    gatekeeper: Optional[Gatekeeper] = None
    sink: Optional[SupabaseClassificationSink] = None

    if not args.no_llm or args.persist:
        try:
            settings = get_settings()
        except (ValidationError, ValueError) as e:
            print(f"Configuration error: {e}")
            print("\nMake sure you have a .env file with:")
            if not args.no_llm:
                print("  GEMINI_API_KEY=your_api_key")
            print("  SUPABASE_URL=https://your-project.supabase.co")
            print("  SUPABASE_KEY=your_anon_key")
            if not args.no_llm:
                print("\nor run with --no-llm.")
            return 1

        configure_logging(settings.log_level)

        client = None
        if args.persist:
            try:
                client = get_supabase_client()
            except ValueError as e:
                print(f"Error: {e}")
                return 1
            sink = SupabaseClassificationSink(client)

        if not args.no_llm:
            try:
                gemini = get_gemini_client()
            except ValueError as e:
                print(f"Configuration error: {e}")
                print("\nSet GEMINI_API_KEY or run with --no-llm.")
                return 1
            capability = GeminiClassifier(gemini, model=settings.gatekeeper_model)
            gatekeeper = Gatekeeper(
                capability,
                client=client,
                timeout_seconds=settings.gatekeeper_timeout_seconds,
            )
        if concurrency is None:
            concurrency = settings.batch_concurrency
        shadow_enabled = shadow_enabled or settings.shadow_routing_enabled
    else:
        configure_logging()

    log_startup(logger, llm_enabled=gatekeeper is not None, persist=sink is not None)

    if concurrency is None:
        concurrency = 4
    if concurrency < 1 or concurrency > 50:
        print("Error: --concurrency must be between 1 and 50")
        return 1

    sources = load_sources(directory, args.pattern, bank_id=args.bank_id)
    if not sources:
        print(f"No files found matching pattern: {args.pattern}")
        return 1

    print(f"Found {len(sources)} files to classify (concurrency {concurrency})")

    try:
        items = await classify_batch(
            ClassificationSpine(gatekeeper=gatekeeper, sink=sink),
            sources,
            concurrency=concurrency,
            shadow_enabled=shadow_enabled,
        )
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 1

    for idx, item in enumerate(items):
        tag = "REVIEW" if item.result.needs_review else "OK"
        print(
            f"[{idx+1}/{len(items)}] {tag} {item.document_id} -> "
            f"doc_type={item.result.doc_type.value} tier={item.result.tier} "
            f"band={item.result.band}"
        )

    summary = summarize(items)
    summary_path = os.path.join(directory, SUMMARY_FILENAME)
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2, ensure_ascii=False)

    print(f"\n{'='*60}")
    print(f"DONE: {summary['total']} classified, {summary['needs_review']} need review")
    print(f"Summary: {summary_path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "classify-dir":
        return asyncio.run(classify_dir_command(args))
    else:
        print(f"Unknown command: {args.command}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
