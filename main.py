"""
main.py - CLI orchestration for the invoice review pipeline.

This module is orchestration-only:
1. extract
2. apply learned corrections
3. validate + enrich
4. match vendor
5. explain
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

import pandas as pd

from config import Settings, get_settings
from explain import format_review, format_review_json
from extract import extract_invoice
from learn import AdaptiveCorrectionEngine, apply_learned_corrections
from logging_config import get_logger, setup_logging
from match import VendorMatcher
from models import ExistingInvoice, Party, ReviewResult, ValidationContext
from observation_store import InMemoryObservationStore, JsonObservationStore
from rules import RuleEngine

logger = get_logger("invoice-review")

PARTY_COLUMNS = list(Party.model_fields)
REQUIRED_PARTY_COLUMNS = ["company"]
REQUIRED_INVOICE_COLUMNS = ["id", "number"]


def _read_csv(csv_path: str, label: str) -> pd.DataFrame:
    """Read a CSV with normalized column names and no fully empty rows."""
    if csv_path is None:
        raise ValueError("csv_path cannot be None")

    csv_path = str(csv_path).strip()
    if not csv_path:
        raise ValueError("csv_path cannot be empty")

    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"{label} CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path, encoding="utf-8-sig", dtype=str, keep_default_na=False)
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=cp1252",
            csv_path,
        )
        df = pd.read_csv(csv_path, encoding="cp1252", dtype=str, keep_default_na=False)
    except Exception as exc:
        raise ValueError(f"Failed to read CSV '{csv_path}': {exc}") from exc

    df.columns = [str(col).strip().lower() for col in df.columns]
    df = df.replace("", pd.NA).dropna(how="all").fillna("")
    return df


def load_vendor_directory(csv_path: str) -> list[Party]:
    """Load the party directory from CSV (column 'company' required)."""
    df = _read_csv(csv_path, "Vendor directory")

    missing = [column for column in REQUIRED_PARTY_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(
            f"Vendor directory CSV missing required columns: {missing}\n"
            f"Known columns: {PARTY_COLUMNS}\n"
            f"Found: {list(df.columns)}"
        )

    for column in PARTY_COLUMNS:
        if column not in df.columns:
            df[column] = ""
        df[column] = df[column].astype(str).str.strip()

    # Rows without an id get a stable positional one.
    df["id"] = [value or f"party-{index + 1}" for index, value in enumerate(df["id"])]

    parties = [Party(**record) for record in df[PARTY_COLUMNS].to_dict(orient="records")]
    logger.info("directory_loaded | path=%s | parties=%d", csv_path, len(parties))
    return parties


def load_existing_invoices(csv_path: str) -> list[ExistingInvoice]:
    """Load already booked invoices (columns 'id' and 'number') from CSV."""
    df = _read_csv(csv_path, "Existing invoices")

    missing = [column for column in REQUIRED_INVOICE_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(
            f"Existing invoices CSV missing required columns: {missing}\n"
            f"Required: {REQUIRED_INVOICE_COLUMNS}\n"
            f"Found: {list(df.columns)}"
        )

    df["number"] = df["number"].astype(str).str.strip()
    df = df[df["number"] != ""]
    invoices = [
        ExistingInvoice(id=str(row["id"]).strip(), number=row["number"])
        for row in df[REQUIRED_INVOICE_COLUMNS].to_dict(orient="records")
    ]
    logger.info("invoices_loaded | path=%s | invoices=%d", csv_path, len(invoices))
    return invoices


def process_document(
    raw_text: str,
    directory: list[Party],
    context: Optional[ValidationContext] = None,
    engine: Optional[AdaptiveCorrectionEngine] = None,
    settings: Optional[Settings] = None,
) -> ReviewResult:
    """Run the full review pipeline for one document's text."""
    settings = settings or get_settings()
    context = context or ValidationContext()
    pipeline_start = time.time()

    logger.info("%s", "─" * 50)
    logger.info("pipeline_start | chars=%d | parties=%d", len(raw_text or ""), len(directory))
    logger.info("%s", "─" * 50)

    # Stage 1: extract.
    stage_start = time.time()
    invoice = extract_invoice(raw_text, settings)
    extract_time = time.time() - stage_start
    logger.info(
        "pipeline_stage | stage=1/4 | name=extract | status=complete | number=%r | total=%.2f"
        " | confidence=%.0f%% | duration_s=%.2f",
        invoice.invoice_number,
        invoice.totals.total,
        invoice.confidence * 100.0,
        extract_time,
    )

    # Stage 2: learned corrections.
    learned: dict[str, str] = {}
    if engine is not None:
        invoice, learned = apply_learned_corrections(invoice, engine)
        logger.info(
            "pipeline_stage | stage=2/4 | name=learn | status=complete | applied=%d",
            len(learned),
        )

    # Stage 3: validate + enrich.
    stage_start = time.time()
    diagnostics = RuleEngine(settings=settings).validate(invoice, context, enrich=True)
    validate_time = time.time() - stage_start
    logger.info(
        "pipeline_stage | stage=3/4 | name=validate | status=complete | diagnostics=%d | duration_s=%.2f",
        len(diagnostics),
        validate_time,
    )

    # Stage 4: match.
    stage_start = time.time()
    matcher = VendorMatcher(directory or context.existing_customers, settings)
    candidates = matcher.find_all_matches(invoice.vendor)
    best = candidates[0] if candidates and candidates[0].confidence >= settings.best_match_threshold else None
    new_party = matcher.suggest_new_party(invoice.vendor)
    match_time = time.time() - stage_start
    logger.info(
        "pipeline_stage | stage=4/4 | name=match | status=complete | candidates=%d | new_party=%s"
        " | duration_s=%.2f",
        len(candidates),
        new_party.should_create,
        match_time,
    )

    result = ReviewResult(
        invoice=invoice,
        diagnostics=diagnostics,
        candidates=candidates,
        best_match=best,
        new_party=new_party,
        learned_corrections=learned,
    )
    logger.info(
        "pipeline_complete | total_duration_s=%.2f | errors=%d | warnings=%d",
        time.time() - pipeline_start,
        result.error_count,
        result.warning_count,
    )
    return result


def _read_text(path: str) -> str:
    text_path = Path(path)
    if not text_path.is_file():
        raise FileNotFoundError(f"Document text not found: {path}")
    try:
        return text_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning(
            "text_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=cp1252",
            path,
        )
        return text_path.read_text(encoding="cp1252")


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the invoice review pipeline."""
    parser = argparse.ArgumentParser(
        prog="invoice-review",
        description=(
            "Invoice Review Pipeline\n"
            "Extracts, validates and matches German invoices from recognized text."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --text invoice.txt\n"
            "  %(prog)s --text invoice.txt --vendors parties.csv --invoices booked.csv\n"
            "  %(prog)s --text invoice.txt --observations corrections.json --json\n"
        ),
    )
    parser.add_argument("--text", "-t", type=str, required=True, help="Recognized invoice text file (required)")
    parser.add_argument("--vendors", type=str, help="Party directory CSV (columns: id, company, address, ...)")
    parser.add_argument("--invoices", type=str, help="Already booked invoices CSV (columns: id, number)")
    parser.add_argument("--observations", type=str, help="JSON file of learned corrections")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG-level) logging")
    parser.add_argument("--json", action="store_true", help="Output results as JSON instead of formatted text")
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    try:
        settings = get_settings()
        raw_text = _read_text(args.text)
        directory = load_vendor_directory(args.vendors) if args.vendors else []
        existing = load_existing_invoices(args.invoices) if args.invoices else []

        observations_path = args.observations or settings.observations_path
        store = JsonObservationStore(observations_path) if observations_path else InMemoryObservationStore()
        engine = AdaptiveCorrectionEngine(store, settings)

        logger.info(
            "cli_mode | text=%s | vendors=%s | invoices=%s | observations=%s",
            args.text,
            args.vendors,
            args.invoices,
            observations_path,
        )
        result = process_document(
            raw_text,
            directory,
            context=ValidationContext(existing_customers=directory, existing_invoices=existing),
            engine=engine,
            settings=settings,
        )
        if args.json:
            print(json.dumps(format_review_json(result), indent=2, ensure_ascii=False))
        else:
            print(format_review(result))
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}", file=sys.stderr)
        print("Run with --verbose for full traceback.", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
