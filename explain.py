"""
explain.py - Human-readable and JSON-ready review formatting.

This module converts a structured `ReviewResult` into:
- terminal-friendly text output for CLI usage
- machine-friendly dictionary output for logging/storage
"""

from __future__ import annotations

from logging_config import get_logger
from models import ReviewResult, Severity, ValidationDiagnostic
from normalize import format_german_date, format_german_number

logger = get_logger(__name__)

SEVERITY_MARKERS: dict[Severity, str] = {
    Severity.ERROR: "ERROR",
    Severity.WARNING: "WARN ",
    Severity.INFO: "INFO ",
}

OUTPUT_WIDTH = 56
SEPARATOR = "=" * OUTPUT_WIDTH
MAX_CANDIDATES_DISPLAY = 3
MAX_SUGGESTIONS_DISPLAY = 2

LOW_CONFIDENCE_THRESHOLD = 0.5
# Below this extraction confidence the reviewer is warned to check every field.


def _status(result: ReviewResult) -> str:
    if result.error_count:
        return "NEEDS CORRECTION"
    if result.warning_count:
        return "REVIEW RECOMMENDED"
    return "READY"


def _money(value: float) -> str:
    return f"{format_german_number(value)} EUR" if value else "-"


def _diagnostic_lines(diagnostic: ValidationDiagnostic) -> list[str]:
    lines = [f"    [{SEVERITY_MARKERS[diagnostic.severity]}] {diagnostic.field}: {diagnostic.message}"]
    enrichment = diagnostic.enrichment
    if enrichment is None:
        if diagnostic.suggestion:
            lines.append(f"              -> {diagnostic.suggestion}")
        return lines

    for suggestion in enrichment.correction_suggestions[:MAX_SUGGESTIONS_DISPLAY]:
        value = f" = {suggestion.suggested_value}" if suggestion.suggested_value else ""
        lines.append(f"              -> {suggestion.description}{value} ({suggestion.confidence:.0%})")
    if enrichment.auto_fix_available:
        lines.append("              auto-fix available")
    return lines


def format_review(result: ReviewResult | None) -> str:
    """Format a ReviewResult into a clean, human-readable text block."""
    if result is None:
        logger.error("explain_input_error | result_none=True | fallback=error_block")
        return "\n" + SEPARATOR + "\n" + "  ERROR: No review data available\n" + SEPARATOR + "\n"

    try:
        invoice = result.invoice
        lines: list[str] = [""]
        lines.append(SEPARATOR)
        lines.append(f"  {_status(result)} - extraction confidence {invoice.confidence:.0%}")
        lines.append(SEPARATOR)

        lines.append("")
        lines.append(f"  Invoice:      {invoice.invoice_number or '(not found)'}")
        lines.append(
            f"  Date:         {format_german_date(invoice.date) or 'date unknown'}"
            f"  |  due {format_german_date(invoice.due_date) or '-'}"
        )
        lines.append(f"  Vendor:       {invoice.vendor.name or '(not found)'}")
        if invoice.vendor.address:
            lines.append(f"                {invoice.vendor.address}")
        lines.append(f"  VAT id:       {invoice.vendor.tax_id or '-'}")
        lines.append(
            f"  Totals:       net {_money(invoice.totals.subtotal)}  |  "
            f"VAT {_money(invoice.totals.tax_amount)}  |  gross {_money(invoice.totals.total)}"
        )
        lines.append(f"  Line items:   {len(invoice.items)}")

        if result.learned_corrections:
            lines.append("")
            lines.append("  Learned corrections applied:")
            for field, value in result.learned_corrections.items():
                lines.append(f"    • {field} = {value}")

        lines.append("")
        lines.append("  Findings:")
        if not result.diagnostics:
            lines.append("    • (no findings)")
        for diagnostic in result.diagnostics:
            lines.extend(_diagnostic_lines(diagnostic))

        lines.append("")
        lines.append("  Vendor match:")
        if not result.candidates:
            lines.append("    • (no candidates)")
        for candidate in result.candidates[:MAX_CANDIDATES_DISPLAY]:
            fields = ", ".join(candidate.matched_fields) or "-"
            lines.append(
                f"    • {candidate.party.company}  {candidate.confidence:.0%}  "
                f"[{candidate.match_kind.value}; {fields}]"
            )
        remaining = len(result.candidates) - MAX_CANDIDATES_DISPLAY
        if remaining > 0:
            lines.append(f"    • ... and {remaining} more candidate(s)")

        if result.new_party and result.new_party.should_create:
            lines.append("")
            lines.append(f"  Suggest new party: {result.new_party.reason}")

        if invoice.confidence < LOW_CONFIDENCE_THRESHOLD:
            lines.append("")
            lines.append(f"  WARNING: Low extraction confidence ({invoice.confidence:.0%})")
            lines.append("    Document may be incomplete or badly recognized. Verify every field.")

        lines.append("")
        lines.append(SEPARATOR)
        lines.append("")
        return "\n".join(lines)
    except Exception as exc:
        logger.error(
            "explain_format_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        return (
            "\n"
            + SEPARATOR
            + "\n"
            + "  REVIEW FORMAT ERROR\n"
            + SEPARATOR
            + "\n\n"
            + f"  Error: {type(exc).__name__}: {exc}\n\n"
            + SEPARATOR
            + "\n"
        )


def format_review_json(result: ReviewResult | None) -> dict:
    """Format a ReviewResult as a structured JSON-compatible dictionary."""
    if result is None:
        logger.error("explain_json_input_error | result_none=True | fallback=error_payload")
        return {
            "status": "error",
            "invoice": None,
            "diagnostics": [],
            "candidates": [],
            "best_match": None,
            "new_party": None,
            "learned_corrections": {},
            "warnings": ["Review result was None"],
        }

    invoice = result.invoice.model_dump(mode="json", exclude={"raw_text"})

    diagnostics = []
    for diagnostic in result.diagnostics:
        item = diagnostic.model_dump(mode="json", exclude={"enrichment"})
        if diagnostic.enrichment is not None:
            enrichment = diagnostic.enrichment.model_dump(mode="json")
            enrichment["related_fields"] = sorted(diagnostic.enrichment.related_fields)
            item["enrichment"] = enrichment
        else:
            item["enrichment"] = None
        diagnostics.append(item)

    warnings: list[str] = []
    if result.invoice.confidence < LOW_CONFIDENCE_THRESHOLD:
        warnings.append(
            f"Low extraction confidence ({result.invoice.confidence:.0%}). Verify extracted values manually."
        )

    return {
        "status": _status(result).lower().replace(" ", "_"),
        "invoice": invoice,
        "summary": {
            "errors": result.error_count,
            "warnings": result.warning_count,
            "auto_fixable": sum(1 for item in result.diagnostics if item.auto_fix_available),
        },
        "diagnostics": diagnostics,
        "candidates": [candidate.model_dump(mode="json") for candidate in result.candidates],
        "best_match": result.best_match.model_dump(mode="json") if result.best_match else None,
        "new_party": result.new_party.model_dump(mode="json") if result.new_party else None,
        "learned_corrections": dict(result.learned_corrections),
        "warnings": warnings,
    }
