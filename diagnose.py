"""
diagnose.py - Diagnostic enrichment and correction application.

A rule diagnostic says WHAT is wrong. This module adds what a reviewer needs
to fix it:

    possible causes         ordered, most likely first
    correction suggestions  ranked CorrectionSuggestion entries
    auto-fix eligibility    true only when a suggestion carries a concrete
                            value and needs no user input
    related fields          other fields involved in the finding

Two entry points:
    analyze_field(field, value, record)      standalone check of a raw,
                                             user-facing value (German dates
                                             and amounts expected)
    enrich_diagnostic(diagnostic, record)    attach enrichment to a rule
                                             diagnostic (record values are
                                             canonical, suggestions are too)

Suggested values are always the COMPLETE corrected value, never a fragment
to prepend, so applying a suggestion twice yields the same record.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Callable, Optional, Sequence

from config import Settings, get_settings
from logging_config import get_logger
from models import (
    AMOUNT_FIELDS,
    DATE_FIELDS,
    CorrectionSuggestion,
    DiagnosticEnrichment,
    ExtractedInvoice,
    InputType,
    Severity,
    SuggestionKind,
    ValidationDiagnostic,
)
from normalize import (
    expand_two_digit_year,
    format_german_date,
    format_german_number,
    normalize_date,
    normalize_tax_id,
    parse_german_number,
)

logger = get_logger(__name__)

# -- Value shapes recognized by the analysis --

SHORT_YEAR_DATE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2})$")
ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
US_DATE = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")
GERMAN_DATE = re.compile(r"^\d{2}\.\d{2}\.\d{4}$")

US_AMOUNT = re.compile(r"^\d{1,3}(?:,\d{3})*\.\d{2}$")

TAX_ID_OK = re.compile(r"^DE\d{9}$")
TAX_ID_NO_COUNTRY = re.compile(r"^\d{9}$")
TAX_ID_LOWER = re.compile(r"^de\d{9}$", re.IGNORECASE)
TAX_ID_SHORT = re.compile(r"^DE\d{8}$", re.IGNORECASE)
TAX_ID_LONG = re.compile(r"^DE\d{10}$", re.IGNORECASE)

DIGITS_ONLY = re.compile(r"^\d+$")

OCR_ERROR_PATTERNS = (
    re.compile(r"[0O]{2,}"),
    re.compile(r"[1Il]{3,}"),
    re.compile(r"[^a-zA-ZäöüÄÖÜß0-9\s\-.,&()]"),
    re.compile(r"\s{3,}"),
    re.compile(r"[A-Z]{5,}(?![a-z])"),
)

ALTERNATIVE_INVOICE_PREFIXES = ["INV-", "RG-", "BILL-", "F-"]

# Confidence of the standard-rate VAT fix. The reduced rate is offered with
# lower confidence because most B2B invoices carry the standard rate.
STANDARD_RATE_CONFIDENCE = 0.9
REDUCED_RATE_CONFIDENCE = 0.6

Verifier = Callable[[ExtractedInvoice], bool]


def contains_ocr_errors(text: str) -> bool:
    """Heuristic: 0/O runs, 1/I/l runs, odd characters, wide gaps, shouting."""
    if not text:
        return False
    return any(pattern.search(text) for pattern in OCR_ERROR_PATTERNS)


def _manual(
    description: str,
    input_type: Optional[InputType],
    confidence: float = 1.0,
    options: Sequence[str] = (),
) -> CorrectionSuggestion:
    return CorrectionSuggestion(
        kind=SuggestionKind.MANUAL,
        description=description,
        confidence=confidence,
        requires_user_input=True,
        input_type=input_type,
        options=list(options),
    )


def _lookup(description: str, confidence: float) -> CorrectionSuggestion:
    return CorrectionSuggestion(kind=SuggestionKind.LOOKUP, description=description, confidence=confidence)


def _finding(
    field: str,
    message: str,
    severity: Severity,
    context: str,
    causes: list[str],
    suggestions: list[CorrectionSuggestion],
    related: Optional[set[str]] = None,
) -> ValidationDiagnostic:
    return ValidationDiagnostic(
        field=field,
        message=message,
        severity=severity,
        enrichment=DiagnosticEnrichment(
            context=context,
            possible_causes=causes,
            correction_suggestions=suggestions,
            auto_fix_available=any(item.is_auto_applicable for item in suggestions),
            related_fields=related or set(),
        ),
    )


def _date_out(iso: str, localized: bool) -> str:
    return format_german_date(iso) if localized else iso


# -- Standalone field analysis --


def analyze_field(
    field: str,
    value: Optional[str],
    record: Optional[ExtractedInvoice] = None,
    localized: bool = True,
    settings: Optional[Settings] = None,
) -> list[ValidationDiagnostic]:
    """Analyze one raw field value and return enriched findings.

    Args:
        field: Dotted field reference ("date", "vendor.tax_id", ...).
        value: The value as a reviewer sees or types it.
        record: The invoice the value belongs to, for cross-field checks.
        localized: True when values are user-facing German text (dates as
            DD.MM.YYYY, amounts as 1.234,56). False for canonical record
            values (ISO dates); suggestions then use the canonical form.
    """
    settings = settings or get_settings()
    value = "" if value is None else str(value).strip()

    if field in DATE_FIELDS:
        findings = _analyze_date(field, value, record, localized, settings)
    elif field == "vendor.tax_id":
        findings = _analyze_tax_id(field, value)
    elif field == "invoice_number":
        findings = _analyze_invoice_number(field, value)
    elif field in AMOUNT_FIELDS:
        findings = _analyze_amount(field, value, record, localized, settings)
    elif field == "vendor.name":
        findings = _analyze_vendor_name(field, value)
    else:
        findings = _analyze_generic(field, value)

    logger.debug("analyze_field | field=%s | value=%r | findings=%d", field, value, len(findings))
    return findings


def _analyze_date(
    field: str,
    value: str,
    record: Optional[ExtractedInvoice],
    localized: bool,
    settings: Settings,
) -> list[ValidationDiagnostic]:
    if not value:
        return [
            _finding(
                field,
                "Date is missing",
                Severity.ERROR,
                "Required field not recognized",
                [
                    "OCR could not read the date",
                    "Date printed at an unusual position",
                    "Poor image quality",
                ],
                [
                    _manual("Enter the date manually (DD.MM.YYYY)", InputType.DATE),
                    _lookup("Search the recognized text for a date", 0.6),
                ],
            )
        ]

    findings: list[ValidationDiagnostic] = []
    format_issue = _date_format_issue(value, localized)
    if format_issue is not None:
        context, description, suggested, confidence = format_issue
        if suggested:
            suggestion = CorrectionSuggestion(
                kind=SuggestionKind.FORMAT,
                description=description,
                suggested_value=suggested,
                confidence=confidence,
                input_type=InputType.DATE,
            )
        else:
            suggestion = _manual("Enter a valid date manually", InputType.DATE)
        findings.append(
            _finding(
                field,
                f"Unusual date format: {value}",
                Severity.WARNING,
                context,
                ["Automatic format conversion required", "Different country formats"],
                [suggestion],
            )
        )

    if field == "due_date" and record is not None and record.date:
        invoice_iso = normalize_date(record.date)
        due_iso = _value_to_iso(value)
        if invoice_iso and due_iso and due_iso <= invoice_iso:
            standard_due = date.fromisoformat(invoice_iso) + timedelta(days=settings.standard_payment_term_days)
            findings.append(
                _finding(
                    field,
                    "Due date is not after the invoice date",
                    Severity.ERROR,
                    "Logical error between date values",
                    [
                        "OCR error while reading a date",
                        "Invoice and due date swapped",
                        "Wrong date interpretation",
                    ],
                    [
                        CorrectionSuggestion(
                            kind=SuggestionKind.CALCULATE,
                            description=(
                                f"Apply the standard payment term "
                                f"({settings.standard_payment_term_days} days)"
                            ),
                            suggested_value=_date_out(standard_due.isoformat(), localized),
                            confidence=0.8,
                            input_type=InputType.DATE,
                        ),
                        _manual("Correct the due date manually", InputType.DATE),
                    ],
                    related={"date"},
                )
            )
    return findings


def _value_to_iso(value: str) -> str:
    us = US_DATE.match(value)
    if us:
        month, day, year = us.groups()
        return normalize_date(f"{year}-{month}-{day}")
    return normalize_date(value)


def _date_format_issue(value: str, localized: bool) -> Optional[tuple[str, str, str, float]]:
    """(context, description, suggested value or "", confidence) or None."""
    short = SHORT_YEAR_DATE.match(value)
    if short:
        day, month, year = short.groups()
        iso = normalize_date(f"{day}.{month}.{expand_two_digit_year(int(year))}")
        return (
            "Date in DD.MM.YY format, expected four-digit year",
            "Expand the year to four digits",
            _date_out(iso, localized) if iso else "",
            0.9,
        )

    if ISO_DATE.match(value):
        if not localized:
            return None if normalize_date(value) else (
                "ISO date is not a valid calendar date",
                "Enter a valid date",
                "",
                0.0,
            )
        iso = normalize_date(value)
        return (
            "ISO date found where the German format is expected",
            "Convert to German format (DD.MM.YYYY)",
            _date_out(iso, True) if iso else "",
            0.95,
        )

    if US_DATE.match(value):
        iso = _value_to_iso(value)
        return (
            "US date format (MM/DD/YYYY) detected",
            "Convert from US format to " + ("German format" if localized else "ISO format"),
            _date_out(iso, localized) if iso else "",
            0.85,
        )

    if localized and GERMAN_DATE.match(value):
        if normalize_date(value):
            return None
        return ("Date does not exist in the calendar", "Enter a valid date", "", 0.0)

    if not normalize_date(value):
        return ("Date not recognized", "Enter a valid date", "", 0.0)
    if localized:
        iso = normalize_date(value)
        return (
            "Date written in a non-standard form",
            "Convert to German format (DD.MM.YYYY)",
            _date_out(iso, True),
            0.7,
        )
    return (
        "Date is not stored in canonical form",
        "Convert to ISO format (YYYY-MM-DD)",
        normalize_date(value),
        0.7,
    )


def _analyze_tax_id(field: str, value: str) -> list[ValidationDiagnostic]:
    if not value:
        return [
            _finding(
                field,
                "VAT id is missing",
                Severity.ERROR,
                "Required on German invoices",
                [
                    "OCR could not read the VAT id",
                    "VAT id printed at an unusual position",
                    "Different label used (VAT-ID, USt-IdNr, ...)",
                ],
                [
                    _lookup('Search the recognized text for "DE" followed by 9 digits', 0.7),
                    _manual("Enter the VAT id manually (DE123456789)", InputType.TEXT),
                ],
            )
        ]

    compact = re.sub(r"\s+", "", value)
    if TAX_ID_OK.match(compact):
        if compact == value:
            return []
        suggestion = CorrectionSuggestion(
            kind=SuggestionKind.FORMAT,
            description="Remove spaces",
            suggested_value=compact,
            confidence=0.95,
            input_type=InputType.TEXT,
        )
        context = "VAT id contains spaces"
    elif TAX_ID_NO_COUNTRY.match(compact):
        suggestion = CorrectionSuggestion(
            kind=SuggestionKind.FORMAT,
            description='Prefix the country code "DE"',
            suggested_value="DE" + compact,
            confidence=0.95,
            input_type=InputType.TEXT,
        )
        context = "VAT id without country code"
    elif TAX_ID_LOWER.match(compact):
        suggestion = CorrectionSuggestion(
            kind=SuggestionKind.FORMAT,
            description="Write the country code in upper case",
            suggested_value=normalize_tax_id(compact),
            confidence=0.95,
            input_type=InputType.TEXT,
        )
        context = "VAT id with lower-case country code"
    elif TAX_ID_SHORT.match(compact):
        suggestion = _manual("One digit is missing, please check manually", InputType.TEXT, 0.6)
        context = "German VAT id too short"
    elif TAX_ID_LONG.match(compact):
        suggestion = _manual("One digit too many, please check manually", InputType.TEXT, 0.6)
        context = "German VAT id too long"
    else:
        suggestion = _manual("Enter the VAT id manually (DE123456789)", InputType.TEXT, 0.8)
        context = "Value does not resemble a German VAT id"

    return [
        _finding(
            field,
            f"Invalid VAT id: {value}",
            Severity.ERROR,
            context,
            [
                "OCR character recognition error",
                "Incomplete text recognition",
                "Formatting problem",
            ],
            [suggestion],
        )
    ]


def _analyze_invoice_number(field: str, value: str) -> list[ValidationDiagnostic]:
    if not value:
        return [
            _finding(
                field,
                "Invoice number is missing",
                Severity.ERROR,
                "Required to identify the invoice",
                [
                    "OCR could not read the invoice number",
                    "Unusual position or format",
                    "Overlap with other elements",
                ],
                [
                    _lookup("Search the recognized text for number patterns", 0.6),
                    _manual("Enter the invoice number manually", InputType.TEXT),
                ],
            )
        ]

    if DIGITS_ONLY.match(value):
        alternative = _manual(
            "Choose a different prefix", InputType.SELECT, 0.7, options=ALTERNATIVE_INVOICE_PREFIXES
        )
        return [
            _finding(
                field,
                f"Invoice number without prefix: {value}",
                Severity.WARNING,
                "Digits only, no prefix",
                ["Prefix was not recognized", "Minimal numbering scheme"],
                [
                    CorrectionSuggestion(
                        kind=SuggestionKind.FORMAT,
                        description='Add the prefix "RE-"',
                        suggested_value=f"RE-{value}",
                        confidence=0.8,
                        input_type=InputType.TEXT,
                    ),
                    alternative,
                ],
            )
        ]
    return []


def _analyze_amount(
    field: str,
    value: str,
    record: Optional[ExtractedInvoice],
    localized: bool,
    settings: Settings,
) -> list[ValidationDiagnostic]:
    findings: list[ValidationDiagnostic] = []
    numeric = parse_german_number(value)

    if localized and US_AMOUNT.match(value):
        findings.append(
            _finding(
                field,
                f"US number format: {value}",
                Severity.WARNING,
                "US decimal/thousands separators detected",
                ["Document from a non-German system", "OCR confused comma and period"],
                [
                    CorrectionSuggestion(
                        kind=SuggestionKind.FORMAT,
                        description="Convert to German number format (swap comma and period)",
                        suggested_value=format_german_number(numeric),
                        confidence=0.9,
                        input_type=InputType.NUMBER,
                    )
                ],
            )
        )

    if numeric <= 0:
        findings.append(
            _finding(
                field,
                "Invalid amount",
                Severity.ERROR,
                "Amount must be greater than 0",
                [
                    "OCR error while reading digits",
                    "Wrong decimal separator",
                    "Currency symbols disturbed recognition",
                ],
                [
                    _manual("Enter the amount manually", InputType.NUMBER),
                    _lookup("Search the recognized text for euro amounts", 0.7),
                ],
            )
        )

    if field == "totals.total" and record is not None:
        subtotal = record.totals.subtotal
        tax_amount = record.totals.tax_amount
        if subtotal > 0 and tax_amount > 0:
            expected = round(subtotal + tax_amount, 2)
            if abs(numeric - expected) > settings.amount_tolerance + 1e-9:
                suggested = format_german_number(expected) if localized else f"{expected:.2f}"
                findings.append(
                    _finding(
                        field,
                        "Total does not equal subtotal + VAT",
                        Severity.ERROR,
                        "Arithmetic error between amounts",
                        [
                            "OCR error in one of the amounts",
                            "Rounding error",
                            "Additional fees not recognized",
                        ],
                        [
                            CorrectionSuggestion(
                                kind=SuggestionKind.CALCULATE,
                                description="Recalculate the total",
                                suggested_value=suggested,
                                confidence=0.9,
                                input_type=InputType.NUMBER,
                            ),
                            _manual("Check all amounts manually", None),
                        ],
                        related={"totals.subtotal", "totals.tax_amount"},
                    )
                )
    return findings


def _analyze_vendor_name(field: str, value: str) -> list[ValidationDiagnostic]:
    findings: list[ValidationDiagnostic] = []
    if len(value) < 2:
        findings.append(
            _finding(
                field,
                "Company name missing or too short",
                Severity.ERROR,
                "Vendor name is a required field",
                [
                    "OCR could not read the company name",
                    "Name in the letterhead was missed",
                    "Graphic elements disturbed recognition",
                ],
                [
                    _lookup("Search the recognized text for a company name", 0.6),
                    _manual("Enter the company name manually", InputType.TEXT),
                ],
            )
        )
    if value and contains_ocr_errors(value):
        findings.append(
            _finding(
                field,
                "Possible OCR errors in the company name",
                Severity.WARNING,
                "Suspicious characters or patterns found",
                [
                    "Similar characters confused (0/O, 1/I/l)",
                    "Incomplete character recognition",
                    "Formatting problems",
                ],
                [_manual("Check the company name manually", InputType.TEXT, 0.8)],
            )
        )
    return findings


def _analyze_generic(field: str, value: str) -> list[ValidationDiagnostic]:
    if value and contains_ocr_errors(value):
        return [
            _finding(
                field,
                "Possible OCR errors detected",
                Severity.INFO,
                "Suspicious characters found",
                ["Character confusion", "Incomplete recognition"],
                [_manual("Check the field manually", InputType.TEXT, 0.6)],
            )
        ]
    return []


# -- Rule diagnostic enrichment --


def _record_value(record: ExtractedInvoice, field: str) -> Optional[str]:
    """Field value as text for analysis; None for group references."""
    try:
        value = record.get_field(field)
    except KeyError:
        return None
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, str):
        return value
    return None


def _rule_enrichment(
    diagnostic: ValidationDiagnostic,
    record: ExtractedInvoice,
    settings: Settings,
) -> tuple[str, list[str], list[CorrectionSuggestion], set[str]]:
    """Context, causes, suggestions and related fields specific to a rule."""
    rule_id = diagnostic.rule_id or ""
    totals = record.totals

    if rule_id == "vat_calculation" and diagnostic.field == "totals.tax_amount":
        suggestions: list[CorrectionSuggestion] = []
        for rate in settings.accepted_vat_rates:
            expected = round(totals.subtotal * rate, 2)
            standard = rate == settings.accepted_vat_rates[0]
            suggestions.append(
                CorrectionSuggestion(
                    kind=SuggestionKind.CALCULATE,
                    description=f"Set VAT to {round(rate * 100)}% of the subtotal",
                    suggested_value=f"{expected:.2f}",
                    confidence=STANDARD_RATE_CONFIDENCE if standard else REDUCED_RATE_CONFIDENCE,
                    input_type=InputType.NUMBER,
                )
            )
        suggestions.append(
            CorrectionSuggestion(
                kind=SuggestionKind.CALCULATE,
                description="Recalculate the total as subtotal + VAT",
                suggested_value=f"{round(totals.subtotal + totals.tax_amount, 2):.2f}",
                confidence=0.5,
                input_type=InputType.NUMBER,
                target_field="totals.total",
            )
        )
        return (
            "Tax amount matches no accepted VAT rate and the sums do not add up",
            ["OCR error in the tax amount", "Mixed VAT rates on one invoice", "Discount not recognized"],
            suggestions,
            {"totals.subtotal", "totals.total"},
        )

    if rule_id == "vat_calculation":
        return (
            "Subtotal and total must both be positive",
            ["Totals were not found in the text", "Amounts printed without a label"],
            [
                _manual("Enter subtotal and total manually", InputType.NUMBER),
                _lookup("Search the recognized text for euro amounts", 0.7),
            ],
            {"totals.subtotal", "totals.tax_amount", "totals.total"},
        )

    if rule_id == "vendor_completeness":
        missing = diagnostic.metadata.get("missing", [])
        return (
            "Vendor data is incomplete",
            ["Letterhead only partly recognized", "Vendor data printed in the footer"],
            [
                _lookup("Complete the vendor from the vendor directory", 0.7),
                _manual("Enter the missing vendor data: " + ", ".join(missing), InputType.TEXT),
            ],
            {"vendor.name", "vendor.address", "vendor.tax_id"},
        )

    if rule_id == "duplicate_invoice":
        duplicate_id = diagnostic.metadata.get("duplicate_id", "")
        return (
            "An invoice with this number is already booked",
            ["Invoice uploaded twice", "Vendor reuses invoice numbers", "Number misread by OCR"],
            [
                _lookup(f"Open the existing invoice {duplicate_id}", 0.8),
                _manual("Correct the invoice number", InputType.TEXT),
            ],
            set(),
        )

    if rule_id == "invoice_date":
        return (
            "Invoice date is implausible",
            ["Digits swapped by OCR", "Two-digit year misread", "Delivery date taken instead of invoice date"],
            [_manual("Enter the invoice date manually", InputType.DATE)],
            set(),
        )

    if rule_id == "due_date" and diagnostic.metadata.get("days"):
        standard_due = ""
        invoice_iso = normalize_date(record.date)
        if invoice_iso:
            standard_due = (
                date.fromisoformat(invoice_iso) + timedelta(days=settings.standard_payment_term_days)
            ).isoformat()
        suggestion = CorrectionSuggestion(
            kind=SuggestionKind.CALCULATE,
            description=f"Use the standard payment term ({settings.standard_payment_term_days} days)",
            suggested_value=standard_due or None,
            confidence=0.5,
            requires_user_input=True,
            input_type=InputType.DATE,
        )
        return (
            "Payment term is unusually long",
            ["Agreed long payment term", "Due date misread by OCR"],
            [suggestion, _manual("Confirm or correct the due date", InputType.DATE)],
            {"date"},
        )

    if rule_id in {"amount_plausibility", "line_item_arithmetic"}:
        return (
            "Amounts need a second look",
            ["OCR error in digits", "Unusual but correct order"],
            [_manual("Check the amounts against the document", InputType.NUMBER, 0.8)],
            {"items"} if rule_id == "line_item_arithmetic" else set(),
        )

    return (
        diagnostic.message,
        [],
        [_manual("Check the field manually", InputType.TEXT, 0.6)],
        set(),
    )


def enrich_diagnostic(
    diagnostic: ValidationDiagnostic,
    record: ExtractedInvoice,
    settings: Optional[Settings] = None,
    verify: Optional[Verifier] = None,
) -> ValidationDiagnostic:
    """Return a copy of `diagnostic` with enrichment attached.

    Args:
        verify: Optional re-check of the rule that produced the diagnostic.
            Suggestions whose application would not make it pass are
            downgraded to require user confirmation, so an auto-fix never
            leaves the same finding behind.
    """
    settings = settings or get_settings()

    context, causes, suggestions, related = _rule_enrichment(diagnostic, record, settings)

    value = _record_value(record, diagnostic.field)
    if value is not None:
        for finding in analyze_field(diagnostic.field, value, record, localized=False, settings=settings):
            enrichment = finding.enrichment
            if enrichment is None:
                continue
            context = enrichment.context or context
            causes = enrichment.possible_causes + [cause for cause in causes if cause not in enrichment.possible_causes]
            suggestions = enrichment.correction_suggestions + suggestions
            related |= enrichment.related_fields

    if verify is not None:
        suggestions = [_verify_suggestion(item, diagnostic, record, verify) for item in suggestions]

    enrichment = DiagnosticEnrichment(
        context=context,
        possible_causes=causes,
        correction_suggestions=suggestions,
        auto_fix_available=any(item.is_auto_applicable for item in suggestions),
        learn_from_user=True,
        related_fields=related,
    )
    return diagnostic.model_copy(update={"enrichment": enrichment})


def _verify_suggestion(
    suggestion: CorrectionSuggestion,
    diagnostic: ValidationDiagnostic,
    record: ExtractedInvoice,
    verify: Verifier,
) -> CorrectionSuggestion:
    if not suggestion.is_auto_applicable:
        return suggestion
    fixed = apply_suggestion(record, diagnostic.field, suggestion)
    try:
        resolved = verify(fixed)
    except (KeyboardInterrupt, SystemExit):
        raise
    except Exception as exc:
        logger.warning(
            "suggestion_verify_failed | rule=%s | error=%s: %s | fallback=require_input",
            diagnostic.rule_id,
            type(exc).__name__,
            exc,
        )
        resolved = False
    if resolved:
        return suggestion
    logger.debug(
        "suggestion_unresolved | rule=%s | value=%r | fallback=require_input",
        diagnostic.rule_id,
        suggestion.suggested_value,
    )
    return suggestion.model_copy(update={"requires_user_input": True})


def enrich_diagnostics(
    diagnostics: list[ValidationDiagnostic],
    record: ExtractedInvoice,
    settings: Optional[Settings] = None,
) -> list[ValidationDiagnostic]:
    """Enrich every diagnostic; one that fails to enrich is kept as-is."""
    enriched: list[ValidationDiagnostic] = []
    for diagnostic in diagnostics:
        try:
            enriched.append(enrich_diagnostic(diagnostic, record, settings))
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception as exc:
            logger.error(
                "enrich_failed | field=%s | rule=%s | error=%s: %s | fallback=unenriched",
                diagnostic.field,
                diagnostic.rule_id,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            enriched.append(diagnostic)
    logger.info(
        "enrich_complete | diagnostics=%d | auto_fixable=%d",
        len(enriched),
        sum(1 for item in enriched if item.auto_fix_available),
    )
    return enriched


# -- Applying corrections --


def coerce_field_value(field: str, value: str):
    """Convert suggestion text into the storage form of `field`."""
    if field in DATE_FIELDS:
        return normalize_date(value)
    if field in AMOUNT_FIELDS:
        return round(parse_german_number(value), 2)
    if field == "vendor.tax_id":
        return normalize_tax_id(value)
    return value.strip()


def apply_suggestion(
    record: ExtractedInvoice,
    field: str,
    suggestion: CorrectionSuggestion,
) -> ExtractedInvoice:
    """Write a suggestion's value into a copy of `record`.

    Suggestions without a concrete value leave the record unchanged.
    Re-applying the same suggestion to the result changes nothing.
    """
    if suggestion.suggested_value is None:
        return record

    target = suggestion.target_field or field
    coerced = coerce_field_value(target, suggestion.suggested_value)
    if target in DATE_FIELDS and not coerced:
        logger.warning(
            "apply_suggestion | field=%s | value=%r | reason=unparseable_date | fallback=unchanged",
            target,
            suggestion.suggested_value,
        )
        return record

    try:
        updated = record.with_field(target, coerced)
    except (KeyError, ValueError) as exc:
        logger.warning(
            "apply_suggestion | field=%s | error=%s: %s | fallback=unchanged",
            target,
            type(exc).__name__,
            exc,
        )
        return record
    logger.info("apply_suggestion | field=%s | value=%r", target, coerced)
    return updated


def apply_auto_fix(record: ExtractedInvoice, diagnostic: ValidationDiagnostic) -> ExtractedInvoice:
    """Apply the first auto-applicable suggestion of an enriched diagnostic."""
    if diagnostic.enrichment is None or not diagnostic.enrichment.auto_fix_available:
        return record
    for suggestion in diagnostic.enrichment.correction_suggestions:
        if suggestion.is_auto_applicable:
            return apply_suggestion(record, diagnostic.field, suggestion)
    return record
