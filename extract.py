"""
extract.py - Field extraction from recognized invoice text.

This module converts the raw text of one invoice document (already produced
by an upstream OCR step) into an `ExtractedInvoice`.

Pipeline role:
- It is the only module that knows the textual shape of German invoices.
- Downstream modules (rules, diagnose, match, learn) only consume
  `ExtractedInvoice` and never look at raw text again.

Extraction strategy:
- Every header field is located by an ORDERED sequence of `PatternRule`s,
  most specific / most idiomatic German wording first. Each rule scans its
  matches in text order and the first candidate that passes the rule's
  plausibility check wins. There is no scoring competition between rules:
  later rules are only consulted when earlier ones produce nothing usable.
- Line items come from lines carrying at least two currency amounts.
- Missing totals are back-filled arithmetically (see `reconcile_totals`).

Error philosophy:
- A missing field is not an error. It stays empty and lowers confidence.
- The only exception raised is `InvalidInputError` for a call without text.
"""

from __future__ import annotations

import re
from typing import Callable, NamedTuple, Optional

from config import Settings, get_settings
from logging_config import get_logger
from models import (
    CustomerIdentity,
    ExtractedInvoice,
    LineItem,
    Totals,
    VendorIdentity,
)
from normalize import (
    POSTAL_CITY_PATTERN,
    is_valid_tax_id,
    normalize_date,
    normalize_tax_id,
    parse_german_number,
)

logger = get_logger(__name__)


class InvalidInputError(ValueError):
    """Raised when the extractor is called without any text."""


class PatternRule(NamedTuple):
    """One extraction attempt: regex (value in group 1) + plausibility check."""

    name: str
    pattern: re.Pattern
    accept: Callable[[str], bool]


# -- Confidence weights (awarded only when the condition holds) --

CONFIDENCE_WEIGHTS: dict[str, int] = {
    "invoice_number": 20,
    "date": 15,
    "vendor_name": 15,
    "total": 25,
    "line_items": 15,
    "vendor_tax_id": 10,
}

# The extractor never claims certainty.
MAX_CONFIDENCE = 0.95

# Shortest string accepted as an invoice number.
MIN_INVOICE_NUMBER_LENGTH = 3

# Shortest string accepted as a company name.
MIN_COMPANY_NAME_LENGTH = 4

# Maximum number of lines read after a "Rechnung an" label.
MAX_CUSTOMER_BLOCK_LINES = 4

_DATE = r"(\d{1,2}[.\-/]\d{1,2}[.\-/]\d{2,4})"
_AMOUNT = r"(\d{1,3}(?:[.,]\d{3})+[.,]\d{2}|\d+[.,]\d{2})(?![\d]|[.,]\d)"
_CURRENCY = r"(?:eur|€)?"
_INVOICE_NUMBER = r"([A-Za-z0-9][A-Za-z0-9\-/._]*)"
_TAX_ID = r"([a-z]{2}[ \t]?\d{3}[ \t]?\d{3}[ \t]?\d{3})"

LEGAL_FORM_ALTERNATIVES = (
    r"GmbH & Co\.? KGaA|GmbH & Co\.? KG|gGmbH|GmbH|KGaA|AG|KG|OHG"
    r"|UG \(haftungsbeschränkt\)|UG|e\.\s?K\.|mbH|eG|SE|Ltd\.?|Inc\.?|LLC"
)

# All-caps lines that are document titles, not company names.
DOCUMENT_KEYWORDS = frozenset(
    {
        "RECHNUNG",
        "INVOICE",
        "GUTSCHRIFT",
        "RECHNUNGSKORREKTUR",
        "LIEFERSCHEIN",
        "ANGEBOT",
        "QUITTUNG",
        "MAHNUNG",
        "KOPIE",
        "ORIGINAL",
        "DUPLIKAT",
        "ABSENDER",
        "EMPFÄNGER",
    }
)

AMOUNT_TOKEN = re.compile(r"(?<![\d.,])" + _AMOUNT)
QUANTITY_TOKEN = re.compile(
    r"(\d+(?:[.,]\d+)?)[ \t]*(?:stk\.?|stück|pcs|pieces|std\.?|h\b|x\b)",
    re.IGNORECASE,
)
PERCENT_TOKEN = re.compile(r"(\d{1,2}(?:[.,]\d{1,2})?)[ \t]*%")
LINE_ITEM_SKIP = re.compile(
    r"pos\b|position|artikel|beschreibung|bezeichnung|menge|einzelpreis|preis\b"
    r"|total|gesamt|summe|netto|brutto|mwst|mehrwertsteuer|umsatzsteuer|\bust\b"
    r"|betrag|subtotal|\bvat\b|zu zahlen|übertrag",
    re.IGNORECASE,
)
STREET_LINE = re.compile(r"^[A-ZÄÖÜ][\w.\- ]*?[ \t]\d+[ \t]?[a-zA-Z]?$")
CUSTOMER_BLOCK = re.compile(
    r"\b(?:rechnung[ \t]+an|rechnungsempfänger|bill[ \t]+to|kunde)\b[:\s]*(.*?)"
    r"(?:\n[ \t]*\n|rechnung|\Z)",
    re.IGNORECASE | re.DOTALL,
)


# -- Plausibility checks --


def _is_plausible_invoice_number(candidate: str) -> bool:
    if len(candidate) < MIN_INVOICE_NUMBER_LENGTH:
        return False
    if not any(char.isdigit() for char in candidate):
        return False
    if is_valid_tax_id(candidate.upper()):
        return False
    return re.fullmatch(_DATE, candidate) is None


def _is_plausible_date(candidate: str) -> bool:
    return bool(normalize_date(candidate))


def _is_plausible_tax_id(candidate: str) -> bool:
    return is_valid_tax_id(normalize_tax_id(candidate))


def _is_plausible_company(candidate: str) -> bool:
    name = candidate.strip(" ,.-")
    if len(name) < MIN_COMPANY_NAME_LENGTH:
        return False
    if not any(char.isalpha() for char in name):
        return False
    first_word = name.split()[0].upper().strip(":.,")
    return first_word not in DOCUMENT_KEYWORDS


def _is_positive_amount(candidate: str) -> bool:
    return parse_german_number(candidate) > 0


# -- Ordered rule sequences --

INVOICE_NUMBER_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "labelled",
        re.compile(
            r"\b(?:rechnungs?(?:nummer|nr)?|invoice)\b\.?[ \t-]*"
            r"(?:nr\.?|no\.?|nummer|number|#)?[ \t]*[:#]?\s*" + _INVOICE_NUMBER,
            re.IGNORECASE,
        ),
        _is_plausible_invoice_number,
    ),
    PatternRule(
        "abbreviated",
        re.compile(
            r"\b(?:re|rg|inv)\.?[ \t-]*(?:nr|no)\.?[ \t]*[:#]?\s*" + _INVOICE_NUMBER,
            re.IGNORECASE,
        ),
        _is_plausible_invoice_number,
    ),
    PatternRule(
        "document",
        re.compile(
            r"\b(?:beleg(?:nummer|nr)?|faktura|bill)\b\.?[ \t-]*(?:nr\.?|no\.?)?[ \t]*[:#]?\s*"
            + _INVOICE_NUMBER,
            re.IGNORECASE,
        ),
        _is_plausible_invoice_number,
    ),
    PatternRule(
        "bare",
        re.compile(r"\b([A-Z]{1,4}[-/]?\d{4,}(?:[-/]\d+)*)\b"),
        _is_plausible_invoice_number,
    ),
)

DATE_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "labelled",
        re.compile(
            r"\b(?:rechnung(?:s?datum)?|belegdatum|datum|date|invoice[ \t]+date)\b[:\s]*" + _DATE,
            re.IGNORECASE,
        ),
        _is_plausible_date,
    ),
    PatternRule(
        "issued",
        re.compile(r"\b(?:erstellt[ \t]+am|ausgestellt[ \t]+am|vom)\b[:\s]*" + _DATE, re.IGNORECASE),
        _is_plausible_date,
    ),
    PatternRule(
        "trailing_label",
        re.compile(_DATE + r"[ \t]*(?:rechnung|invoice)", re.IGNORECASE),
        _is_plausible_date,
    ),
)

DUE_DATE_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "due",
        re.compile(
            r"(?:\bfällig(?:keitsdatum)?|\bzahlbar|\bdue(?:[ \t]+date)?|\bzahlung[ \t]+bis)\b"
            r"[:\s]*(?:bis|until|am|on)?[:\s]*" + _DATE,
            re.IGNORECASE,
        ),
        _is_plausible_date,
    ),
    PatternRule(
        "payment_target",
        re.compile(r"\b(?:zahlungsziel|payment[ \t]+(?:due|target))\b[:\s]*" + _DATE, re.IGNORECASE),
        _is_plausible_date,
    ),
    PatternRule(
        "please_pay",
        re.compile(r"\b(?:bitte[ \t]+zahlen[ \t]+bis|zu[ \t]+zahlen[ \t]+bis)\b[:\s]*" + _DATE, re.IGNORECASE),
        _is_plausible_date,
    ),
)

TAX_ID_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "ust_id",
        re.compile(
            r"(?:\bust(?:euer)?[-\s.]*(?:id(?:nr)?|nr)|\btax[-\s]?(?:id|nr)|\bsteuer[-\s]?nr)\.?"
            r"[:\s]*" + _TAX_ID,
            re.IGNORECASE,
        ),
        _is_plausible_tax_id,
    ),
    PatternRule(
        "umsatzsteuer_id",
        re.compile(
            r"\bumsatzsteuer[-\s]?(?:identifikationsnummer|id(?:nr)?)\.?[:\s]*" + _TAX_ID,
            re.IGNORECASE,
        ),
        _is_plausible_tax_id,
    ),
    PatternRule(
        "bare_de",
        re.compile(r"\b(de[ \t]?\d{3}[ \t]?\d{3}[ \t]?\d{3})\b", re.IGNORECASE),
        _is_plausible_tax_id,
    ),
    PatternRule(
        "vat_id",
        re.compile(r"\bvat[-\s]?(?:id|nr|no)\.?[:\s]*" + _TAX_ID, re.IGNORECASE),
        _is_plausible_tax_id,
    ),
)

COMPANY_NAME_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "line_with_legal_form",
        re.compile(
            r"^[ \t]*([A-ZÄÖÜ][\w&.,'\- \t]*?[ \t](?:" + LEGAL_FORM_ALTERNATIVES + r"))(?!\w)",
            re.MULTILINE,
        ),
        _is_plausible_company,
    ),
    PatternRule(
        "legal_form_anywhere",
        re.compile(
            r"(?<!\w)([A-ZÄÖÜ][\w&.'\- \t]*?[ \t](?:" + LEGAL_FORM_ALTERNATIVES + r"))(?!\w)"
        ),
        _is_plausible_company,
    ),
    PatternRule(
        "all_caps_line",
        re.compile(r"^[ \t]*([A-ZÄÖÜ][A-ZÄÖÜ0-9&.,'\- \t]{2,}?)[ \t]*$", re.MULTILINE),
        _is_plausible_company,
    ),
)

TOTAL_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "gross_label",
        re.compile(
            r"(?<![a-zäöüß-])(?:(?:rechnungs?|end|zahl)?betrag|gesamt(?:summe|betrag)?"
            r"|brutto(?:betrag)?|total|summe|endbetrag)\b"
            r"[:\s]*(?:\((?:brutto|inkl\.?[ \t]*mwst\.?)\))?[:\s]*" + _CURRENCY + r"[:\s]*" + _AMOUNT,
            re.IGNORECASE,
        ),
        _is_positive_amount,
    ),
    PatternRule(
        "to_pay",
        re.compile(r"\b(?:zu[ \t]+zahlen|zahlbetrag)\b[:\s]*" + _CURRENCY + r"[:\s]*" + _AMOUNT, re.IGNORECASE),
        _is_positive_amount,
    ),
    PatternRule(
        "trailing_label",
        re.compile(_AMOUNT + r"[ \t]*" + _CURRENCY + r"[ \t]*(?:gesamt|total|summe)", re.IGNORECASE),
        _is_positive_amount,
    ),
)

TAX_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "vat_label",
        re.compile(
            r"\b(?:mwst|mehrwertsteuer|umsatzsteuer|vat)\.?[ \t]*(?:\d{1,2}(?:[.,]\d{1,2})?[ \t]*%)?"
            r"[:\s]*" + _CURRENCY + r"[:\s]*" + _AMOUNT,
            re.IGNORECASE,
        ),
        _is_positive_amount,
    ),
)

SUBTOTAL_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "net_label",
        re.compile(
            r"\b(?:nettobetrag|nettosumme|netto|zwischensumme|subtotal|net)\b"
            r"[:\s]*" + _CURRENCY + r"[:\s]*" + _AMOUNT,
            re.IGNORECASE,
        ),
        _is_positive_amount,
    ),
)


def first_plausible(rules: tuple[PatternRule, ...], text: str) -> tuple[str, Optional[str]]:
    """Run rules in order; return (value, rule name) of the first plausible hit."""
    for rule in rules:
        for match in rule.pattern.finditer(text):
            candidate = (match.group(1) or "").strip()
            if candidate and rule.accept(candidate):
                return candidate, rule.name
    return "", None


def extract_invoice(raw_text: str, settings: Optional[Settings] = None) -> ExtractedInvoice:
    """Extract a structured invoice from recognized document text.

    Args:
        raw_text: Full OCR text of one invoice document.
        settings: Tunables (default VAT rate for back-filling totals).

    Returns:
        ExtractedInvoice with every field found, empty values for the rest,
        and a completeness confidence in [0, 0.95].

    Raises:
        InvalidInputError: raw_text is None, not a string, or blank.

    Examples:
        >>> invoice = extract_invoice("Acme GmbH\\nRechnung RE-2024-001\\nGesamtbetrag: 119,00")
        >>> invoice.invoice_number
        'RE-2024-001'
        >>> invoice.totals.subtotal
        100.0
    """
    if raw_text is None:
        raise InvalidInputError("raw_text cannot be None")
    if not isinstance(raw_text, str):
        raise InvalidInputError(f"raw_text must be a string, got {type(raw_text).__name__}")
    if not raw_text.strip():
        raise InvalidInputError("raw_text cannot be empty")

    settings = settings or get_settings()
    text = raw_text.replace("\r\n", "\n").replace("\r", "\n")

    logger.info("extract_start | chars=%d | lines=%d", len(text), text.count("\n") + 1)

    customer, customer_span = extract_customer(text)
    # The vendor is searched outside the recipient block.
    if customer_span is not None:
        vendor_text = text[: customer_span[0]] + "\n" + text[customer_span[1] :]
    else:
        vendor_text = text

    invoice_number, number_rule = first_plausible(INVOICE_NUMBER_RULES, text)
    invoice_number = invoice_number.rstrip("._-/")

    date_text, date_rule = first_plausible(DATE_RULES, text)
    due_text, _ = first_plausible(DUE_DATE_RULES, text)

    vendor = extract_vendor(vendor_text)
    items = extract_line_items(text, default_tax_rate=settings.default_vat_rate * 100)
    totals = extract_totals(text, default_rate=settings.default_vat_rate)

    invoice = ExtractedInvoice(
        invoice_number=invoice_number,
        date=normalize_date(date_text),
        due_date=normalize_date(due_text),
        vendor=vendor,
        customer=customer,
        items=items,
        totals=totals,
        raw_text=raw_text,
    )
    invoice.confidence = calculate_confidence(invoice)

    missing = missing_required_fields(invoice)
    if missing:
        logger.warning(
            "extract_missing_fields | fields=%s | fallback=continue",
            ",".join(missing),
        )
    logger.info(
        "extract_complete | number=%r | number_rule=%s | date=%s | date_rule=%s | vendor=%r"
        " | total=%.2f | items=%d | confidence=%.0f%%",
        invoice.invoice_number,
        number_rule,
        invoice.date,
        date_rule,
        invoice.vendor.name,
        invoice.totals.total,
        len(invoice.items),
        invoice.confidence * 100.0,
    )
    return invoice


def extract_vendor(text: str) -> VendorIdentity:
    """Company name, address and VAT id of the issuer."""
    name, _ = first_plausible(COMPANY_NAME_RULES, text)
    tax_id, _ = first_plausible(TAX_ID_RULES, text)
    return VendorIdentity(
        name=re.sub(r"[ \t]+", " ", name).strip(" ,"),
        address=extract_address(text),
        tax_id=normalize_tax_id(tax_id),
    )


def extract_address(text: str) -> str:
    """First 'PLZ City' in the text, prefixed by its street when one is found
    on the same line or on the line directly above."""
    match = POSTAL_CITY_PATTERN.search(text)
    if not match:
        return ""

    postal_city = f"{match.group(1)} {match.group(2).strip()}"
    line_start = text.rfind("\n", 0, match.start()) + 1
    prefix = text[line_start : match.start()].strip(" \t,")
    if prefix:
        street = prefix.split(",")[-1].strip()
        return f"{street}, {postal_city}" if STREET_LINE.match(street) else postal_city

    if line_start > 0:
        previous_start = text.rfind("\n", 0, line_start - 1) + 1
        previous = text[previous_start : line_start - 1].strip()
        if STREET_LINE.match(previous):
            return f"{previous}, {postal_city}"
    return postal_city


def extract_customer(text: str) -> tuple[CustomerIdentity, Optional[tuple[int, int]]]:
    """Recipient block after 'Rechnung an' / 'Bill to' / 'Kunde'.

    Returns the identity and the (start, end) span of the block in `text`,
    or (empty identity, None) when no block is labelled.
    """
    match = CUSTOMER_BLOCK.search(text)
    if not match:
        return CustomerIdentity(), None

    lines = [line.strip() for line in match.group(1).split("\n") if line.strip()]
    lines = lines[:MAX_CUSTOMER_BLOCK_LINES]
    if not lines:
        return CustomerIdentity(), None
    customer = CustomerIdentity(name=lines[0], address=", ".join(lines[1:]))
    return customer, match.span(1)


def extract_line_items(text: str, default_tax_rate: float = 19.0) -> list[LineItem]:
    """Table rows: any line with at least two currency amounts.

    Header and totals lines are skipped by keyword. Quantity comes from a
    '<n> Stk' style token (else 1), the tax rate from a '<n> %' token (else
    the default), the unit price is the first amount and the line total the
    last one.
    """
    items: list[LineItem] = []
    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if not line or LINE_ITEM_SKIP.search(line):
            continue

        quantity = 1.0
        remainder = line
        quantity_match = QUANTITY_TOKEN.search(line)
        if quantity_match:
            quantity = parse_german_number(quantity_match.group(1)) or 1.0
            remainder = line[: quantity_match.start()] + " " + line[quantity_match.end() :]

        tax_rate = default_tax_rate
        percent_match = PERCENT_TOKEN.search(remainder)
        if percent_match:
            tax_rate = float(percent_match.group(1).replace(",", "."))
            remainder = remainder[: percent_match.start()] + " " + remainder[percent_match.end() :]

        amounts = AMOUNT_TOKEN.findall(remainder)
        if len(amounts) < 2:
            continue

        description = AMOUNT_TOKEN.sub(" ", remainder)
        description = re.sub(r"€|\bEUR\b", " ", description, flags=re.IGNORECASE)
        description = re.sub(r"^\s*\d+[.)]?\s+", "", description)
        description = re.sub(r"\s+", " ", description).strip(" -:|\t")
        if len(description) <= 3:
            continue

        items.append(
            LineItem(
                description=description,
                quantity=max(quantity, 0.0),
                unit_price=max(parse_german_number(amounts[0]), 0.0),
                tax_rate=tax_rate,
                total=max(parse_german_number(amounts[-1]), 0.0),
            )
        )

    logger.debug("extract_line_items | count=%d", len(items))
    return items


def extract_totals(text: str, default_rate: float = 0.19) -> Totals:
    """Labelled gross, VAT and net amounts, reconciled."""
    total_text, _ = first_plausible(TOTAL_RULES, text)
    tax_text, _ = first_plausible(TAX_RULES, text)
    subtotal_text, _ = first_plausible(SUBTOTAL_RULES, text)
    return reconcile_totals(
        parse_german_number(subtotal_text),
        parse_german_number(tax_text),
        parse_german_number(total_text),
        default_rate=default_rate,
    )


def reconcile_totals(
    subtotal: float,
    tax_amount: float,
    total: float,
    default_rate: float = 0.19,
) -> Totals:
    """Fill the one derivable missing sum from the other two.

    - only gross known:        net = gross / (1 + rate), tax = gross - net
    - gross and net known:     tax = gross - net
    - net and tax known:       gross = net + tax
    - otherwise:               values as extracted, clamped to >= 0

    Derived values are rounded to 2 decimals.
    """
    if total > 0 and subtotal <= 0 and tax_amount <= 0:
        net = total / (1 + default_rate)
        tax = total - net
        result = Totals(subtotal=round(net, 2), tax_amount=round(tax, 2), total=total)
        derived = "subtotal,tax_amount"
    elif total > 0 and subtotal > 0 and tax_amount <= 0:
        if subtotal > total:
            # Tax stays 0; the VAT rule reports the mismatch.
            logger.warning(
                "reconcile_totals | net_exceeds_gross | subtotal=%.2f | total=%.2f | fallback=tax_zero",
                subtotal,
                total,
            )
        result = Totals(
            subtotal=subtotal,
            tax_amount=max(round(total - subtotal, 2), 0.0),
            total=total,
        )
        derived = "tax_amount"
    elif subtotal > 0 and tax_amount > 0 and total <= 0:
        result = Totals(subtotal=subtotal, tax_amount=tax_amount, total=round(subtotal + tax_amount, 2))
        derived = "total"
    else:
        result = Totals(
            subtotal=max(subtotal, 0.0),
            tax_amount=max(tax_amount, 0.0),
            total=max(total, 0.0),
        )
        derived = "none"

    logger.debug(
        "reconcile_totals | subtotal=%.2f | tax=%.2f | total=%.2f | derived=%s",
        result.subtotal,
        result.tax_amount,
        result.total,
        derived,
    )
    return result


def calculate_confidence(invoice: ExtractedInvoice) -> float:
    """Weighted completeness score, capped at 0.95."""
    checks = {
        "invoice_number": bool(invoice.invoice_number),
        "date": bool(invoice.date),
        "vendor_name": bool(invoice.vendor.name),
        "total": invoice.totals.total > 0,
        "line_items": invoice.has_line_items,
        "vendor_tax_id": bool(invoice.vendor.tax_id),
    }
    score = sum(CONFIDENCE_WEIGHTS[key] for key, present in checks.items() if present)
    max_score = sum(CONFIDENCE_WEIGHTS.values())
    return min(score / max_score, MAX_CONFIDENCE)


def missing_required_fields(invoice: ExtractedInvoice) -> list[str]:
    """Fields a reviewer must supply before the invoice can be booked."""
    missing: list[str] = []
    if not invoice.invoice_number:
        missing.append("invoice_number")
    if not invoice.date:
        missing.append("date")
    if invoice.totals.total <= 0:
        missing.append("totals.total")
    if not invoice.vendor.name:
        missing.append("vendor.name")
    return missing
