"""
models.py - Data Models for the Invoice Understanding Pipeline

This file defines ALL data structures used across the pipeline.
Every module communicates exclusively through these models:

    extract.py   ->  ExtractedInvoice
    rules.py     ->  list[ValidationDiagnostic]
    diagnose.py  ->  list[ValidationDiagnostic] (with DiagnosticEnrichment)
    match.py     ->  list[VendorCandidate], NewPartySuggestion
    learn.py     ->  Prediction (from LearningObservation history)
    explain.py   ->  str / dict (uses ReviewResult as input)

Design principles:
1. Each stage's output is the next stage's input
2. Diagnostics and candidates carry enough detail to be shown to a reviewer
   without re-running the stage that produced them
3. Field references are dotted snake_case paths ("vendor.tax_id"), shared by
   the extractor, the rule engine, the enrichment layer and the learner

Schema relationships:
    VendorIdentity / CustomerIdentity / LineItem / Totals --used by--> ExtractedInvoice
    CorrectionSuggestion --used by--> DiagnosticEnrichment
    DiagnosticEnrichment --used by--> ValidationDiagnostic.enrichment
    Party --used by--> VendorCandidate.party, NewPartySuggestion.suggested_party
    LearningObservation --derived--> FrequencyTable, feature index (learn.py)
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Rounding tolerance used for every monetary comparison.
AMOUNT_TOLERANCE = 0.02

FIELD_REFERENCES: tuple[str, ...] = (
    "invoice_number",
    "date",
    "due_date",
    "vendor.name",
    "vendor.address",
    "vendor.tax_id",
    "customer.name",
    "customer.address",
    "totals.subtotal",
    "totals.tax_amount",
    "totals.total",
)

DATE_FIELDS = frozenset({"date", "due_date"})
AMOUNT_FIELDS = frozenset({"totals.subtotal", "totals.tax_amount", "totals.total"})


class Severity(str, Enum):
    """How serious a validation finding is."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class RuleCategory(str, Enum):
    LEGAL = "legal"
    FINANCIAL = "financial"
    FORMAT = "format"
    BUSINESS = "business"


class SuggestionKind(str, Enum):
    """What a correction suggestion does to a field value."""

    REPLACE = "replace"
    FORMAT = "format"
    CALCULATE = "calculate"
    LOOKUP = "lookup"
    MANUAL = "manual"


class InputType(str, Enum):
    TEXT = "text"
    DATE = "date"
    NUMBER = "number"
    SELECT = "select"


class MatchKind(str, Enum):
    """Which matching tier produced a vendor candidate."""

    # Tax id equality (1.0) or normalized company name equality (0.95).
    EXACT = "exact"

    # Weighted multi-field token-aware search over the whole directory.
    FUZZY = "fuzzy"

    # Independent per-field Levenshtein scoring (name, address, city).
    PARTIAL = "partial"


class PredictionSource(str, Enum):
    """Tag identifying which strategy produced a prediction."""

    FREQUENCY = "frequency"
    CLASSIFIER = "classifier"
    NEAREST_NEIGHBOR = "nearest_neighbor"
    ENSEMBLE = "ensemble"


class VendorIdentity(BaseModel):
    """Vendor (invoice issuer) as read from the document."""

    name: str = Field(
        default="",
        description=(
            "Company name including legal form as printed, e.g. "
            "'Acme GmbH', 'Müller & Söhne KG'. Empty when not found."
        ),
    )
    address: str = Field(
        default="",
        description=(
            "Postal address, typically 'Street 12, 12345 City'. Only the "
            "'PLZ City' part is guaranteed when the street line is missing."
        ),
    )
    tax_id: str = Field(
        default="",
        description="VAT identification number, upper-case, e.g. 'DE123456789'.",
    )


class CustomerIdentity(BaseModel):
    """Invoice recipient as read from the 'Rechnung an' block."""

    name: str = ""
    address: str = ""


class LineItem(BaseModel):
    """One position of the invoice table.

    The arithmetic invariant (quantity * unit_price ~ total) is NOT enforced
    here; OCR noise routinely breaks it and the rule engine reports it instead.
    """

    description: str = ""
    quantity: float = Field(default=1.0, ge=0)
    unit_price: float = Field(default=0.0, ge=0)
    tax_rate: float = Field(
        default=19.0,
        ge=0,
        description="VAT rate in percent (19 = 19%). Defaults to the German standard rate.",
    )
    total: float = Field(default=0.0, ge=0)

    @property
    def expected_total(self) -> float:
        return round(self.quantity * self.unit_price, 2)

    @property
    def is_consistent(self) -> bool:
        """Whether quantity * unit price matches the printed line total."""
        return abs(self.expected_total - self.total) <= AMOUNT_TOLERANCE + 1e-9


class Totals(BaseModel):
    """Invoice sums. Under valid state total == subtotal + tax_amount (+/- 0.02)."""

    subtotal: float = Field(default=0.0, ge=0, description="Net amount (Nettobetrag).")
    tax_amount: float = Field(default=0.0, ge=0, description="VAT amount (MwSt).")
    total: float = Field(default=0.0, ge=0, description="Gross amount (Gesamtbetrag).")

    @property
    def is_balanced(self) -> bool:
        return abs(self.total - (self.subtotal + self.tax_amount)) <= AMOUNT_TOLERANCE + 1e-9


class ExtractedInvoice(BaseModel):
    """Structured invoice produced by the field extractor from raw OCR text.

    Absent fields are empty strings / zero amounts, never None, so that every
    downstream module can read any field without guarding. The record is only
    changed through field-level corrections (`with_field`), which return a new
    copy; reprocessing the document replaces it entirely.

    Dates are canonical ISO strings (YYYY-MM-DD). Confidence is a heuristic
    completeness score in [0, 0.95]; the extractor never claims certainty.
    """

    invoice_number: str = Field(
        default="",
        description="Invoice number as printed, e.g. 'RE-2024-001', 'INV/24/123'.",
    )
    date: str = Field(default="", description="Issue date, canonical YYYY-MM-DD or ''.")
    due_date: str = Field(default="", description="Payment due date, canonical YYYY-MM-DD or ''.")
    vendor: VendorIdentity = Field(default_factory=VendorIdentity)
    customer: CustomerIdentity = Field(default_factory=CustomerIdentity)
    items: list[LineItem] = Field(default_factory=list)
    totals: Totals = Field(default_factory=Totals)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    raw_text: Optional[str] = Field(
        default=None,
        description="Source OCR text, kept for debugging and for the learner.",
    )

    @property
    def has_line_items(self) -> bool:
        return len(self.items) > 0

    def get_field(self, field: str) -> Any:
        """Read a value by dotted field reference ('vendor.tax_id')."""
        target: Any = self
        for part in field.split("."):
            if not hasattr(target, part):
                raise KeyError(f"Unknown invoice field: {field}")
            target = getattr(target, part)
        return target

    def with_field(self, field: str, value: Any) -> "ExtractedInvoice":
        """Return a copy with one field replaced (human correction)."""
        parts = field.split(".")
        updated = self.model_copy(deep=True)
        target: Any = updated
        for part in parts[:-1]:
            if not hasattr(target, part):
                raise KeyError(f"Unknown invoice field: {field}")
            target = getattr(target, part)
        if parts[-1] not in type(target).model_fields:
            raise KeyError(f"Unknown invoice field: {field}")
        setattr(target, parts[-1], value)
        return updated.model_validate(updated.model_dump())

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "invoice_number": "RE-2024-001",
                    "date": "2024-03-01",
                    "due_date": "2024-03-31",
                    "vendor": {
                        "name": "Acme GmbH",
                        "address": "Hauptstraße 5, 10115 Berlin",
                        "tax_id": "DE123456789",
                    },
                    "customer": {"name": "Beispiel AG", "address": "Ring 2, 80331 München"},
                    "items": [
                        {
                            "description": "Beratung",
                            "quantity": 1,
                            "unit_price": 100.0,
                            "tax_rate": 19,
                            "total": 100.0,
                        }
                    ],
                    "totals": {"subtotal": 100.0, "tax_amount": 19.0, "total": 119.0},
                    "confidence": 0.95,
                }
            ]
        }
    )


class CorrectionSuggestion(BaseModel):
    """One actionable way to fix a diagnosed field."""

    kind: SuggestionKind
    description: str
    suggested_value: Optional[str] = Field(
        default=None,
        description=(
            "Concrete replacement value, already in the field's storage form. "
            "None for lookups and manual suggestions."
        ),
    )
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    requires_user_input: bool = False
    input_type: Optional[InputType] = None
    options: list[str] = Field(default_factory=list)
    target_field: Optional[str] = Field(
        default=None,
        description=(
            "Field the suggested value is written to. None means the field of "
            "the diagnostic the suggestion belongs to."
        ),
    )

    @property
    def is_auto_applicable(self) -> bool:
        return self.suggested_value is not None and not self.requires_user_input


class DiagnosticEnrichment(BaseModel):
    """Reviewer-facing context attached to a raw validation failure."""

    context: str = ""
    possible_causes: list[str] = Field(default_factory=list)
    correction_suggestions: list[CorrectionSuggestion] = Field(default_factory=list)
    auto_fix_available: bool = False
    learn_from_user: bool = True
    related_fields: set[str] = Field(default_factory=set)


class ValidationDiagnostic(BaseModel):
    """One failed check. Produced fresh on every validation pass, never mutated."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(
        ...,
        description="Dotted field reference, a group ('vendor', 'totals') or 'general'.",
    )
    message: str
    severity: Severity
    suggestion: Optional[str] = None
    rule_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    enrichment: Optional[DiagnosticEnrichment] = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    @property
    def auto_fix_available(self) -> bool:
        return bool(self.enrichment and self.enrichment.auto_fix_available)


class RuleResult(BaseModel):
    """Outcome of one business rule against one record."""

    is_valid: bool
    message: Optional[str] = None
    suggestion: Optional[str] = None
    field: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ValidationStatistics(BaseModel):
    total_rules: int = 0
    passed_rules: int = 0
    failed_rules: int = 0
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0


class Party(BaseModel):
    """Vendor or customer entry from the external directory (read-only here)."""

    id: str = ""
    company: str = ""
    contact_person: str = ""
    address: str = ""
    street: str = ""
    postal_code: str = ""
    city: str = ""
    tax_id: str = ""
    email: str = ""
    phone: str = ""


class ExistingInvoice(BaseModel):
    """Minimal view of an already booked invoice, used for duplicate checks."""

    id: str
    number: str


class ValidationContext(BaseModel):
    """Contextual data the rule engine may consult."""

    existing_customers: list[Party] = Field(default_factory=list)
    existing_invoices: list[ExistingInvoice] = Field(default_factory=list)
    current_date: Optional[date] = Field(
        default=None,
        description="Reference 'today' for date plausibility. None = today's date.",
    )

    @property
    def today(self) -> date:
        return self.current_date or date.today()


class VendorCandidate(BaseModel):
    """One directory party proposed as the invoice's vendor."""

    party: Party
    confidence: float = Field(..., ge=0.0, le=1.0)
    match_kind: MatchKind
    matched_fields: list[str] = Field(
        default_factory=list,
        description="Party fields that agreed with the extracted vendor, e.g. ['tax_id'].",
    )


class NewPartySuggestion(BaseModel):
    """Decision whether the reviewer should create a new directory party."""

    should_create: bool
    reason: str
    suggested_party: Optional[Party] = None


class MatchStatistics(BaseModel):
    total_parties: int = 0
    exact_matches: int = 0
    fuzzy_matches: int = 0
    partial_matches: int = 0
    best_match_confidence: float = 0.0


class LearningObservation(BaseModel):
    """One human correction. The log of these is append-only."""

    input_text: str = Field(..., description="Normalized raw text the correction applies to.")
    expected_output: str = Field(..., description="Value the human entered.")
    field_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str = ""
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class Prediction(BaseModel):
    """Tagged prediction result; `source` names the strategy that produced it."""

    prediction: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: PredictionSource = PredictionSource.ENSEMBLE

    @property
    def is_empty(self) -> bool:
        return not self.prediction or self.confidence <= 0.0


class LearningStatistics(BaseModel):
    total_observations: int = 0
    field_types: list[str] = Field(default_factory=list)
    average_confidence: float = 0.0
    is_initialized: bool = False


class ReviewResult(BaseModel):
    """Everything the surrounding application needs to show one document for review."""

    invoice: ExtractedInvoice
    diagnostics: list[ValidationDiagnostic] = Field(default_factory=list)
    candidates: list[VendorCandidate] = Field(default_factory=list)
    best_match: Optional[VendorCandidate] = None
    new_party: Optional[NewPartySuggestion] = None
    learned_corrections: dict[str, str] = Field(
        default_factory=dict,
        description="Fields pre-filled by the adaptive engine (field -> value).",
    )

    @property
    def error_count(self) -> int:
        return sum(1 for item in self.diagnostics if item.severity == Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for item in self.diagnostics if item.severity == Severity.WARNING)
