"""
rules.py - Business rule validation of extracted invoices.

Every rule is an independent pure check of (record, context, settings) that
returns a `RuleResult`. The engine runs all registered rules in registration
order and turns each failure into a `ValidationDiagnostic` carrying the
rule's severity. The order is part of the contract: reports and tests rely
on diagnostics appearing in the same order for the same record.

A rule that raises is logged and skipped. It never stops the others.

Default rule set (registration order):
    invoice_number_format   legal      warning
    vendor_tax_id           legal      error
    vat_calculation         financial  error
    invoice_date            format     warning
    due_date                business   warning
    minimum_amount          financial  error
    vendor_completeness     business   warning
    duplicate_invoice       business   warning
    amount_plausibility     business   info
    line_item_arithmetic    financial  info
"""

from __future__ import annotations

import math
import re
from datetime import date
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field

from config import Settings, get_settings
from diagnose import enrich_diagnostic
from logging_config import get_logger
from models import (
    ExtractedInvoice,
    RuleCategory,
    RuleResult,
    Severity,
    ValidationContext,
    ValidationDiagnostic,
    ValidationStatistics,
)
from normalize import format_german_number, is_valid_tax_id

logger = get_logger(__name__)

RuleCheck = Callable[[ExtractedInvoice, ValidationContext, Settings], RuleResult]

INVOICE_NUMBER_FORMAT = re.compile(r"^[A-Z]{0,4}[-/]?\d{4,}", re.IGNORECASE)
CANONICAL_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Shortest vendor name / address that counts as "present".
# An address below 10 characters cannot hold both street and 'PLZ City'.
MIN_VENDOR_NAME_LENGTH = 2
MIN_VENDOR_ADDRESS_LENGTH = 10

# Float noise added to every tolerance comparison so that 0.02 exactly
# is still within tolerance after binary rounding.
EPSILON = 1e-9


class BusinessRule(BaseModel):
    """One registered validation rule."""

    id: str
    name: str
    description: str = ""
    category: RuleCategory
    severity: Severity
    fields: list[str] = Field(
        default_factory=list,
        description="Field references the rule inspects; used by validate_field().",
    )
    check: RuleCheck


def _parse_iso(value: str) -> Optional[date]:
    if not value or not CANONICAL_DATE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _within(actual: float, expected: float, tolerance: float) -> bool:
    return abs(actual - expected) <= tolerance + EPSILON


# -- Rule checks --


def check_invoice_number_format(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    if not record.invoice_number:
        return RuleResult(
            is_valid=False,
            message="Invoice number is missing",
            suggestion="Enter the invoice number printed on the document",
            field="invoice_number",
        )
    if not INVOICE_NUMBER_FORMAT.match(record.invoice_number):
        return RuleResult(
            is_valid=False,
            message=f"Unusual invoice number format: {record.invoice_number}",
            suggestion="Invoice numbers should be sequential and unique, e.g. RE-2024-001",
            field="invoice_number",
        )
    return RuleResult(is_valid=True)


def check_vendor_tax_id(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    tax_id = record.vendor.tax_id
    if not tax_id:
        return RuleResult(
            is_valid=False,
            message="Vendor VAT id is missing",
            suggestion="A German VAT id starts with DE followed by 9 digits",
            field="vendor.tax_id",
        )
    if not (is_valid_tax_id(tax_id) and tax_id.startswith("DE")):
        return RuleResult(
            is_valid=False,
            message=f"Invalid German VAT id: {tax_id}",
            suggestion="Format: DE123456789",
            field="vendor.tax_id",
        )
    return RuleResult(is_valid=True)


def check_vat_calculation(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    """Tax must match one accepted rate, or total must equal subtotal + tax."""
    totals = record.totals
    if totals.subtotal <= 0 or totals.total <= 0:
        return RuleResult(
            is_valid=False,
            message="Invoice amounts are invalid (subtotal and total must be positive)",
            field="totals",
        )

    expected = {rate: round(totals.subtotal * rate, 2) for rate in settings.accepted_vat_rates}
    for rate, expected_tax in expected.items():
        if _within(totals.tax_amount, expected_tax, settings.amount_tolerance):
            return RuleResult(is_valid=True, metadata={"vat_rate": round(rate * 100)})

    if _within(totals.total, totals.subtotal + totals.tax_amount, settings.amount_tolerance):
        return RuleResult(is_valid=True)

    metadata = {f"expected_tax_{round(rate * 100)}": value for rate, value in expected.items()}
    hint = ", ".join(
        f"at {round(rate * 100)}%: {format_german_number(value)} €" for rate, value in expected.items()
    )
    return RuleResult(
        is_valid=False,
        message="VAT calculation is inconsistent",
        suggestion=f"Expected tax {hint}",
        field="totals.tax_amount",
        metadata=metadata,
    )


def check_invoice_date(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    if not record.date:
        return RuleResult(is_valid=False, message="Invoice date is missing", field="date")

    invoice_date = _parse_iso(record.date)
    if invoice_date is None:
        return RuleResult(
            is_valid=False,
            message=f"Invoice date is not a valid calendar date: {record.date}",
            suggestion="Use the format YYYY-MM-DD",
            field="date",
            metadata={"raw": record.date},
        )

    today = context.today
    if invoice_date > today:
        return RuleResult(
            is_valid=False,
            message="Invoice date lies in the future",
            field="date",
            metadata={"today": today.isoformat()},
        )

    oldest = today - relativedelta(years=settings.max_invoice_age_years)
    if invoice_date < oldest:
        return RuleResult(
            is_valid=False,
            message=f"Invoice date is very old (more than {settings.max_invoice_age_years} years)",
            field="date",
            metadata={"oldest_accepted": oldest.isoformat()},
        )
    return RuleResult(is_valid=True)


def check_due_date(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    if not record.due_date or not record.date:
        return RuleResult(is_valid=True)

    invoice_date = _parse_iso(record.date)
    due_date = _parse_iso(record.due_date)
    if invoice_date is None or due_date is None:
        return RuleResult(
            is_valid=False,
            message="Due date cannot be compared with the invoice date",
            suggestion="Use the format YYYY-MM-DD for both dates",
            field="due_date",
        )

    if due_date <= invoice_date:
        return RuleResult(
            is_valid=False,
            message="Due date must be after the invoice date",
            field="due_date",
        )

    days = (due_date - invoice_date).days
    if days > settings.max_payment_term_days:
        return RuleResult(
            is_valid=False,
            message=f"Unusually long payment term (over {settings.max_payment_term_days} days)",
            suggestion="Usual payment terms are 14, 30 or 60 days",
            field="due_date",
            metadata={"days": days},
        )
    return RuleResult(is_valid=True)


def check_minimum_amount(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    if record.totals.total < settings.minimum_amount:
        return RuleResult(
            is_valid=False,
            message="Invoice total is too low",
            field="totals.total",
        )
    return RuleResult(is_valid=True)


def check_vendor_completeness(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    vendor = record.vendor
    missing: list[str] = []
    if len(vendor.name.strip()) < MIN_VENDOR_NAME_LENGTH:
        missing.append("company name")
    if len(vendor.address.strip()) < MIN_VENDOR_ADDRESS_LENGTH:
        missing.append("complete address")
    if not vendor.tax_id:
        missing.append("VAT id")

    if missing:
        return RuleResult(
            is_valid=False,
            message=f"Missing vendor information: {', '.join(missing)}",
            field="vendor",
            metadata={"missing": missing},
        )
    return RuleResult(is_valid=True)


def check_duplicate_invoice(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    if not record.invoice_number or not context.existing_invoices:
        return RuleResult(is_valid=True)

    for existing in context.existing_invoices:
        if existing.number == record.invoice_number:
            return RuleResult(
                is_valid=False,
                message="Invoice number already exists",
                suggestion="Check whether this invoice has already been booked",
                field="invoice_number",
                metadata={"duplicate_id": existing.id},
            )
    return RuleResult(is_valid=True)


def check_amount_plausibility(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    if record.totals.total > settings.high_amount_threshold:
        return RuleResult(
            is_valid=False,
            message="Very high invoice total",
            suggestion="Please double-check the amount",
            field="totals.total",
            metadata={"threshold": settings.high_amount_threshold},
        )
    return RuleResult(is_valid=True)


def check_line_item_arithmetic(
    record: ExtractedInvoice, context: ValidationContext, settings: Settings
) -> RuleResult:
    positions = [
        index
        for index, item in enumerate(record.items, start=1)
        if not _within(item.total, item.expected_total, settings.amount_tolerance)
    ]
    if positions:
        return RuleResult(
            is_valid=False,
            message=(
                "Line total differs from quantity x unit price at position(s) "
                + ", ".join(str(position) for position in positions)
            ),
            suggestion="Check quantities and unit prices against the document",
            field="items",
            metadata={"positions": positions},
        )
    return RuleResult(is_valid=True)


def default_rules() -> list[BusinessRule]:
    """The standard German invoice rule set, in registration order."""
    return [
        BusinessRule(
            id="invoice_number_format",
            name="Invoice number format",
            description="Invoice number must be present and look sequential",
            category=RuleCategory.LEGAL,
            severity=Severity.WARNING,
            fields=["invoice_number"],
            check=check_invoice_number_format,
        ),
        BusinessRule(
            id="vendor_tax_id",
            name="Vendor VAT id",
            description="VAT id must follow the German format DE + 9 digits",
            category=RuleCategory.LEGAL,
            severity=Severity.ERROR,
            fields=["vendor.tax_id"],
            check=check_vendor_tax_id,
        ),
        BusinessRule(
            id="vat_calculation",
            name="VAT calculation",
            description="Tax must match the standard or reduced rate, or add up to the total",
            category=RuleCategory.FINANCIAL,
            severity=Severity.ERROR,
            fields=["totals.subtotal", "totals.tax_amount", "totals.total"],
            check=check_vat_calculation,
        ),
        BusinessRule(
            id="invoice_date",
            name="Invoice date",
            description="Invoice date must be plausible",
            category=RuleCategory.FORMAT,
            severity=Severity.WARNING,
            fields=["date"],
            check=check_invoice_date,
        ),
        BusinessRule(
            id="due_date",
            name="Due date",
            description="Due date must lie after the invoice date within the usual term",
            category=RuleCategory.BUSINESS,
            severity=Severity.WARNING,
            fields=["due_date", "date"],
            check=check_due_date,
        ),
        BusinessRule(
            id="minimum_amount",
            name="Minimum amount",
            description="Invoice total must be at least 0.01",
            category=RuleCategory.FINANCIAL,
            severity=Severity.ERROR,
            fields=["totals.total"],
            check=check_minimum_amount,
        ),
        BusinessRule(
            id="vendor_completeness",
            name="Vendor completeness",
            description="Vendor name, address and VAT id must be present",
            category=RuleCategory.BUSINESS,
            severity=Severity.WARNING,
            fields=["vendor.name", "vendor.address", "vendor.tax_id"],
            check=check_vendor_completeness,
        ),
        BusinessRule(
            id="duplicate_invoice",
            name="Duplicate check",
            description="Invoice must not already exist",
            category=RuleCategory.BUSINESS,
            severity=Severity.WARNING,
            fields=["invoice_number"],
            check=check_duplicate_invoice,
        ),
        BusinessRule(
            id="amount_plausibility",
            name="Amount plausibility",
            description="Very high totals are flagged for a second look",
            category=RuleCategory.BUSINESS,
            severity=Severity.INFO,
            fields=["totals.total"],
            check=check_amount_plausibility,
        ),
        BusinessRule(
            id="line_item_arithmetic",
            name="Line item arithmetic",
            description="Each line total should equal quantity x unit price",
            category=RuleCategory.FINANCIAL,
            severity=Severity.INFO,
            fields=["items"],
            check=check_line_item_arithmetic,
        ),
    ]


def _field_matches(requested: str, declared: list[str]) -> bool:
    group = requested.split(".")[0]
    for field in declared:
        if field == requested or field.split(".")[0] == requested or field == group:
            return True
    return False


class RuleEngine:
    """Ordered collection of business rules."""

    def __init__(
        self,
        rules: Optional[list[BusinessRule]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._rules: list[BusinessRule] = list(rules) if rules is not None else default_rules()

    @property
    def rules(self) -> list[BusinessRule]:
        return list(self._rules)

    def add_rule(self, rule: BusinessRule) -> None:
        """Register a rule at the end of the evaluation order."""
        if any(existing.id == rule.id for existing in self._rules):
            raise ValueError(f"Duplicate rule id: {rule.id}")
        self._rules.append(rule)
        logger.info("rule_added | id=%s | total_rules=%d", rule.id, len(self._rules))

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self._rules)
        self._rules = [rule for rule in self._rules if rule.id != rule_id]
        removed = len(self._rules) < before
        logger.info("rule_removed | id=%s | removed=%s", rule_id, removed)
        return removed

    def rules_by_category(self, category: RuleCategory) -> list[BusinessRule]:
        return [rule for rule in self._rules if rule.category == category]

    def validate(
        self,
        record: ExtractedInvoice,
        context: Optional[ValidationContext] = None,
        enrich: bool = False,
    ) -> list[ValidationDiagnostic]:
        """Run every rule; return failures in registration order.

        With `enrich`, each diagnostic carries causes and correction
        suggestions; an auto-fix is only offered when re-running the rule on
        the corrected record passes.
        """
        diagnostics = self._run(self._rules, record, context or ValidationContext(), "general", enrich)
        logger.info(
            "validate_complete | rules=%d | diagnostics=%d | errors=%d | warnings=%d",
            len(self._rules),
            len(diagnostics),
            sum(1 for item in diagnostics if item.severity == Severity.ERROR),
            sum(1 for item in diagnostics if item.severity == Severity.WARNING),
        )
        return diagnostics

    def validate_field(
        self,
        field: str,
        record: ExtractedInvoice,
        context: Optional[ValidationContext] = None,
        enrich: bool = False,
    ) -> list[ValidationDiagnostic]:
        """Run only the rules that inspect `field` (or its group)."""
        selected = [rule for rule in self._rules if _field_matches(field, rule.fields)]
        return self._run(selected, record, context or ValidationContext(), field, enrich)

    def statistics(
        self,
        record: ExtractedInvoice,
        context: Optional[ValidationContext] = None,
    ) -> ValidationStatistics:
        diagnostics = self.validate(record, context)
        failed = len(diagnostics)
        return ValidationStatistics(
            total_rules=len(self._rules),
            passed_rules=len(self._rules) - failed,
            failed_rules=failed,
            error_count=sum(1 for item in diagnostics if item.severity == Severity.ERROR),
            warning_count=sum(1 for item in diagnostics if item.severity == Severity.WARNING),
            info_count=sum(1 for item in diagnostics if item.severity == Severity.INFO),
        )

    def _run(
        self,
        rules: list[BusinessRule],
        record: ExtractedInvoice,
        context: ValidationContext,
        default_field: str,
        enrich: bool = False,
    ) -> list[ValidationDiagnostic]:
        diagnostics: list[ValidationDiagnostic] = []
        for rule in rules:
            try:
                result = rule.check(record, context, self.settings)
            except (KeyboardInterrupt, SystemExit):
                raise
            except Exception as exc:
                logger.warning(
                    "rule_failed | id=%s | error=%s: %s | fallback=skip",
                    rule.id,
                    type(exc).__name__,
                    exc,
                    exc_info=True,
                )
                continue

            if result.is_valid:
                continue
            diagnostic = ValidationDiagnostic(
                field=result.field or default_field,
                message=result.message or f"{rule.name} validation failed",
                severity=rule.severity,
                suggestion=result.suggestion,
                rule_id=rule.id,
                metadata=_finite_metadata(result.metadata),
            )
            if enrich:
                diagnostic = self._enrich(rule, diagnostic, record, context)
            diagnostics.append(diagnostic)
            logger.debug(
                "rule_failed_check | id=%s | field=%s | severity=%s",
                rule.id,
                result.field,
                rule.severity.value,
            )
        return diagnostics

    def _enrich(
        self,
        rule: BusinessRule,
        diagnostic: ValidationDiagnostic,
        record: ExtractedInvoice,
        context: ValidationContext,
    ) -> ValidationDiagnostic:
        def resolves(fixed: ExtractedInvoice) -> bool:
            return rule.check(fixed, context, self.settings).is_valid

        try:
            return enrich_diagnostic(diagnostic, record, self.settings, verify=resolves)
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception as exc:
            logger.error(
                "enrich_failed | rule=%s | error=%s: %s | fallback=unenriched",
                rule.id,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            return diagnostic


def _finite_metadata(metadata: dict) -> dict:
    """Drop NaN/inf floats so diagnostics stay JSON-serializable."""
    return {
        key: value
        for key, value in metadata.items()
        if not (isinstance(value, float) and not math.isfinite(value))
    }


_default_engine: Optional[RuleEngine] = None


def get_default_engine() -> RuleEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = RuleEngine()
    return _default_engine


def validate_invoice(
    record: ExtractedInvoice,
    context: Optional[ValidationContext] = None,
    enrich: bool = False,
    settings: Optional[Settings] = None,
) -> list[ValidationDiagnostic]:
    """Validate with the standard rule set, optionally attaching enrichment."""
    engine = RuleEngine(settings=settings) if settings is not None else get_default_engine()
    return engine.validate(record, context, enrich=enrich)
