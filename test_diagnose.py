"""
test_diagnose.py - Diagnostic enrichment tests

Covers:
- standalone analysis of user-facing values (dates, VAT ids, amounts,
  invoice numbers, company names)
- enrichment of rule diagnostics and auto-fix eligibility
- applying suggestions: idempotence and round-trip re-validation

Usage: pytest test_diagnose.py
"""

from __future__ import annotations

import pytest

from diagnose import (
    ALTERNATIVE_INVOICE_PREFIXES,
    analyze_field,
    apply_auto_fix,
    apply_suggestion,
    contains_ocr_errors,
    enrich_diagnostic,
    enrich_diagnostics,
)
from models import (
    CorrectionSuggestion,
    InputType,
    Severity,
    SuggestionKind,
    Totals,
    ValidationDiagnostic,
    VendorIdentity,
)
from rules import RuleEngine


def _suggestions(diagnostic):
    return diagnostic.enrichment.correction_suggestions


@pytest.fixture
def rule_engine(settings) -> RuleEngine:
    return RuleEngine(settings=settings)


class TestAnalyzeDate:
    def test_two_digit_year(self):
        findings = analyze_field("date", "03.04.24")
        assert len(findings) == 1
        suggestion = _suggestions(findings[0])[0]
        assert suggestion.kind == SuggestionKind.FORMAT
        assert suggestion.suggested_value == "03.04.2024"
        assert findings[0].auto_fix_available

    def test_iso_where_german_expected(self):
        findings = analyze_field("date", "2024-03-01")
        assert _suggestions(findings[0])[0].suggested_value == "01.03.2024"

    def test_iso_is_canonical_for_records(self):
        assert analyze_field("date", "2024-03-01", localized=False) == []

    def test_valid_german_date(self):
        assert analyze_field("date", "01.03.2024") == []

    def test_missing_date(self):
        findings = analyze_field("date", "")
        assert findings[0].severity == Severity.ERROR
        assert not findings[0].auto_fix_available

    def test_due_date_before_invoice_date(self, make_invoice, settings):
        record = make_invoice(date="2024-03-01")
        findings = analyze_field("due_date", "2024-02-01", record, localized=False, settings=settings)

        assert len(findings) == 1
        enrichment = findings[0].enrichment
        assert enrichment.related_fields == {"date"}
        assert enrichment.correction_suggestions[0].suggested_value == "2024-03-31"


class TestAnalyzeTaxId:
    @pytest.mark.parametrize(
        "raw",
        ["123456789", "de123456789", "DE 123 456 789"],
    )
    def test_fixable_shapes(self, raw):
        findings = analyze_field("vendor.tax_id", raw)
        assert _suggestions(findings[0])[0].suggested_value == "DE123456789"
        assert findings[0].auto_fix_available

    @pytest.mark.parametrize("raw", ["DE12345678", "DE1234567890", "XX-99"])
    def test_needs_manual_input(self, raw):
        findings = analyze_field("vendor.tax_id", raw)
        suggestion = _suggestions(findings[0])[0]
        assert suggestion.requires_user_input
        assert not findings[0].auto_fix_available

    def test_valid(self):
        assert analyze_field("vendor.tax_id", "DE123456789") == []


class TestAnalyzeOtherFields:
    def test_digits_only_invoice_number(self):
        findings = analyze_field("invoice_number", "12345")
        first, alternative = _suggestions(findings[0])
        assert first.suggested_value == "RE-12345"
        assert alternative.input_type == InputType.SELECT
        assert alternative.options == ALTERNATIVE_INVOICE_PREFIXES
        assert alternative.options is not ALTERNATIVE_INVOICE_PREFIXES

    def test_us_amount(self):
        findings = analyze_field("totals.total", "1,234.56")
        assert _suggestions(findings[0])[0].suggested_value == "1.234,56"

    def test_non_positive_amount(self):
        findings = analyze_field("totals.total", "0,00")
        assert findings[0].severity == Severity.ERROR

    def test_total_does_not_add_up(self, make_invoice):
        record = make_invoice(totals=Totals(subtotal=100.0, tax_amount=19.0, total=120.0))
        findings = analyze_field("totals.total", "120,00", record)
        assert _suggestions(findings[0])[0].suggested_value == "119,00"
        assert findings[0].enrichment.related_fields == {"totals.subtotal", "totals.tax_amount"}

    def test_vendor_name_ocr_noise(self):
        findings = analyze_field("vendor.name", "Acme GmbOO")
        assert [item.severity for item in findings] == [Severity.WARNING]

    def test_ocr_heuristic(self):
        assert contains_ocr_errors("Acme GmbOO")
        assert not contains_ocr_errors("Acme GmbH")
        assert not contains_ocr_errors("")


class TestEnrichment:
    def test_tax_id_suggestion_round_trip(self, rule_engine, make_invoice, context):
        vendor = VendorIdentity(name="Acme GmbH", address="Hauptstraße 5, 10115 Berlin", tax_id="123456789")
        record = make_invoice(vendor=vendor)

        diagnostics = rule_engine.validate(record, context, enrich=True)
        assert diagnostics[0].rule_id == "vendor_tax_id"
        assert diagnostics[0].auto_fix_available

        fixed = apply_auto_fix(record, diagnostics[0])
        assert fixed.vendor.tax_id == "DE123456789"
        assert rule_engine.validate_field("vendor.tax_id", fixed, context) == []

        # Re-applying changes nothing.
        again = apply_auto_fix(fixed, diagnostics[0])
        assert again == fixed

    def test_vat_suggestion_round_trip(self, rule_engine, make_invoice, context):
        record = make_invoice(totals=Totals(subtotal=100.0, tax_amount=10.0, total=120.0))
        diagnostic = rule_engine.validate(record, context, enrich=True)[0]

        suggestions = _suggestions(diagnostic)
        assert [item.suggested_value for item in suggestions[:2]] == ["19.00", "7.00"]
        assert suggestions[-1].target_field == "totals.total"

        fixed = apply_auto_fix(record, diagnostic)
        assert fixed.totals.tax_amount == pytest.approx(19.0)
        assert rule_engine.validate(fixed, context) == []

    def test_unresolving_fix_requires_confirmation(self, rule_engine, make_invoice, context):
        # "RE-123" still has fewer than four digits.
        diagnostic = rule_engine.validate(make_invoice(invoice_number="123"), context, enrich=True)[0]

        first = _suggestions(diagnostic)[0]
        assert first.suggested_value == "RE-123"
        assert first.requires_user_input
        assert not diagnostic.auto_fix_available

    def test_completeness_enrichment(self, rule_engine, make_invoice, context):
        vendor = VendorIdentity(name="Acme GmbH", address="Berlin", tax_id="DE123456789")
        diagnostic = rule_engine.validate(make_invoice(vendor=vendor), context, enrich=True)[0]
        assert diagnostic.enrichment.related_fields == {"vendor.name", "vendor.address", "vendor.tax_id"}
        assert not diagnostic.auto_fix_available

    def test_enrich_without_verification(self, make_invoice, settings):
        diagnostic = ValidationDiagnostic(
            field="vendor.tax_id",
            message="Invalid German VAT id: de123456789",
            severity=Severity.ERROR,
            rule_id="vendor_tax_id",
        )
        record = make_invoice(vendor=VendorIdentity(name="Acme GmbH", tax_id="de123456789"))
        enriched = enrich_diagnostic(diagnostic, record, settings)

        assert enriched.enrichment is not None
        assert diagnostic.enrichment is None
        assert _suggestions(enriched)[0].suggested_value == "DE123456789"

    def test_enrich_diagnostics_keeps_every_item(self, make_invoice, settings):
        diagnostics = [
            ValidationDiagnostic(field="general", message="x", severity=Severity.INFO),
            ValidationDiagnostic(field="invoice_number", message="y", severity=Severity.WARNING),
        ]
        enriched = enrich_diagnostics(diagnostics, make_invoice(), settings)
        assert len(enriched) == 2
        assert all(item.enrichment is not None for item in enriched)


class TestApplySuggestion:
    def test_value_less_suggestion_is_noop(self, make_invoice):
        record = make_invoice()
        suggestion = CorrectionSuggestion(kind=SuggestionKind.MANUAL, description="check", requires_user_input=True)
        assert apply_suggestion(record, "vendor.name", suggestion) is record

    def test_german_date_is_stored_canonical(self, make_invoice):
        suggestion = CorrectionSuggestion(kind=SuggestionKind.FORMAT, description="d", suggested_value="03.04.2024")
        fixed = apply_suggestion(make_invoice(), "date", suggestion)
        assert fixed.date == "2024-04-03"

    def test_unparseable_date_leaves_record(self, make_invoice):
        record = make_invoice()
        suggestion = CorrectionSuggestion(kind=SuggestionKind.FORMAT, description="d", suggested_value="31.02.2024")
        assert apply_suggestion(record, "date", suggestion) is record

    def test_unknown_field_leaves_record(self, make_invoice):
        record = make_invoice()
        suggestion = CorrectionSuggestion(kind=SuggestionKind.REPLACE, description="r", suggested_value="x")
        assert apply_suggestion(record, "vendor.iban", suggestion) is record

    def test_original_record_not_mutated(self, make_invoice):
        record = make_invoice()
        suggestion = CorrectionSuggestion(kind=SuggestionKind.CALCULATE, description="c", suggested_value="200,00")
        fixed = apply_suggestion(record, "totals.total", suggestion)
        assert fixed.totals.total == 200.0
        assert record.totals.total == 119.0
