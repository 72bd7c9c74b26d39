"""
test_rules.py - Validation rule engine tests

Covers:
- each default business rule (pass and fail)
- deterministic registration order
- isolation of a rule that raises
- rule registry management and per-field validation

Usage: pytest test_rules.py
"""

from __future__ import annotations

from datetime import date

import pytest

from config import Settings
from models import (
    ExistingInvoice,
    LineItem,
    RuleCategory,
    RuleResult,
    Severity,
    Totals,
    ValidationContext,
    VendorIdentity,
)
from rules import BusinessRule, RuleEngine, default_rules, validate_invoice


def _ids(diagnostics):
    return [item.rule_id for item in diagnostics]


@pytest.fixture
def rule_engine(settings) -> RuleEngine:
    return RuleEngine(settings=settings)


class TestValidInvoice:
    def test_no_diagnostics(self, rule_engine, make_invoice, context):
        assert rule_engine.validate(make_invoice(), context) == []

    def test_statistics(self, rule_engine, make_invoice, context):
        stats = rule_engine.statistics(make_invoice(), context)
        assert stats.total_rules == len(default_rules())
        assert stats.passed_rules == stats.total_rules
        assert stats.error_count == 0

    def test_module_level_helper(self, make_invoice, context, settings):
        assert validate_invoice(make_invoice(), context, settings=settings) == []


class TestInvoiceNumber:
    def test_missing(self, rule_engine, make_invoice, context):
        diagnostics = rule_engine.validate(make_invoice(invoice_number=""), context)
        assert _ids(diagnostics) == ["invoice_number_format"]
        assert diagnostics[0].severity == Severity.WARNING

    @pytest.mark.parametrize("number", ["123", "Rechnung"])
    def test_unusual_format(self, rule_engine, make_invoice, context, number):
        diagnostics = rule_engine.validate(make_invoice(invoice_number=number), context)
        assert _ids(diagnostics) == ["invoice_number_format"]

    @pytest.mark.parametrize("number", ["RE-2024-001", "INV/12345", "2024001"])
    def test_accepted_formats(self, rule_engine, make_invoice, context, number):
        assert rule_engine.validate(make_invoice(invoice_number=number), context) == []


class TestVendorTaxId:
    def test_valid_tax_id_has_no_diagnostic(self, rule_engine, make_invoice, context):
        diagnostics = rule_engine.validate_field("vendor.tax_id", make_invoice(), context)
        assert diagnostics == []

    def test_missing_country_prefix(self, rule_engine, make_invoice, context):
        vendor = VendorIdentity(name="Acme GmbH", address="Hauptstraße 5, 10115 Berlin", tax_id="123456789")
        diagnostics = rule_engine.validate(make_invoice(vendor=vendor), context)
        assert _ids(diagnostics) == ["vendor_tax_id"]
        assert diagnostics[0].field == "vendor.tax_id"
        assert diagnostics[0].is_error

    def test_missing_also_flags_completeness(self, rule_engine, make_invoice, context):
        vendor = VendorIdentity(name="Acme GmbH", address="Hauptstraße 5, 10115 Berlin")
        diagnostics = rule_engine.validate(make_invoice(vendor=vendor), context)
        assert _ids(diagnostics) == ["vendor_tax_id", "vendor_completeness"]
        assert diagnostics[1].metadata["missing"] == ["VAT id"]


class TestVatCalculation:
    def test_inconsistent_tax(self, rule_engine, make_invoice, context):
        record = make_invoice(totals=Totals(subtotal=100.0, tax_amount=10.0, total=120.0))
        diagnostics = rule_engine.validate(record, context)

        assert _ids(diagnostics) == ["vat_calculation"]
        diagnostic = diagnostics[0]
        assert diagnostic.field == "totals.tax_amount"
        assert diagnostic.metadata["expected_tax_19"] == pytest.approx(19.0)
        assert diagnostic.metadata["expected_tax_7"] == pytest.approx(7.0)

    def test_reduced_rate_accepted(self, rule_engine, make_invoice, context):
        record = make_invoice(totals=Totals(subtotal=100.0, tax_amount=7.0, total=107.0))
        assert rule_engine.validate(record, context) == []

    def test_sum_matching_is_enough(self, rule_engine, make_invoice, context):
        record = make_invoice(totals=Totals(subtotal=100.0, tax_amount=10.0, total=110.0))
        assert rule_engine.validate(record, context) == []

    def test_tolerance(self, rule_engine, make_invoice, context):
        record = make_invoice(totals=Totals(subtotal=100.0, tax_amount=19.02, total=119.02))
        assert rule_engine.validate(record, context) == []

    def test_zero_amounts(self, rule_engine, make_invoice, context):
        diagnostics = rule_engine.validate(make_invoice(totals=Totals()), context)
        assert _ids(diagnostics) == ["vat_calculation", "minimum_amount"]
        assert diagnostics[0].field == "totals"
        assert all(item.is_error for item in diagnostics)

    def test_configured_rates(self, make_invoice, context):
        engine = RuleEngine(settings=Settings(accepted_vat_rates=(0.2,)))
        record = make_invoice(totals=Totals(subtotal=100.0, tax_amount=19.0, total=125.0))
        diagnostics = engine.validate(record, context)
        assert diagnostics[0].metadata == {"expected_tax_20": 20.0}


class TestDates:
    def test_future_date(self, rule_engine, make_invoice, context):
        diagnostics = rule_engine.validate(make_invoice(date="2024-04-01"), context)
        assert _ids(diagnostics) == ["invoice_date"]
        assert diagnostics[0].severity == Severity.WARNING

    def test_too_old(self, rule_engine, make_invoice, context):
        diagnostics = rule_engine.validate(make_invoice(date="2021-01-01"), context)
        assert _ids(diagnostics) == ["invoice_date"]

    def test_missing_date(self, rule_engine, make_invoice, context):
        assert _ids(rule_engine.validate(make_invoice(date=""), context)) == ["invoice_date"]

    def test_due_date_before_invoice_date(self, rule_engine, make_invoice, context):
        diagnostics = rule_engine.validate(make_invoice(due_date="2024-02-20"), context)
        assert _ids(diagnostics) == ["due_date"]

    def test_due_date_same_day(self, rule_engine, make_invoice, context):
        assert _ids(rule_engine.validate(make_invoice(due_date="2024-03-01"), context)) == ["due_date"]

    def test_long_payment_term(self, rule_engine, make_invoice, context):
        diagnostics = rule_engine.validate(make_invoice(due_date="2024-07-01"), context)
        assert _ids(diagnostics) == ["due_date"]
        assert diagnostics[0].metadata["days"] == 122

    def test_normal_payment_term(self, rule_engine, make_invoice, context):
        assert rule_engine.validate(make_invoice(due_date="2024-03-31"), context) == []


class TestBusinessRules:
    def test_duplicate_invoice(self, rule_engine, make_invoice):
        context = ValidationContext(
            current_date=date(2024, 3, 15),
            existing_invoices=[ExistingInvoice(id="inv-7", number="RE-2024-001")],
        )
        diagnostics = rule_engine.validate(make_invoice(), context)
        assert _ids(diagnostics) == ["duplicate_invoice"]
        assert diagnostics[0].metadata["duplicate_id"] == "inv-7"

    def test_high_amount(self, rule_engine, make_invoice, context):
        record = make_invoice(totals=Totals(subtotal=126050.42, tax_amount=23949.58, total=150000.0))
        diagnostics = rule_engine.validate(record, context)
        assert _ids(diagnostics) == ["amount_plausibility"]
        assert diagnostics[0].severity == Severity.INFO

    def test_vendor_completeness_lists_missing(self, rule_engine, make_invoice, context):
        vendor = VendorIdentity(name="Acme GmbH", address="Berlin", tax_id="DE123456789")
        diagnostics = rule_engine.validate(make_invoice(vendor=vendor), context)
        assert _ids(diagnostics) == ["vendor_completeness"]
        assert diagnostics[0].metadata["missing"] == ["complete address"]

    def test_line_item_arithmetic(self, rule_engine, make_invoice, context):
        items = [
            LineItem(description="Beratung", quantity=2, unit_price=50.0, total=100.0),
            LineItem(description="Reise", quantity=1, unit_price=30.0, total=35.0),
        ]
        diagnostics = rule_engine.validate(make_invoice(items=items), context)
        assert _ids(diagnostics) == ["line_item_arithmetic"]
        assert diagnostics[0].metadata["positions"] == [2]


class TestEngine:
    def test_registration_order_is_preserved(self, rule_engine, make_invoice, context):
        record = make_invoice(
            invoice_number="",
            vendor=VendorIdentity(),
            totals=Totals(),
            date="",
        )
        assert _ids(rule_engine.validate(record, context)) == [
            "invoice_number_format",
            "vendor_tax_id",
            "vat_calculation",
            "invoice_date",
            "minimum_amount",
            "vendor_completeness",
        ]

    def test_raising_rule_is_skipped(self, rule_engine, make_invoice, context):
        def explode(record, ctx, settings):
            raise RuntimeError("boom")

        rule_engine.add_rule(
            BusinessRule(
                id="explode",
                name="Exploding rule",
                category=RuleCategory.BUSINESS,
                severity=Severity.ERROR,
                check=explode,
            )
        )
        record = make_invoice(invoice_number="")
        assert _ids(rule_engine.validate(record, context)) == ["invoice_number_format"]

    def test_custom_rule_runs_last(self, rule_engine, make_invoice, context):
        rule_engine.add_rule(
            BusinessRule(
                id="always",
                name="Always fails",
                category=RuleCategory.FORMAT,
                severity=Severity.INFO,
                check=lambda record, ctx, settings: RuleResult(is_valid=False, message="nope"),
            )
        )
        diagnostics = rule_engine.validate(make_invoice(invoice_number=""), context)
        assert _ids(diagnostics) == ["invoice_number_format", "always"]
        assert diagnostics[-1].field == "general"

    def test_duplicate_rule_id_rejected(self, rule_engine):
        with pytest.raises(ValueError):
            rule_engine.add_rule(default_rules()[0])

    def test_remove_rule(self, rule_engine, make_invoice, context):
        assert rule_engine.remove_rule("invoice_number_format") is True
        assert rule_engine.remove_rule("invoice_number_format") is False
        assert rule_engine.validate(make_invoice(invoice_number=""), context) == []

    def test_rules_by_category(self, rule_engine):
        legal = rule_engine.rules_by_category(RuleCategory.LEGAL)
        assert [rule.id for rule in legal] == ["invoice_number_format", "vendor_tax_id"]

    def test_validate_field_runs_only_related_rules(self, rule_engine, make_invoice, context):
        record = make_invoice(invoice_number="", vendor=VendorIdentity(name="Acme GmbH"))
        diagnostics = rule_engine.validate_field("vendor.tax_id", record, context)
        assert _ids(diagnostics) == ["vendor_tax_id", "vendor_completeness"]
