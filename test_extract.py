"""
test_extract.py - Field extractor tests

Covers:
- the end-to-end German invoice scenario
- first-plausible-match ordering of header patterns
- totals reconciliation (all four cases)
- line item detection
- confidence scoring and invalid input

Usage: pytest test_extract.py
"""

from __future__ import annotations

import logging

import pytest

from config import Settings
from extract import (
    MAX_CONFIDENCE,
    InvalidInputError,
    calculate_confidence,
    extract_customer,
    extract_invoice,
    extract_line_items,
    missing_required_fields,
    reconcile_totals,
)
from models import ExtractedInvoice, LineItem, Totals, VendorIdentity
from rules import RuleEngine


class TestSampleInvoice:
    def test_header_fields(self, sample_text, settings):
        invoice = extract_invoice(sample_text, settings)

        assert invoice.invoice_number == "RE-2024-001"
        assert invoice.date == "2024-03-01"
        assert "Acme GmbH" in invoice.vendor.name
        assert invoice.vendor.tax_id == "DE123456789"
        assert invoice.vendor.address == "Hauptstraße 5, 10115 Berlin"

    def test_totals_backfilled_from_gross(self, sample_text, settings):
        invoice = extract_invoice(sample_text, settings)

        assert invoice.totals.total == pytest.approx(119.0)
        assert invoice.totals.subtotal == pytest.approx(100.0)
        assert invoice.totals.tax_amount == pytest.approx(19.0)

    def test_customer_block_is_not_the_vendor(self, sample_text, settings):
        invoice = extract_invoice(sample_text, settings)

        assert invoice.customer.name == "Beispiel AG"
        assert invoice.customer.address == "Musterweg 12, 80331 München"
        assert invoice.vendor.name != "Beispiel AG"

    def test_confidence(self, sample_text, settings):
        invoice = extract_invoice(sample_text, settings)
        # Everything except line items: 20 + 15 + 15 + 25 + 10.
        assert invoice.confidence == pytest.approx(0.85)

    def test_raw_text_kept(self, sample_text, settings):
        assert extract_invoice(sample_text, settings).raw_text == sample_text


class TestInvalidInput:
    @pytest.mark.parametrize("raw", [None, "", "   \n  "])
    def test_raises(self, raw):
        with pytest.raises(InvalidInputError):
            extract_invoice(raw)

    def test_non_string_raises(self):
        with pytest.raises(InvalidInputError):
            extract_invoice(b"Rechnung")

    def test_text_without_fields_is_not_an_error(self, settings):
        invoice = extract_invoice("Vielen Dank für Ihren Einkauf", settings)

        assert invoice.invoice_number == ""
        assert invoice.totals.total == 0.0
        assert invoice.confidence == 0.0


class TestHeaderPatterns:
    def test_labelled_number_wins_over_bare(self, settings):
        text = "Rechnungsnummer: 2024-0815\nReferenz RG-9999\nGesamt: 10,00"
        assert extract_invoice(text, settings).invoice_number == "2024-0815"

    def test_bare_number_fallback(self, settings):
        text = "Acme GmbH\nRE-2024-777\nGesamt: 10,00"
        assert extract_invoice(text, settings).invoice_number == "RE-2024-777"

    def test_tax_id_with_spaces(self, settings):
        text = "Acme GmbH\nUSt-IdNr.: DE 123 456 789\nGesamt: 10,00"
        assert extract_invoice(text, settings).vendor.tax_id == "DE123456789"

    def test_two_digit_year(self, settings):
        text = "Rechnung RE-1234\nDatum: 03.04.24\nGesamt: 10,00"
        assert extract_invoice(text, settings).date == "2024-04-03"

    def test_due_date(self, settings):
        text = "Rechnung RE-1234\nDatum: 01.03.2024\nFällig am: 31.03.2024"
        invoice = extract_invoice(text, settings)
        assert invoice.date == "2024-03-01"
        assert invoice.due_date == "2024-03-31"

    def test_thousands_separator_total(self, settings):
        text = "Rechnung RE-1234\nGesamtbetrag: 1.234,56 €"
        assert extract_invoice(text, settings).totals.total == pytest.approx(1234.56)

    def test_explicit_net_and_vat(self, settings):
        text = "Rechnung RE-1234\nNetto: 200,00 €\nMwSt 19%: 38,00 €\nGesamtbetrag: 238,00 €"
        totals = extract_invoice(text, settings).totals
        assert totals.subtotal == pytest.approx(200.0)
        assert totals.tax_amount == pytest.approx(38.0)
        assert totals.total == pytest.approx(238.0)

    def test_customer_block_absent(self):
        customer, span = extract_customer("Acme GmbH\nGesamt: 10,00")
        assert customer.name == ""
        assert span is None


class TestReconcileTotals:
    def test_only_gross(self):
        totals = reconcile_totals(0.0, 0.0, 119.0, default_rate=0.19)
        assert totals.subtotal == pytest.approx(100.0)
        assert totals.tax_amount == pytest.approx(19.0)
        assert totals.total == 119.0

    def test_gross_and_net(self):
        totals = reconcile_totals(100.0, 0.0, 107.0)
        assert totals.tax_amount == pytest.approx(7.0)

    def test_net_and_tax(self):
        totals = reconcile_totals(100.005, 19.001, 0.0)
        assert totals.total == round(100.005 + 19.001, 2)

    def test_all_present_kept(self):
        totals = reconcile_totals(100.0, 10.0, 120.0)
        assert (totals.subtotal, totals.tax_amount, totals.total) == (100.0, 10.0, 120.0)

    def test_negative_values_clamped(self):
        totals = reconcile_totals(-5.0, 0.0, 0.0)
        assert (totals.subtotal, totals.tax_amount, totals.total) == (0.0, 0.0, 0.0)

    def test_derived_values_rounded(self):
        totals = reconcile_totals(0.0, 0.0, 100.0, default_rate=0.19)
        assert totals.subtotal == 84.03
        assert totals.tax_amount == 15.97

    def test_net_above_gross_is_reported(self, caplog, make_invoice, context):
        with caplog.at_level(logging.WARNING, logger="extract"):
            totals = reconcile_totals(120.0, 0.0, 100.0)

        assert (totals.subtotal, totals.tax_amount, totals.total) == (120.0, 0.0, 100.0)
        assert "net_exceeds_gross" in caplog.text
        diagnostics = RuleEngine(settings=Settings()).validate(make_invoice(totals=totals), context)
        assert "vat_calculation" in [item.rule_id for item in diagnostics]


class TestLineItems:
    def test_quantity_and_amounts(self):
        items = extract_line_items("2 Stk Beratung 50,00 100,00", default_tax_rate=19.0)

        assert len(items) == 1
        item = items[0]
        assert item.description == "Beratung"
        assert item.quantity == 2.0
        assert item.unit_price == pytest.approx(50.0)
        assert item.total == pytest.approx(100.0)
        assert item.tax_rate == pytest.approx(19.0)
        assert item.is_consistent

    def test_percent_token_sets_tax_rate(self):
        items = extract_line_items("Fachbuch 7% 20,00 20,00")
        assert items[0].tax_rate == pytest.approx(7.0)
        assert items[0].quantity == 1.0

    def test_header_and_total_lines_skipped(self):
        text = (
            "Pos Beschreibung Menge Einzelpreis Gesamt\n"
            "Wartung Heizung 80,00 80,00\n"
            "Summe netto 80,00 80,00\n"
        )
        items = extract_line_items(text)
        assert [item.description for item in items] == ["Wartung Heizung"]

    def test_single_amount_is_not_a_line_item(self):
        assert extract_line_items("Versand 4,90") == []


class TestConfidence:
    def test_capped_below_certainty(self):
        invoice = ExtractedInvoice(
            invoice_number="RE-1",
            date="2024-03-01",
            vendor=VendorIdentity(name="Acme GmbH", tax_id="DE123456789"),
            items=[LineItem(description="Beratung", unit_price=100.0, total=100.0)],
            totals=Totals(subtotal=100.0, tax_amount=19.0, total=119.0),
        )
        assert calculate_confidence(invoice) == MAX_CONFIDENCE

    def test_empty_invoice(self):
        assert calculate_confidence(ExtractedInvoice()) == 0.0

    def test_missing_required_fields(self, sample_text, settings):
        assert missing_required_fields(extract_invoice(sample_text, settings)) == []
        assert missing_required_fields(ExtractedInvoice()) == [
            "invoice_number",
            "date",
            "totals.total",
            "vendor.name",
        ]
