"""Shared pytest fixtures for the invoice review tests.

Provides:
- default settings (never read from the environment)
- a validation context pinned to 2024-03-15
- a sample German invoice text and a small party directory
- factories for invoices and parties

Usage:
    def test_something(make_invoice, context):
        record = make_invoice(invoice_number="RE-1234")
"""

from __future__ import annotations

import logging
from datetime import date

import pytest

from config import Settings
from learn import AdaptiveCorrectionEngine
from models import (
    ExtractedInvoice,
    Party,
    Totals,
    ValidationContext,
    VendorIdentity,
)
from observation_store import InMemoryObservationStore

TODAY = date(2024, 3, 15)

SAMPLE_INVOICE_TEXT = """Acme GmbH
Hauptstraße 5
10115 Berlin
USt-IdNr.: DE123456789

Rechnung an:
Beispiel AG
Musterweg 12
80331 München

Rechnung RE-2024-001
Datum: 01.03.2024

Gesamtbetrag: 119,00 €
"""


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Undo handler changes made by setup_logging (CLI tests)."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def context() -> ValidationContext:
    return ValidationContext(current_date=TODAY)


@pytest.fixture
def sample_text() -> str:
    return SAMPLE_INVOICE_TEXT


@pytest.fixture
def make_invoice():
    """Factory for a valid invoice; keyword arguments override fields."""

    def _make(**overrides) -> ExtractedInvoice:
        data = {
            "invoice_number": "RE-2024-001",
            "date": "2024-03-01",
            "due_date": "",
            "vendor": VendorIdentity(
                name="Acme GmbH",
                address="Hauptstraße 5, 10115 Berlin",
                tax_id="DE123456789",
            ),
            "totals": Totals(subtotal=100.0, tax_amount=19.0, total=119.0),
            "confidence": 0.85,
        }
        data.update(overrides)
        return ExtractedInvoice(**data)

    return _make


@pytest.fixture
def make_party():
    def _make(**fields) -> Party:
        return Party(**fields)

    return _make


@pytest.fixture
def directory() -> list[Party]:
    return [
        Party(
            id="p-1",
            company="Acme GmbH",
            address="Hauptstr. 5, 10115 Berlin",
            street="Hauptstr. 5",
            postal_code="10115",
            city="Berlin",
            tax_id="DE123456789",
        ),
        Party(
            id="p-2",
            company="Beta Handel AG",
            address="Ringweg 3, 20095 Hamburg",
            street="Ringweg 3",
            postal_code="20095",
            city="Hamburg",
            tax_id="DE987654321",
        ),
        Party(
            id="p-3",
            company="Acme Logistik GmbH",
            address="Industriestraße 10, 04109 Leipzig",
            street="Industriestraße 10",
            postal_code="04109",
            city="Leipzig",
            tax_id="DE111111111",
        ),
    ]


@pytest.fixture
def engine(settings) -> AdaptiveCorrectionEngine:
    return AdaptiveCorrectionEngine(InMemoryObservationStore(), settings)
