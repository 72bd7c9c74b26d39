"""
test_hardening.py - Hardening regression tests

Regression suite for:
- defensive handling of None / empty / malformed input
- fault isolation (raising rules, enrichment, verification, strategies)
- settings overrides from the environment
- structured logging sanity

Usage: pytest test_hardening.py
"""

from __future__ import annotations

import json
import logging
import math

import pytest

import diagnose
import rules
from config import Settings
from diagnose import enrich_diagnostic, enrich_diagnostics
from learn import AdaptiveCorrectionEngine
from logging_config import JsonLineFormatter, graceful, setup_logging
from match import VendorMatcher
from models import (
    Party,
    RuleCategory,
    RuleResult,
    Severity,
    ValidationDiagnostic,
    VendorIdentity,
)
from normalize import normalize_company_name, parse_german_number
from observation_store import JsonObservationStore
from rules import BusinessRule, RuleEngine


def _tax_id_diagnostic() -> ValidationDiagnostic:
    return ValidationDiagnostic(
        field="vendor.tax_id",
        message="Invalid German VAT id: 123456789",
        severity=Severity.ERROR,
        rule_id="vendor_tax_id",
    )


class TestDefensiveInput:
    def test_validate_without_context(self, make_invoice):
        diagnostics = RuleEngine(settings=Settings()).validate(make_invoice(), None)
        assert isinstance(diagnostics, list)

    def test_normalizers_tolerate_none(self):
        assert normalize_company_name(None) == ""
        assert parse_german_number(float("inf")) == 0.0

    def test_directory_with_blank_parties(self, settings):
        matcher = VendorMatcher([Party(), Party(id="p-1", company="Acme GmbH")], settings)
        top = matcher.find_best_match(VendorIdentity(name="Acme GmbH"))
        assert top.party.id == "p-1"

    def test_non_finite_metadata_dropped(self, make_invoice, context):
        engine = RuleEngine(rules=[], settings=Settings())
        engine.add_rule(
            BusinessRule(
                id="nan",
                name="NaN metadata",
                category=RuleCategory.BUSINESS,
                severity=Severity.INFO,
                check=lambda record, ctx, settings: RuleResult(
                    is_valid=False, message="odd", metadata={"ratio": math.nan, "count": 2}
                ),
            )
        )
        diagnostics = engine.validate(make_invoice(), context)
        assert diagnostics[0].metadata == {"count": 2}


class TestFaultIsolation:
    def test_failing_enrichment_keeps_raw_diagnostic(self, make_invoice, context, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("enrichment down")

        monkeypatch.setattr(rules, "enrich_diagnostic", broken)
        record = make_invoice(vendor=VendorIdentity(name="Acme GmbH", address="Hauptstraße 5, 10115 Berlin", tax_id="123"))
        diagnostics = RuleEngine(settings=Settings()).validate(record, context, enrich=True)

        assert [item.rule_id for item in diagnostics] == ["vendor_tax_id"]
        assert diagnostics[0].enrichment is None

    def test_enrich_diagnostics_keeps_failed_items(self, make_invoice, settings, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("enrichment down")

        monkeypatch.setattr(diagnose, "enrich_diagnostic", broken)
        enriched = enrich_diagnostics([_tax_id_diagnostic()], make_invoice(), settings)
        assert enriched == [_tax_id_diagnostic()]

    def test_raising_verifier_requires_confirmation(self, make_invoice, settings):
        def verify(record):
            raise RuntimeError("rule crashed")

        record = make_invoice(vendor=VendorIdentity(name="Acme GmbH", tax_id="123456789"))
        enriched = enrich_diagnostic(_tax_id_diagnostic(), record, settings, verify=verify)

        first = enriched.enrichment.correction_suggestions[0]
        assert first.suggested_value == "DE123456789"
        assert first.requires_user_input
        assert not enriched.auto_fix_available

    def test_corrupt_observation_file(self, tmp_path, settings):
        path = tmp_path / "observations.json"
        path.write_text("[[[", encoding="utf-8")
        engine = AdaptiveCorrectionEngine(JsonObservationStore(path), settings)

        assert engine.statistics().total_observations == 0
        engine.record_correction("123456789", "DE123456789", "vendor.tax_id")
        assert json.loads(path.read_text(encoding="utf-8"))["observations"][0]["expected_output"] == "DE123456789"
        kept = list(tmp_path.glob("observations.json.corrupt-*"))
        assert [item.read_text(encoding="utf-8") for item in kept] == ["[[["]

    def test_graceful_decorator(self):
        @graceful(lambda: "fallback")
        def explode():
            raise ValueError("boom")

        assert explode() == "fallback"

    def test_graceful_never_swallows_interrupts(self):
        @graceful(lambda: "fallback")
        def interrupt():
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            interrupt()


class TestSettings:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("INVOICE_RETRAIN_INTERVAL", "7")
        monkeypatch.setenv("INVOICE_ACCEPTED_VAT_RATES", "0.19, 0.07, 0.0")
        settings = Settings.from_env()
        assert settings.retrain_interval == 7
        assert settings.accepted_vat_rates == (0.19, 0.07, 0.0)

    def test_invalid_override_falls_back(self, monkeypatch):
        monkeypatch.setenv("INVOICE_FUZZY_THRESHOLD", "2.5")
        assert Settings.from_env().fuzzy_threshold == 0.7

    def test_invalid_override_keeps_valid_ones(self, monkeypatch, caplog):
        monkeypatch.setenv("INVOICE_FUZZY_THRESHOLD", "2.5")
        monkeypatch.setenv("INVOICE_RETRAIN_INTERVAL", "7")
        with caplog.at_level(logging.WARNING, logger="config"):
            settings = Settings.from_env()

        assert settings.fuzzy_threshold == 0.7
        assert settings.retrain_interval == 7
        assert "settings_invalid_override | key=INVOICE_FUZZY_THRESHOLD" in caplog.text
        assert "INVOICE_RETRAIN_INTERVAL" not in caplog.text

    def test_empty_vat_rates_rejected(self):
        with pytest.raises(ValueError):
            Settings(accepted_vat_rates=())


class TestLogging:
    def test_json_line_formatter(self):
        record = logging.LogRecord(
            name="match",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg='matching_top | party=%r | confidence=%.2f',
            args=('Acme "Berlin" GmbH', 0.95),
            exc_info=None,
        )
        payload = json.loads(JsonLineFormatter().format(record))
        assert payload["level"] == "INFO"
        assert payload["module"] == "match"
        assert payload["message"] == "matching_top | party='Acme \"Berlin\" GmbH' | confidence=0.95"

    def test_setup_logging_writes_to_stderr(self, capsys):
        setup_logging(level=logging.INFO)
        logging.getLogger("hardening").info("stderr_check | key=%s", "value")

        captured = capsys.readouterr()
        assert "stderr_check | key=value" in captured.err
        assert captured.out == ""
