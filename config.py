"""
config.py - Pipeline tunables.

All thresholds, weights and rates that the pipeline uses live here with
their default values. Overrides come from environment variables (or a local
.env file loaded through python-dotenv), prefixed with INVOICE_:

    INVOICE_DEFAULT_VAT_RATE=0.19
    INVOICE_RETRAIN_INTERVAL=5
    INVOICE_OBSERVATIONS_PATH=data/observations.json

Modules take an optional `settings` argument and fall back to
`get_settings()`, so tests can pass a customised instance without touching
the environment.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from logging_config import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "INVOICE_"


class Settings(BaseModel):
    """Every tunable constant of the pipeline."""

    # -- Tax and arithmetic --
    default_vat_rate: float = Field(
        default=0.19,
        ge=0.0,
        lt=1.0,
        description="Rate used to back-fill subtotal/tax when only the gross total is known.",
    )
    accepted_vat_rates: tuple[float, ...] = Field(
        default=(0.19, 0.07),
        description="Rates the VAT arithmetic rule accepts (German standard and reduced).",
    )
    amount_tolerance: float = Field(default=0.02, ge=0.0)
    minimum_amount: float = Field(default=0.01, ge=0.0)
    high_amount_threshold: float = Field(default=100_000.0, gt=0.0)

    # -- Dates --
    max_invoice_age_years: int = Field(default=2, ge=0)
    max_payment_term_days: int = Field(default=90, ge=1)
    standard_payment_term_days: int = Field(
        default=30,
        ge=1,
        description="Due date offered when a reviewer has to repair a broken due date.",
    )

    # -- Vendor matching --
    best_match_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    fuzzy_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    partial_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    new_party_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fuzzy_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "company": 0.4,
            "contact_person": 0.2,
            "address": 0.2,
            "street": 0.1,
            "city": 0.1,
        }
    )
    partial_weights: dict[str, float] = Field(
        default_factory=lambda: {"name": 0.5, "address": 0.3, "city": 0.2}
    )

    # -- Adaptive correction engine --
    retrain_interval: int = Field(default=5, ge=1)
    min_observations: int = Field(default=3, ge=1)
    ensemble_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "frequency": 0.4,
            "classifier": 0.3,
            "nearest_neighbor": 0.3,
        }
    )
    learned_correction_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    # Extracted text must be at least this similar to a corrected input text
    # before a learned correction is applied to it.
    learned_similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    observations_path: Optional[str] = Field(
        default=None,
        description="JSON file for the observation log. None keeps observations in memory.",
    )

    @field_validator("accepted_vat_rates")
    @classmethod
    def _rates_in_range(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        if not value:
            raise ValueError("accepted_vat_rates must not be empty")
        for rate in value:
            if not 0.0 <= rate < 1.0:
                raise ValueError(f"VAT rate out of range: {rate}")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from INVOICE_* environment variables.

        Each override is validated on its own; an invalid one is logged and
        its default kept, the valid ones still apply.
        """
        try:
            load_dotenv()
        except UnicodeDecodeError:
            # Fallback for legacy Windows-encoded .env files.
            load_dotenv(encoding="cp1252")

        overrides: dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None or not raw.strip():
                continue
            if name == "accepted_vat_rates":
                overrides[name] = tuple(part.strip() for part in raw.split(",") if part.strip())
            elif field.default_factory is not None:
                logger.warning(
                    "settings_override_ignored | key=%s | reason=structured_value",
                    name,
                )
            else:
                overrides[name] = raw.strip()

        valid: dict[str, object] = {}
        for name, value in overrides.items():
            try:
                cls.model_validate({name: value})
            except ValidationError as exc:
                logger.warning(
                    "settings_invalid_override | key=%s | value=%r | error=%s | fallback=default",
                    ENV_PREFIX + name.upper(),
                    value,
                    exc.errors()[0]["msg"],
                )
                continue
            valid[name] = value

        settings = cls.model_validate(valid)
        if valid:
            logger.info("settings_loaded | overrides=%s", sorted(valid))
        return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once from the environment."""
    return Settings.from_env()
