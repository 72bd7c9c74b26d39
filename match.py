"""
match.py - Vendor identity matching against the party directory.

This module reconciles the vendor read from an invoice with the known
parties of the surrounding application. Four tiers are evaluated and merged:

    exact tax id           confidence 1.00
    exact company name     confidence 0.95 (legal form stripped)
    fuzzy                  weighted multi-field token similarity >= 0.70
    partial                name / address / city Levenshtein average >= 0.60

A party found by several tiers is kept once, with its highest confidence.
Outputs are ranked `VendorCandidate` objects; when nothing is strong enough
a `NewPartySuggestion` pre-fills a directory entry from the invoice.

The directory is normalized once into a pandas DataFrame (one row per party,
`norm_*` columns), so every comparison uses the SAME normalization on both
sides.
"""

from __future__ import annotations

from typing import Iterable, Optional

import pandas as pd

from config import Settings, get_settings
from logging_config import get_logger
from models import (
    MatchKind,
    MatchStatistics,
    NewPartySuggestion,
    Party,
    VendorCandidate,
    VendorIdentity,
)
from normalize import (
    extract_postal_city,
    normalize_address,
    normalize_company_name,
    normalize_learning_text,
    normalize_tax_id,
)
from similarity import similarity, token_similarity

logger = get_logger(__name__)

EXACT_TAX_ID_CONFIDENCE = 1.0
EXACT_NAME_CONFIDENCE = 0.95

NAME_MATCH_THRESHOLD = 0.8
# Company similarity above which 'company' is reported as a matched field.
# At 0.8: "acme" vs "acme" (1.0) = matched.
#         "muller bau" vs "mueller bau" (0.91) = matched.
#         "acme" vs "acne" (0.75) = NOT matched, though still scored.

ADDRESS_MATCH_THRESHOLD = 0.7
# Address similarity above which 'address' is reported as a matched field.
# Addresses are normalized first, so "Hauptstraße 5" and "Hauptstr. 5"
# compare as identical.

CITY_MATCH_THRESHOLD = 0.8

# Tier order used to break confidence ties.
TIER_ORDER = {MatchKind.EXACT: 0, MatchKind.FUZZY: 1, MatchKind.PARTIAL: 2}

DIRECTORY_COLUMNS = [
    "party_key",
    "norm_company",
    "norm_contact",
    "norm_address",
    "norm_street",
    "norm_city",
    "norm_tax_id",
]


def _party_key(party: Party) -> str:
    return party.id or f"{party.company}|{party.tax_id}"


def build_directory_frame(parties: Iterable[Party]) -> pd.DataFrame:
    """One row per party with the normalized comparison columns."""
    rows = [
        {
            "party_key": _party_key(party),
            "norm_company": normalize_company_name(party.company),
            "norm_contact": normalize_learning_text(party.contact_person),
            "norm_address": normalize_address(party.address),
            "norm_street": normalize_address(party.street),
            "norm_city": normalize_learning_text(party.city),
            "norm_tax_id": normalize_tax_id(party.tax_id),
        }
        for party in parties
    ]
    return pd.DataFrame(rows, columns=DIRECTORY_COLUMNS)


class VendorMatcher:
    """Matches vendor identities against one party directory."""

    def __init__(
        self,
        directory: Optional[Iterable[Party]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._parties: list[Party] = []
        self._frame = build_directory_frame([])
        self.update_directory(directory or [])

    @property
    def directory(self) -> list[Party]:
        return list(self._parties)

    def update_directory(self, directory: Iterable[Party]) -> None:
        """Replace the directory and rebuild the normalized index."""
        self._parties = [party for party in directory if party is not None]
        self._frame = build_directory_frame(self._parties)
        logger.info("directory_updated | parties=%d", len(self._parties))

    # -- Tiers --

    def _exact_tax_id(self, vendor: VendorIdentity) -> list[VendorCandidate]:
        tax_id = normalize_tax_id(vendor.tax_id)
        if not tax_id or self._frame.empty:
            return []
        hits = self._frame.index[self._frame["norm_tax_id"] == tax_id]
        return [
            VendorCandidate(
                party=self._parties[position],
                confidence=EXACT_TAX_ID_CONFIDENCE,
                match_kind=MatchKind.EXACT,
                matched_fields=["tax_id"],
            )
            for position in hits
        ]

    def _exact_name(self, vendor: VendorIdentity) -> list[VendorCandidate]:
        name = normalize_company_name(vendor.name)
        if not name or self._frame.empty:
            return []
        hits = self._frame.index[self._frame["norm_company"] == name]
        return [
            VendorCandidate(
                party=self._parties[position],
                confidence=EXACT_NAME_CONFIDENCE,
                match_kind=MatchKind.EXACT,
                matched_fields=["company"],
            )
            for position in hits
        ]

    def _fuzzy(self, vendor: VendorIdentity) -> list[VendorCandidate]:
        """Weighted token similarity of the vendor text against each party field.

        Only fields present on the party AND comparable with what the invoice
        carries take part: company and contact need a vendor name, address,
        street and city need a vendor address. The weighted sum is normalized
        by the weights that took part.
        """
        norm_name = normalize_company_name(vendor.name)
        norm_address = normalize_address(vendor.address)
        if not norm_name:
            return []
        query = " ".join(part for part in (norm_name, norm_address) if part)

        weights = self.settings.fuzzy_weights
        name_fields = {"company": "norm_company", "contact_person": "norm_contact"}
        address_fields = {"address": "norm_address", "street": "norm_street", "city": "norm_city"}
        active = dict(name_fields)
        if norm_address:
            active.update(address_fields)

        candidates: list[VendorCandidate] = []
        for position, row in self._frame.iterrows():
            weighted = 0.0
            total_weight = 0.0
            for field, column in active.items():
                target = row[column]
                if not target:
                    continue
                weight = weights.get(field, 0.0)
                weighted += token_similarity(query, target) * weight
                total_weight += weight
            if total_weight == 0:
                continue
            confidence = round(weighted / total_weight, 2)
            if confidence < self.settings.fuzzy_threshold:
                continue
            party = self._parties[position]
            candidates.append(
                VendorCandidate(
                    party=party,
                    confidence=min(confidence, 1.0),
                    match_kind=MatchKind.FUZZY,
                    matched_fields=self._matched_fields(vendor, row),
                )
            )
        return candidates

    def _partial(self, vendor: VendorIdentity) -> list[VendorCandidate]:
        """Independent name (0.5), address (0.3) and city (0.2) similarity."""
        weights = self.settings.partial_weights
        norm_name = normalize_company_name(vendor.name)
        norm_address = normalize_address(vendor.address)
        _, vendor_city = extract_postal_city(vendor.address)
        vendor_city = normalize_learning_text(vendor_city)

        candidates: list[VendorCandidate] = []
        for position, row in self._frame.iterrows():
            scores: list[tuple[float, float]] = []
            matched: list[str] = []

            if norm_name and row["norm_company"]:
                score = similarity(norm_name, row["norm_company"])
                scores.append((score, weights["name"]))
                if score > NAME_MATCH_THRESHOLD:
                    matched.append("company")

            if norm_address and row["norm_address"]:
                score = similarity(norm_address, row["norm_address"])
                scores.append((score, weights["address"]))
                if score > ADDRESS_MATCH_THRESHOLD:
                    matched.append("address")

            if vendor_city and row["norm_city"]:
                score = similarity(vendor_city, row["norm_city"])
                scores.append((score, weights["city"]))
                if score > CITY_MATCH_THRESHOLD:
                    matched.append("city")

            total_weight = sum(weight for _, weight in scores)
            if total_weight == 0:
                continue
            confidence = round(sum(score * weight for score, weight in scores) / total_weight, 2)
            if confidence >= self.settings.partial_threshold:
                candidates.append(
                    VendorCandidate(
                        party=self._parties[position],
                        confidence=confidence,
                        match_kind=MatchKind.PARTIAL,
                        matched_fields=matched,
                    )
                )
        return candidates

    @staticmethod
    def _matched_fields(vendor: VendorIdentity, row: pd.Series) -> list[str]:
        matched: list[str] = []
        norm_name = normalize_company_name(vendor.name)
        if norm_name and row["norm_company"]:
            if similarity(norm_name, row["norm_company"]) > NAME_MATCH_THRESHOLD:
                matched.append("company")
        norm_address = normalize_address(vendor.address)
        if norm_address and row["norm_address"]:
            if similarity(norm_address, row["norm_address"]) > ADDRESS_MATCH_THRESHOLD:
                matched.append("address")
        tax_id = normalize_tax_id(vendor.tax_id)
        if tax_id and tax_id == row["norm_tax_id"]:
            matched.append("tax_id")
        return matched

    # -- Public API --

    def find_all_matches(self, vendor: Optional[VendorIdentity]) -> list[VendorCandidate]:
        """Every candidate from every tier, one per party, best first."""
        if vendor is None:
            logger.warning("matching_input_warning | vendor_none=True | fallback=[]")
            return []
        if not (vendor.name or vendor.tax_id or vendor.address):
            logger.info("matching_skipped | reason=empty_vendor_identity")
            return []
        if not self._parties:
            logger.info("matching_skipped | reason=empty_directory")
            return []

        found = (
            self._exact_tax_id(vendor)
            + self._exact_name(vendor)
            + self._fuzzy(vendor)
            + self._partial(vendor)
        )

        best: dict[str, VendorCandidate] = {}
        for candidate in found:
            key = _party_key(candidate.party)
            kept = best.get(key)
            if kept is None or candidate.confidence > kept.confidence:
                best[key] = candidate

        ranked = sorted(
            best.values(),
            key=lambda item: (-item.confidence, TIER_ORDER[item.match_kind]),
        )

        logger.info(
            "matching_complete | parties=%d | raw_candidates=%d | unique=%d | top_confidence=%.2f | vendor=%r",
            len(self._parties),
            len(found),
            len(ranked),
            ranked[0].confidence if ranked else 0.0,
            vendor.name,
        )
        if ranked:
            top = ranked[0]
            logger.info(
                "matching_top | party=%r | confidence=%.2f | kind=%s | fields=%s",
                top.party.company,
                top.confidence,
                top.match_kind.value,
                ",".join(top.matched_fields),
            )
        return ranked

    def find_best_match(self, vendor: Optional[VendorIdentity]) -> Optional[VendorCandidate]:
        """Top candidate, or None when it is below the best-match threshold."""
        ranked = self.find_all_matches(vendor)
        if not ranked or ranked[0].confidence < self.settings.best_match_threshold:
            return None
        return ranked[0]

    def suggest_new_party(self, vendor: VendorIdentity) -> NewPartySuggestion:
        """Decide whether the reviewer should create a new directory party."""
        best = self.find_best_match(vendor)
        threshold = self.settings.new_party_threshold

        if best is not None and best.confidence >= threshold:
            return NewPartySuggestion(
                should_create=False,
                reason=f"Good match found: {best.party.company} ({round(best.confidence * 100)}%)",
            )

        postal_code, city = extract_postal_city(vendor.address)
        street = vendor.address.split(",")[0].strip() if "," in vendor.address else ""
        if best is None:
            reason = "No matching party found"
        else:
            reason = (
                f"Best match only {round(best.confidence * 100)}% "
                f"(threshold: {round(threshold * 100)}%)"
            )
        logger.info("new_party_suggested | vendor=%r | reason=%s", vendor.name, reason)
        return NewPartySuggestion(
            should_create=True,
            reason=reason,
            suggested_party=Party(
                company=vendor.name,
                tax_id=vendor.tax_id,
                address=vendor.address,
                street=street,
                postal_code=postal_code,
                city=city,
            ),
        )

    def statistics(self, vendor: VendorIdentity) -> MatchStatistics:
        ranked = self.find_all_matches(vendor)
        return MatchStatistics(
            total_parties=len(self._parties),
            exact_matches=sum(1 for item in ranked if item.match_kind == MatchKind.EXACT),
            fuzzy_matches=sum(1 for item in ranked if item.match_kind == MatchKind.FUZZY),
            partial_matches=sum(1 for item in ranked if item.match_kind == MatchKind.PARTIAL),
            best_match_confidence=ranked[0].confidence if ranked else 0.0,
        )


def find_all_matches(
    vendor: VendorIdentity,
    directory: Iterable[Party],
    settings: Optional[Settings] = None,
) -> list[VendorCandidate]:
    return VendorMatcher(directory, settings).find_all_matches(vendor)


def find_best_match(
    vendor: VendorIdentity,
    directory: Iterable[Party],
    settings: Optional[Settings] = None,
) -> Optional[VendorCandidate]:
    return VendorMatcher(directory, settings).find_best_match(vendor)


def suggest_new_party(
    vendor: VendorIdentity,
    directory: Iterable[Party],
    settings: Optional[Settings] = None,
) -> NewPartySuggestion:
    return VendorMatcher(directory, settings).suggest_new_party(vendor)
