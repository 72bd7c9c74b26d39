"""
learn.py - Adaptive correction engine.

Every human correction made during review is recorded as a
LearningObservation (normalized raw text -> corrected value, per field type).
For new raw text the engine predicts a corrected value with an ensemble of
three strategies:

    frequency          corrected values seen most often, scored by similarity
    classifier         Gaussian naive Bayes over 11 hand-made text features
    nearest_neighbor   inverse-distance vote of the k closest observations

State:
  - the observation log lives in an injected ObservationStore (append-only)
  - per field type, derived models are rebuilt from that log: a frequency
    table and a feature index (updated on every observation) and the
    classifier (refit on retrain, every RETRAIN_INTERVAL observations)

Writes are serialized with a lock. Reads work on an immutable snapshot of
the derived models, which writers replace as a whole.

Failure policy: a strategy that raises contributes an empty, zero-confidence
prediction; the ensemble carries on with the rest.
"""

from __future__ import annotations

import math
import re
import threading
from types import MappingProxyType
from typing import Mapping, NamedTuple, Optional

import numpy as np

from config import Settings, get_settings
from diagnose import coerce_field_value
from logging_config import get_logger, graceful
from models import (
    AMOUNT_FIELDS,
    DATE_FIELDS,
    FIELD_REFERENCES,
    ExtractedInvoice,
    LearningObservation,
    LearningStatistics,
    Prediction,
    PredictionSource,
)
from normalize import format_german_number, normalize_learning_text
from observation_store import InMemoryObservationStore, ObservationStore
from similarity import similarity

logger = get_logger(__name__)

FREQUENCY_CAP = 0.9
CLASSIFIER_CAP = 0.7
ENSEMBLE_CAP = 0.9

CLASSIFIER_MIN_OBSERVATIONS = 5
# The classifier only votes once a field type has this many observations.
# Its confidence grows with the training set: n / CLASSIFIER_SATURATION,
# capped at CLASSIFIER_CAP (reached at 14 observations).
CLASSIFIER_SATURATION = 20.0

MAX_NEIGHBORS = 3
NEIGHBOR_DISTANCE_OFFSET = 0.1

MIN_VOTE_CONFIDENCE = 0.1
# Strategy predictions at or below this confidence do not vote.

DOCUMENT_SPECIFIC_FIELDS = frozenset({"invoice_number"}) | DATE_FIELDS | AMOUNT_FIELDS
# Values unique to one document. A learned correction for these is only
# applied when the extracted text matches a corrected text exactly.

_PUNCTUATION = re.compile(r"[.,\-/]")
_POSTAL_CODE = re.compile(r"\d{5}")
_TAX_ID = re.compile(r"de\d{9}", re.IGNORECASE)
_AMOUNT = re.compile(r"\d+[,.]\d{2}")
_GMBH = re.compile(r"gmbh", re.IGNORECASE)
_AG = re.compile(r"\bag\b", re.IGNORECASE)


def extract_features(text: str) -> np.ndarray:
    """Fixed 11-dimensional feature vector of a text.

    length, word count, digit / upper / lower / punctuation ratios,
    GmbH flag, AG flag, postal code flag, tax id flag, amount flag.
    """
    length = len(text)
    denominator = length or 1
    return np.array(
        [
            float(length),
            float(len(text.split(" "))) if text else 0.0,
            sum(ch.isdigit() for ch in text) / denominator,
            sum(ch.isupper() for ch in text) / denominator,
            sum(ch.islower() for ch in text) / denominator,
            len(_PUNCTUATION.findall(text)) / denominator,
            1.0 if _GMBH.search(text) else 0.0,
            1.0 if _AG.search(text) else 0.0,
            1.0 if _POSTAL_CODE.search(text) else 0.0,
            1.0 if _TAX_ID.search(text) else 0.0,
            1.0 if _AMOUNT.search(text) else 0.0,
        ],
        dtype=float,
    )


class GaussianNaiveBayes:
    """Gaussian naive Bayes classifier on dense numpy features."""

    def __init__(self, var_smoothing: float = 1e-9) -> None:
        self.var_smoothing = var_smoothing
        self.classes_: list[str] = []
        self._means = np.empty((0, 0))
        self._variances = np.empty((0, 0))
        self._log_priors = np.empty(0)

    @property
    def is_fitted(self) -> bool:
        return bool(self.classes_)

    def fit(self, features: np.ndarray, labels: list[str]) -> "GaussianNaiveBayes":
        if features.ndim != 2 or features.shape[0] != len(labels) or not labels:
            raise ValueError("features and labels must be non-empty and aligned")

        classes = sorted(set(labels))
        label_array = np.array(labels, dtype=object)
        # Floor keeps zero-variance features (constant flags) usable.
        epsilon = max(self.var_smoothing * float(np.var(features, axis=0).max()), 1e-9)

        means = np.zeros((len(classes), features.shape[1]))
        variances = np.zeros((len(classes), features.shape[1]))
        counts = np.zeros(len(classes))
        for idx, label in enumerate(classes):
            members = features[label_array == label]
            means[idx] = members.mean(axis=0)
            variances[idx] = members.var(axis=0) + epsilon
            counts[idx] = members.shape[0]

        self.classes_ = classes
        self._means = means
        self._variances = variances
        self._log_priors = np.log(counts / counts.sum())
        return self

    def predict(self, vector: np.ndarray) -> str:
        if not self.is_fitted:
            raise ValueError("classifier is not fitted")
        if vector.shape[0] != self._means.shape[1]:
            raise ValueError(
                f"feature size mismatch: got {vector.shape[0]}, expected {self._means.shape[1]}"
            )
        log_likelihood = -0.5 * np.sum(np.log(2.0 * np.pi * self._variances), axis=1)
        log_likelihood -= 0.5 * np.sum((vector - self._means) ** 2 / self._variances, axis=1)
        return self.classes_[int(np.argmax(self._log_priors + log_likelihood))]


class FieldModel(NamedTuple):
    """Derived models of one field type. Never mutated, only replaced."""

    observations: tuple[LearningObservation, ...]
    frequencies: Mapping[str, int]
    features: np.ndarray
    outputs: tuple[str, ...]
    classifier: Optional[GaussianNaiveBayes]


def _empty_field_model() -> FieldModel:
    return FieldModel(
        observations=(),
        frequencies=MappingProxyType({}),
        features=np.empty((0, 11)),
        outputs=(),
        classifier=None,
    )


def _add_observation(model: FieldModel, observation: LearningObservation) -> FieldModel:
    frequencies = dict(model.frequencies)
    frequencies[observation.expected_output] = frequencies.get(observation.expected_output, 0) + 1
    return model._replace(
        observations=model.observations + (observation,),
        frequencies=MappingProxyType(frequencies),
        features=np.vstack([model.features, extract_features(observation.input_text)]),
        outputs=model.outputs + (observation.expected_output,),
    )


def combine_predictions(
    predictions: list[Prediction],
    weights: Mapping[str, float],
) -> Prediction:
    """Weighted vote over strategy predictions.

    Each prediction votes confidence * weight[source] for its value. The
    highest total wins; confidence = winning weight / total weight, capped.
    """
    votes: dict[str, float] = {}
    total_weight = 0.0
    for item in predictions:
        if not item.prediction or item.confidence <= MIN_VOTE_CONFIDENCE:
            continue
        weight = item.confidence * weights.get(item.source.value, 0.0)
        if weight <= 0:
            continue
        votes[item.prediction] = votes.get(item.prediction, 0.0) + weight
        total_weight += weight

    if not votes:
        return Prediction(source=PredictionSource.ENSEMBLE)

    winner = max(votes, key=votes.__getitem__)
    return Prediction(
        prediction=winner,
        confidence=min(votes[winner] / total_weight, ENSEMBLE_CAP),
        source=PredictionSource.ENSEMBLE,
    )


class AdaptiveCorrectionEngine:
    """Learns field corrections from reviewers and predicts them for new text."""

    def __init__(
        self,
        store: Optional[ObservationStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store: ObservationStore = store if store is not None else InMemoryObservationStore()
        self._lock = threading.RLock()
        self._models: Mapping[str, FieldModel] = MappingProxyType({})
        self._total = 0
        self._confidence_sum = 0.0
        self._initialized = False
        self._rebuild(self.store.load())

    def _rebuild(self, observations: list[LearningObservation]) -> None:
        with self._lock:
            models: dict[str, FieldModel] = {}
            for observation in observations:
                current = models.get(observation.field_type, _empty_field_model())
                models[observation.field_type] = _add_observation(current, observation)
            self._models = MappingProxyType(models)
            self._total = len(observations)
            self._confidence_sum = sum(item.confidence for item in observations)
            self._initialized = False
            if observations:
                self.retrain()
        logger.info(
            "learning_loaded | observations=%d | field_types=%d",
            self._total,
            len(self._models),
        )

    # -- Writes --

    def record_correction(
        self,
        original_text: str,
        corrected_value: str,
        field_type: str,
        user_id: str = "",
        confidence: float = 1.0,
    ) -> LearningObservation:
        """Append one correction and update the derived models."""
        if not field_type:
            raise ValueError("field_type is required")
        if corrected_value is None or not str(corrected_value).strip():
            raise ValueError("corrected_value is required")

        observation = LearningObservation(
            input_text=normalize_learning_text(original_text),
            expected_output=str(corrected_value).strip(),
            field_type=field_type,
            user_id=user_id,
            confidence=confidence,
        )

        with self._lock:
            self.store.append(observation)
            models = dict(self._models)
            models[field_type] = _add_observation(
                models.get(field_type, _empty_field_model()), observation
            )
            self._models = MappingProxyType(models)
            self._total += 1
            self._confidence_sum += observation.confidence

            logger.info(
                "correction_recorded | field=%s | observations=%d | user=%s",
                field_type,
                self._total,
                user_id or "-",
            )
            if self._total % self.settings.retrain_interval == 0:
                self.retrain()
        return observation

    def retrain(self) -> None:
        """Refit the classifier of every field type from its observations."""
        with self._lock:
            models = dict(self._models)
            for field_type, model in models.items():
                models[field_type] = model._replace(classifier=self._fit_classifier(field_type, model))
            self._models = MappingProxyType(models)
            self._initialized = True
        logger.info("learning_retrained | observations=%d | field_types=%d", self._total, len(models))

    @staticmethod
    def _fit_classifier(field_type: str, model: FieldModel) -> Optional[GaussianNaiveBayes]:
        if not model.outputs:
            return None
        try:
            return GaussianNaiveBayes().fit(model.features, list(model.outputs))
        except ValueError as exc:
            logger.warning(
                "classifier_fit_warning | field=%s | error=%s | fallback=None",
                field_type,
                exc,
            )
            return None

    def clear(self) -> None:
        """Drop every observation and reset all derived models."""
        with self._lock:
            self.store.clear()
            self._models = MappingProxyType({})
            self._total = 0
            self._confidence_sum = 0.0
            self._initialized = False
        logger.info("learning_cleared")

    # -- Reads --

    def predict(self, text: str, field_type: str) -> Prediction:
        """Ensemble prediction of the corrected value for `text`."""
        model = self._models.get(field_type)
        if model is None or len(model.observations) < self.settings.min_observations:
            return Prediction(source=PredictionSource.ENSEMBLE)

        normalized = normalize_learning_text(text)
        predictions = [
            self._predict_frequency(normalized, model),
            self._predict_classifier(normalized, model),
            self._predict_nearest(normalized, model),
        ]
        result = combine_predictions(predictions, self.settings.ensemble_weights)
        logger.debug(
            "prediction | field=%s | value=%r | confidence=%.2f | votes=%s",
            field_type,
            result.prediction,
            result.confidence,
            ",".join(f"{item.source.value}:{item.confidence:.2f}" for item in predictions),
        )
        return result

    @graceful(lambda: Prediction(source=PredictionSource.FREQUENCY))
    def _predict_frequency(self, text: str, model: FieldModel) -> Prediction:
        best_value = ""
        best_score = 0.0
        for value, count in model.frequencies.items():
            score = similarity(text, normalize_learning_text(value)) * math.log(count + 1)
            if score > best_score:
                best_value, best_score = value, score
        return Prediction(
            prediction=best_value,
            confidence=min(best_score, FREQUENCY_CAP),
            source=PredictionSource.FREQUENCY,
        )

    @graceful(lambda: Prediction(source=PredictionSource.CLASSIFIER))
    def _predict_classifier(self, text: str, model: FieldModel) -> Prediction:
        count = len(model.observations)
        if model.classifier is None or count < CLASSIFIER_MIN_OBSERVATIONS:
            return Prediction(source=PredictionSource.CLASSIFIER)
        return Prediction(
            prediction=model.classifier.predict(extract_features(text)),
            confidence=min(CLASSIFIER_CAP, count / CLASSIFIER_SATURATION),
            source=PredictionSource.CLASSIFIER,
        )

    @graceful(lambda: Prediction(source=PredictionSource.NEAREST_NEIGHBOR))
    def _predict_nearest(self, text: str, model: FieldModel) -> Prediction:
        if not model.outputs:
            return Prediction(source=PredictionSource.NEAREST_NEIGHBOR)
        distances = np.linalg.norm(model.features - extract_features(text), axis=1)
        k = min(MAX_NEIGHBORS, len(model.outputs))
        # Stable sort: equal distances keep observation order.
        nearest = np.argsort(distances, kind="stable")[:k]

        votes: dict[str, float] = {}
        for index in nearest:
            weight = 1.0 / (float(distances[index]) + NEIGHBOR_DISTANCE_OFFSET)
            output = model.outputs[int(index)]
            votes[output] = votes.get(output, 0.0) + weight
        total = sum(votes.values())
        winner = max(votes, key=votes.__getitem__)
        return Prediction(
            prediction=winner,
            confidence=votes[winner] / total if total > 0 else 0.0,
            source=PredictionSource.NEAREST_NEIGHBOR,
        )

    def closest_similarity(self, text: str, field_type: str) -> float:
        """Best similarity between `text` and any recorded input for the field type."""
        model = self._models.get(field_type)
        if model is None or not model.observations:
            return 0.0
        normalized = normalize_learning_text(text)
        return max(similarity(normalized, item.input_text) for item in model.observations)

    def frequencies(self, field_type: str) -> dict[str, int]:
        model = self._models.get(field_type)
        return dict(model.frequencies) if model is not None else {}

    def statistics(self) -> LearningStatistics:
        models = self._models
        return LearningStatistics(
            total_observations=self._total,
            field_types=list(models.keys()),
            average_confidence=self._confidence_sum / self._total if self._total else 0.0,
            is_initialized=self._initialized,
        )


def _learnable_text(record: ExtractedInvoice, field: str) -> str:
    value = record.get_field(field)
    if field in AMOUNT_FIELDS:
        return format_german_number(value) if value else ""
    return str(value or "")


def apply_learned_corrections(
    record: ExtractedInvoice,
    engine: AdaptiveCorrectionEngine,
    threshold: Optional[float] = None,
) -> tuple[ExtractedInvoice, dict[str, str]]:
    """Replace extracted values the engine is confident it has seen corrected.

    A prediction is only applied when the extracted text is close to text a
    reviewer actually corrected: at least `learned_similarity_threshold` for
    party fields, an exact match for invoice number, dates and amounts.

    Returns the (possibly) updated record and {field: predicted value} for
    every field that changed.
    """
    if threshold is None:
        threshold = engine.settings.learned_correction_threshold

    applied: dict[str, str] = {}
    for field in FIELD_REFERENCES:
        text = _learnable_text(record, field)
        if not text:
            continue
        prediction = engine.predict(text, field)
        if prediction.is_empty or prediction.confidence < threshold:
            continue
        closeness = engine.closest_similarity(text, field)
        required = 1.0 if field in DOCUMENT_SPECIFIC_FIELDS else engine.settings.learned_similarity_threshold
        if closeness < required:
            logger.debug(
                "learned_correction_skipped | field=%s | similarity=%.2f | required=%.2f | reason=no_similar_observation",
                field,
                closeness,
                required,
            )
            continue
        value = coerce_field_value(field, prediction.prediction)
        if value == "" or value == record.get_field(field):
            continue
        try:
            record = record.with_field(field, value)
        except (KeyError, ValueError) as exc:
            logger.warning(
                "learned_correction_warning | field=%s | value=%r | error=%s | fallback=unchanged",
                field,
                prediction.prediction,
                exc,
            )
            continue
        applied[field] = prediction.prediction

    if applied:
        logger.info(
            "learned_corrections_applied | fields=%s",
            ",".join(sorted(applied)),
        )
    return record, applied


def learn_from_review(
    original: ExtractedInvoice,
    corrected: ExtractedInvoice,
    engine: AdaptiveCorrectionEngine,
    user_id: str = "",
) -> list[LearningObservation]:
    """Record every field a reviewer changed between two versions of a record.

    Fields that were empty in the original carry no text to learn from and
    are skipped, as are fields the reviewer cleared.
    """
    recorded: list[LearningObservation] = []
    for field in FIELD_REFERENCES:
        before = _learnable_text(original, field)
        after = _learnable_text(corrected, field)
        if not before or not after or before == after:
            continue
        recorded.append(engine.record_correction(before, after, field, user_id))
    return recorded
