"""
observation_store.py - Persistence for the correction observation log.

The adaptive correction engine keeps its append-only observation log behind
the small `ObservationStore` protocol. Two implementations:
  - InMemoryObservationStore: process lifetime only (tests, one-shot CLI runs)
  - JsonObservationStore: one local JSON document, atomic temp-file writes;
    an unreadable document is moved aside, never overwritten

Derived models (frequency tables, feature index, classifier) are NOT stored;
the engine rebuilds them from the log on start.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from logging_config import get_logger
from models import LearningObservation

logger = get_logger(__name__)

CORRUPT_SUFFIX = ".corrupt-"
# Unreadable logs are renamed to <name>.corrupt-<UTC timestamp> next to the original.


class ObservationStore(Protocol):
    """Append-only log of user corrections."""

    def load(self) -> list[LearningObservation]:
        ...

    def append(self, observation: LearningObservation) -> None:
        ...

    def clear(self) -> None:
        ...


class ObservationDocument(BaseModel):
    """On-disk layout of the JSON observation store."""

    model_config = ConfigDict(extra="ignore")

    version: int = 1
    observations: list[LearningObservation] = Field(default_factory=list)
    updated_at: Optional[str] = None


class InMemoryObservationStore:
    """Observation log held in process memory."""

    def __init__(self, observations: Optional[Iterable[LearningObservation]] = None) -> None:
        self._observations: list[LearningObservation] = list(observations or [])

    def load(self) -> list[LearningObservation]:
        return list(self._observations)

    def append(self, observation: LearningObservation) -> None:
        self._observations.append(observation)

    def clear(self) -> None:
        self._observations = []


class JsonObservationStore:
    """Disk-backed observation log using one JSON file and atomic writes."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path).resolve()
        self._observations: Optional[list[LearningObservation]] = None
        self._read_only = False

    def load(self) -> list[LearningObservation]:
        """Load the log from disk, returning an empty log if missing/unreadable."""
        if self._observations is None:
            self._observations = self._read()
        return list(self._observations)

    def append(self, observation: LearningObservation) -> None:
        observations = self.load()
        observations.append(observation)
        self._write(observations)
        self._observations = observations

    def clear(self) -> None:
        self._write([])
        self._observations = []

    def _read(self) -> list[LearningObservation]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            document = ObservationDocument.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            moved_to = self._quarantine()
            logger.warning(
                "observation_load_warning | path=%s | error_type=%s | error=%s | moved_to=%s | fallback='empty'",
                self.path,
                type(exc).__name__,
                exc,
                moved_to or "-",
            )
            return []
        logger.info(
            "observation_load | path=%s | observations=%d",
            self.path,
            len(document.observations),
        )
        return list(document.observations)

    def _quarantine(self) -> Optional[Path]:
        """Move an unreadable log aside so the next write cannot destroy it."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.path.with_name(f"{self.path.name}{CORRUPT_SUFFIX}{stamp}")
        try:
            os.replace(self.path, target)
        except OSError as exc:
            logger.error(
                "observation_quarantine_failed | path=%s | error=%s | fallback='read_only'",
                self.path,
                exc,
            )
            self._read_only = True
            return None
        return target

    def _write(self, observations: list[LearningObservation]) -> None:
        """Persist the log atomically via temp-file + replace."""
        if self._read_only:
            raise OSError(f"Observation log could not be read or moved aside, refusing to overwrite: {self.path}")
        document = ObservationDocument(
            observations=observations,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        payload: dict[str, Any] = document.model_dump(mode="json")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(self.path.parent),
                delete=False,
                suffix=".tmp",
                prefix="observations-",
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)
                json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise
