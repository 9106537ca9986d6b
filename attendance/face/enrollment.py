from __future__ import annotations

import json
import os
import pickle

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from attendance.config import ENROLLMENT_KEY, UNKNOWN_LABEL
from attendance.face.descriptor import DESCRIPTOR_DIM, as_descriptor
from attendance.utils.log import get_logger

logger = get_logger(__name__)


class EnrollmentStoreError(RuntimeError):
    """Storage read/write failure. Always propagated to the caller."""


class EnrollmentError(ValueError):
    """Invalid enrollment request (empty label, too few captures)."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_label(label: Any) -> str:
    name = str(label or "").strip()
    if not name:
        raise EnrollmentError("enrollment label must be a non-empty string")
    if name.casefold() == UNKNOWN_LABEL.casefold():
        raise EnrollmentError(f"{name!r} is reserved for unrecognized faces")
    return name


@dataclass
class EnrollmentRecord:
    label: str
    descriptors: List[np.ndarray] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.label = _normalize_label(self.label)
        self.descriptors = [np.asarray(d, dtype=np.float64).reshape(-1) for d in (self.descriptors or [])]

    @property
    def count(self) -> int:
        return len(self.descriptors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "descriptors": [[float(x) for x in d] for d in self.descriptors],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrollmentRecord":
        # Descriptors are kept as stored; the matcher validates and skips bad ones.
        created = data.get("created_at")
        updated = data.get("updated_at")
        return cls(
            label=data.get("label", ""),
            descriptors=[np.asarray(d, dtype=np.float64).reshape(-1) for d in (data.get("descriptors") or [])],
            created_at=datetime.fromisoformat(created) if created else _utcnow(),
            updated_at=datetime.fromisoformat(updated) if updated else _utcnow(),
        )


class EnrollmentStore(ABC):
    """Persistent collection of enrollment records keyed by label.

    Implementations only need the four primitive operations; the helpers below
    give replace-on-re-enrollment semantics on top of them.
    """

    @abstractmethod
    def load(self) -> List[EnrollmentRecord]:
        """Return all records in enrollment order (empty list if none stored)."""
        pass

    @abstractmethod
    def save_all(self, records: Sequence[EnrollmentRecord]) -> None:
        """Replace the whole stored collection with `records`."""
        pass

    def delete_one(self, label: str) -> bool:
        name = _normalize_label(label)
        records = self.load()
        kept = [r for r in records if r.label != name]
        if len(kept) == len(records):
            return False
        self.save_all(kept)
        logger.info(f"Enrollment deleted: {name}")
        return True

    def clear_all(self) -> None:
        self.save_all([])
        logger.info("All enrollments cleared")

    def get(self, label: str) -> Optional[EnrollmentRecord]:
        name = _normalize_label(label)
        for r in self.load():
            if r.label == name:
                return r
        return None

    def save_enrollment(self, label: str, descriptors: Sequence[Any]) -> EnrollmentRecord:
        """Store `descriptors` for `label`, replacing any previous record (last write wins)."""
        name = _normalize_label(label)
        descs = [as_descriptor(d) for d in descriptors]
        if not descs:
            raise EnrollmentError(f"no descriptors to enroll for {name}")

        records = self.load()
        previous = next((r for r in records if r.label == name), None)
        now = _utcnow()
        record = EnrollmentRecord(
            label=name,
            descriptors=descs,
            created_at=previous.created_at if previous is not None else now,
            updated_at=now,
        )
        records = [r for r in records if r.label != name]
        records.append(record)
        self.save_all(records)
        logger.info(f"Enrollment saved: {name} ({len(descs)} descriptors)")
        return record


class InMemoryEnrollmentStore(EnrollmentStore):
    def __init__(self, records: Optional[Sequence[EnrollmentRecord]] = None):
        self._records: List[Dict[str, Any]] = [r.to_dict() for r in (records or [])]

    def load(self) -> List[EnrollmentRecord]:
        return [EnrollmentRecord.from_dict(d) for d in self._records]

    def save_all(self, records: Sequence[EnrollmentRecord]) -> None:
        self._records = [r.to_dict() for r in records]


@dataclass
class StoreConfig:
    # Key of the serialized collection inside the payload.
    key: str = ENROLLMENT_KEY
    # Schema version to support future migrations.
    schema_version: str = "v1"


class PickleEnrollmentStore(EnrollmentStore):
    """Enrollment collection persisted as one pickle file.

    The payload is {schema_version, key, records: [record dicts]}; descriptors
    are stored as plain float lists.
    """

    def __init__(self, path, config: Optional[StoreConfig] = None):
        self.path = Path(path)
        self.config = config or StoreConfig()

    def load(self) -> List[EnrollmentRecord]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "rb") as f:
                data = pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError, ValueError) as e:
            raise EnrollmentStoreError(f"cannot read enrollment store {self.path}: {e}") from e

        if not isinstance(data, dict) or data.get("key") != self.config.key:
            raise EnrollmentStoreError(f"{self.path} does not hold an enrollment collection")
        if data.get("schema_version") != self.config.schema_version:
            raise EnrollmentStoreError(
                f"unsupported enrollment schema {data.get('schema_version')!r} in {self.path}"
            )

        out: List[EnrollmentRecord] = []
        for item in data.get("records") or []:
            try:
                out.append(EnrollmentRecord.from_dict(item))
            except (EnrollmentError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable enrollment record: {e}")
        return out

    def save_all(self, records: Sequence[EnrollmentRecord]) -> None:
        payload = {
            "schema_version": self.config.schema_version,
            "key": self.config.key,
            "records": [r.to_dict() for r in records],
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                pickle.dump(payload, f)
            os.replace(tmp, self.path)
        except OSError as e:
            raise EnrollmentStoreError(f"cannot write enrollment store {self.path}: {e}") from e


def export_backup(records: Sequence[EnrollmentRecord], path) -> Path:
    """Write all enrollments to a JSON backup file."""
    fp = Path(path)
    fp.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "key": ENROLLMENT_KEY,
        "exported_at": _utcnow().isoformat(),
        "descriptor_dim": DESCRIPTOR_DIM,
        "records": [r.to_dict() for r in records],
    }
    with open(fp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    return fp


class EnrollmentCollector:
    """Collects descriptors for one person before committing them to a store.

    Each `capture` runs the extractor on one image; images without a usable
    face are rejected without touching the collected set.
    """

    def __init__(self, label: str, extractor, min_captures: int = 3, max_captures: Optional[int] = None):
        self.label = _normalize_label(label)
        self.extractor = extractor
        self.min_captures = int(min_captures)
        self.max_captures = int(max_captures) if max_captures else None
        self.descriptors: List[np.ndarray] = []

    @property
    def count(self) -> int:
        return len(self.descriptors)

    @property
    def ready(self) -> bool:
        return self.count >= self.min_captures

    def add_descriptor(self, descriptor: Any) -> int:
        if self.max_captures is not None and self.count >= self.max_captures:
            raise EnrollmentError(f"already collected {self.count} captures for {self.label}")
        self.descriptors.append(as_descriptor(descriptor))
        return self.count

    def capture(self, image: np.ndarray) -> Optional[int]:
        """Extract a descriptor from `image`; return the new capture count or None."""
        desc = self.extractor.extract(image)
        if desc is None:
            logger.info(f"No face found for {self.label}; reposition and retry")
            return None
        try:
            n = self.add_descriptor(desc)
        except ValueError as e:
            logger.warning(f"Rejected capture for {self.label}: {e}")
            return None
        logger.info(f"Capture {n} stored for {self.label}")
        return n

    def reset(self) -> None:
        self.descriptors = []

    def finalize(self, store: EnrollmentStore) -> EnrollmentRecord:
        if not self.ready:
            raise EnrollmentError(
                f"{self.label}: {self.count} captures, at least {self.min_captures} required"
            )
        record = store.save_enrollment(self.label, self.descriptors)
        self.reset()
        return record
