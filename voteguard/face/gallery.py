from __future__ import annotations

import json
import time
import uuid

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from voteguard.utils.log import get_logger
from voteguard.utils.serializer import descriptor_from_list, descriptors_to_lists

logger = get_logger(__name__)


@dataclass
class StoreResult:
    success: bool
    error: Optional[str] = None


@dataclass
class EnrollmentRecord:
    user_id: str
    descriptors: List[np.ndarray]
    confidence_threshold: float = 0.6
    enrolled_by: Optional[str] = None
    is_active: bool = True
    enrolled_at: float = field(default_factory=time.time)
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict:
        return {
            "id": self.record_id,
            "user_id": self.user_id,
            "face_descriptors": descriptors_to_lists(self.descriptors),
            "confidence_threshold": float(self.confidence_threshold),
            "enrolled_by": self.enrolled_by,
            "is_active": bool(self.is_active),
            "enrollment_date": float(self.enrolled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "EnrollmentRecord":
        descs = [descriptor_from_list(d) for d in data.get("face_descriptors") or []]
        return cls(
            user_id=str(data["user_id"]),
            descriptors=[d for d in descs if d is not None],
            confidence_threshold=float(data.get("confidence_threshold", 0.6)),
            enrolled_by=data.get("enrolled_by"),
            is_active=bool(data.get("is_active", True)),
            enrolled_at=float(data.get("enrollment_date", 0.0)),
            record_id=str(data.get("id") or uuid.uuid4().hex),
        )


class EnrollmentStore(ABC):
    """Persistence boundary for enrolled descriptors.

    Descriptors cross this boundary as plain numeric arrays; at-rest
    encryption is the implementation's business.
    """

    @abstractmethod
    def save(
        self,
        user_id: str,
        descriptors: Sequence,
        threshold: float = 0.6,
        enrolled_by: Optional[str] = None,
    ) -> StoreResult:
        pass

    @abstractmethod
    def load(self, user_id: str) -> List[np.ndarray]:
        """Active descriptors for the user, empty if not enrolled.

        Raise ``ResourceAcquisitionError`` when the store cannot be reached,
        never return empty for that case.
        """
        pass

    @abstractmethod
    def remove(self, user_id: str) -> StoreResult:
        pass


@dataclass
class GalleryConfig:
    # File name for the persisted gallery.
    filename: str = "face_enrollments.json"
    # Schema version to support future migrations.
    schema_version: str = "v1"


class LocalEnrollmentStore(EnrollmentStore):
    """In-memory enrollment store with optional JSON persistence.

    Re-enrolling supersedes: the user's earlier active records are
    deactivated, so exactly one active descriptor set exists per user.
    """

    def __init__(self, gallery_dir: Optional[Path] = None, config: Optional[GalleryConfig] = None):
        self.config = config or GalleryConfig()
        self.gallery_dir = Path(gallery_dir) if gallery_dir is not None else None
        self.records: Dict[str, List[EnrollmentRecord]] = {}
        if self.gallery_dir is not None:
            self._load_file()

    @property
    def path(self) -> Optional[Path]:
        if self.gallery_dir is None:
            return None
        return self.gallery_dir / self.config.filename

    def _load_file(self) -> bool:
        fp = self.path
        if fp is None or not fp.exists():
            return False
        with open(fp, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict) or data.get("schema_version") != self.config.schema_version:
            logger.warning(f"Ignoring enrollment file with unknown schema: {fp}")
            return False
        records: Dict[str, List[EnrollmentRecord]] = {}
        for raw in data.get("records") or []:
            rec = EnrollmentRecord.from_dict(raw)
            records.setdefault(rec.user_id, []).append(rec)
        self.records = records
        return True

    def _persist(self) -> None:
        fp = self.path
        if fp is None:
            return
        fp.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "schema_version": self.config.schema_version,
            "records": [r.to_dict() for recs in self.records.values() for r in recs],
        }
        tmp = fp.with_suffix(fp.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f)
        tmp.replace(fp)

    def save(
        self,
        user_id: str,
        descriptors: Sequence,
        threshold: float = 0.6,
        enrolled_by: Optional[str] = None,
    ) -> StoreResult:
        rows = [np.asarray(d, dtype=np.float64).reshape(-1) for d in descriptors]
        rows = [r for r in rows if r.size > 0]
        if not user_id or not rows:
            return StoreResult(False, "userId and at least one descriptor required")
        if len({int(r.shape[0]) for r in rows}) != 1:
            return StoreResult(False, "descriptors must share one dimensionality")

        user_records = self.records.setdefault(str(user_id), [])
        for rec in user_records:
            rec.is_active = False
        user_records.append(
            EnrollmentRecord(
                user_id=str(user_id),
                descriptors=rows,
                confidence_threshold=float(threshold),
                enrolled_by=enrolled_by,
            )
        )
        try:
            self._persist()
        except OSError as e:
            logger.error(f"Failed to persist enrollments: {e}")
            return StoreResult(False, f"persist failed: {e}")
        logger.info(f"Enrolled {len(rows)} descriptors for user {user_id}")
        return StoreResult(True)

    def load(self, user_id: str) -> List[np.ndarray]:
        out: List[np.ndarray] = []
        for rec in self.records.get(str(user_id), []):
            if rec.is_active:
                out.extend(np.array(d, copy=True) for d in rec.descriptors)
        return out

    def remove(self, user_id: str) -> StoreResult:
        if str(user_id) not in self.records:
            return StoreResult(False, "no enrollment for user")
        del self.records[str(user_id)]
        try:
            self._persist()
        except OSError as e:
            logger.error(f"Failed to persist enrollments: {e}")
            return StoreResult(False, f"persist failed: {e}")
        logger.info(f"Removed enrollment for user {user_id}")
        return StoreResult(True)

    def active_record(self, user_id: str) -> Optional[EnrollmentRecord]:
        for rec in reversed(self.records.get(str(user_id), [])):
            if rec.is_active:
                return rec
        return None


class ChainedEnrollmentStore(EnrollmentStore):
    """Ordered lookup over several stores (e.g. secure backend, then a legacy local cache).

    ``load`` answers from the first store with descriptors. Writes go to every
    store so a secondary can never serve descriptors the primary superseded
    or removed. The primary's result is authoritative.
    """

    def __init__(self, stores: Sequence[EnrollmentStore]):
        if not stores:
            raise ValueError("at least one store required")
        self.stores = list(stores)

    def save(
        self,
        user_id: str,
        descriptors: Sequence,
        threshold: float = 0.6,
        enrolled_by: Optional[str] = None,
    ) -> StoreResult:
        primary = self.stores[0].save(user_id, descriptors, threshold, enrolled_by)
        if not primary.success:
            return primary
        for store in self.stores[1:]:
            res = store.save(user_id, descriptors, threshold, enrolled_by)
            if not res.success:
                logger.warning(f"Secondary store save failed for {user_id}: {res.error}; removing stale copy")
                store.remove(user_id)
        return primary

    def load(self, user_id: str) -> List[np.ndarray]:
        for store in self.stores:
            descs = store.load(user_id)
            if descs:
                return descs
        return []

    def remove(self, user_id: str) -> StoreResult:
        results = [store.remove(user_id) for store in self.stores]
        if any(r.success for r in results):
            return StoreResult(True)
        return results[0]
