"""Generic observation record manager.

One instance per (observation type, actor). Follows the type's collection
live, keeps history newest bucket first and upserts at most one record per
bucket key.

Concurrent upserts to the same bucket from two clients are last-write-wins
per field. This is not detected or reported.
"""
import logging
import threading
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional

from obstrack.shared.errors import (
    AccessDeniedError,
    NotVerifiedError,
    StoreError,
    ValidationError,
)
from obstrack.shared.models import Actor, ObservationRecord
from obstrack.shared.models.observation import (
    AUTHOR_FIELD,
    BUCKET_FIELD,
    WRITTEN_AT_FIELD,
)
from obstrack.shared.store import Document, DocumentStore, StorePaths, Subscription
from obstrack.shared.utils import (
    bucket_key_for,
    compute_completion_rate,
    compute_threshold_alert,
    hash_pii,
    is_valid_bucket_key,
    monthly_confirmation_rate,
    utc_now_iso,
)
from .catalog import ObservationType

logger = logging.getLogger(__name__)

Predicate = Callable[[ObservationRecord], bool]


def sort_newest_first(records: List[ObservationRecord]) -> List[ObservationRecord]:
    """Order by bucket key descending, newest write first within a bucket."""
    return sorted(
        records,
        key=lambda r: (r.bucket_key, r.written_at or ""),
        reverse=True,
    )


class ObservationRecordManager:
    """Live view and writer for one observation type."""

    def __init__(
        self,
        store: DocumentStore,
        paths: StorePaths,
        observation_type: ObservationType,
        actor: Actor,
    ):
        """Initialize manager.

        Args:
            store: Shared document store
            paths: Tenant path layout
            observation_type: Catalog configuration
            actor: Principal the manager writes on behalf of
        """
        self.store = store
        self.paths = paths
        self.observation_type = observation_type
        self.actor = actor
        self.history: List[ObservationRecord] = []
        self.loaded = False
        self.error: Optional[StoreError] = None

        self._lock = threading.RLock()
        self._subscription: Optional[Subscription] = None

    @property
    def collection_path(self) -> str:
        return self.paths.collection(self.observation_type.collection)

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def doc_path(self, doc_id: str) -> str:
        return self.paths.doc(self.observation_type.collection, doc_id)

    def open(self) -> Subscription:
        """Subscribe to the collection. Restartable after close()."""
        with self._lock:
            if self.is_open:
                return self._subscription
            self._subscription = self.store.on_snapshot(
                self.collection_path,
                self._on_snapshot,
                on_error=self._on_error,
            )

        logger.debug(
            "OBSERVATION_MANAGER_OPENED",
            extra={"observation": self.observation_type.key}
        )
        return self._subscription

    def close(self) -> None:
        with self._lock:
            subscription, self._subscription = self._subscription, None
            self.loaded = False
        if subscription is not None:
            subscription.unsubscribe()

    def dismiss_error(self) -> None:
        self.error = None

    def current_bucket_key(self, today: Optional[date] = None) -> str:
        return bucket_key_for(self.observation_type.granularity, today or date.today())

    def records(self) -> List[ObservationRecord]:
        """Loaded history, or a point read of the collection when not open."""
        with self._lock:
            if self.loaded:
                return list(self.history)
        return sort_newest_first([
            ObservationRecord.from_document(doc.id, doc.data)
            for doc in self.store.list_docs(self.collection_path)
        ])

    def record_for(self, bucket_key: str) -> Optional[ObservationRecord]:
        """The record stored for bucket_key, if any."""
        for record in self.records():
            if record.id == bucket_key:
                return record
        return None

    def upsert_for_bucket(
        self,
        bucket_key: str,
        patch: Mapping[str, Any],
    ) -> ObservationRecord:
        """Create or merge the record for bucket_key.

        Args:
            bucket_key: Day, week or month key matching the type's granularity
            patch: Payload fields to write

        Returns:
            The record as written

        Raises:
            NotVerifiedError: Actor has not verified their email
            AccessDeniedError: Actor's role may not edit this type
            ValidationError: Bad bucket key or payload
            StoreError: Write failed; not retried

        Logs:
            - OBSERVATION_UPSERTED: After the write
        """
        self._require_editor()
        if self.observation_type.approval is not None:
            raise ValidationError(
                f"{self.observation_type.key} records change through approval requests"
            )
        self.require_bucket_key(bucket_key)
        patch = self.observation_type.validate_patch(patch)

        existing = self.record_for(bucket_key)
        merged: Dict[str, Any] = dict(existing.payload) if existing else {}
        merged.update(patch)
        derived = self.observation_type.validate_record(merged)
        merged.update(derived)

        # Merge-write only the changed fields
        written_at = utc_now_iso()
        data = dict(patch)
        data.update(derived)
        data[BUCKET_FIELD] = bucket_key
        data[AUTHOR_FIELD] = self.actor.user_id
        data[WRITTEN_AT_FIELD] = written_at

        self.store.set_doc(self.doc_path(bucket_key), data, merge=True)

        logger.info(
            "OBSERVATION_UPSERTED",
            extra={
                "observation": self.observation_type.key,
                "bucket_key": bucket_key,
                "was_created": existing is None,
                "fields": sorted(patch),
                "author_hash": hash_pii(self.actor.user_id),
            }
        )
        return ObservationRecord(
            id=bucket_key,
            bucket_key=bucket_key,
            payload=merged,
            author_id=self.actor.user_id,
            written_at=written_at,
        )

    def append_entry(
        self,
        bucket_key: str,
        entry: Mapping[str, Any],
        list_field: str = "incidents",
    ) -> ObservationRecord:
        """Append one entry to the bucket's list field.

        Keeps one record per bucket: the list is read from the current
        record, extended and merge-written back.
        """
        self._require_editor()
        self.require_bucket_key(bucket_key)
        entry = self.observation_type.validate_entry(entry)
        entry.setdefault("logged_by", self.actor.user_id)
        entry.setdefault("logged_at", utc_now_iso())

        existing = self.record_for(bucket_key)
        entries = list(existing.get(list_field) or []) if existing else []
        entries.append(entry)
        return self.upsert_for_bucket(bucket_key, {list_field: entries})

    def completion_rate(self, predicate: Optional[Predicate] = None) -> float:
        """Share of loaded records meeting predicate (the type's by default)."""
        return compute_completion_rate(
            self.records(),
            predicate or self.observation_type.is_complete,
        )

    def month_to_date_rate(self, today: Optional[date] = None) -> float:
        """Completed day buckets this month over school days elapsed, as a percentage."""
        today = today or date.today()
        completed = [
            record.bucket_key for record in self.records()
            if self.observation_type.is_complete(record)
        ]
        return monthly_confirmation_rate(completed, today)

    def threshold_alert(self, value: float, total: float) -> bool:
        """True when value exceeds the type's threshold share of total."""
        fraction = self.observation_type.threshold_fraction
        if fraction is None:
            return False
        return compute_threshold_alert(value, total, fraction)

    def _require_editor(self) -> None:
        if not self.actor.email_verified:
            raise NotVerifiedError("Verify your email before recording observations")
        if self.actor.role not in self.observation_type.editor_roles:
            logger.warning(
                "OBSERVATION_WRITE_DENIED",
                extra={
                    "observation": self.observation_type.key,
                    "role": self.actor.role.value if self.actor.role else None,
                }
            )
            raise AccessDeniedError(
                f"Your role may not edit {self.observation_type.title}"
            )

    def require_bucket_key(self, bucket_key: str) -> None:
        granularity = self.observation_type.granularity
        if not is_valid_bucket_key(granularity, bucket_key):
            raise ValidationError(
                f"Invalid {granularity.value} bucket key: {bucket_key!r}"
            )

    def _on_snapshot(self, docs: List[Document]) -> None:
        records = sort_newest_first([
            ObservationRecord.from_document(doc.id, doc.data) for doc in docs
        ])
        with self._lock:
            self.history = records
            self.loaded = True
            self.error = None

    def _on_error(self, error: StoreError) -> None:
        self.error = error
        logger.warning(
            "OBSERVATION_SUBSCRIPTION_ERROR",
            extra={"observation": self.observation_type.key, "error": str(error)}
        )
