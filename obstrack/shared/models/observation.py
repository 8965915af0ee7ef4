"""Observation record domain models.

One ObservationRecord exists per bucket key and observation type. Approval
records are the exception: each request gets its own opaque id.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

# Document fields managed by the engine rather than the payload schema
BUCKET_FIELD = "bucketKey"
AUTHOR_FIELD = "authorId"
WRITTEN_AT_FIELD = "writtenAt"


class ApprovalStatus(Enum):
    """Dual-party approval lifecycle.

    NOT_REQUESTED -> PENDING -> {APPROVED, REJECTED}; the last two are terminal.
    """
    NOT_REQUESTED = "NotRequested"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


@dataclass(frozen=True)
class ObservationRecord:
    """One bucket's worth of an observation.

    payload holds the type-specific fields (counts, booleans, free text).
    """
    id: str
    bucket_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    author_id: Optional[str] = None
    written_at: Optional[str] = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.payload.get(name, default)

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "ObservationRecord":
        payload = {
            key: value for key, value in data.items()
            if key not in (BUCKET_FIELD, AUTHOR_FIELD, WRITTEN_AT_FIELD)
        }
        return cls(
            id=doc_id,
            bucket_key=data.get(BUCKET_FIELD) or "",
            payload=payload,
            author_id=data.get(AUTHOR_FIELD),
            written_at=data.get(WRITTEN_AT_FIELD),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bucket_key": self.bucket_key,
            "payload": dict(self.payload),
            "author_id": self.author_id,
            "written_at": self.written_at,
        }


@dataclass(frozen=True)
class ApprovalRecord:
    """A request for a second party to approve one bucket."""
    id: str
    bucket_key: str
    requested_by: str
    request_status: ApprovalStatus
    requested_at: Optional[str] = None
    approver_id: Optional[str] = None
    approved_at: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            BUCKET_FIELD: self.bucket_key,
            "requestedBy": self.requested_by,
            "requestStatus": self.request_status.value,
            "requestedAt": self.requested_at,
            "approverId": self.approver_id,
            "approvedAt": self.approved_at,
        }

    @classmethod
    def from_record(cls, record: ObservationRecord) -> "ApprovalRecord":
        return cls(
            id=record.id,
            bucket_key=record.bucket_key,
            requested_by=record.get("requestedBy") or record.author_id or "",
            request_status=ApprovalStatus(record.get("requestStatus", "Pending")),
            requested_at=record.get("requestedAt"),
            approver_id=record.get("approverId"),
            approved_at=record.get("approvedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bucket_key": self.bucket_key,
            "requested_by": self.requested_by,
            "request_status": self.request_status.value,
            "requested_at": self.requested_at,
            "approver_id": self.approver_id,
            "approved_at": self.approved_at,
        }
