"""Dual-party approval workflow.

State machine per request:
    NOT_REQUESTED -> PENDING -> {APPROVED, REJECTED}

APPROVED and REJECTED are terminal. Each request is its own document with
an opaque id; the bucket key ties it to the day it covers.
"""
import logging
from typing import List, Optional, Union

from obstrack.shared.errors import (
    AccessDeniedError,
    DuplicateRequestError,
    NotVerifiedError,
    RecordNotFoundError,
    TerminalStateError,
    ValidationError,
)
from obstrack.shared.models import ApprovalRecord, ApprovalStatus, ObservationRecord
from obstrack.shared.models.observation import AUTHOR_FIELD, WRITTEN_AT_FIELD
from obstrack.shared.utils import hash_pii, utc_now_iso
from .catalog import ApprovalPolicy
from .manager import ObservationRecordManager

logger = logging.getLogger(__name__)

Decision = Union[ApprovalStatus, bool, str]


class ApprovalWorkflow:
    """Request/decide operations over an approval-type manager."""

    def __init__(self, manager: ObservationRecordManager):
        """Initialize workflow.

        Args:
            manager: Manager of an observation type with an ApprovalPolicy

        Raises:
            ValidationError: The type has no approval policy
        """
        policy = manager.observation_type.approval
        if policy is None:
            raise ValidationError(
                f"{manager.observation_type.key} has no approval workflow"
            )
        self.manager = manager
        self.policy: ApprovalPolicy = policy

    @property
    def actor(self):
        return self.manager.actor

    def requests_for(self, bucket_key: str) -> List[ApprovalRecord]:
        """Requests covering bucket_key, most recent first."""
        requests = [
            ApprovalRecord.from_record(record)
            for record in self.manager.records()
            if record.bucket_key == bucket_key
        ]
        return sorted(requests, key=lambda r: r.requested_at or "", reverse=True)

    def status_for(self, bucket_key: str) -> ApprovalStatus:
        requests = self.requests_for(bucket_key)
        if not requests:
            return ApprovalStatus.NOT_REQUESTED
        return requests[0].request_status

    def request_approval(
        self,
        bucket_key: str,
        requester_id: Optional[str] = None,
    ) -> ApprovalRecord:
        """Open a PENDING request for bucket_key.

        Args:
            bucket_key: Day the request covers
            requester_id: Requesting principal; defaults to the actor

        Returns:
            The created ApprovalRecord

        Raises:
            NotVerifiedError: Actor has not verified their email
            AccessDeniedError: Actor is not a requester, or requester_id is
                not the actor
            ValidationError: Bad bucket key
            DuplicateRequestError: A blocking request already exists

        Logs:
            - APPROVAL_REQUESTED: After the request is stored
        """
        requester_id = requester_id or self.actor.user_id
        self._require_role(self.policy.requester_roles, "request approval")
        if requester_id != self.actor.user_id:
            raise AccessDeniedError("Requests can only be made on your own behalf")
        self.manager.require_bucket_key(bucket_key)

        blocking = {ApprovalStatus.PENDING, ApprovalStatus.APPROVED}
        if not self.policy.allow_rerequest_after_rejection:
            blocking.add(ApprovalStatus.REJECTED)
        for existing in self.requests_for(bucket_key):
            if existing.request_status in blocking:
                logger.warning(
                    "APPROVAL_REQUEST_DUPLICATE",
                    extra={
                        "bucket_key": bucket_key,
                        "existing_status": existing.request_status.value,
                    }
                )
                raise DuplicateRequestError(
                    f"A request for {bucket_key} is already {existing.request_status.value}"
                )

        record = ApprovalRecord(
            id=self.manager.store.new_doc_id(),
            bucket_key=bucket_key,
            requested_by=requester_id,
            request_status=ApprovalStatus.PENDING,
            requested_at=utc_now_iso(),
        )
        data = record.to_document()
        data[AUTHOR_FIELD] = requester_id
        data[WRITTEN_AT_FIELD] = record.requested_at
        self.manager.store.create_doc(self.manager.doc_path(record.id), data)

        logger.info(
            "APPROVAL_REQUESTED",
            extra={
                "record_id": record.id,
                "bucket_key": bucket_key,
                "requester_hash": hash_pii(requester_id),
            }
        )
        return record

    def decide(
        self,
        record_id: str,
        approver_id: Optional[str],
        decision: Decision,
    ) -> ApprovalRecord:
        """Resolve a PENDING request.

        Args:
            record_id: Request document id
            approver_id: Deciding principal; None means the actor
            decision: APPROVED/REJECTED, or True/False

        Returns:
            The updated ApprovalRecord

        Raises:
            AccessDeniedError: Actor is not an approver; nothing is written
            RecordNotFoundError: No such request
            TerminalStateError: Request already decided

        Logs:
            - APPROVAL_DECIDED: After the decision is stored
        """
        approver_id = approver_id or self.actor.user_id
        self._require_role(self.policy.approver_roles, "decide approvals")
        if approver_id != self.actor.user_id:
            raise AccessDeniedError("Decisions can only be made on your own behalf")
        status = _parse_decision(decision)

        # Point read so a decision made by another client is seen
        doc = self.manager.store.get_doc(self.manager.doc_path(record_id))
        if doc is None:
            logger.warning("APPROVAL_DECIDE_NOT_FOUND", extra={"record_id": record_id})
            raise RecordNotFoundError(f"Approval request not found: {record_id}")

        current = ApprovalRecord.from_record(ObservationRecord.from_document(doc.id, doc.data))
        if current.request_status is not ApprovalStatus.PENDING:
            raise TerminalStateError(
                f"Request {record_id} is already {current.request_status.value}"
            )

        decided_at = utc_now_iso()
        # Conditional on PENDING so a concurrent decision cannot be overwritten
        written = self.manager.store.update_if(
            self.manager.doc_path(record_id),
            "requestStatus",
            ApprovalStatus.PENDING.value,
            {
                "requestStatus": status.value,
                "approverId": approver_id,
                "approvedAt": decided_at,
                WRITTEN_AT_FIELD: decided_at,
            },
        )
        if not written:
            logger.warning(
                "APPROVAL_DECISION_CONFLICT",
                extra={"record_id": record_id, "bucket_key": current.bucket_key}
            )
            raise TerminalStateError(f"Request {record_id} was decided by someone else")

        logger.info(
            "APPROVAL_DECIDED",
            extra={
                "record_id": record_id,
                "bucket_key": current.bucket_key,
                "decision": status.value,
                "approver_hash": hash_pii(approver_id),
            }
        )
        return ApprovalRecord(
            id=current.id,
            bucket_key=current.bucket_key,
            requested_by=current.requested_by,
            request_status=status,
            requested_at=current.requested_at,
            approver_id=approver_id,
            approved_at=decided_at,
        )

    def _require_role(self, roles, action: str) -> None:
        if not self.actor.email_verified:
            raise NotVerifiedError(f"Verify your email before you {action}")
        if self.actor.role not in roles:
            logger.warning(
                "APPROVAL_ACCESS_DENIED",
                extra={
                    "action": action,
                    "role": self.actor.role.value if self.actor.role else None,
                }
            )
            raise AccessDeniedError(f"Your role may not {action}")


def _parse_decision(decision: Decision) -> ApprovalStatus:
    if isinstance(decision, bool):
        return ApprovalStatus.APPROVED if decision else ApprovalStatus.REJECTED
    try:
        status = ApprovalStatus(decision) if isinstance(decision, str) else decision
    except ValueError:
        raise ValidationError(f"Unknown decision: {decision!r}")
    if status not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
        raise ValidationError("Decision must be Approved or Rejected")
    return status
