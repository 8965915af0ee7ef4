"""Observation Service: per-bucket observation records.

One generic record manager configured by the observation catalog:
1. Follows each type's collection live, newest bucket first
2. Upserts at most one record per bucket key (merge semantics)
3. Runs the dual-party approval workflow for attendance
4. Computes completion rates, threshold alerts and the aggregate report

Concurrent writes to one bucket are last-write-wins per field.
"""

from .catalog import (
    ApprovalPolicy,
    FieldSpec,
    ObservationType,
    OBSERVATION_TYPES,
    CATALOG,
    get_observation_type,
)
from .manager import ObservationRecordManager
from .approval import ApprovalWorkflow
from .reports import ReportCard, ReportStatus, build_report

__all__ = [
    "ApprovalPolicy",
    "FieldSpec",
    "ObservationType",
    "OBSERVATION_TYPES",
    "CATALOG",
    "get_observation_type",
    "ObservationRecordManager",
    "ApprovalWorkflow",
    "ReportCard",
    "ReportStatus",
    "build_report",
]
