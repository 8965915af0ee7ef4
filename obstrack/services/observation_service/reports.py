"""Aggregate report across every observation type.

Each card carries one headline number and whether it meets its target.
Everything is recomputed from current records; nothing is persisted.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from obstrack.shared.models import ApprovalStatus, ObservationRecord
from obstrack.shared.utils import average_task_progress, day_key, ratio_percent
from .catalog import (
    ABSENCE_FIXING,
    ATTENDANCE_100,
    BEHAVIORAL_ISSUES,
    COMPLAINTS,
    MASTERY_RATIO,
    READINESS_LEVEL,
    SCHOOL_RESULTS,
    THE_GAP,
    readiness_tasks,
)
from .manager import ObservationRecordManager

logger = logging.getLogger(__name__)

# Targets from the reports dashboard
ABSENCE_COMPLETION_TARGET = 90.0
BEHAVIOR_WEEKLY_LIMIT = 5
RESULTS_PROGRESS_TARGET = 10.0
READINESS_TARGET = 70.0
COMPLAINTS_CLOSURE_TARGET = 80.0

BEHAVIOR_WINDOW_DAYS = 7
COMPLAINTS_WINDOW_DAYS = 28


class ReportStatus(Enum):
    HIGH = "HIGH"
    LOW = "LOW"


@dataclass(frozen=True)
class ReportCard:
    """Summary of one observation type."""
    observation: str
    title: str
    rate: float
    unit: str
    status: ReportStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "observation": self.observation,
            "title": self.title,
            "rate": round(self.rate, 1),
            "unit": self.unit,
            "status": self.status.value,
        }


def _status(met: bool) -> ReportStatus:
    return ReportStatus.HIGH if met else ReportStatus.LOW


def _latest(records: List[ObservationRecord]) -> Optional[ObservationRecord]:
    return records[0] if records else None


def _absence_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    rate = manager.month_to_date_rate(today)
    return ReportCard(
        observation=ABSENCE_FIXING.key,
        title=ABSENCE_FIXING.title,
        rate=rate,
        unit="% school days monitored this month",
        status=_status(rate >= ABSENCE_COMPLETION_TARGET),
    )


def _attendance_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    approved_days = {
        record.bucket_key for record in manager.records()
        if record.get("requestStatus") == ApprovalStatus.APPROVED.value
    }
    return ReportCard(
        observation=ATTENDANCE_100.key,
        title=ATTENDANCE_100.title,
        rate=float(len(approved_days)),
        unit="approved days",
        status=_status(len(approved_days) > 0),
    )


def _behavior_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    since = day_key(today - timedelta(days=BEHAVIOR_WINDOW_DAYS - 1))
    recent = sum(
        record.get("issue_count", 0) for record in manager.records()
        if since <= record.bucket_key <= day_key(today)
    )
    return ReportCard(
        observation=BEHAVIORAL_ISSUES.key,
        title=BEHAVIORAL_ISSUES.title,
        rate=float(recent),
        unit="issues in 7 days",
        status=_status(recent < BEHAVIOR_WEEKLY_LIMIT),
    )


def _gap_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    latest = _latest(manager.records())
    positive = bool(latest and latest.get("is_positive"))
    return ReportCard(
        observation=THE_GAP.key,
        title=THE_GAP.title,
        rate=100.0 if positive else 0.0,
        unit="% positive",
        status=_status(positive),
    )


def _results_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    latest = _latest(manager.records())
    progress = float(latest.get("overall_progress", 0)) if latest else 0.0
    return ReportCard(
        observation=SCHOOL_RESULTS.key,
        title=SCHOOL_RESULTS.title,
        rate=progress,
        unit="% average improvement",
        status=_status(progress >= RESULTS_PROGRESS_TARGET),
    )


def _readiness_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    progress = average_task_progress(readiness_tasks(_latest(manager.records())))
    return ReportCard(
        observation=READINESS_LEVEL.key,
        title=READINESS_LEVEL.title,
        rate=progress,
        unit="% plan complete",
        status=_status(progress >= READINESS_TARGET),
    )


def _mastery_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    latest = _latest(manager.records())
    documented = bool(latest and latest.get("is_documented"))
    return ReportCard(
        observation=MASTERY_RATIO.key,
        title=MASTERY_RATIO.title,
        rate=100.0 if documented else 0.0,
        unit="% documented",
        status=_status(documented),
    )


def _complaints_card(manager: ObservationRecordManager, today: date) -> ReportCard:
    since = day_key(today - timedelta(days=COMPLAINTS_WINDOW_DAYS))
    recent = [r for r in manager.records() if r.bucket_key >= since]
    closed = sum(r.get("closed", 0) for r in recent)
    raised = sum(r.get("raised", 0) for r in recent)
    rate = ratio_percent(closed, raised)
    return ReportCard(
        observation=COMPLAINTS.key,
        title=COMPLAINTS.title,
        rate=rate,
        unit="% closed (last month)",
        status=_status(rate >= COMPLAINTS_CLOSURE_TARGET),
    )


_CARD_BUILDERS: Dict[str, Callable[[ObservationRecordManager, date], ReportCard]] = {
    ABSENCE_FIXING.key: _absence_card,
    ATTENDANCE_100.key: _attendance_card,
    BEHAVIORAL_ISSUES.key: _behavior_card,
    THE_GAP.key: _gap_card,
    SCHOOL_RESULTS.key: _results_card,
    READINESS_LEVEL.key: _readiness_card,
    MASTERY_RATIO.key: _mastery_card,
    COMPLAINTS.key: _complaints_card,
}


def build_report(
    managers: Iterable[ObservationRecordManager],
    today: Optional[date] = None,
) -> List[ReportCard]:
    """One card per manager, in the order given.

    Args:
        managers: Managers of the types to report on
        today: Reference date for windowed metrics

    Returns:
        List of ReportCard
    """
    today = today or date.today()
    cards = []
    for manager in managers:
        builder = _CARD_BUILDERS.get(manager.observation_type.key)
        if builder is None:
            continue
        cards.append(builder(manager, today))

    logger.info(
        "REPORT_BUILT",
        extra={
            "cards": len(cards),
            "high": sum(1 for card in cards if card.status is ReportStatus.HIGH),
        }
    )
    return cards
