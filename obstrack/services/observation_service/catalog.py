"""Observation type catalog.

One record engine, configured eight times. Each ObservationType names its
collection, bucket granularity, payload schema, editor roles and the
completion predicate its progress metric uses.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from obstrack.shared.errors import RecordNotFoundError, ValidationError
from obstrack.shared.models import ApprovalStatus, ObservationRecord, Role
from obstrack.shared.utils import Granularity, score_progress

RecordCheck = Callable[[Mapping[str, Any]], None]
Derive = Callable[[Mapping[str, Any]], Dict[str, Any]]

_NUMBER = (int, float)


@dataclass(frozen=True)
class FieldSpec:
    """One payload field: type, range and allowed values."""
    name: str
    kind: type
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Optional[FrozenSet[str]] = None
    required: bool = False

    def validate(self, value: Any) -> None:
        """Raises ValidationError when value does not fit this field."""
        if self.kind is float:
            valid_type = isinstance(value, _NUMBER) and not isinstance(value, bool)
        elif self.kind is int:
            valid_type = isinstance(value, int) and not isinstance(value, bool)
        else:
            valid_type = isinstance(value, self.kind)
        if not valid_type:
            raise ValidationError(f"{self.name} must be of type {self.kind.__name__}")

        if self.minimum is not None and value < self.minimum:
            raise ValidationError(f"{self.name} must be at least {self.minimum}")
        if self.maximum is not None and value > self.maximum:
            raise ValidationError(f"{self.name} must be at most {self.maximum}")
        if self.choices is not None and value not in self.choices:
            raise ValidationError(f"{self.name} must be one of {sorted(self.choices)}")
        if self.required and self.kind is str and not value.strip():
            raise ValidationError(f"{self.name} must not be empty")


@dataclass(frozen=True)
class ApprovalPolicy:
    """Dual-party approval roles for an observation type.

    allow_rerequest_after_rejection lets the requester open a new request for
    a bucket whose previous request was rejected.
    """
    requester_roles: FrozenSet[Role]
    approver_roles: FrozenSet[Role]
    allow_rerequest_after_rejection: bool = False


@dataclass(frozen=True)
class ObservationType:
    """Configuration of the generic observation record engine."""
    key: str
    title: str
    collection: str
    granularity: Granularity
    editor_roles: FrozenSet[Role]
    is_complete: Callable[[ObservationRecord], bool]
    fields: Tuple[FieldSpec, ...] = ()
    entry_fields: Tuple[FieldSpec, ...] = ()
    threshold_fraction: Optional[float] = None
    threshold_field: Optional[str] = None
    approval: Optional[ApprovalPolicy] = None
    check_record: Optional[RecordCheck] = None
    derive: Optional[Derive] = None

    def field_spec(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise ValidationError(f"Unknown field for {self.key}: {name}")

    def validate_patch(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Check every patch field against the schema.

        Returns:
            A copy of the patch

        Raises:
            ValidationError: Unknown field, wrong type or out of range
        """
        if not isinstance(patch, Mapping) or not patch:
            raise ValidationError("Patch must be a non-empty object")
        for name, value in patch.items():
            self.field_spec(name).validate(value)
        return dict(patch)

    def validate_record(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Run cross-field checks on a merged payload.

        Returns:
            Derived fields to store alongside the payload
        """
        if self.check_record is not None:
            self.check_record(payload)
        if self.derive is not None:
            return self.derive(payload)
        return {}

    def validate_entry(self, entry: Mapping[str, Any]) -> Dict[str, Any]:
        """Check one list entry (e.g. a behavioral incident)."""
        if not self.entry_fields:
            raise ValidationError(f"{self.key} does not accept entries")
        if not isinstance(entry, Mapping):
            raise ValidationError("Entry must be an object")

        known = {spec.name for spec in self.entry_fields}
        unknown = set(entry) - known
        if unknown:
            raise ValidationError(f"Unknown entry fields: {sorted(unknown)}")
        for spec in self.entry_fields:
            if spec.name in entry:
                spec.validate(entry[spec.name])
            elif spec.required:
                raise ValidationError(f"{spec.name} is required")
        return dict(entry)


# Actions a student guide may record against a behavioral incident
BEHAVIOR_ACTIONS: FrozenSet[str] = frozenset({
    "verbal_warning",
    "guardian_summoned",
    "conduct_points_deducted",
    "referred_to_manager",
    "guidance_meeting",
    "other",
})

SUBJECTS: Tuple[str, ...] = ("arabic", "math", "science")

DEFAULT_READINESS_TASKS: Tuple[Dict[str, Any], ...] = (
    {"id": 1, "name": "Prepare first-grade classrooms and learning environment", "target": 100, "progress": 0},
    {"id": 2, "name": "Run staff workshops on readiness strategies", "target": 100, "progress": 0},
    {"id": 3, "name": "Distribute improvement plans and assign responsibilities", "target": 100, "progress": 0},
    {"id": 4, "name": "Launch the outstanding starter classes contest", "target": 100, "progress": 0},
)

_MANAGER_ONLY = frozenset({Role.MANAGER})


def _check_complaints(payload: Mapping[str, Any]) -> None:
    raised = payload.get("raised", 0)
    opened = payload.get("open", 0)
    closed = payload.get("closed", 0)
    if opened + closed > raised:
        raise ValidationError("Open and closed complaints cannot exceed complaints raised")


def _check_mastery(payload: Mapping[str, Any]) -> None:
    if payload.get("is_documented") and not str(payload.get("plan_details") or "").strip():
        raise ValidationError("Plan details are required before documenting")


def _check_tasks(payload: Mapping[str, Any]) -> None:
    seen = set()
    for task in payload.get("tasks", []):
        if not isinstance(task, Mapping) or "id" not in task:
            raise ValidationError("Each task needs an id")
        if task["id"] in seen:
            raise ValidationError(f"Duplicate task id: {task['id']}")
        seen.add(task["id"])
        FieldSpec("name", str, required=True).validate(task.get("name", ""))
        FieldSpec("progress", float, minimum=0, maximum=100).validate(task.get("progress", 0))


def _check_incidents(payload: Mapping[str, Any]) -> None:
    for incident in payload.get("incidents", []):
        BEHAVIORAL_ISSUES.validate_entry(incident)


def _derive_results(payload: Mapping[str, Any]) -> Dict[str, Any]:
    total_pre = sum(payload.get(f"{subject}_pre", 0) for subject in SUBJECTS)
    total_post = sum(payload.get(f"{subject}_post", 0) for subject in SUBJECTS)
    return {"overall_progress": round(score_progress(total_pre, total_post), 1)}


def _derive_issue_count(payload: Mapping[str, Any]) -> Dict[str, Any]:
    incidents = payload.get("incidents")
    if incidents is None:
        return {}
    return {"issue_count": sum(i.get("issue_count", 1) for i in incidents)}


def _all_tasks_done(record: ObservationRecord) -> bool:
    tasks = record.get("tasks") or []
    return bool(tasks) and all(task.get("progress", 0) >= 100 for task in tasks)


def _all_incidents_actioned(record: ObservationRecord) -> bool:
    incidents = record.get("incidents") or []
    return bool(incidents) and all(i.get("action_taken") for i in incidents)


ABSENCE_FIXING = ObservationType(
    key="absence-fixing",
    title="Absence Fixing",
    collection="absence_fixing",
    granularity=Granularity.DAY,
    editor_roles=frozenset({Role.DEPUTY}),
    fields=(
        FieldSpec("confirmed", bool),
        FieldSpec("technical_issue", bool),
        FieldSpec("absent_count", int, minimum=0),
        FieldSpec("notes", str),
    ),
    is_complete=lambda r: bool(r.get("confirmed") or r.get("technical_issue")),
    threshold_fraction=0.05,
    threshold_field="absent_count",
)

ATTENDANCE_100 = ObservationType(
    key="attendance-100",
    title="100% Attendance",
    collection="attendance_100",
    granularity=Granularity.DAY,
    editor_roles=frozenset(),
    approval=ApprovalPolicy(
        requester_roles=frozenset({Role.DEPUTY}),
        approver_roles=_MANAGER_ONLY,
    ),
    is_complete=lambda r: r.get("requestStatus") == ApprovalStatus.APPROVED.value,
)

BEHAVIORAL_ISSUES = ObservationType(
    key="behavioral-issues",
    title="Behavioral Issues",
    collection="behavioral_issues",
    granularity=Granularity.DAY,
    editor_roles=frozenset({Role.STUDENT_GUIDE}),
    fields=(
        FieldSpec("issue_count", int, minimum=0),
        FieldSpec("incidents", list),
    ),
    entry_fields=(
        FieldSpec("student_name", str, required=True),
        FieldSpec("issue_count", int, minimum=1, required=True),
        FieldSpec("action_taken", str, choices=BEHAVIOR_ACTIONS, required=True),
        FieldSpec("logged_at", str),
        FieldSpec("logged_by", str),
    ),
    check_record=_check_incidents,
    derive=_derive_issue_count,
    is_complete=_all_incidents_actioned,
)

THE_GAP = ObservationType(
    key="the-gap",
    title="The Gap",
    collection="the_gap",
    granularity=Granularity.MONTH,
    editor_roles=_MANAGER_ONLY,
    fields=(
        FieldSpec("is_positive", bool),
        FieldSpec("plan_ready", bool),
        FieldSpec("is_documented", bool),
        FieldSpec("documentation", str),
    ),
    is_complete=lambda r: bool(r.get("is_documented")),
)

SCHOOL_RESULTS = ObservationType(
    key="school-results",
    title="School Results",
    collection="school_results",
    granularity=Granularity.MONTH,
    editor_roles=_MANAGER_ONLY,
    fields=tuple(
        FieldSpec(f"{subject}_{phase}", float, minimum=0, maximum=100)
        for subject in SUBJECTS
        for phase in ("pre", "post")
    ),
    derive=_derive_results,
    is_complete=lambda r: r.get("overall_progress", 0) > 0,
)

READINESS_LEVEL = ObservationType(
    key="readiness-level",
    title="Readiness Level",
    collection="readiness_level",
    granularity=Granularity.MONTH,
    editor_roles=_MANAGER_ONLY,
    fields=(FieldSpec("tasks", list),),
    check_record=_check_tasks,
    is_complete=_all_tasks_done,
)

MASTERY_RATIO = ObservationType(
    key="mastery-ratio",
    title="Mastery Ratio",
    collection="mastery_ratio",
    granularity=Granularity.MONTH,
    editor_roles=_MANAGER_ONLY,
    fields=(
        FieldSpec("mastery_ratio", float, minimum=0, maximum=100),
        FieldSpec("plan_details", str),
        FieldSpec("is_documented", bool),
    ),
    check_record=_check_mastery,
    is_complete=lambda r: bool(r.get("is_documented")),
)

COMPLAINTS = ObservationType(
    key="complaints",
    title="Complaints",
    collection="complaints",
    granularity=Granularity.WEEK,
    editor_roles=_MANAGER_ONLY,
    fields=(
        FieldSpec("raised", int, minimum=0),
        FieldSpec("open", int, minimum=0),
        FieldSpec("closed", int, minimum=0),
    ),
    check_record=_check_complaints,
    is_complete=lambda r: r.get("closed", 0) == r.get("raised", 0),
)

OBSERVATION_TYPES: Tuple[ObservationType, ...] = (
    ABSENCE_FIXING,
    ATTENDANCE_100,
    BEHAVIORAL_ISSUES,
    THE_GAP,
    SCHOOL_RESULTS,
    READINESS_LEVEL,
    MASTERY_RATIO,
    COMPLAINTS,
)

CATALOG: Dict[str, ObservationType] = {t.key: t for t in OBSERVATION_TYPES}


def get_observation_type(key: str) -> ObservationType:
    """Look up an observation type by key.

    Raises:
        RecordNotFoundError: Unknown key
    """
    try:
        return CATALOG[key]
    except KeyError:
        raise RecordNotFoundError(f"Unknown observation type: {key}")


def readiness_tasks(record: Optional[ObservationRecord]) -> List[Dict[str, Any]]:
    """Tasks of a readiness record, or the default plan when none is stored."""
    if record is not None and record.get("tasks"):
        return [dict(task) for task in record.get("tasks")]
    return [dict(task) for task in DEFAULT_READINESS_TASKS]

