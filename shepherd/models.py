"""Data models for the Shepherd control plane.

This module contains the core data structures shared by the store, the
Bridge and the Gateway: tasks, features, the repository that owns them, and
the proposal payload produced by the requirements interview.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .errors import ValidationError

SCHEMA_VERSION = 1

# Task statuses, in workflow order
TODO = "todo"
IN_PROGRESS = "in-progress"
READY_FOR_SIGNOFF = "ready-for-signoff"
DONE = "done"
REWORK = "rework"

TASK_STATUSES: Tuple[str, ...] = (TODO, IN_PROGRESS, READY_FOR_SIGNOFF, DONE, REWORK)

# Arcs the state machine allows without an operator override
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    TODO: frozenset({IN_PROGRESS}),
    IN_PROGRESS: frozenset({READY_FOR_SIGNOFF}),
    READY_FOR_SIGNOFF: frozenset({DONE, REWORK}),
    REWORK: frozenset({IN_PROGRESS}),
    DONE: frozenset(),
}

# Arcs the agent may not take even though the graph contains them
OPERATOR_ONLY_TRANSITIONS: FrozenSet[Tuple[str, str]] = frozenset({(READY_FOR_SIGNOFF, REWORK)})

TASK_TYPES: Tuple[str, ...] = ("task", "bug")

FEATURE_ACTIVE = "active"
FEATURE_ARCHIVED = "archived"
FEATURE_STATUSES: Tuple[str, ...] = (FEATURE_ACTIVE, FEATURE_ARCHIVED)

# Wire sentinel for a scope-less quick task
NO_FEATURE = "none"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_feature_ref(feature_id: Optional[str]) -> Optional[str]:
    """Map the ``"none"`` sentinel and blank values to ``None``."""
    if feature_id is None:
        return None
    feature_id = str(feature_id).strip()
    if not feature_id or feature_id.lower() == NO_FEATURE:
        return None
    return feature_id


def validate_status(status: Any) -> str:
    """Return ``status`` if it is a known task status, else raise ValidationError."""
    if status not in TASK_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Expected one of: {', '.join(TASK_STATUSES)}"
        )
    return status


@dataclass(slots=True)
class Task:
    """The unit of executable work."""

    id: str
    title: str
    description: str = ""
    status: str = TODO
    priority: int = 0  # lower number = higher priority, unique across the store
    feature_id: Optional[str] = None
    requirement_path: Optional[str] = None
    type: str = "task"
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "feature_id": self.feature_id,
            "requirement_path": self.requirement_path,
            "type": self.type,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create from dictionary representation."""
        created_at = data.get("created_at") or data.get("createdAt") or utc_now()
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            status=data.get("status", TODO),
            priority=int(data.get("priority", 0)),
            feature_id=normalize_feature_ref(data.get("feature_id")),
            requirement_path=data.get("requirement_path") or data.get("requirementPath"),
            type=data.get("type", "task"),
            created_at=created_at,
            updated_at=data.get("updated_at") or data.get("updatedAt") or created_at,
        )

    def touch(self) -> None:
        self.updated_at = utc_now()

    def validate(self) -> List[str]:
        """Validate task data and return any issues."""
        issues = []

        if not self.id:
            issues.append("Task ID is required")
        if not self.title or not self.title.strip():
            issues.append("Title is required")
        if self.status not in TASK_STATUSES:
            issues.append(f"Invalid status: {self.status}")
        if self.type not in TASK_TYPES:
            issues.append(f"Invalid task type: {self.type}")

        return issues


@dataclass(slots=True)
class Feature:
    """A consolidated unit of product work that owns an ordered list of tasks."""

    id: str
    title: str
    description: str = ""
    status: str = FEATURE_ACTIVE
    task_ids: List[str] = field(default_factory=list)
    requirement_path: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "task_ids": list(self.task_ids),
            "requirement_path": self.requirement_path,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feature":
        """Create from dictionary representation."""
        created_at = data.get("created_at") or utc_now()
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            status=data.get("status", FEATURE_ACTIVE),
            task_ids=list(data.get("task_ids", [])),
            requirement_path=data.get("requirement_path"),
            created_at=created_at,
            updated_at=data.get("updated_at") or created_at,
        )

    def validate(self) -> List[str]:
        """Validate feature data and return any issues."""
        issues = []

        if not self.id:
            issues.append("Feature ID is required")
        if not self.title or not self.title.strip():
            issues.append("Title is required")
        if self.status not in FEATURE_STATUSES:
            issues.append(f"Invalid feature status: {self.status}")

        return issues


@dataclass(slots=True)
class Repository:
    """In-memory image of the task store file."""

    version: int = SCHEMA_VERSION
    tasks: List[Task] = field(default_factory=list)
    features: List[Feature] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "version": self.version,
            "tasks": [task.to_dict() for task in self.tasks],
            "features": [feature.to_dict() for feature in self.features],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Repository":
        """Create from dictionary representation."""
        return cls(
            version=int(data.get("version", SCHEMA_VERSION)),
            tasks=[Task.from_dict(item) for item in data.get("tasks", [])],
            features=[Feature.from_dict(item) for item in data.get("features", [])],
        )

    def validate(self) -> List[str]:
        """Validate every task and feature and return any issues, prefixed by id."""
        issues = []
        for task in self.tasks:
            issues.extend(f"task {task.id}: {issue}" for issue in task.validate())
        for feature in self.features:
            issues.extend(f"feature {feature.id}: {issue}" for issue in feature.validate())
        return issues

    def copy(self) -> "Repository":
        return copy.deepcopy(self)

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def find_feature(self, feature_id: str) -> Optional[Feature]:
        for feature in self.features:
            if feature.id == feature_id:
                return feature
        return None


# ----------------------------------------------------------------------
# Interview proposals
# ----------------------------------------------------------------------


@dataclass(slots=True)
class ProposalFeature:
    title: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposalFeature":
        if not isinstance(data, dict):
            raise ValidationError("Each proposed feature must be an object")
        return cls(title=str(data.get("title") or ""), description=str(data.get("description") or ""))


@dataclass(slots=True)
class ProposalTask:
    title: str
    description: str = ""
    feature_index: Optional[int] = None
    existing_feature_id: Optional[str] = None
    type: str = "task"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposalTask":
        if not isinstance(data, dict):
            raise ValidationError("Each proposed task must be an object")
        feature_index = data.get("featureIndex", data.get("feature_index"))
        if feature_index is not None and (isinstance(feature_index, bool) or not isinstance(feature_index, int)):
            raise ValidationError(f"featureIndex must be an integer, got {feature_index!r}")
        existing = data.get("existingFeatureId", data.get("existing_feature_id"))
        return cls(
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            feature_index=feature_index,
            existing_feature_id=str(existing) if existing is not None else None,
            type=str(data.get("type") or "task"),
        )


@dataclass(slots=True)
class Proposal:
    """A batch of features, tasks and requirement edits applied atomically."""

    features: List[ProposalFeature] = field(default_factory=list)
    tasks: List[ProposalTask] = field(default_factory=list)
    requirement_doc: Optional[str] = None
    requirement_path: Optional[str] = None
    proposed_design_md: Optional[str] = None  # full replacement of design.md
    design_additions: Optional[str] = None  # merged into design.md section by section

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        """Create from the interview payload (camelCase keys, snake_case accepted)."""
        if not isinstance(data, dict):
            raise ValidationError("Proposal must be an object")
        features = data.get("features") or []
        tasks = data.get("tasks") or []
        if not isinstance(features, list) or not isinstance(tasks, list):
            raise ValidationError("Proposal features and tasks must be lists")
        return cls(
            features=[ProposalFeature.from_dict(item) for item in features],
            tasks=[ProposalTask.from_dict(item) for item in tasks],
            requirement_doc=data.get("requirementDoc", data.get("requirement_doc")),
            requirement_path=data.get("requirementPath", data.get("requirement_path")),
            proposed_design_md=data.get("proposedDesignMd", data.get("proposed_design_md")),
            design_additions=data.get("designAdditions", data.get("design_additions")),
        )


@dataclass(slots=True)
class ProposalResult:
    feature_ids: List[str] = field(default_factory=list)
    task_ids: List[str] = field(default_factory=list)
    requirement_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_ids": list(self.feature_ids),
            "task_ids": list(self.task_ids),
            "requirement_path": self.requirement_path,
        }
