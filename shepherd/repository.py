"""Pure operations on a :class:`~shepherd.models.Repository`.

Nothing in this module touches the filesystem or takes a lock. The store
calls these functions on a private copy of the live repository and only
publishes the copy once it has been persisted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from .errors import ForbiddenTransitionError, NotFoundError, ValidationError
from .models import (
    OPERATOR_ONLY_TRANSITIONS,
    TASK_TYPES,
    TODO,
    TRANSITIONS,
    Feature,
    Proposal,
    ProposalResult,
    Repository,
    Task,
    new_id,
    normalize_feature_ref,
    utc_now,
    validate_status,
)


# ------------------------------------------------------------------
# State machine
# ------------------------------------------------------------------


def can_transition(current: str, new_status: str, *, override: bool = False, agent: bool = False) -> bool:
    """Whether ``current -> new_status`` is allowed for the given caller."""
    if override:
        return not agent and current != new_status
    if new_status not in TRANSITIONS.get(current, frozenset()):
        return False
    if agent and (current, new_status) in OPERATOR_ONLY_TRANSITIONS:
        return False
    return True


def validate_transition(current: str, new_status: str, *, override: bool = False, agent: bool = False) -> None:
    """Raise if ``current -> new_status`` is not allowed; otherwise return None."""
    validate_status(new_status)
    if override and agent:
        raise ForbiddenTransitionError("Status overrides are reserved for the operator")
    if can_transition(current, new_status, override=override, agent=agent):
        return
    if agent and (current, new_status) in OPERATOR_ONLY_TRANSITIONS:
        raise ForbiddenTransitionError(
            f"Transition '{current}' -> '{new_status}' can only be made by the operator"
        )
    allowed = sorted(TRANSITIONS.get(current, frozenset()))
    raise ValidationError(
        f"Cannot move task from '{current}' to '{new_status}'. "
        f"Allowed next statuses: {', '.join(allowed) if allowed else 'none'}"
    )


# ------------------------------------------------------------------
# Ordering
# ------------------------------------------------------------------


def sort_key(task: Task):
    return (task.priority, task.created_at)


def sorted_tasks(tasks: Iterable[Task]) -> List[Task]:
    return sorted(tasks, key=sort_key)


def next_rank(tasks: Iterable[Task]) -> int:
    """Rank that places a new task after the current lowest-priority task."""
    ranks = [task.priority for task in tasks]
    return max(ranks) + 1 if ranks else 0


def has_rank_collisions(tasks: Iterable[Task]) -> bool:
    ranks = [task.priority for task in tasks]
    return len(ranks) != len(set(ranks))


def repair_ranks(tasks: List[Task]) -> List[Task]:
    """Renumber tasks 0..n-1 in their current order; returns the tasks that changed.

    Only needed for files edited by hand, where two tasks may share a rank.
    """
    changed = []
    for index, task in enumerate(sorted_tasks(tasks)):
        if task.priority != index:
            task.priority = index
            changed.append(task)
    return changed


def reorder(tasks: List[Task], task_id: str, new_position: int) -> List[Task]:
    """Move a task to ``new_position`` in priority order.

    Only the ranks inside the contiguous window between the old and the new
    position are rewritten; the window reuses its own ranks, so every task
    outside it keeps its rank. Returns the tasks whose rank changed.
    """
    if isinstance(new_position, bool) or not isinstance(new_position, int):
        raise ValidationError(f"Rank must be an integer, got {new_position!r}")
    if new_position < 0:
        raise ValidationError(f"Rank must not be negative, got {new_position}")

    ordered = sorted_tasks(tasks)
    old_position = next((i for i, task in enumerate(ordered) if task.id == task_id), None)
    if old_position is None:
        raise NotFoundError(f"Task '{task_id}' not found")

    new_position = min(new_position, len(ordered) - 1)
    if new_position == old_position:
        return []

    low, high = min(old_position, new_position), max(old_position, new_position)
    window = ordered[low:high + 1]
    ranks = [task.priority for task in window]
    moved = window.pop(old_position - low)
    window.insert(new_position - low, moved)

    changed = []
    for rank, task in zip(ranks, window):
        if task.priority != rank:
            task.priority = rank
            task.touch()
            changed.append(task)
    return changed


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------


def select_tasks(
    tasks: Iterable[Task],
    *,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    feature_id: Optional[str] = None,
) -> List[Task]:
    """Filter and order tasks by priority rank, lowest first."""
    if status is not None:
        validate_status(status)
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
        raise ValidationError(f"limit must be a non-negative integer, got {limit!r}")

    selected = []
    for task in sorted_tasks(tasks):
        if status is not None and task.status != status:
            continue
        if feature_id is not None and task.feature_id != normalize_feature_ref(feature_id):
            continue
        selected.append(task)

    # limit=0 means "no limit", matching the query-string convention
    if limit:
        selected = selected[:limit]
    return selected


def next_todo(tasks: Iterable[Task]) -> Optional[Task]:
    """Lowest-rank task that is still ``todo``, or None."""
    found = select_tasks(tasks, status=TODO, limit=1)
    return found[0] if found else None


# ------------------------------------------------------------------
# Mutations
# ------------------------------------------------------------------


def add_task(
    repository: Repository,
    title: str,
    *,
    description: Optional[str] = None,
    feature_id: Optional[str] = None,
    requirement_path: Optional[str] = None,
    task_type: str = "task",
) -> Task:
    """Append a new ``todo`` task after the current lowest-priority task."""
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Task title cannot be empty")
    if task_type not in TASK_TYPES:
        raise ValidationError(f"Invalid task type '{task_type}'. Expected one of: {', '.join(TASK_TYPES)}")

    now = utc_now()
    task = Task(
        id=new_id(),
        title=title.strip(),
        description=description or "",
        status=TODO,
        priority=next_rank(repository.tasks),
        feature_id=normalize_feature_ref(feature_id),
        requirement_path=requirement_path or None,
        type=task_type,
        created_at=now,
        updated_at=now,
    )
    repository.tasks.append(task)

    # Dangling feature references are tolerated; only a known feature is linked
    if task.feature_id:
        feature = repository.find_feature(task.feature_id)
        if feature is not None:
            feature.task_ids.append(task.id)
            feature.updated_at = now
    return task


def remove_task(repository: Repository, task_id: str) -> Task:
    task = repository.find_task(task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    repository.tasks.remove(task)
    if task.feature_id:
        feature = repository.find_feature(task.feature_id)
        if feature is not None and task.id in feature.task_ids:
            feature.task_ids.remove(task.id)
            feature.updated_at = utc_now()
    return task


def check_proposal(repository: Repository, proposal: Proposal) -> List[str]:
    """Validate a proposal against the repository and return any issues."""
    issues = []
    referenced = set()

    for index, feature in enumerate(proposal.features):
        if not feature.title.strip():
            issues.append(f"Feature {index} has no title")

    for index, task in enumerate(proposal.tasks):
        label = f"Task {index} ('{task.title}')" if task.title else f"Task {index}"
        if not task.title.strip():
            issues.append(f"Task {index} has no title")
        if task.type not in TASK_TYPES:
            issues.append(f"{label} has invalid type '{task.type}'")

        has_index = task.feature_index is not None
        has_existing = task.existing_feature_id is not None
        if has_index and has_existing:
            issues.append(f"{label} references both featureIndex and existingFeatureId")
        elif not has_index and not has_existing:
            issues.append(
                f"{label} must reference a featureIndex or an existingFeatureId "
                f"(use existingFeatureId 'none' for a quick task)"
            )
        elif has_index:
            if not 0 <= task.feature_index < len(proposal.features):
                issues.append(f"{label} references unknown featureIndex {task.feature_index}")
            else:
                referenced.add(task.feature_index)

    for index, feature in enumerate(proposal.features):
        if index not in referenced:
            issues.append(f"Feature {index} ('{feature.title}') is not referenced by any task")

    return issues


def apply_proposal(repository: Repository, proposal: Proposal, requirement_path: Optional[str] = None) -> ProposalResult:
    """Create all proposed features, then all tasks, inside ``repository``.

    The proposal must already have passed :func:`check_proposal`; this is
    re-checked here so a partially valid batch can never be applied.
    """
    issues = check_proposal(repository, proposal)
    if issues:
        raise ValidationError("Invalid proposal: " + "; ".join(issues))

    result = ProposalResult(requirement_path=requirement_path)
    now = utc_now()

    created: List[Feature] = []
    for proposed in proposal.features:
        feature = Feature(
            id=new_id(),
            title=proposed.title.strip(),
            description=proposed.description,
            requirement_path=requirement_path,
            created_at=now,
            updated_at=now,
        )
        repository.features.append(feature)
        created.append(feature)
        result.feature_ids.append(feature.id)

    for proposed in proposal.tasks:
        if proposed.feature_index is not None:
            feature_id = created[proposed.feature_index].id
        else:
            feature_id = normalize_feature_ref(proposed.existing_feature_id)
        task = add_task(
            repository,
            proposed.title,
            description=proposed.description,
            feature_id=feature_id,
            task_type=proposed.type,
        )
        result.task_ids.append(task.id)

    return result


def format_rework_description(existing: Optional[str], feedback: str, now: Optional[datetime] = None) -> str:
    """Append a dated rework section with the operator's feedback."""
    now = now or datetime.now()
    stamp = f"{now.strftime('%b')} {now.day}, {now.year} {now.strftime('%I:%M %p').lstrip('0')}"
    section = f"---\n**Rework requested** ({stamp}):\n{feedback.strip()}"
    if not existing or not existing.strip():
        return section
    return f"{existing.strip()}\n\n{section}"
