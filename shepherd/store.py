"""The task store: single owner of a workspace's live repository.

Both the operator UI (in-process) and the Bridge (on behalf of the agent
process) go through :class:`TaskStore`. Every mutation is one critical
section: copy the live repository, apply the change to the copy, persist the
copy, then publish it. If persisting fails the copy is dropped, so memory
and disk never disagree. Listeners are notified after the lock is released.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from . import repository as repo
from .errors import NotFoundError, PersistenceError, ValidationError
from .models import (
    FEATURE_ARCHIVED,
    READY_FOR_SIGNOFF,
    REWORK,
    Feature,
    Proposal,
    ProposalResult,
    Repository,
    Task,
    validate_status,
    utc_now,
)
from .persistence import TaskFile
from .shepherd_logging import log_error_with_context, log_operation
from .workspace import DocumentSnapshot, Workspace, merge_design_guide

logger = logging.getLogger("shepherd.store")

# Notification reasons
CHANGED = "changed"
REQUIREMENTS_CHANGED = "requirements_changed"

Listener = Callable[[str], None]


class TaskStore:
    """Serializes every read and write of one workspace's tasks and features."""

    def __init__(self, workspace: Workspace, task_file: Optional[TaskFile] = None):
        self.workspace = workspace
        self.task_file = task_file or TaskFile(workspace.tasks_path)
        self._lock = threading.RLock()
        self._repository = Repository()
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self._opened = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "TaskStore":
        """Load the repository from disk. Safe to call more than once."""
        with self._lock:
            repository = self._load_repaired()
            self._repository = repository
            self._opened = True
        logger.info(f"Task store opened at {self.task_file.path} ({len(repository.tasks)} tasks)")
        return self

    def close(self) -> None:
        with self._listeners_lock:
            self._listeners.clear()
        self._opened = False
        logger.info("Task store closed")

    def __enter__(self) -> "TaskStore":
        if not self._opened:
            self.open()
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def reload(self) -> None:
        """Re-read the file after an external edit and notify listeners."""
        with self._lock:
            self._repository = self._load_repaired()
        self._notify(CHANGED)

    def _load_repaired(self) -> Repository:
        """Load the file, renumbering and saving back any duplicate task ranks."""
        repository = self.task_file.load()
        if repo.has_rank_collisions(repository.tasks):
            changed = repo.repair_ranks(repository.tasks)
            logger.warning(f"Repaired {len(changed)} duplicate task ranks in {self.task_file.path}")
            self.task_file.save(repository)
        return repository

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(reason)``; returns a callable that unsubscribes it."""
        with self._listeners_lock:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, reason: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Store listener failed for '{reason}': {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Critical sections
    # ------------------------------------------------------------------

    @contextmanager
    def _mutation(
        self,
        operation: str,
        on_abort: Optional[Callable[[], None]] = None,
        **fields: Any,
    ) -> Iterator[Repository]:
        """Yield a private copy of the repository; persist and publish it on success."""
        with self._lock:
            draft = self._repository.copy()
            try:
                with log_operation(operation, **fields):
                    yield draft
                    self.task_file.save(draft)
            except PersistenceError as e:
                log_error_with_context(e, {"operation": operation, **fields})
                if on_abort:
                    on_abort()
                raise
            except Exception:
                if on_abort:
                    on_abort()
                raise
            self._repository = draft
        self._notify(CHANGED)

    @staticmethod
    def _require_task(repository: Repository, task_id: str) -> Task:
        task = repository.find_task(task_id)
        if task is None:
            raise NotFoundError(f"Task '{task_id}' not found")
        return task

    @staticmethod
    def _require_feature(repository: Repository, feature_id: str) -> Feature:
        feature = repository.find_feature(feature_id)
        if feature is None:
            raise NotFoundError(f"Feature '{feature_id}' not found")
        return feature

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        feature_id: Optional[str] = None,
        requirement_path: Optional[str] = None,
        task_type: str = "task",
    ) -> Task:
        """Create a ``todo`` task ranked after every existing task."""
        with self._mutation("create_task", title=title) as draft:
            task = repo.add_task(
                draft,
                title,
                description=description,
                feature_id=feature_id,
                requirement_path=requirement_path,
                task_type=task_type,
            )
        logger.info(f"Created task {task.id} at rank {task.priority}")
        return copy.deepcopy(task)

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            return copy.deepcopy(self._require_task(self._repository, task_id))

    def list_tasks(
        self,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        feature_id: Optional[str] = None,
    ) -> List[Task]:
        """Snapshot of tasks in priority order, optionally filtered."""
        with self._lock:
            selected = repo.select_tasks(self._repository.tasks, status=status, limit=limit, feature_id=feature_id)
            return copy.deepcopy(selected)

    def next_task(self) -> Optional[Task]:
        """Highest-priority ``todo`` task, or None when there is nothing to do."""
        with self._lock:
            task = repo.next_todo(self._repository.tasks)
            return copy.deepcopy(task) if task else None

    def update_task_status(
        self,
        task_id: str,
        new_status: str,
        *,
        override: bool = False,
        agent: bool = False,
    ) -> Task:
        """Move a task along the state machine.

        ``override`` lets the operator jump to any status. ``agent`` marks a
        request that arrived through the Bridge; operator-only arcs are then
        refused.
        """
        validate_status(new_status)
        with self._mutation("update_task_status", task_id=task_id, status=new_status) as draft:
            task = self._require_task(draft, task_id)
            repo.validate_transition(task.status, new_status, override=override, agent=agent)
            previous = task.status
            task.status = new_status
            task.touch()
        logger.info(f"Task {task_id}: {previous} -> {new_status}")
        return copy.deepcopy(task)

    def update_task(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        requirement_path: Optional[str] = None,
    ) -> Task:
        """Operator edit of a task's text fields."""
        if title is not None and not title.strip():
            raise ValidationError("Task title cannot be empty")
        with self._mutation("update_task", task_id=task_id) as draft:
            task = self._require_task(draft, task_id)
            if title is not None:
                task.title = title.strip()
            if description is not None:
                task.description = description
            if requirement_path is not None:
                task.requirement_path = requirement_path or None
            task.touch()
        return copy.deepcopy(task)

    def request_rework(self, task_id: str, feedback: str) -> Task:
        """Send a task back from sign-off with the operator's feedback appended."""
        if not feedback or not feedback.strip():
            raise ValidationError("Rework feedback cannot be empty")
        with self._mutation("request_rework", task_id=task_id) as draft:
            task = self._require_task(draft, task_id)
            if task.status != READY_FOR_SIGNOFF:
                raise ValidationError(
                    f"Only tasks in '{READY_FOR_SIGNOFF}' can be sent to rework (task is '{task.status}')"
                )
            task.description = repo.format_rework_description(task.description, feedback)
            task.status = REWORK
            task.touch()
        return copy.deepcopy(task)

    def delete_task(self, task_id: str) -> None:
        with self._mutation("delete_task", task_id=task_id) as draft:
            repo.remove_task(draft, task_id)
        logger.info(f"Deleted task {task_id}")

    def reorder_task(self, task_id: str, new_rank: int) -> None:
        """Move a task to position ``new_rank`` in priority order (0 = first)."""
        with self._mutation("reorder_task", task_id=task_id, new_rank=new_rank) as draft:
            changed = repo.reorder(draft.tasks, task_id, new_rank)
        logger.debug(f"Reorder of {task_id} rewrote {len(changed)} ranks")

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def list_features(self) -> List[Feature]:
        with self._lock:
            return copy.deepcopy(self._repository.features)

    def get_feature(self, feature_id: str) -> Feature:
        with self._lock:
            return copy.deepcopy(self._require_feature(self._repository, feature_id))

    def archive_feature(self, feature_id: str) -> Feature:
        with self._mutation("archive_feature", feature_id=feature_id) as draft:
            feature = self._require_feature(draft, feature_id)
            feature.status = FEATURE_ARCHIVED
            feature.updated_at = utc_now()
        return copy.deepcopy(feature)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def apply_proposal(self, proposal: Union[Proposal, Dict[str, Any]]) -> ProposalResult:
        """Apply an interview proposal as one atomic batch.

        Order: validate everything, write the requirement document and the
        design guide, create features, create tasks, persist once. Any
        failure aborts the batch; documents already written are restored.
        """
        if not isinstance(proposal, Proposal):
            proposal = Proposal.from_dict(proposal)

        snapshots: List[DocumentSnapshot] = []

        def restore_documents() -> None:
            for snapshot in reversed(snapshots):
                try:
                    snapshot.restore()
                except OSError as e:
                    logger.error(f"Could not restore {snapshot.path} after aborted proposal: {e}")

        with self._mutation(
            "apply_proposal",
            on_abort=restore_documents,
            features=len(proposal.features),
            tasks=len(proposal.tasks),
        ) as draft:
            issues = repo.check_proposal(draft, proposal)
            if issues:
                raise ValidationError("Invalid proposal: " + "; ".join(issues))

            edits = []
            requirement_path = None
            if proposal.requirement_doc and proposal.requirement_doc.strip():
                requirement_path = self.workspace.derive_requirement_path(
                    proposal.requirement_doc, proposal.requirement_path
                )
                edits.append((requirement_path, proposal.requirement_doc))

            design = self._proposed_design_guide(proposal)
            if design is not None:
                edits.append((self.workspace.design_guide_path(), design))

            try:
                for path, content in edits:
                    snapshots.append(self.workspace.write_document(path, content))
            except OSError as e:
                raise PersistenceError(f"Failed to write requirement documents: {e}") from e

            result = repo.apply_proposal(draft, proposal, requirement_path)

        logger.info(
            f"Applied proposal: {len(result.feature_ids)} features, {len(result.task_ids)} tasks"
        )
        if edits:
            self._notify(REQUIREMENTS_CHANGED)
        return result

    def _proposed_design_guide(self, proposal: Proposal) -> Optional[str]:
        if proposal.proposed_design_md and proposal.proposed_design_md.strip():
            return proposal.proposed_design_md.strip() + "\n"
        if proposal.design_additions and proposal.design_additions.strip():
            return merge_design_guide(self.workspace.read_design_guide(), proposal.design_additions)
        return None

    # ------------------------------------------------------------------
    # Requirements
    # ------------------------------------------------------------------

    def get_requirement_for_task(self, task_id: str) -> Optional[str]:
        """The task's requirement path, falling back to its feature's."""
        with self._lock:
            task = self._require_task(self._repository, task_id)
            if task.requirement_path:
                return task.requirement_path
            if task.feature_id:
                feature = self._repository.find_feature(task.feature_id)
                if feature is not None and feature.requirement_path:
                    return feature.requirement_path
            return None

    def list_requirements(self) -> List[Dict[str, str]]:
        with self._lock:
            return self.workspace.list_requirements()

    def requirements_path(self) -> str:
        return str(self.workspace.requirements_dir)

    def create_requirement(self, path: str, content: str) -> Dict[str, str]:
        with self._lock:
            try:
                created = self.workspace.create_requirement(path, content)
            except OSError as e:
                raise PersistenceError(f"Failed to write requirement '{path}': {e}") from e
        self._notify(REQUIREMENTS_CHANGED)
        return created

    def read_design_guide(self) -> Dict[str, str]:
        with self._lock:
            return {
                "path": self.workspace.design_guide_path(),
                "content": self.workspace.read_design_guide(),
            }
