"""Unit tests for the task store coordinator."""

import json
import threading

import pytest

from shepherd.errors import ForbiddenTransitionError, NotFoundError, PersistenceError, ValidationError
from shepherd.models import DONE, IN_PROGRESS, READY_FOR_SIGNOFF, REWORK, TODO
from shepherd.persistence import TaskFile
from shepherd.store import CHANGED, REQUIREMENTS_CHANGED, TaskStore
from shepherd.workspace import Workspace


@pytest.fixture
def workspace(tmp_path):
    return Workspace(tmp_path).ensure_dirs()


@pytest.fixture
def store(workspace):
    with TaskStore(workspace) as store:
        yield store


@pytest.fixture
def events(store):
    received = []
    store.subscribe(received.append)
    return received


def fail_saves(monkeypatch):
    def save(self, repository):
        raise PersistenceError("disk full")

    monkeypatch.setattr(TaskFile, "save", save)


class TestCreateAndList:
    """Test cases for creating and listing tasks."""

    def test_ranks_are_appended(self, store):
        """Tasks created on an empty store get ranks 0, 1, 2 and list in that order."""
        a = store.create_task("A")
        b = store.create_task("B")
        c = store.create_task("C")

        assert [a.priority, b.priority, c.priority] == [0, 1, 2]
        assert [task.title for task in store.list_tasks()] == ["A", "B", "C"]

    def test_next_task_is_first_todo(self, store):
        a = store.create_task("A")
        store.create_task("B")
        store.update_task_status(a.id, IN_PROGRESS)

        assert store.next_task().title == "B"

    def test_next_task_empty(self, store):
        assert store.next_task() is None

    def test_list_tasks_limit_and_status(self, store):
        for title in ("A", "B", "C"):
            store.create_task(title)

        assert [task.title for task in store.list_tasks(status=TODO, limit=1)] == ["A"]

    def test_returned_tasks_are_copies(self, store):
        task = store.create_task("A")
        task.title = "Mutated"
        store.list_tasks()[0].status = DONE

        stored = store.get_task(task.id)
        assert stored.title == "A"
        assert stored.status == TODO

    def test_get_unknown_task(self, store):
        with pytest.raises(NotFoundError):
            store.get_task("missing")

    def test_persisted_across_reopen(self, workspace, store):
        task = store.create_task("Persist me", description="Body")

        with TaskStore(workspace) as reopened:
            assert reopened.get_task(task.id).description == "Body"


class TestStatusUpdates:
    """Test cases for the lifecycle through the store."""

    def test_full_lifecycle(self, store):
        task = store.create_task("A")
        for status in (IN_PROGRESS, READY_FOR_SIGNOFF, DONE):
            task = store.update_task_status(task.id, status)
        assert task.status == DONE

    def test_illegal_transition_leaves_task_unchanged(self, store, events):
        task = store.create_task("A")
        events.clear()

        with pytest.raises(ValidationError):
            store.update_task_status(task.id, DONE)

        assert store.get_task(task.id).status == TODO
        assert events == []

    def test_operator_override(self, store):
        task = store.create_task("A")
        assert store.update_task_status(task.id, DONE, override=True).status == DONE

    def test_agent_cannot_send_to_rework(self, store):
        task = store.create_task("A")
        store.update_task_status(task.id, IN_PROGRESS)
        store.update_task_status(task.id, READY_FOR_SIGNOFF)

        with pytest.raises(ForbiddenTransitionError):
            store.update_task_status(task.id, REWORK, agent=True)

    def test_invalid_status(self, store):
        task = store.create_task("A")
        with pytest.raises(ValidationError, match="Invalid status"):
            store.update_task_status(task.id, "blocked")

    def test_request_rework_appends_feedback(self, store):
        task = store.create_task("A", description="Do the thing")
        store.update_task_status(task.id, IN_PROGRESS)
        store.update_task_status(task.id, READY_FOR_SIGNOFF)

        reworked = store.request_rework(task.id, "Header is misaligned")

        assert reworked.status == REWORK
        assert reworked.description.startswith("Do the thing\n\n---\n**Rework requested**")
        assert reworked.description.endswith("Header is misaligned")

    def test_request_rework_requires_signoff(self, store):
        task = store.create_task("A")
        with pytest.raises(ValidationError, match="ready-for-signoff"):
            store.request_rework(task.id, "Not yet")

    def test_update_task_fields(self, store):
        task = store.create_task("A")
        updated = store.update_task(task.id, title="B", requirement_path="docs/requirements/b.md")

        assert updated.title == "B"
        assert store.get_requirement_for_task(task.id) == "docs/requirements/b.md"
        with pytest.raises(ValidationError):
            store.update_task(task.id, title="  ")


class TestReorderAndDelete:
    """Test cases for reordering and deleting."""

    def test_reorder(self, store):
        a, b, c = (store.create_task(title) for title in "ABC")

        store.reorder_task(c.id, 0)

        assert [task.id for task in store.list_tasks()] == [c.id, a.id, b.id]

    def test_reorder_unknown_task(self, store):
        with pytest.raises(NotFoundError):
            store.reorder_task("missing", 0)

    def test_delete_task(self, store):
        task = store.create_task("A")
        store.delete_task(task.id)
        assert store.list_tasks() == []


class TestAtomicity:
    """A failed persist must leave memory exactly as it was."""

    def test_failed_save_rolls_back_create(self, store, events, monkeypatch):
        store.create_task("A")
        events.clear()
        fail_saves(monkeypatch)

        with pytest.raises(PersistenceError):
            store.create_task("B")

        assert [task.title for task in store.list_tasks()] == ["A"]
        assert events == []

    def test_failed_save_rolls_back_status(self, store, monkeypatch):
        task = store.create_task("A")
        fail_saves(monkeypatch)

        with pytest.raises(PersistenceError):
            store.update_task_status(task.id, IN_PROGRESS)

        assert store.get_task(task.id).status == TODO

    def test_concurrent_creates_get_unique_ranks(self, store):
        def worker(offset):
            for i in range(10):
                store.create_task(f"T{offset}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        ranks = [task.priority for task in store.list_tasks()]
        assert len(ranks) == 40
        assert sorted(ranks) == list(range(40))


class TestNotifications:
    """Test cases for change listeners."""

    def test_one_event_per_mutation(self, store, events):
        task = store.create_task("A")
        store.update_task_status(task.id, IN_PROGRESS)
        assert events == [CHANGED, CHANGED]

    def test_unsubscribe(self, store):
        received = []
        unsubscribe = store.subscribe(received.append)
        unsubscribe()

        store.create_task("A")
        assert received == []

    def test_failing_listener_does_not_break_mutation(self, store, events):
        def broken(reason):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.create_task("A")

        assert events == [CHANGED]
        assert len(store.list_tasks()) == 1

    def test_listener_may_read_store(self, store):
        """Listeners run after the lock is released and may call back in."""
        seen = []
        store.subscribe(lambda reason: seen.append(len(store.list_tasks())))
        store.create_task("A")
        assert seen == [1]


class TestOpen:
    """Test cases for loading an existing file."""

    def test_duplicate_ranks_are_repaired(self, workspace):
        workspace.tasks_path.write_text(json.dumps({
            "version": 1,
            "tasks": [
                {"id": "a", "title": "A", "priority": 0, "created_at": "2024-01-01T00:00:00.000Z"},
                {"id": "b", "title": "B", "priority": 0, "created_at": "2024-01-02T00:00:00.000Z"},
            ],
            "features": [],
        }), encoding="utf-8")

        with TaskStore(workspace) as store:
            assert [task.priority for task in store.list_tasks()] == [0, 1]

        saved = json.loads(workspace.tasks_path.read_text(encoding="utf-8"))
        assert sorted(task["priority"] for task in saved["tasks"]) == [0, 1]

    def test_reload_picks_up_external_edit(self, workspace, store, events):
        store.create_task("A")
        events.clear()
        workspace.tasks_path.write_text(json.dumps({"version": 1, "tasks": [], "features": []}), encoding="utf-8")

        store.reload()

        assert store.list_tasks() == []
        assert events == [CHANGED]

    def test_reload_repairs_duplicate_ranks(self, workspace, store, events):
        store.create_task("A")
        events.clear()
        workspace.tasks_path.write_text(json.dumps({
            "version": 1,
            "tasks": [
                {"id": "a", "title": "A", "priority": 3, "created_at": "2024-01-01T00:00:00.000Z"},
                {"id": "b", "title": "B", "priority": 3, "created_at": "2024-01-02T00:00:00.000Z"},
            ],
            "features": [],
        }), encoding="utf-8")

        store.reload()

        assert [(task.id, task.priority) for task in store.list_tasks()] == [("a", 0), ("b", 1)]
        saved = json.loads(workspace.tasks_path.read_text(encoding="utf-8"))
        assert sorted(task["priority"] for task in saved["tasks"]) == [0, 1]
        assert events == [CHANGED]


PROPOSAL = {
    "features": [{"title": "Auth", "description": "Login and sessions"}],
    "tasks": [
        {"title": "Login form", "featureIndex": 0},
        {"title": "Session store", "featureIndex": 0},
        {"title": "Fix typo", "existingFeatureId": "none", "type": "bug"},
    ],
    "requirementDoc": "# User Authentication\n\nUsers can log in.\n",
    "requirementPath": "",
    "proposedDesignMd": "# Design\n\nUse the system font.",
}


class TestApplyProposal:
    """Test cases for atomic proposal application."""

    def test_apply_creates_everything(self, store, workspace, events):
        result = store.apply_proposal(PROPOSAL)

        assert result.requirement_path == "docs/requirements/user-authentication.md"
        assert (workspace.root / result.requirement_path).read_text(encoding="utf-8") == PROPOSAL["requirementDoc"]
        assert workspace.read_design_guide() == "# Design\n\nUse the system font.\n"

        feature = store.get_feature(result.feature_ids[0])
        assert feature.task_ids == result.task_ids[:2]
        assert feature.requirement_path == result.requirement_path
        assert store.get_task(result.task_ids[2]).feature_id is None
        assert store.get_requirement_for_task(result.task_ids[0]) == result.requirement_path
        assert store.get_requirement_for_task(result.task_ids[2]) is None
        assert events == [CHANGED, REQUIREMENTS_CHANGED]

    def test_derived_path_gets_unique_suffix(self, store):
        first = store.apply_proposal(PROPOSAL)
        second = store.apply_proposal(PROPOSAL)

        assert first.requirement_path == "docs/requirements/user-authentication.md"
        assert second.requirement_path == "docs/requirements/user-authentication-2.md"

    def test_invalid_proposal_changes_nothing(self, store, workspace):
        bad = dict(PROPOSAL, tasks=[{"title": "Orphan"}])

        with pytest.raises(ValidationError):
            store.apply_proposal(bad)

        assert store.list_tasks() == []
        assert store.list_features() == []
        assert store.list_requirements() == []

    def test_failed_save_restores_documents(self, store, workspace, monkeypatch):
        workspace.design_path.write_text("# Old design\n", encoding="utf-8")
        fail_saves(monkeypatch)

        with pytest.raises(PersistenceError):
            store.apply_proposal(PROPOSAL)

        assert workspace.read_design_guide() == "# Old design\n"
        assert not (workspace.requirements_dir / "user-authentication.md").exists()
        assert store.list_tasks() == []

    def test_design_additions_are_merged(self, store, workspace):
        workspace.design_path.write_text("# Design\n\n## Colors\nRed\n\n## Fonts\nSerif\n", encoding="utf-8")
        proposal = {
            "tasks": [{"title": "Restyle", "existingFeatureId": "none"}],
            "designAdditions": "## Colors\nBlue\n\n## Spacing\n8px grid",
        }

        store.apply_proposal(proposal)

        guide = workspace.read_design_guide()
        assert "## Colors\nBlue" in guide
        assert "Red" not in guide
        assert "## Fonts\nSerif" in guide
        assert guide.rstrip().endswith("## Spacing\n8px grid")


class TestFeaturesAndRequirements:
    """Test cases for feature and requirement access."""

    def test_archive_feature(self, store):
        result = store.apply_proposal({
            "features": [{"title": "F"}],
            "tasks": [{"title": "T", "featureIndex": 0}],
        })
        archived = store.archive_feature(result.feature_ids[0])
        assert archived.status == "archived"

    def test_unknown_feature(self, store):
        with pytest.raises(NotFoundError):
            store.get_feature("missing")

    def test_create_requirement(self, store, events):
        created = store.create_requirement("docs/requirements/search.md", "# Search\n")

        assert created == {"path": "docs/requirements/search.md", "title": "Search"}
        assert store.list_requirements() == [created]
        assert events == [REQUIREMENTS_CHANGED]

    def test_create_requirement_outside_workspace(self, store):
        with pytest.raises(ValidationError):
            store.create_requirement("../escape.md", "# Nope\n")

    def test_requirements_path(self, store, workspace):
        assert store.requirements_path() == str(workspace.requirements_dir)

    def test_dangling_feature_has_no_requirement(self, store):
        task = store.create_task("A", feature_id="gone")
        assert store.get_requirement_for_task(task.id) is None
