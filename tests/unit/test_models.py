"""Unit tests for Shepherd models.

This module tests the core data structures and their validation,
serialization, and proposal parsing.
"""

import pytest

from shepherd.errors import ValidationError
from shepherd.models import (
    DONE,
    IN_PROGRESS,
    NO_FEATURE,
    READY_FOR_SIGNOFF,
    REWORK,
    TASK_STATUSES,
    TODO,
    TRANSITIONS,
    Feature,
    Proposal,
    ProposalResult,
    Repository,
    Task,
    normalize_feature_ref,
    utc_now,
    validate_status,
)


class TestTask:
    """Test cases for Task model."""

    def test_task_defaults(self):
        """A new task starts as a todo of type task."""
        task = Task(id="t1", title="Write parser")

        assert task.status == TODO
        assert task.type == "task"
        assert task.feature_id is None
        assert task.validate() == []

    def test_task_to_dict(self):
        """Test converting Task to dictionary."""
        task = Task(id="t1", title="Write parser", priority=3, feature_id="f1", type="bug")
        data = task.to_dict()

        assert data["id"] == "t1"
        assert data["priority"] == 3
        assert data["feature_id"] == "f1"
        assert data["type"] == "bug"
        assert data["requirement_path"] is None

    def test_task_from_dict_accepts_camel_case_fields(self):
        """Files written by older builds used camelCase timestamps and paths."""
        task = Task.from_dict({
            "id": "t1",
            "title": "Old task",
            "createdAt": "2024-01-01T00:00:00.000Z",
            "requirementPath": "docs/requirements/old.md",
        })

        assert task.created_at == "2024-01-01T00:00:00.000Z"
        assert task.updated_at == task.created_at
        assert task.requirement_path == "docs/requirements/old.md"

    def test_task_from_dict_maps_none_sentinel(self):
        """The "none" feature reference is stored as no feature."""
        task = Task.from_dict({"id": "t1", "title": "Quick", "feature_id": "none"})
        assert task.feature_id is None

    def test_task_validation_reports_issues(self):
        """Test task validation catches missing and invalid fields."""
        task = Task(id="", title="  ", status="blocked", type="epic")
        issues = task.validate()

        assert "Task ID is required" in issues
        assert "Title is required" in issues
        assert "Invalid status: blocked" in issues
        assert "Invalid task type: epic" in issues


class TestFeature:
    """Test cases for Feature model."""

    def test_feature_round_trip(self):
        feature = Feature(id="f1", title="Search", task_ids=["a", "b"], requirement_path="docs/requirements/search.md")
        restored = Feature.from_dict(feature.to_dict())

        assert restored == feature

    def test_feature_without_tasks_is_valid(self):
        """Deleting a feature's last task leaves a valid, empty feature."""
        assert Feature(id="f1", title="Empty").validate() == []

    def test_feature_invalid_status(self):
        assert "Invalid feature status: deleted" in Feature(id="f1", title="F", status="deleted").validate()


class TestRepository:
    """Test cases for the Repository container."""

    def test_copy_is_independent(self):
        repository = Repository(tasks=[Task(id="t1", title="One")])
        draft = repository.copy()
        draft.tasks[0].title = "Changed"
        draft.tasks.append(Task(id="t2", title="Two"))

        assert repository.tasks[0].title == "One"
        assert len(repository.tasks) == 1

    def test_validate_collects_task_and_feature_issues(self):
        repository = Repository(
            tasks=[Task(id="t1", title="One"), Task(id="t2", title="Two", status="bogus")],
            features=[Feature(id="f1", title="F", status="gone")],
        )

        assert repository.validate() == [
            "task t2: Invalid status: bogus",
            "feature f1: Invalid feature status: gone",
        ]

    def test_find_helpers(self):
        repository = Repository(
            tasks=[Task(id="t1", title="One")],
            features=[Feature(id="f1", title="F")],
        )

        assert repository.find_task("t1").title == "One"
        assert repository.find_task("missing") is None
        assert repository.find_feature("f1").title == "F"
        assert repository.find_feature("missing") is None


class TestStatusHelpers:
    """Test cases for status constants and helpers."""

    def test_transition_graph(self):
        """The graph covers every status and only allows the documented arcs."""
        assert set(TRANSITIONS) == set(TASK_STATUSES)
        assert TRANSITIONS[TODO] == {IN_PROGRESS}
        assert TRANSITIONS[IN_PROGRESS] == {READY_FOR_SIGNOFF}
        assert TRANSITIONS[READY_FOR_SIGNOFF] == {DONE, REWORK}
        assert TRANSITIONS[REWORK] == {IN_PROGRESS}
        assert TRANSITIONS[DONE] == frozenset()

    def test_validate_status(self):
        assert validate_status("done") == "done"
        with pytest.raises(ValidationError, match="Invalid status 'finished'"):
            validate_status("finished")

    @pytest.mark.parametrize("value", [None, "", "  ", NO_FEATURE, "NONE"])
    def test_normalize_feature_ref_empty_values(self, value):
        assert normalize_feature_ref(value) is None

    def test_normalize_feature_ref_keeps_ids(self):
        assert normalize_feature_ref(" f1 ") == "f1"

    def test_utc_now_format(self):
        stamp = utc_now()
        assert stamp.endswith("Z")
        assert "T" in stamp


class TestProposal:
    """Test cases for parsing interview proposals."""

    def test_proposal_from_camel_case_payload(self):
        proposal = Proposal.from_dict({
            "features": [{"title": "Auth", "description": "Login"}],
            "tasks": [
                {"title": "Form", "featureIndex": 0},
                {"title": "Typo", "existingFeatureId": "none", "type": "bug"},
            ],
            "requirementDoc": "# Auth\n",
            "requirementPath": "docs/requirements/auth.md",
            "proposedDesignMd": "# Design\n",
        })

        assert proposal.features[0].title == "Auth"
        assert proposal.tasks[0].feature_index == 0
        assert proposal.tasks[1].existing_feature_id == "none"
        assert proposal.tasks[1].type == "bug"
        assert proposal.requirement_doc == "# Auth\n"
        assert proposal.requirement_path == "docs/requirements/auth.md"
        assert proposal.proposed_design_md == "# Design\n"

    def test_proposal_accepts_snake_case(self):
        proposal = Proposal.from_dict({
            "tasks": [{"title": "Form", "existing_feature_id": "f1"}],
            "design_additions": "## Colors\nBlue",
        })

        assert proposal.tasks[0].existing_feature_id == "f1"
        assert proposal.design_additions == "## Colors\nBlue"

    @pytest.mark.parametrize("payload", [
        "not a dict",
        {"tasks": "not a list"},
        {"tasks": ["not an object"]},
        {"tasks": [{"title": "Bad", "featureIndex": "0"}]},
    ])
    def test_malformed_proposals_are_rejected(self, payload):
        with pytest.raises(ValidationError):
            Proposal.from_dict(payload)

    def test_proposal_result_to_dict(self):
        result = ProposalResult(feature_ids=["f1"], task_ids=["t1", "t2"], requirement_path="docs/requirements/a.md")
        assert result.to_dict() == {
            "feature_ids": ["f1"],
            "task_ids": ["t1", "t2"],
            "requirement_path": "docs/requirements/a.md",
        }
