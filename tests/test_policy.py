"""Tests for the dependency policy."""

import pytest

from taskrail.models import TaskRunStatus
from taskrail.pipeline.schema import RequiredParentStatus
from taskrail.runs.policy import Readiness, evaluate, requirement_met, skip_reason

ANY = RequiredParentStatus.ANY
SUCCESS = RequiredParentStatus.SUCCESS
FAILURE = RequiredParentStatus.FAILURE


class TestRequirementMet:
    @pytest.mark.parametrize(
        "status",
        [
            TaskRunStatus.SUCCESSFUL,
            TaskRunStatus.FAILED,
            TaskRunStatus.SKIPPED,
            TaskRunStatus.CANCELLED,
        ],
    )
    def test_any_accepts_every_terminal_status(self, status):
        assert requirement_met(ANY, status)

    def test_any_rejects_unknown(self):
        assert not requirement_met(ANY, TaskRunStatus.UNKNOWN)

    def test_success(self):
        assert requirement_met(SUCCESS, TaskRunStatus.SUCCESSFUL)
        assert not requirement_met(SUCCESS, TaskRunStatus.FAILED)
        assert not requirement_met(SUCCESS, TaskRunStatus.SKIPPED)

    def test_failure(self):
        assert requirement_met(FAILURE, TaskRunStatus.FAILED)
        assert not requirement_met(FAILURE, TaskRunStatus.SUCCESSFUL)
        assert not requirement_met(FAILURE, TaskRunStatus.CANCELLED)


class TestEvaluate:
    def test_no_parents_is_ready(self):
        assert evaluate({}, {}) == Readiness.READY

    def test_missing_parent_waits(self):
        assert evaluate({"p": ANY}, {}) == Readiness.WAITING

    def test_unknown_parent_status_waits(self):
        assert evaluate({"p": ANY}, {"p": TaskRunStatus.UNKNOWN}) == Readiness.WAITING

    def test_any_parent_terminal_waits_for_the_rest(self):
        depends = {"p": SUCCESS, "q": ANY}
        assert evaluate(depends, {"p": TaskRunStatus.FAILED}) == Readiness.WAITING

    def test_success_requirement_failed_parent_skips(self):
        assert evaluate({"p": SUCCESS}, {"p": TaskRunStatus.FAILED}) == Readiness.SKIP

    def test_failure_requirement_successful_parent_skips(self):
        assert evaluate({"p": FAILURE}, {"p": TaskRunStatus.SUCCESSFUL}) == Readiness.SKIP

    @pytest.mark.parametrize(
        "status", [TaskRunStatus.SUCCESSFUL, TaskRunStatus.FAILED, TaskRunStatus.SKIPPED]
    )
    def test_any_requirement_ready(self, status):
        assert evaluate({"p": ANY}, {"p": status}) == Readiness.READY

    def test_mixed_all_met(self):
        depends = {"p": SUCCESS, "q": FAILURE, "r": ANY}
        statuses = {
            "p": TaskRunStatus.SUCCESSFUL,
            "q": TaskRunStatus.FAILED,
            "r": TaskRunStatus.CANCELLED,
        }
        assert evaluate(depends, statuses) == Readiness.READY

    def test_one_violation_skips(self):
        depends = {"p": SUCCESS, "q": SUCCESS}
        statuses = {"p": TaskRunStatus.SUCCESSFUL, "q": TaskRunStatus.SKIPPED}
        assert evaluate(depends, statuses) == Readiness.SKIP


class TestSkipReason:
    def test_names_unmet_parents_only(self):
        reason = skip_reason(
            {"p": SUCCESS, "q": ANY},
            {"p": TaskRunStatus.FAILED, "q": TaskRunStatus.SUCCESSFUL},
        )
        assert "p (required success, got failed)" in reason
        assert "q (" not in reason
