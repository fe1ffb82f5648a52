"""Unit tests for TaskCommitCoordinator.

Uses an in-memory VersionControl fake that yields to the event loop on
every call, so that concurrent commit attempts genuinely interleave.
Commits of different runs go to different worktrees.
"""

import asyncio
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Tuple

import pytest

from stagegate.audit.log import AuditLog, InMemoryAuditSink
from stagegate.audit.models import ActorType
from stagegate.errors import CommitError, CommitPreconditionError, TaskLockedError
from stagegate.quality.models import CheckResult, CheckStatus, QualityGateRun
from stagegate.runner.command import CommandResult
from stagegate.tasks.coordinator import TaskCommitCoordinator, render_commit_message
from stagegate.tasks.models import AuthorKind, CommitMetadata, Task
from stagegate.tasks.vcs import VCSError


def run_async(coro):
    return asyncio.run(coro)


class FakeVCS:
    """VersionControl fake with a fixed set of changed files."""

    def __init__(self, changed: Iterable[str], fail_commit: bool = False, fail_status: bool = False):
        self.changed = frozenset(changed)
        self.fail_commit = fail_commit
        self.fail_status = fail_status
        self.commits: List[Tuple[FrozenSet[str], str]] = []
        self.resets: List[FrozenSet[str]] = []
        self.worktrees: List[Path] = []

    async def changed_files(self, worktree: Path) -> FrozenSet[str]:
        await asyncio.sleep(0)
        self.worktrees.append(worktree)
        if self.fail_status:
            raise VCSError(["status"], CommandResult(False, 128, "", "not a git repository", 0.0))
        return self.changed

    async def commit(self, worktree: Path, files: FrozenSet[str], message: str) -> str:
        await asyncio.sleep(0)
        if self.fail_commit:
            raise VCSError(["commit", "-m"], CommandResult(False, 1, "", "hook rejected", 0.0))
        self.commits.append((frozenset(files), message))
        return f"{len(self.commits):040x}"

    async def reset(self, worktree: Path, files: FrozenSet[str]) -> None:
        self.resets.append(frozenset(files))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _task(
    files=("a.py", "b.py"),
    author_kind: AuthorKind = AuthorKind.AGENT,
    attempt: int = 1,
    run_id: Optional[str] = "run-1",
) -> Task:
    return Task(
        task_id="T-1",
        run_id=run_id,
        title="Add login form",
        files=frozenset(files),
        author_kind=author_kind,
        attempt=attempt,
    )


def _metadata(**overrides) -> CommitMetadata:
    fields = {
        "tool": "agent-cli",
        "tool_name": "stagegate-agent",
        "model": "qwen2.5-coder",
        "task_ref": "T-1",
        "plan_ref": "N/A",
        "coverage": "87%",
    }
    fields.update(overrides)
    return CommitMetadata(**fields)


def _gate_run(
    task_id: str = "T-1",
    attempt: int = 1,
    passed: bool = True,
    run_id: Optional[str] = "run-1",
) -> QualityGateRun:
    if passed:
        checks = [CheckResult(name="lint", status=CheckStatus.PASSED, exit_code=0)]
    else:
        checks = [CheckResult(name="lint", status=CheckStatus.FAILED, exit_code=1)]
    return QualityGateRun(task_id=task_id, run_id=run_id, attempt=attempt, checks=checks)


WORKTREE = Path("/state/worktrees/run-1")
OTHER_WORKTREE = Path("/state/worktrees/run-2")


def _coordinator(vcs: FakeVCS):
    sink = InMemoryAuditSink()
    return TaskCommitCoordinator(vcs, AuditLog([sink])), sink


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestCommit:
    def test_successful_commit(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, sink = _coordinator(vcs)

        record = run_async(coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE))

        assert record.task_id == "T-1"
        assert record.files == frozenset({"a.py", "b.py"})
        assert record.commit_sha == f"{1:040x}"
        assert vcs.commits[0][0] == frozenset({"a.py", "b.py"})
        assert "Coverage: 87%" in record.message
        assert coordinator.is_committed(_task())
        assert coordinator.committed_record("T-1", "run-1") == record

        audit = sink.by_operation("task.committed")
        assert len(audit) == 1
        assert audit[0].security_relevant
        assert audit[0].actor.type == ActorType.AGENT
        assert audit[0].actor.id == "stagegate-agent"
        assert audit[0].metadata["toolName"] == "stagegate-agent"
        assert audit[0].after["files"] == ["a.py", "b.py"]

    def test_extra_changed_file_refused(self):
        vcs = FakeVCS({"a.py", "b.py", "c.py"})
        coordinator, sink = _coordinator(vcs)

        with pytest.raises(CommitPreconditionError) as exc_info:
            run_async(coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE))

        assert exc_info.value.problems == ["unexpected changed files: c.py"]
        assert vcs.commits == []
        assert sink.records == []
        assert not coordinator.is_committed(_task())

    def test_declared_file_without_changes_refused(self):
        vcs = FakeVCS({"a.py"})
        coordinator, _ = _coordinator(vcs)

        with pytest.raises(CommitPreconditionError) as exc_info:
            run_async(coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE))

        assert exc_info.value.problems == ["declared files without changes: b.py"]

    def test_missing_coverage_refused(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        with pytest.raises(CommitPreconditionError) as exc_info:
            run_async(coordinator.commit(_task(), _gate_run(), _metadata(coverage=None), WORKTREE))

        assert exc_info.value.problems == ["missing commit metadata: coverage"]
        assert vcs.commits == []

    def test_blank_metadata_fields_reported_by_schema_name(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        with pytest.raises(CommitPreconditionError) as exc_info:
            run_async(
                coordinator.commit(
                    _task(), _gate_run(), _metadata(tool_name=" ", plan_ref=None), WORKTREE
                )
            )

        assert exc_info.value.problems == ["missing commit metadata: toolName, planRef"]

    def test_human_task_needs_no_metadata(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, sink = _coordinator(vcs)
        task = _task(author_kind=AuthorKind.HUMAN)

        record = run_async(
            coordinator.commit(
                task, _gate_run(), CommitMetadata(tool_name="alice", coverage="N/A"), WORKTREE
            )
        )

        assert record.commit_sha
        assert sink.by_operation("task.committed")[0].actor.type == ActorType.HUMAN

    def test_failed_gate_run_refused(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        with pytest.raises(CommitPreconditionError) as exc_info:
            run_async(coordinator.commit(_task(), _gate_run(passed=False), _metadata(), WORKTREE))

        assert exc_info.value.problems == ["quality gate did not pass (lint)"]

    def test_gate_run_for_other_attempt_refused(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        with pytest.raises(CommitPreconditionError, match="attempt 1"):
            run_async(
                coordinator.commit(_task(attempt=2), _gate_run(attempt=1), _metadata(), WORKTREE)
            )

    def test_gate_run_for_other_run_refused(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        with pytest.raises(CommitPreconditionError, match="of run run-2"):
            run_async(coordinator.commit(_task(), _gate_run(run_id="run-2"), _metadata(), WORKTREE))

    def test_second_commit_for_task_refused(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        async def scenario():
            await coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE)
            await coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE)

        with pytest.raises(CommitPreconditionError, match="already committed"):
            run_async(scenario())
        assert len(vcs.commits) == 1

    def test_concurrent_commits_yield_one_record_and_one_lock_error(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, sink = _coordinator(vcs)

        async def scenario():
            return await asyncio.gather(
                coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE),
                coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE),
                return_exceptions=True,
            )

        outcomes = run_async(scenario())

        locked = [o for o in outcomes if isinstance(o, TaskLockedError)]
        records = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(locked) == 1
        assert len(records) == 1
        assert len(vcs.commits) == 1
        assert len(sink.by_operation("task.committed")) == 1

    def test_vcs_failure_resets_and_raises(self):
        vcs = FakeVCS({"a.py", "b.py"}, fail_commit=True)
        coordinator, sink = _coordinator(vcs)

        with pytest.raises(CommitError, match="hook rejected"):
            run_async(coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE))

        assert vcs.resets == [frozenset({"a.py", "b.py"})]
        assert not coordinator.is_committed(_task())
        assert sink.records == []

    def test_unreadable_worktree_raises_commit_error(self):
        vcs = FakeVCS({"a.py", "b.py"}, fail_status=True)
        coordinator, _ = _coordinator(vcs)

        with pytest.raises(CommitError):
            run_async(coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE))

class TestRunScoping:
    def test_same_task_id_in_another_run_commits(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, sink = _coordinator(vcs)

        async def scenario():
            first = await coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE)
            second = await coordinator.commit(
                _task(run_id="run-2"), _gate_run(run_id="run-2"), _metadata(), OTHER_WORKTREE
            )
            return first, second

        first, second = run_async(scenario())

        assert first.run_id == "run-1"
        assert second.run_id == "run-2"
        assert vcs.worktrees == [WORKTREE, OTHER_WORKTREE]
        assert coordinator.is_committed(_task(run_id="run-2"))
        assert [r.after["run_id"] for r in sink.by_operation("task.committed")] == [
            "run-1",
            "run-2",
        ]

    def test_concurrent_runs_do_not_lock_each_other(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        async def scenario():
            return await asyncio.gather(
                coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE),
                coordinator.commit(
                    _task(run_id="run-2"), _gate_run(run_id="run-2"), _metadata(), OTHER_WORKTREE
                ),
                return_exceptions=True,
            )

        outcomes = run_async(scenario())

        assert not any(isinstance(o, Exception) for o in outcomes)
        assert len(vcs.commits) == 2

    def test_later_attempt_of_committed_task_commits(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        async def scenario():
            await coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE)
            return await coordinator.commit(
                _task(attempt=2), _gate_run(attempt=2), _metadata(), WORKTREE
            )

        record = run_async(scenario())

        assert record.attempt == 2
        assert "Task: T-1 (attempt 2)" in record.message
        assert coordinator.committed_record("T-1", "run-1") == record
        assert not coordinator.is_committed(_task(attempt=3))

    def test_locks_released_after_commit(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        run_async(coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE))
        with pytest.raises(CommitPreconditionError):
            run_async(coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE))

        assert coordinator._locks == {}

    def test_forget_run_drops_only_that_run(self):
        vcs = FakeVCS({"a.py", "b.py"})
        coordinator, _ = _coordinator(vcs)

        async def scenario():
            await coordinator.commit(_task(), _gate_run(), _metadata(), WORKTREE)
            await coordinator.commit(
                _task(run_id="run-2"), _gate_run(run_id="run-2"), _metadata(), OTHER_WORKTREE
            )

        run_async(scenario())
        coordinator.forget_run("run-1")

        assert coordinator.committed_record("T-1", "run-1") is None
        assert coordinator.committed_record("T-1", "run-2") is not None



def test_render_commit_message():
    message = render_commit_message(_task(), _metadata())

    assert message == (
        "Add login form\n"
        "\n"
        "Task: T-1 (attempt 1)\n"
        "\n"
        "Tool: agent-cli\n"
        "ToolName: stagegate-agent\n"
        "Model: qwen2.5-coder\n"
        "TaskRef: T-1\n"
        "PlanRef: N/A\n"
        "Coverage: 87%\n"
    )
