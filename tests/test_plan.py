import pytest

from foreman.capabilities import CapabilityResult
from foreman.errors import InvalidTransitionError, ParameterResolutionError
from foreman.plan import Plan, PlanStatus, Task, TaskDraft, TaskStatus


def _plan(*names: str) -> Plan:
    return Plan.from_drafts("ship it", [TaskDraft(name, name) for name in names], session_id="s1")


def test_task_moves_forward_and_result_is_written_once() -> None:
    task = Task(id=1, description="list", capability="list_files")

    task.start()
    task.finish(CapabilityResult.ok("a.txt"))

    assert task.status is TaskStatus.COMPLETED
    assert task.output == "a.txt"
    assert task.started_at is not None and task.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        task.finish(CapabilityResult.ok("again"))
    with pytest.raises(InvalidTransitionError):
        task.start()


def test_pending_task_cannot_finish_without_starting() -> None:
    task = Task(id=1, description="list", capability="list_files")

    with pytest.raises(InvalidTransitionError):
        task.finish(CapabilityResult.ok("skipped"))
    assert task.status is TaskStatus.PENDING
    assert task.result is None


def test_reject_fails_pending_task_and_accept_failure_requires_failed() -> None:
    task = Task(id=1, description="write", capability="write_file")
    with pytest.raises(InvalidTransitionError):
        task.accept_failure()

    task.reject(CapabilityResult.fail("denied"))
    task.accept_failure()

    assert task.status is TaskStatus.FAILED
    assert task.accepted_failure is True
    assert task.status.terminal


def test_objective_is_immutable() -> None:
    plan = _plan("a")

    with pytest.raises(AttributeError):
        plan.objective = "something else"
    assert plan.objective == "ship it"


def test_replace_from_keeps_history_and_continues_ids() -> None:
    plan = _plan("create_env", "install_deps", "run_tests")
    first, failed, _ = plan.tasks
    first.start()
    first.finish(CapabilityResult.ok("created"))
    failed.start()
    failed.finish(CapabilityResult.fail("boom"))
    plan.archive_attempt()

    revised = plan.replace_from(failed, [TaskDraft("install_retry"), TaskDraft("run_tests")])

    assert [task.id for task in revised] == [4, 5]
    assert [task.capability for task in plan.tasks] == ["create_env", "install_retry", "run_tests"]
    assert plan.tasks[0] is first
    assert plan.attempts[0]["tasks"][1]["status"] == "failed"
    assert plan.attempts[0]["status"] == PlanStatus.STALE.value


def test_replace_from_rejects_tasks_that_did_not_fail() -> None:
    plan = _plan("a", "b")

    with pytest.raises(InvalidTransitionError):
        plan.replace_from(plan.tasks[0], [TaskDraft("c")])


def test_replace_pending_suffix_leaves_executed_tasks() -> None:
    plan = _plan("a", "b", "c")
    plan.tasks[0].start()
    plan.tasks[0].finish(CapabilityResult.ok("done"))

    revised = plan.replace_pending_suffix([TaskDraft("d")])

    assert [task.capability for task in plan.tasks] == ["a", "d"]
    assert revised[0].id == 4


def test_resolve_params_substitutes_completed_results() -> None:
    plan = Plan.from_drafts(
        "deploy",
        [
            TaskDraft("read_file", params={"path": "VERSION"}),
            TaskDraft("execute_command", params={"command": "git tag {{tasks[1].result}}"}),
        ],
    )
    plan.tasks[0].start()
    plan.tasks[0].finish(CapabilityResult.ok("1.4.0"))

    assert plan.resolve_params(plan.tasks[1]) == {"command": "git tag 1.4.0"}


def test_resolve_params_rejects_unfinished_reference() -> None:
    plan = Plan.from_drafts(
        "deploy",
        [
            TaskDraft("read_file"),
            TaskDraft("write_file", params={"content": "{{tasks[1].result}}"}),
        ],
    )

    with pytest.raises(ParameterResolutionError):
        plan.resolve_params(plan.tasks[1])


def test_is_complete_counts_accepted_failures() -> None:
    plan = _plan("a", "b")
    plan.tasks[0].start()
    plan.tasks[0].finish(CapabilityResult.ok("ok"))
    plan.tasks[1].reject(CapabilityResult.fail("nope"))
    assert not plan.is_complete

    plan.tasks[1].accept_failure()

    assert plan.is_complete


def test_stale_plan_cannot_be_marked_failed() -> None:
    plan = _plan("a")
    plan.status = PlanStatus.STALE

    with pytest.raises(InvalidTransitionError):
        plan.mark_failed()


def test_plan_dict_roundtrip_preserves_results() -> None:
    plan = _plan("a", "b")
    plan.tasks[0].start()
    plan.tasks[0].finish(CapabilityResult.fail("bad"))
    plan.append_scratchpad("note one")

    restored = Plan.from_dict(plan.to_dict())

    assert restored.id == plan.id
    assert restored.scratchpad == "note one"
    assert restored.tasks[0].result == plan.tasks[0].result
    assert restored.tasks[1].status is TaskStatus.PENDING


def test_task_draft_accepts_alternate_keys() -> None:
    draft = TaskDraft.from_dict({"action": "read_file", "parameters": {"path": "a"}})

    assert draft.capability == "read_file"
    assert draft.params == {"path": "a"}
