from __future__ import annotations

import pytest

from tasks.models import ActiveTask, TaskStatus
from tasks.registry import TaskRegistry


def _task(task_id: str, status: TaskStatus = TaskStatus.PENDING) -> ActiveTask:
    return ActiveTask(id=task_id, query=f"query {task_id}", group_id="g", status=status)


def test_add_get_and_duplicate():
    reg = TaskRegistry()
    assert reg.add(_task("a"))
    assert not reg.add(_task("a"))
    assert reg.get("a").query == "query a"
    assert "a" in reg and len(reg) == 1


@pytest.mark.parametrize(
    "path",
    [
        [TaskStatus.PROCESSING, TaskStatus.COMPLETED],
        [TaskStatus.PROCESSING, TaskStatus.FAILED],
        [TaskStatus.CANCELLED],
        [TaskStatus.COMPLETED],
    ],
)
def test_forward_transitions_are_accepted(path):
    reg = TaskRegistry()
    reg.add(_task("a"))
    for status in path:
        assert reg.update_status("a", status=status)
    assert reg.get("a").status is path[-1]


def test_terminal_states_never_change():
    reg = TaskRegistry()
    reg.add(_task("a"))
    reg.update_status("a", status=TaskStatus.CANCELLED)
    for status in TaskStatus:
        assert not reg.update_status("a", status=status)
    assert not reg.update_status("a", error="late")
    assert reg.get("a").status is TaskStatus.CANCELLED
    assert reg.get("a").error is None


def test_processing_cannot_go_back_to_pending():
    reg = TaskRegistry()
    reg.add(_task("a"))
    reg.update_status("a", status="processing")
    assert not reg.update_status("a", status=TaskStatus.PENDING)
    assert reg.get("a").status is TaskStatus.PROCESSING


def test_partial_updates_and_unknown_fields():
    reg = TaskRegistry()
    reg.add(_task("a"))
    assert reg.update_status("a", partial_result="half way")
    assert reg.get("a").partial_result == "half way"
    with pytest.raises(ValueError):
        reg.update_status("a", colour="blue")
    with pytest.raises(ValueError):
        reg.update_status("a", id="b")
    assert not reg.update_status("missing", status=TaskStatus.PROCESSING)


def test_lists_and_clear_finished():
    reg = TaskRegistry()
    reg.add(_task("a"))
    reg.add(_task("b", TaskStatus.PROCESSING))
    reg.add(_task("c"))
    reg.update_status("c", status=TaskStatus.FAILED, error="boom")

    assert {t.id for t in reg.list_active()} == {"a", "b", "c"}
    assert {t.id for t in reg.list_pending()} == {"a", "b"}
    assert reg.clear_finished() == 1
    assert {t.id for t in reg.list_active()} == {"a", "b"}
    assert reg.remove("a") and not reg.remove("a")


def test_listeners_get_snapshots_and_errors_are_contained():
    reg = TaskRegistry()
    snapshots = []

    def broken(_):
        raise RuntimeError("ui bug")

    reg.subscribe(broken)
    unsubscribe = reg.subscribe(lambda tasks: snapshots.append(sorted(t.id for t in tasks)))
    reg.add(_task("a"))
    reg.add(_task("b"))
    reg.update_status("a", status=TaskStatus.PROCESSING)
    unsubscribe()
    reg.remove("a")

    assert snapshots == [["a"], ["a", "b"], ["a", "b"]]


def test_clear_finished_leaves_cancelled_tasks():
    reg = TaskRegistry()
    reg.add(_task("done"))
    reg.add(_task("bad"))
    reg.add(_task("stopped"))
    reg.update_status("done", status=TaskStatus.COMPLETED)
    reg.update_status("bad", status=TaskStatus.FAILED)
    reg.update_status("stopped", status=TaskStatus.CANCELLED)

    assert reg.clear_finished() == 2
    assert [t.id for t in reg.list_active()] == ["stopped"]
