import pytest

from rpgencounter.backend.errors import EntityNotFoundError, ValidationError
from rpgencounter.backend.log import LogEntry, LogKind, LogManager


def test_append_entry_assigns_monotonic_ids() -> None:
    manager = LogManager()

    first = manager.append_entry(LogKind.SYSTEM, "Begin")
    second = manager.append_entry(LogKind.NARRATIVE, "Strike")

    assert (first.id, second.id) == (1, 2)
    assert second.swipes == ["Strike"]
    assert second.active_swipe_index == 0


def test_manager_operates_on_the_given_list() -> None:
    entries: list[LogEntry] = []
    manager = LogManager(entries)

    manager.append_entry(LogKind.NARRATIVE, "Strike")

    assert len(entries) == 1


def test_add_swipe_appends_and_moves_cursor() -> None:
    manager = LogManager()
    entry = manager.append_entry(LogKind.NARRATIVE, "First")

    manager.add_swipe(entry.id, "Second")

    assert entry.swipes == ["First", "Second"]
    assert entry.active_swipe_index == 1
    assert entry.text == "Second"


def test_set_active_swipe_navigates_without_losing_swipes() -> None:
    manager = LogManager()
    entry = manager.append_entry(LogKind.NARRATIVE, "First")
    manager.add_swipe(entry.id, "Second")

    manager.set_active_swipe(entry.id, 0)

    assert entry.text == "First"
    assert len(entry.swipes) == 2


def test_set_active_swipe_rejects_out_of_range_index() -> None:
    manager = LogManager()
    entry = manager.append_entry(LogKind.NARRATIVE, "Only")

    for bad_index in (1, -1, True):
        with pytest.raises(ValidationError):
            manager.set_active_swipe(entry.id, bad_index)
    assert entry.active_swipe_index == 0


def test_unknown_entry_raises() -> None:
    with pytest.raises(EntityNotFoundError):
        LogManager().add_swipe(99, "text")


def test_swipe_count_never_decreases_across_operations() -> None:
    manager = LogManager()
    entry = manager.append_entry(LogKind.NARRATIVE, "a")
    counts = [len(entry.swipes)]

    for step in range(6):
        if step % 2:
            manager.set_active_swipe(entry.id, 0)
        else:
            manager.add_swipe(entry.id, f"alt {step}")
        counts.append(len(entry.swipes))
        assert entry.active_swipe_index < len(entry.swipes)

    assert counts == sorted(counts)


def test_restore_from_snapshot_dedupes_sorts_and_continues_ids() -> None:
    manager = LogManager()
    payload = [
        {"id": 3, "kind": "narrative", "swipes": ["c"], "activeSwipeIndex": 0},
        {"id": 1, "kind": "system", "swipes": ["a"]},
        {"id": 3, "kind": "narrative", "swipes": ["dup"]},
    ]

    manager.restore_from_snapshot(payload)
    next_entry = manager.append_entry(LogKind.ERROR, "oops")

    assert [entry.id for entry in manager.entries] == [1, 3, 4]
    assert manager.get(3).text == "c"
    assert next_entry.id == 4


def test_from_dict_repairs_cursor_and_rejects_empty_swipes() -> None:
    entry = LogEntry.from_dict({"id": 1, "kind": "narrative", "swipes": ["a", "b"], "activeSwipeIndex": 7})

    assert entry.active_swipe_index == 1
    with pytest.raises(ValidationError):
        LogEntry.from_dict({"id": 2, "kind": "narrative", "swipes": []})


def test_recent_filters_by_kind() -> None:
    manager = LogManager()
    manager.append_entry(LogKind.NARRATIVE, "one")
    manager.append_entry(LogKind.ERROR, "bad")
    manager.append_entry(LogKind.NARRATIVE, "two")

    assert [entry.text for entry in manager.recent(5, kind=LogKind.NARRATIVE)] == ["one", "two"]
    assert [entry.text for entry in manager.recent(1)] == ["two"]
    assert manager.recent(0) == []
