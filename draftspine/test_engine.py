"""
Unit tests for the History Engine
=================================

Tests commits, version lookup, branching, effective history, storage
validation and corruption recovery.

Run with: pytest draftspine/test_engine.py -v
"""

import pytest
from unittest.mock import Mock

from draftspine.engine import HistoryEngine
from draftspine.errors import ErrorCode
from draftspine.models import (
    INITIAL_VERSION,
    MAIN_BRANCH_ID,
    Branch,
    HistorySnapshot,
    Version,
)

TS = "2024-03-01T10:00:00+00:00"


def _commit_all(engine, doc, *texts):
    return [engine.commit(doc(text)).data for text in texts]


def _numbers(branch_versions):
    return [bv.version.number for bv in branch_versions]


@pytest.fixture
def corrupt_engine(content_sink):
    """
    Five stored versions with v3 malformed.

    v1, v2, v3, v5 on main; v4 on branch "b1" forked at v2.
    """
    versions = {
        1: Version(1, {"text": "one"}, [], TS, MAIN_BRANCH_ID, None),
        2: Version(2, {"text": "two"}, [], TS, MAIN_BRANCH_ID, 1),
        3: Version(3, {"text": "three"}, [], None, MAIN_BRANCH_ID, 2),
        4: Version(4, {"text": "four"}, [], TS, "b1", 2),
        5: Version(5, {"text": "five"}, [], TS, MAIN_BRANCH_ID, 3),
    }
    branches = {
        MAIN_BRANCH_ID: Branch.main(5),
        "b1": Branch("b1", "Branch 1", MAIN_BRANCH_ID, "2", "4", TS),
    }
    engine = HistoryEngine(on_content_change=content_sink)
    engine.restore(HistorySnapshot(
        current_version=5,
        versions=versions,
        branches=branches,
        active_branch_id=MAIN_BRANCH_ID,
    ))
    return engine


class TestCommit:
    """Test suite for HistoryEngine.commit"""

    def test_first_commit_is_initial_version(self, engine, doc):
        result = engine.commit(doc("hello"))

        assert result.ok
        version = result.data
        assert version.number == INITIAL_VERSION
        assert version.parent_version is None
        assert version.branch_id == MAIN_BRANCH_ID
        assert engine.current_version == INITIAL_VERSION
        assert engine.get_active_branch().tip == INITIAL_VERSION
        assert engine.get_active_branch().is_main
        assert engine.has_content
        assert not engine.is_initial_editing

    def test_numbers_are_monotonic(self, engine, doc):
        versions = _commit_all(engine, doc, "a", "b", "c", "d", "e")

        assert [v.number for v in versions] == [1, 2, 3, 4, 5]
        assert [v.parent_version for v in versions] == [None, 1, 2, 3, 4]
        assert engine.get_branch(MAIN_BRANCH_ID).current_version_id == "5"

    def test_content_round_trip(self, engine, doc):
        _commit_all(engine, doc, "a", "b")

        assert engine.get_version_content(1).data == doc("a")
        assert engine.get_version_content(2).data == doc("b")

    def test_pending_changes_attached_and_cleared(self, engine, doc):
        engine.apply_change({"insert": "a"})
        engine.apply_change({"insert": "b"})
        assert engine.is_dirty
        assert len(engine.pending_changes) == 2

        version = engine.commit(doc("ab"), changes=["explicit"]).data

        assert [s.step for s in version.steps[:2]] == [{"insert": "a"}, {"insert": "b"}]
        assert version.steps[0].version == INITIAL_VERSION
        assert version.steps[-1] == "explicit"
        assert engine.pending_changes == []
        assert not engine.is_dirty

    def test_no_deduplication(self, engine, doc):
        _commit_all(engine, doc, "same", "same")
        assert list(engine.versions) == [1, 2]

    def test_none_content_rejected(self, engine):
        result = engine.commit(None)

        assert not result.ok
        assert result.error.code == ErrorCode.INVALID_CONTENT
        assert engine.versions == {}

    def test_save_hook_called_after_commit(self, doc):
        hook = Mock()
        engine = HistoryEngine(save_hook=hook)

        engine.commit(doc("a"))

        hook.assert_called_once_with(engine)

    def test_save_hook_failure_does_not_escape(self, doc):
        engine = HistoryEngine(save_hook=Mock(side_effect=RuntimeError("disk full")))

        result = engine.commit(doc("a"))

        assert result.ok
        assert 1 in engine.versions


class TestVersionLookup:

    def test_content_before_any_commit(self, engine):
        result = engine.get_version_content(1)
        assert result.error.code == ErrorCode.VERSION_NOT_FOUND

    @pytest.mark.parametrize("bad", [0, -1, True, 1.5, "1", None])
    def test_invalid_numbers(self, engine, doc, bad):
        engine.commit(doc("a"))
        assert engine.get_version_content(bad).error.code == ErrorCode.INVALID_VERSION
        assert engine.get_version(bad).error.code == ErrorCode.INVALID_VERSION

    def test_missing_version(self, engine, doc):
        engine.commit(doc("a"))
        assert engine.get_version_content(9).error.code == ErrorCode.VERSION_NOT_FOUND

    def test_corrupted_content(self, engine):
        engine.restore(HistorySnapshot(
            versions={1: Version(1, {"text": "x"}, [], None, MAIN_BRANCH_ID)},
            branches={MAIN_BRANCH_ID: Branch.main(1)},
        ))

        result = engine.get_version_content(1)

        assert result.error.code == ErrorCode.CONTENT_CORRUPTED

    def test_version_range(self, engine, doc):
        _commit_all(engine, doc, "a", "b", "c", "d")

        assert [v.number for v in engine.get_version_range(2, 3).data] == [2, 3]
        assert engine.get_version_range(3, 2).error.code == ErrorCode.INVALID_VERSION
        assert engine.get_version_range(1, 9).error.code == ErrorCode.VERSION_NOT_FOUND
        assert engine.get_version_range(0, 2).error.code == ErrorCode.INVALID_VERSION

    def test_set_current_version_moves_cursor_only(self, engine, doc, content_sink):
        _commit_all(engine, doc, "a", "b", "c")
        content_sink.reset_mock()

        result = engine.set_current_version(1)

        assert result.ok
        assert engine.current_version == 1
        assert engine.get_branch(MAIN_BRANCH_ID).tip == 3
        content_sink.assert_called_once_with(doc("a"))

    def test_commit_after_rewind_uses_next_free_number(self, engine, doc):
        _commit_all(engine, doc, "a", "b", "c")
        engine.set_current_version(1)

        version = engine.commit(doc("d")).data

        assert version.number == 4
        assert version.parent_version == 1


class TestBranches:

    def test_create_branch(self, engine, doc, content_sink):
        _commit_all(engine, doc, "a", "b", "c")
        content_sink.reset_mock()

        result = engine.create_branch("2")

        assert result.ok
        branch = result.data
        assert branch.fork_point == 2
        assert branch.tip == 2
        assert branch.parent_branch_id == MAIN_BRANCH_ID
        assert not branch.is_main
        assert branch.name == "Branch 1"
        assert engine.active_branch_id == branch.id
        assert engine.current_version == 2
        content_sink.assert_called_once_with(doc("b"))

    def test_commit_lands_on_new_branch(self, engine, doc):
        _commit_all(engine, doc, "a", "b", "c")
        branch = engine.create_branch(2).data

        version = engine.commit(doc("b2")).data

        assert version.number == 4
        assert version.branch_id == branch.id
        assert version.parent_version == 2
        assert engine.get_branch(branch.id).tip == 4
        assert engine.get_branch(MAIN_BRANCH_ID).tip == 3

    def test_branch_names_count_up(self, engine, doc):
        _commit_all(engine, doc, "a")
        first = engine.create_branch("1").data
        second = engine.create_branch("1").data

        assert (first.name, second.name) == ("Branch 1", "Branch 2")
        assert second.parent_branch_id == first.id

    @pytest.mark.parametrize("parent", ["9", "x", None, 0])
    def test_create_from_unknown_version(self, engine, doc, parent):
        engine.commit(doc("a"))
        result = engine.create_branch(parent)
        assert result.error.code == ErrorCode.INVALID_OPERATION

    def test_create_on_empty_history(self, engine):
        assert engine.create_branch("1").error.code == ErrorCode.INVALID_OPERATION

    def test_create_outside_active_history(self, engine, doc):
        _commit_all(engine, doc, "a", "b")
        engine.create_branch("1")
        engine.commit(doc("c"))

        # v2 is main's own version past the fork point
        result = engine.create_branch("2")

        assert result.error.code == ErrorCode.INVALID_OPERATION

    def test_create_is_a_checkpoint(self, engine, doc):
        scheduler = Mock()
        engine.attach_scheduler(scheduler)
        engine.commit(doc("a"))
        engine.apply_change({"insert": "x"})

        engine.create_branch("1")

        scheduler.cancel.assert_called_once()
        assert engine.pending_changes == []
        assert not engine.is_dirty

    def test_switch_branch(self, engine, doc, content_sink):
        _commit_all(engine, doc, "a", "b", "c")
        engine.create_branch("2")
        engine.commit(doc("b2"))
        engine.apply_change({"insert": "lost"})
        content_sink.reset_mock()

        result = engine.switch_branch(MAIN_BRANCH_ID)

        assert result.ok
        assert engine.active_branch_id == MAIN_BRANCH_ID
        assert engine.current_version == 3
        assert engine.pending_changes == []
        content_sink.assert_called_once_with(doc("c"))

    def test_switch_cancels_scheduled_save(self, engine, doc):
        scheduler = Mock()
        engine.commit(doc("a"))
        branch = engine.create_branch("1").data
        engine.attach_scheduler(scheduler)

        engine.switch_branch(MAIN_BRANCH_ID)
        engine.switch_branch(branch.id)

        assert scheduler.cancel.call_count == 2

    @pytest.mark.parametrize("branch_id, code", [
        ("", ErrorCode.INVALID_BRANCH),
        (None, ErrorCode.INVALID_BRANCH),
        (7, ErrorCode.INVALID_BRANCH),
        ("nope", ErrorCode.BRANCH_NOT_FOUND),
    ])
    def test_switch_errors(self, engine, doc, branch_id, code):
        engine.commit(doc("a"))
        assert engine.switch_branch(branch_id).error.code == code

    def test_switch_to_branch_with_missing_tip(self, engine):
        engine.restore(HistorySnapshot(
            versions={1: Version(1, {"text": "x"}, [], TS, MAIN_BRANCH_ID)},
            branches={
                MAIN_BRANCH_ID: Branch.main(1),
                "b1": Branch("b1", "Branch 1", MAIN_BRANCH_ID, "1", "9", TS),
            },
        ))

        result = engine.switch_branch("b1")

        assert result.error.code == ErrorCode.INVALID_OPERATION
        assert engine.active_branch_id == MAIN_BRANCH_ID


class TestEffectiveHistory:

    def test_branch_from_first_version(self, engine, doc):
        engine.commit(doc("A"))
        engine.commit(doc("B"))
        branch = engine.create_branch("1").data
        engine.commit(doc("C"))

        versions = engine.get_branch_versions(branch.id).data

        assert _numbers(versions) == [1, 3]
        assert [bv.is_head for bv in versions] == [False, True]
        assert versions[-1].version.content == doc("C")
        assert engine.get_version_content(2).data == doc("B")
        assert _numbers(engine.get_branch_versions(MAIN_BRANCH_ID).data) == [1, 2]

    def test_ancestor_versions_bounded_by_fork_point(self, engine, doc):
        _commit_all(engine, doc, "m1", "m2", "m3")
        first = engine.create_branch("2").data
        _commit_all(engine, doc, "b4", "b5")
        second = engine.create_branch("4").data
        engine.commit(doc("c6"))

        assert _numbers(engine.get_branch_versions(second.id).data) == [1, 2, 4, 6]
        assert _numbers(engine.get_branch_versions(first.id).data) == [1, 2, 4, 5]
        assert _numbers(engine.get_branch_versions(MAIN_BRANCH_ID).data) == [1, 2, 3]

    def test_fresh_branch_head_is_fork_version(self, engine, doc):
        _commit_all(engine, doc, "a", "b")
        branch = engine.create_branch("2").data

        versions = engine.get_branch_versions(branch.id).data

        assert _numbers(versions) == [1, 2]
        assert versions[-1].is_head
        assert all(bv.branch.id == branch.id for bv in versions)

    def test_parent_cycle_stops(self, engine):
        engine.restore(HistorySnapshot(
            versions={1: Version(1, {"text": "x"}, [], TS, "a")},
            branches={
                MAIN_BRANCH_ID: Branch.main(1),
                "a": Branch("a", "A", "b", "1", "1", TS),
                "b": Branch("b", "B", "a", "1", "1", TS),
            },
        ))

        assert _numbers(engine.get_branch_versions("a").data) == [1]

    def test_unknown_branch(self, engine):
        assert engine.get_branch_versions("nope").error.code == ErrorCode.BRANCH_NOT_FOUND
        assert engine.get_branch_versions("").error.code == ErrorCode.INVALID_BRANCH


class TestStorageHealth:

    def test_validate_clean_history(self, engine, doc):
        _commit_all(engine, doc, "a", "b")

        state = engine.validate_storage()

        assert state.is_storage_valid
        assert state.last_valid_version == 2

    def test_validate_empty_history(self, engine):
        state = engine.validate_storage()
        assert state.is_storage_valid
        assert state.last_valid_version == 0

    def test_corrupt_third_of_five(self, corrupt_engine):
        state = corrupt_engine.validate_storage()

        assert not state.is_storage_valid
        assert state.last_valid_version == 2

        result = corrupt_engine.recover_from_corruption()

        assert result.error.code == ErrorCode.STORAGE_ERROR
        assert result.error.recoverable
        assert result.data == 2
        assert list(corrupt_engine.versions) == [1, 2]
        assert list(corrupt_engine.branches) == [MAIN_BRANCH_ID]
        assert corrupt_engine.get_branch(MAIN_BRANCH_ID).tip == 2
        assert corrupt_engine.current_version == 2
        assert corrupt_engine.active_branch_id == MAIN_BRANCH_ID
        assert corrupt_engine.storage_state.is_storage_valid

    def test_recovery_is_idempotent(self, corrupt_engine):
        corrupt_engine.validate_storage()
        corrupt_engine.recover_from_corruption()
        first = corrupt_engine.snapshot()

        corrupt_engine.validate_storage()
        result = corrupt_engine.recover_from_corruption()
        second = corrupt_engine.snapshot()

        assert result.ok
        assert second.versions == first.versions
        assert second.branches == first.branches
        assert second.current_version == first.current_version

    def test_recovery_without_validation_failure_is_noop(self, engine, doc):
        _commit_all(engine, doc, "a")
        engine.validate_storage()

        assert engine.recover_from_corruption().ok
        assert list(engine.versions) == [1]

    def test_nothing_recoverable(self, engine):
        engine.restore(HistorySnapshot(
            versions={1: Version(1, None, [], TS, MAIN_BRANCH_ID)},
            branches={MAIN_BRANCH_ID: Branch.main(1)},
        ))
        engine.validate_storage()

        result = engine.recover_from_corruption()

        assert not result.error.recoverable
        assert result.error.content_reset
        assert engine.versions == {}
        assert list(engine.branches) == [MAIN_BRANCH_ID]
        assert engine.is_initial_editing
        assert not engine.has_content

    def test_invalid_branch_dropped_versions_kept(self, engine):
        engine.restore(HistorySnapshot(
            current_version=2,
            versions={
                1: Version(1, {"t": 1}, [], TS, MAIN_BRANCH_ID),
                2: Version(2, {"t": 2}, [], TS, MAIN_BRANCH_ID, 1),
            },
            branches={
                MAIN_BRANCH_ID: Branch.main(2),
                "broken": Branch("broken", None, MAIN_BRANCH_ID, "1", "1", TS),
            },
        ))

        state = engine.validate_storage()
        result = engine.recover_from_corruption()

        assert not state.is_storage_valid
        assert state.last_valid_version == 2
        assert result.data == 2
        assert list(engine.versions) == [1, 2]
        assert list(engine.branches) == [MAIN_BRANCH_ID]

    def test_recovery_persists(self, corrupt_engine):
        hook = Mock()
        corrupt_engine.save_hook = hook
        corrupt_engine.validate_storage()

        corrupt_engine.recover_from_corruption()

        hook.assert_called_once_with(corrupt_engine)


class TestLifecycle:

    def test_reset(self, engine, doc):
        scheduler = Mock()
        engine.attach_scheduler(scheduler)
        _commit_all(engine, doc, "a", "b")

        engine.reset()

        assert engine.versions == {}
        assert engine.branches == {}
        assert engine.current_version == INITIAL_VERSION
        assert engine.is_initial_editing
        scheduler.cancel.assert_called_once()

    def test_status(self, engine, doc):
        _commit_all(engine, doc, "a")
        engine.apply_change({"insert": "b"})

        status = engine.status()

        assert status["current_version"] == 1
        assert status["active_branch_id"] == MAIN_BRANCH_ID
        assert status["is_dirty"] is True
        assert status["pending_changes"] == 1
        assert status["version_count"] == 1
        assert status["storage"] == {"isStorageValid": True, "lastValidVersion": 0}
