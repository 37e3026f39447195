"""
In-memory session store: status machine, one-shot latch and garbage collection.
"""
from __future__ import annotations

import threading

from skillpath.agents.assessment_agent.schemas import ChatStatus
from skillpath.sessions import STALLED_ERROR, SessionStore


class FakeClock:
    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now


def test_create_starts_queued_with_opaque_id() -> None:
    store = SessionStore()
    snap = store.create()
    assert snap.session_id.startswith("sess_")
    assert snap.status is ChatStatus.queued
    assert snap.text == ""
    assert snap.error is None
    assert snap.session_id in store


def test_happy_path_transitions_and_text_accumulates() -> None:
    store = SessionStore(clock=FakeClock())
    sid = store.create().session_id
    store.set_running(sid)
    assert store.get(sid).status is ChatStatus.running
    store.append_partial(sid, "Hello")
    store.append_partial(sid, " world")
    snap = store.get(sid)
    assert snap.status is ChatStatus.partial
    assert snap.text == "Hello world"
    store.set_done(sid)
    assert store.get(sid).status is ChatStatus.done


def test_terminal_states_are_absorbing() -> None:
    store = SessionStore()
    sid = store.create().session_id
    store.set_error(sid, "boom")
    store.set_running(sid)
    store.append_partial(sid, "late text")
    store.set_done(sid)
    snap = store.get(sid)
    assert snap.status is ChatStatus.error
    assert snap.error == "boom"
    assert snap.text == ""


def test_updated_at_strictly_increases_with_a_frozen_clock() -> None:
    store = SessionStore(clock=FakeClock())
    sid = store.create().session_id
    seen = [store.get(sid).updated_at]
    store.set_running(sid)
    seen.append(store.get(sid).updated_at)
    store.append_partial(sid, "x")
    seen.append(store.get(sid).updated_at)
    assert seen == sorted(set(seen))


def test_empty_chunk_is_ignored() -> None:
    store = SessionStore(clock=FakeClock())
    sid = store.create().session_id
    store.set_running(sid)
    before = store.get(sid)
    store.append_partial(sid, "")
    assert store.get(sid) == before


def test_mutators_on_unknown_session_are_noops() -> None:
    store = SessionStore()
    store.set_running("sess_missing")
    store.append_partial("sess_missing", "x")
    store.set_done("sess_missing")
    store.set_error("sess_missing", "x")
    assert store.get("sess_missing") is None
    assert store.set_assessment_persisted("sess_missing") is False
    assert len(store) == 0


def test_snapshot_is_immutable_copy() -> None:
    store = SessionStore()
    sid = store.create().session_id
    snap = store.snapshot(sid)
    store.append_partial(sid, "new")
    assert snap.text == ""
    assert store.snapshot(sid).text == "new"


def test_persisted_latch_is_won_exactly_once() -> None:
    store = SessionStore()
    sid = store.create().session_id
    assert store.set_assessment_persisted(sid) is True
    assert store.set_assessment_persisted(sid) is False
    assert store.get(sid).assessment_persisted is True


def test_persisted_latch_under_thread_contention() -> None:
    store = SessionStore()
    sid = store.create().session_id
    results: list[bool] = []
    barrier = threading.Barrier(8)

    def contend() -> None:
        barrier.wait()
        results.append(store.set_assessment_persisted(sid))

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------

def test_cleanup_removes_sessions_older_than_max_age() -> None:
    clock = FakeClock()
    store = SessionStore(clock=clock)
    old = store.create().session_id
    clock.now += 5_000
    fresh = store.create().session_id
    removed = store.cleanup(max_age_ms=3_000, max_entries=100)
    assert removed == 1
    assert old not in store
    assert fresh in store


def test_cleanup_evicts_oldest_first_over_budget() -> None:
    clock = FakeClock()
    store = SessionStore(clock=clock)
    ids = []
    for _ in range(5):
        ids.append(store.create().session_id)
        clock.now += 10
    store.append_partial(ids[0], "touch")   # now the newest
    removed = store.cleanup(max_age_ms=60_000, max_entries=3)
    assert removed == 2
    assert ids[1] not in store and ids[2] not in store
    assert all(sid in store for sid in (ids[0], ids[3], ids[4]))


def test_cleanup_marks_stalled_sessions_as_error() -> None:
    clock = FakeClock()
    store = SessionStore(clock=clock)
    stuck = store.create().session_id
    store.set_running(stuck)
    finished = store.create().session_id
    store.set_done(finished)
    clock.now += 2_000
    store.cleanup(max_age_ms=60_000, max_entries=100, stale_after_ms=1_000)
    assert store.get(stuck).status is ChatStatus.error
    assert store.get(stuck).error == STALLED_ERROR
    assert store.get(finished).status is ChatStatus.done


def test_teardown_clears_everything() -> None:
    store = SessionStore()
    store.create()
    store.create()
    store.teardown()
    assert len(store) == 0
