"""
Unit Tests for the display state reducer and the in-memory session store.
"""

import pytest

from physilink.models.schemas import (
    AnalysisResult,
    Concept,
    DisplayState,
    KnowledgeFile,
    Observation,
    TheoryVerification,
)
from physilink.services.session_store import (
    AnalysisFailed,
    AnalysisStarted,
    AnalysisSucceeded,
    ConceptsIllustrated,
    KnowledgeAdded,
    KnowledgeRemoved,
    ObservationIllustrated,
    ResultCleared,
    SessionNotFound,
    StrictModeChanged,
    VerificationCleared,
    VerificationFailed,
    VerificationStarted,
    VerificationSucceeded,
    SessionStore,
    reduce,
)


@pytest.fixture
def result() -> AnalysisResult:
    return AnalysisResult(
        summary="s",
        concepts=[Concept(name="a"), Concept(name="b")],
        observations=[Observation(concept_name="a"), Observation(concept_name="b")],
    )


@pytest.fixture
def shown(result) -> DisplayState:
    return reduce(DisplayState(), AnalysisSucceeded(result))


def _file(name: str) -> KnowledgeFile:
    return KnowledgeFile(name=name, type="PDF", data="AAAA", mime_type="application/pdf")


class TestAnalysisLifecycle:

    def test_reduce_when_started_then_loading_and_error_cleared(self):
        state = DisplayState(error="old")

        nxt = reduce(state, AnalysisStarted())

        assert nxt.loading
        assert nxt.error is None
        assert state.error == "old"  # input untouched

    def test_reduce_when_succeeded_then_result_replaced(self, result):
        older = AnalysisResult(summary="older")
        state = reduce(DisplayState(loading=True, result=older), AnalysisSucceeded(result))

        assert state.result is result
        assert not state.loading

    def test_reduce_when_failed_then_message_and_not_loading(self):
        state = reduce(DisplayState(loading=True), AnalysisFailed("boom"))

        assert state.error == "boom"
        assert not state.loading

    def test_reduce_when_cleared_twice_then_second_is_noop(self, shown):
        cleared = reduce(shown, ResultCleared())

        assert cleared.result is None
        assert reduce(cleared, ResultCleared()) is cleared

    def test_reduce_when_state_changes_then_version_bumped(self, shown):
        assert reduce(shown, AnalysisStarted()).version == shown.version + 1


class TestIllustrationMerges:

    def test_reduce_when_concepts_illustrated_then_merged_in_order(self, shown, result):
        state = reduce(shown, ConceptsIllustrated(result.result_id, {1: "img-b"}))

        assert [c.illustration for c in state.result.concepts] == [None, "img-b"]
        assert shown.result.concepts[1].illustration is None

    def test_reduce_when_concept_already_illustrated_then_write_once(self, shown, result):
        first = reduce(shown, ConceptsIllustrated(result.result_id, {0: "first"}))

        second = reduce(first, ConceptsIllustrated(result.result_id, {0: "second"}))

        assert second.result.concepts[0].illustration == "first"
        assert second is first

    def test_reduce_when_observation_illustrated_then_only_that_index(self, shown, result):
        state = reduce(shown, ObservationIllustrated(result.result_id, 1, "img"))

        assert [o.illustration for o in state.result.observations] == [None, "img"]

    def test_reduce_when_observation_already_illustrated_then_write_once(self, shown, result):
        first = reduce(shown, ObservationIllustrated(result.result_id, 0, "first"))

        assert reduce(first, ObservationIllustrated(result.result_id, 0, "second")) is first

    def test_reduce_when_batch_is_stale_then_discarded(self, shown):
        assert reduce(shown, ConceptsIllustrated("not-the-current-id", {0: "x"})) is shown
        assert reduce(shown, ObservationIllustrated("not-the-current-id", 0, "x")) is shown

    def test_reduce_when_no_result_shown_then_discarded(self, result):
        empty = DisplayState()

        assert reduce(empty, ConceptsIllustrated(result.result_id, {0: "x"})) is empty

    def test_reduce_when_index_out_of_range_then_ignored(self, shown, result):
        assert reduce(shown, ObservationIllustrated(result.result_id, 9, "x")) is shown
        assert reduce(shown, ConceptsIllustrated(result.result_id, {-1: "x", 7: "y"})) is shown

    def test_reduce_when_interleaved_updates_then_no_lost_update(self, shown, result):
        state = reduce(shown, ObservationIllustrated(result.result_id, 0, "o0"))
        state = reduce(state, ConceptsIllustrated(result.result_id, {0: "c0"}))
        state = reduce(state, ObservationIllustrated(result.result_id, 1, "o1"))

        assert [o.illustration for o in state.result.observations] == ["o0", "o1"]
        assert state.result.concepts[0].illustration == "c0"


class TestVerificationAndLibrary:

    def test_reduce_when_verification_flow_then_report_stored(self):
        report = TheoryVerification(verdict="Minor Errors")

        state = reduce(reduce(DisplayState(), VerificationStarted()), VerificationSucceeded(report))

        assert state.verification is report
        assert not state.loading

    def test_reduce_when_verification_failed_then_error(self):
        state = reduce(DisplayState(loading=True), VerificationFailed("nope"))

        assert state.error == "nope"
        assert not state.loading

    def test_reduce_when_verification_cleared_then_none(self):
        state = DisplayState(verification=TheoryVerification())

        assert reduce(state, VerificationCleared()).verification is None

    def test_reduce_when_knowledge_added_then_appended(self):
        state = reduce(DisplayState(knowledge_files=[_file("a")]), KnowledgeAdded((_file("b"), _file("c"))))

        assert [f.name for f in state.knowledge_files] == ["a", "b", "c"]

    def test_reduce_when_knowledge_removed_then_index_dropped(self):
        state = DisplayState(knowledge_files=[_file("a"), _file("b"), _file("c")])

        assert [f.name for f in reduce(state, KnowledgeRemoved(1)).knowledge_files] == ["a", "c"]
        assert reduce(state, KnowledgeRemoved(5)) is state

    def test_reduce_when_strict_mode_unchanged_then_same_state(self):
        state = DisplayState()

        assert reduce(state, StrictModeChanged(False)) is state
        assert reduce(state, StrictModeChanged(True)).strict_mode

    def test_reduce_when_unknown_update_then_type_error(self):
        with pytest.raises(TypeError):
            reduce(DisplayState(), object())


class TestSessionStore:

    def test_store_when_created_then_empty_state(self, session_store):
        sid = session_store.create()

        assert session_store.get(sid) == DisplayState()
        assert sid in session_store.sessions()

    def test_store_when_unknown_session_then_not_found(self, session_store):
        with pytest.raises(SessionNotFound):
            session_store.get("missing")
        with pytest.raises(SessionNotFound):
            session_store.dispatch("missing", AnalysisStarted())

    def test_store_when_dispatched_then_latest_state_kept(self, session_store, result):
        sid = session_store.create()
        session_store.dispatch(sid, AnalysisSucceeded(result))
        session_store.dispatch(sid, ObservationIllustrated(result.result_id, 0, "o0"))
        session_store.dispatch(sid, ConceptsIllustrated(result.result_id, {1: "c1"}))

        state = session_store.get(sid)
        assert state.result.observations[0].illustration == "o0"
        assert state.result.concepts[1].illustration == "c1"

    def test_store_when_subscribed_then_receives_each_change(self, session_store):
        sid = session_store.create()
        q = session_store.subscribe(sid)

        session_store.dispatch(sid, AnalysisStarted())
        session_store.dispatch(sid, StrictModeChanged(False))  # no change, no event
        session_store.dispatch(sid, AnalysisFailed("x"))

        assert q.qsize() == 2
        assert q.get_nowait().loading
        assert q.get_nowait().error == "x"

    def test_store_when_queue_full_then_oldest_snapshot_dropped(self, session_store):
        sid = session_store.create()
        q = session_store.subscribe(sid)  # fixture queue_size=4

        for i in range(6):
            session_store.dispatch(sid, AnalysisFailed(f"e{i}"))

        snapshots = [q.get_nowait().error for _ in range(q.qsize())]
        assert snapshots == ["e2", "e3", "e4", "e5"]

    def test_store_when_unsubscribed_then_no_more_events(self, session_store):
        sid = session_store.create()
        q = session_store.subscribe(sid)
        session_store.unsubscribe(sid, q)

        session_store.dispatch(sid, AnalysisStarted())

        assert q.empty()
        assert session_store.subscriber_count(sid) == 0


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSessionLifetime:

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    def test_delete_when_session_exists_then_state_and_subscribers_dropped(self, session_store):
        sid = session_store.create()
        q = session_store.subscribe(sid)

        session_store.delete(sid)

        assert sid not in session_store.sessions()
        assert session_store.subscriber_count(sid) == 0
        assert q.get_nowait() is None  # closing signal for the stream
        with pytest.raises(SessionNotFound):
            session_store.get(sid)

    def test_delete_when_unknown_then_not_found(self, session_store):
        with pytest.raises(SessionNotFound):
            session_store.delete("missing")

    def test_dispatch_when_session_deleted_then_not_found(self, session_store, result):
        sid = session_store.create()
        session_store.dispatch(sid, AnalysisSucceeded(result))
        session_store.delete(sid)

        with pytest.raises(SessionNotFound):
            session_store.dispatch(sid, ObservationIllustrated(result.result_id, 0, "late"))

    def test_create_when_sessions_idle_then_evicted(self, clock):
        s = SessionStore(idle_seconds=60, clock=clock)
        old = s.create()
        clock.now += 61

        new = s.create()

        assert s.sessions() == [new]
        assert old not in s.sessions()

    def test_evict_when_recently_used_then_kept(self, clock):
        s = SessionStore(idle_seconds=60, clock=clock)
        sid = s.create()
        clock.now += 50
        s.get(sid)
        clock.now += 50

        assert s.evict_idle() == []
        assert s.sessions() == [sid]

    def test_evict_when_idle_but_streamed_then_kept(self, clock):
        s = SessionStore(idle_seconds=60, clock=clock)
        sid = s.create()
        s.subscribe(sid)
        clock.now += 120

        assert s.evict_idle() == []

    def test_create_when_at_capacity_then_least_recently_used_dropped(self, clock):
        s = SessionStore(max_sessions=2, clock=clock)
        a = s.create()
        clock.now += 1
        b = s.create()
        clock.now += 1
        s.get(a)
        clock.now += 1

        c = s.create()

        assert sorted(s.sessions()) == sorted([a, c])
        assert b not in s.sessions()
