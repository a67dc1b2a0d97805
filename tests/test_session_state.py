import datetime as dt

import pytest

import jiratrack as jt


def test_new_state_is_idle(clock):
    state = jt.SessionState(clock=clock)
    assert not state.is_active
    assert state.elapsed_now() is None
    assert state.deactivate() is None
    assert state.to_record() == jt.StateRecord()


def test_activate_from_idle_returns_nothing(clock):
    state = jt.SessionState(clock=clock)
    assert state.activate("IMG-1") is None
    assert state.active_issue_key == "IMG-1"
    assert state.activated_at == clock.now


def test_activate_rejects_empty_key(clock):
    state = jt.SessionState(clock=clock)
    with pytest.raises(ValueError):
        state.activate("")


@pytest.mark.parametrize('seconds, expected', [
    (59, None),
    (59.999, None),
    (60, 60),
    (61.7, 61),
    (3 * 3600 + 5, 3 * 3600 + 5),
])
def test_deactivate_minute_threshold(clock, seconds, expected):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-1")
    start = clock.now
    clock.advance(seconds)
    request = state.deactivate()
    assert not state.is_active
    if expected is None:
        assert request is None
    else:
        assert request == jt.WorklogRequest("IMG-1", start, clock.now)
        assert request.seconds == expected


def test_switching_issues_flushes_previous_with_shared_instant(clock):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-1")
    start = clock.now
    clock.advance(300)
    flushed = state.activate("IMG-2")
    assert flushed == jt.WorklogRequest("IMG-1", start, clock.now)
    assert flushed.seconds == 300
    assert state.active_issue_key == "IMG-2"
    assert state.activated_at == flushed.ended_at


def test_switching_quickly_flushes_nothing(clock):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-1")
    clock.advance(10)
    assert state.activate("IMG-2") is None
    assert state.active_issue_key == "IMG-2"


def test_reactivating_same_issue_flushes_and_restarts(clock):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-1")
    clock.advance(120)
    flushed = state.activate("IMG-1")
    assert flushed is not None and flushed.seconds == 120
    assert state.activated_at == clock.now
    assert state.elapsed_now() == dt.timedelta(0)


def test_discard_never_yields_request(clock):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-1")
    clock.advance(3600)
    state.discard()
    assert not state.is_active
    assert state.activated_at is None
    assert state.deactivate() is None
    state.discard()
    assert not state.is_active


def test_elapsed_now_tracks_clock(clock):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-1")
    clock.advance(42)
    assert state.elapsed_now() == dt.timedelta(seconds=42)
    # query only
    assert state.active_issue_key == "IMG-1"


def test_elapsed_now_is_clamped_when_clock_goes_back(clock):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-1")
    clock.advance(-30)
    assert state.elapsed_now() == dt.timedelta(0)
    assert state.deactivate() is None


def test_record_round_trip(clock):
    state = jt.SessionState(clock=clock)
    state.activate("IMG-3")
    record = state.to_record()
    restored = jt.SessionState.from_record(record, clock=clock)
    assert restored.active_issue_key == "IMG-3"
    assert restored.activated_at == clock.now
    assert jt.SessionState.from_record(None, clock=clock).is_active is False


def test_state_record_enforces_co_optionality(clock):
    with pytest.raises(jt.CorruptStateError):
        jt.StateRecord("IMG-1", None)
    with pytest.raises(jt.CorruptStateError):
        jt.StateRecord(None, clock.now)
