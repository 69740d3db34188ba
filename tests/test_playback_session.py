"""
Tests for the playback session state machine and its recovery ladder.
"""
import pytest
import os
import sys
from collections import deque

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from playback_engine import EngineUnavailableError, PlaybackEngine
from playback_errors import ErrorCategory, FailureSignal
from playback_session import (
    FALLBACK_STREAM_URL,
    CancelDeadline,
    PlaybackFailed,
    PlaybackSession,
    PlaybackStarted,
    Phase,
    ReleaseEngine,
    RequestPlayback,
    ScheduleDeadline,
    SessionConfig,
    Start,
    initial_state,
    transition,
)
from schedulers import Scheduler
from stream_utils import InputValidationError, build_stream_request


class FakeTimer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler(Scheduler):
    """Manual clock: timers fire on advance(), hand-offs on run_pending()."""

    def __init__(self):
        self.now = 0.0
        self.timers = []
        self.soon = deque()

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def call_soon(self, callback):
        self.soon.append(callback)

    def run_pending(self):
        while self.soon:
            self.soon.popleft()()

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.timers.remove(timer)
            self.now = timer.when
            timer.callback()
            self.run_pending()
        self.now = target
        self.run_pending()


class FakeAttempt:
    def __init__(self, url, on_started, on_failed):
        self.url = url
        self.on_started = on_started
        self.on_failed = on_failed


class FakeEngine(PlaybackEngine):
    def __init__(self):
        self.plays = []
        self.releases = 0
        self.closed = False
        self.raise_on_play = None

    def play(self, url, on_started, on_failed):
        if self.raise_on_play is not None:
            raise self.raise_on_play
        self.plays.append(FakeAttempt(url, on_started, on_failed))

    def release(self):
        self.releases += 1

    def close(self):
        self.closed = True

    @property
    def last(self):
        return self.plays[-1]


@pytest.fixture
def harness():
    engine = FakeEngine()
    scheduler = FakeScheduler()
    events = {"success": 0, "failures": [], "statuses": []}

    def make(config=None):
        return PlaybackSession(
            engine,
            scheduler,
            config,
            on_success=lambda: events.__setitem__("success", events["success"] + 1),
            on_terminal_failure=lambda c, n: events["failures"].append((c, n)),
            on_status=events["statuses"].append,
        )

    return engine, scheduler, events, make


def _fail(engine, scheduler, code, message=""):
    engine.last.on_failed(FailureSignal(code, message))
    scheduler.run_pending()


class TestSuccessPath:
    """Test sessions whose playback starts."""

    def test_first_attempt_succeeds(self, harness):
        """Test the first attempt starting reports success and cancels the deadline."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("host/live.m3u8")
        assert engine.last.url == "https://host/live.m3u8"
        assert session.status.waiting is True
        assert session.status.attempt_number == 1

        engine.last.on_started()
        scheduler.run_pending()
        assert session.state.phase is Phase.SUCCESS
        assert session.status.waiting is False
        assert events["success"] == 1

        # Deadline was cancelled on success.
        scheduler.advance(120)
        assert len(engine.plays) == 1
        assert events["failures"] == []

    def test_failure_after_success_is_ignored(self, harness):
        """Test a late failure does not disturb a playing session."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        engine.last.on_started()
        engine.last.on_failed(FailureSignal("ECONNREFUSED", ""))
        scheduler.run_pending()
        assert session.state.phase is Phase.SUCCESS
        assert len(engine.plays) == 1

    def test_status_is_published(self, harness):
        """Test status updates reach the listener."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        first = events["statuses"][0]
        assert first.waiting is True
        assert first.attempt_number == 1
        assert first.max_attempts == 5
        engine.last.on_started()
        scheduler.run_pending()
        assert events["statuses"][-1].waiting is False

    def test_listener_error_does_not_break_session(self, harness):
        """Test a failing listener is logged, not propagated."""
        engine, scheduler, events, make = harness
        session = make()
        session.on_success = lambda: 1 / 0
        session.start("https://h/a.m3u8")
        engine.last.on_started()
        scheduler.run_pending()
        assert session.state.phase is Phase.SUCCESS


class TestGenerations:
    """Test that results from superseded attempts are discarded."""

    def test_stale_callback_after_restart(self, harness):
        """Test callbacks from a previous start are ignored."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/one.m3u8")
        old = engine.last
        session.start("https://h/two.m3u8")
        old.on_started()
        old.on_failed(FailureSignal("ECONNREFUSED", ""))
        scheduler.run_pending()
        assert session.state.phase is Phase.LOADING
        assert session.state.candidate_url == "https://h/two.m3u8"
        assert events["success"] == 0
        assert len(engine.plays) == 2

    def test_stale_callback_after_reset(self, harness):
        """Test callbacks arriving after reset are ignored."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/one.m3u8")
        old = engine.last
        session.reset()
        old.on_failed(FailureSignal(404, ""))
        scheduler.run_pending()
        scheduler.advance(100)
        assert session.state.phase is Phase.IDLE
        assert len(engine.plays) == 1
        assert events["failures"] == []

    def test_late_start_after_ladder_advanced(self, harness):
        """Test a first-attempt start arriving after a retry is ignored."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("http://h/live/u/p/123")
        first = engine.last
        first_generation = session.state.generation
        _fail(engine, scheduler, 404)
        assert engine.last.url == "http://h/live/u/p/123.m3u8"
        assert session.state.generation > first_generation

        before = session.state
        first.on_started()
        scheduler.run_pending()
        assert session.state == before
        assert session.state.phase is Phase.LOADING
        assert events["success"] == 0
        assert len(engine.plays) == 2

    def test_generation_is_monotonic(self, harness):
        """Test the generation only ever increases."""
        engine, scheduler, events, make = harness
        session = make()
        seen = [session.state.generation]
        session.start("https://h/a.m3u8")
        seen.append(session.state.generation)
        session.reset()
        seen.append(session.state.generation)
        session.start("https://h/b.m3u8")
        seen.append(session.state.generation)
        assert seen == sorted(set(seen))


class TestRecoveryLadder:
    """Test the order of recovery steps after a failure."""

    def test_connectivity_quick_retry_with_backoff(self, harness):
        """Test connectivity errors retry the same URL after a backoff."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        _fail(engine, scheduler, "ECONNREFUSED")
        assert session.state.phase is Phase.RECOVERING
        assert session.status.waiting is True
        assert session.state.attempt_count == 2
        assert session.state.network_retry_count == 1
        assert session.state.last_error.category == ErrorCategory.CONNECTIVITY
        assert len(engine.plays) == 1

        scheduler.advance(1.0)
        assert session.state.phase is Phase.LOADING
        assert len(engine.plays) == 2
        assert engine.last.url == "https://h/a.m3u8"

    def test_deadline_counts_as_timeout(self, harness):
        """Test an expired load deadline is handled as a timeout."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        scheduler.advance(30)
        assert session.state.phase is Phase.RECOVERING
        assert session.state.last_error.category == ErrorCategory.TIMEOUT
        scheduler.advance(1)
        assert len(engine.plays) == 2

    def test_network_budget_then_fallback_then_exhausted(self, harness):
        """Test quick retries stop at their budget before the fallback."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        for _ in range(2):
            _fail(engine, scheduler, "ECONNREFUSED")
            scheduler.advance(1.0)
        assert len(engine.plays) == 3
        _fail(engine, scheduler, "ECONNREFUSED")
        assert engine.last.url == FALLBACK_STREAM_URL
        assert session.state.fallback_used is True
        assert session.state.attempt_count == 4

        _fail(engine, scheduler, "ECONNREFUSED")
        assert session.state.phase is Phase.EXHAUSTED
        assert session.status.waiting is False
        classification, attempts = events["failures"][0]
        assert classification.category == ErrorCategory.CONNECTIVITY
        assert attempts == 4
        assert len(events["failures"]) == 1

    def test_protocol_mismatch_toggles_scheme_once(self, harness):
        """Test protocol errors try the other scheme once."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/live/stream.m3u8")
        _fail(engine, scheduler, "ssl_error")
        assert engine.last.url == "http://h/live/stream.m3u8"
        assert session.state.last_error.category == ErrorCategory.PROTOCOL_MISMATCH

        _fail(engine, scheduler, "ssl_error")
        assert engine.last.url == FALLBACK_STREAM_URL
        assert [p.url for p in engine.plays].count("https://h/live/stream.m3u8") == 1

    def test_extension_completion_then_fallback(self, harness):
        """Test an extension-less URL gets a completed candidate."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("http://h/live/u/p/123")
        _fail(engine, scheduler, 404)
        assert engine.last.url == "http://h/live/u/p/123.m3u8"
        _fail(engine, scheduler, 404)
        assert engine.last.url == FALLBACK_STREAM_URL
        _fail(engine, scheduler, 404)
        assert session.state.phase is Phase.EXHAUSTED
        assert events["failures"][0][1] == 3

    def test_extension_skipped_late_in_session(self, harness):
        """Test extension completion is skipped after the second attempt."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("http://h/live/1")
        for _ in range(2):
            _fail(engine, scheduler, "ECONNREFUSED")
            scheduler.advance(1.0)
        _fail(engine, scheduler, "ECONNREFUSED")
        assert engine.last.url == FALLBACK_STREAM_URL

    def test_fallback_success(self, harness):
        """Test playback can succeed on the fallback stream."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        _fail(engine, scheduler, 403)
        assert engine.last.url == FALLBACK_STREAM_URL
        engine.last.on_started()
        scheduler.run_pending()
        assert session.state.phase is Phase.SUCCESS
        assert events["success"] == 1

    def test_custom_fallback_url(self, harness):
        """Test the configured fallback URL is used."""
        engine, scheduler, events, make = harness
        session = make(SessionConfig(fallback_url="https://backup/ch.m3u8"))
        session.start("https://h/a.m3u8")
        _fail(engine, scheduler, 404)
        assert engine.last.url == "https://backup/ch.m3u8"


class TestAttemptBudget:
    """Test the total attempt limit."""

    def test_max_attempts_bounds_the_ladder(self, harness):
        """Test the ladder stops at max_attempts."""
        engine, scheduler, events, make = harness
        session = make(SessionConfig(max_attempts=2))
        session.start("http://h/live/1")
        _fail(engine, scheduler, 404)
        _fail(engine, scheduler, 404)
        assert session.state.phase is Phase.EXHAUSTED
        assert len(engine.plays) == 2
        assert events["failures"][0][1] == 2

    def test_single_attempt_exhausts_immediately(self, harness):
        """Test a budget of one gives up on the first failure."""
        engine, scheduler, events, make = harness
        session = make(SessionConfig(max_attempts=1))
        session.start("https://h/a.m3u8")
        _fail(engine, scheduler, "ECONNREFUSED")
        assert session.state.phase is Phase.EXHAUSTED
        assert session.state.fallback_used is False
        assert len(engine.plays) == 1

    def test_attempt_count_never_exceeds_budget(self, harness):
        """Test repeated failures never exceed the budget."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("http://h/live/1")
        while session.state.phase is not Phase.EXHAUSTED:
            if session.state.phase is Phase.RECOVERING:
                scheduler.advance(1.0)
                continue
            assert session.state.attempt_count <= session.state.max_attempts
            _fail(engine, scheduler, "ECONNREFUSED")
        assert session.state.attempt_count <= 5

    def test_invalid_config(self):
        """Test invalid limits are rejected."""
        with pytest.raises(ValueError):
            SessionConfig(max_attempts=0)
        with pytest.raises(ValueError):
            SessionConfig(load_timeout=0)


class TestLifecycle:
    """Test start, reset and close handling."""

    def test_invalid_url_does_not_play(self, harness):
        """Test blank input is rejected before the engine is touched."""
        engine, scheduler, events, make = harness
        session = make()
        with pytest.raises(InputValidationError):
            session.start("   ")
        assert engine.plays == []
        assert session.state.phase is Phase.IDLE

    def test_reset_cancels_backoff(self, harness):
        """Test reset cancels a pending backoff retry."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        _fail(engine, scheduler, "ECONNREFUSED")
        session.reset()
        assert session.status.waiting is False
        scheduler.advance(10)
        assert len(engine.plays) == 1

    def test_engine_exception_becomes_failure(self, harness):
        """Test exceptions from the engine are treated as failures."""
        engine, scheduler, events, make = harness
        engine.raise_on_play = EngineUnavailableError("no vlc")
        session = make()
        session.start("https://h/a.m3u8")
        assert session.state.phase is Phase.EXHAUSTED
        classification, attempts = events["failures"][0]
        assert classification.message == "no vlc"
        assert attempts == 2

    def test_close_releases_engine(self, harness):
        """Test close shuts down the engine and refuses new starts."""
        engine, scheduler, events, make = harness
        session = make()
        session.start("https://h/a.m3u8")
        session.close()
        assert engine.closed is True
        with pytest.raises(RuntimeError):
            session.start("https://h/a.m3u8")


class TestTransition:
    """The transition function is pure and can be driven directly."""

    def test_start_effects(self):
        """Test the effects requested when a session starts."""
        cfg = SessionConfig()
        request = build_stream_request("https://h/a.m3u8")
        state, effects = transition(initial_state(cfg), Start(request), cfg)
        assert state.generation == 1
        assert state.phase is Phase.LOADING
        assert effects == [
            CancelDeadline(),
            ReleaseEngine(),
            RequestPlayback("https://h/a.m3u8", 1),
            ScheduleDeadline(1, cfg.load_timeout),
        ]

    def test_idle_ignores_engine_events(self):
        """Test engine events are no-ops while idle."""
        cfg = SessionConfig()
        state = initial_state(cfg)
        assert transition(state, PlaybackStarted(0), cfg) == (state, [])
        assert transition(state, PlaybackFailed(0, FailureSignal(404, "")), cfg) == (state, [])

    def test_unknown_event(self):
        """Test unknown events raise TypeError."""
        cfg = SessionConfig()
        with pytest.raises(TypeError):
            transition(initial_state(cfg), object(), cfg)
