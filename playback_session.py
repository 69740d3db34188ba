"""Bounded-retry playback session.

All decisions live in :func:`transition`, a pure ``(state, event) ->
(state, effects)`` function. :class:`PlaybackSession` executes those effects
against a :class:`~playback_engine.PlaybackEngine` and a scheduler. Every
asynchronous result is stamped with the generation that started it, and only
results for the live generation are applied.
"""

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Deque, FrozenSet, List, Optional, Tuple

from playback_engine import PlaybackEngine
from playback_errors import (
    ErrorCategory,
    ErrorClassification,
    FailureSignal,
    classify_failure,
    describe_failure,
)
from schedulers import Scheduler
from stream_utils import (
    StreamRequest,
    build_stream_request,
    classify_format,
    complete_extension,
    toggle_scheme,
)

LOG = logging.getLogger(__name__)

FALLBACK_STREAM_URL = "https://test-streams.mux.dev/x36xhzz/x36xhzz.m3u8"

_NETWORK_CATEGORIES = (ErrorCategory.CONNECTIVITY, ErrorCategory.TIMEOUT)


class Phase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RECOVERING = "recovering"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SessionConfig:
    max_attempts: int = 5
    max_network_retries: int = 2
    load_timeout: float = 30.0
    retry_backoff: float = 1.0
    extension_attempt_ceiling: int = 2
    fallback_url: str = FALLBACK_STREAM_URL

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_network_retries < 0:
            raise ValueError("max_network_retries cannot be negative")
        if self.load_timeout <= 0:
            raise ValueError("load_timeout must be positive")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff cannot be negative")
        if not self.fallback_url:
            raise ValueError("fallback_url is required")


@dataclass(frozen=True)
class SessionState:
    generation: int = 0
    phase: Phase = Phase.IDLE
    request: Optional[StreamRequest] = None
    candidate_url: str = ""
    tried_urls: FrozenSet[str] = field(default_factory=frozenset)
    attempt_count: int = 0
    max_attempts: int = 0
    network_retry_count: int = 0
    max_network_retries: int = 0
    fallback_used: bool = False
    last_error: Optional[ErrorClassification] = None

    @property
    def waiting(self) -> bool:
        return self.phase in (Phase.LOADING, Phase.RECOVERING)


@dataclass(frozen=True)
class SessionStatus:
    waiting: bool
    attempt_number: int
    max_attempts: int
    phase: Phase
    candidate_url: str = ""


def initial_state(config: SessionConfig, generation: int = 0) -> SessionState:
    return SessionState(
        generation=generation,
        max_attempts=config.max_attempts,
        max_network_retries=config.max_network_retries,
    )


# ------------------------------------------------------------------ events
@dataclass(frozen=True)
class Start:
    request: StreamRequest


@dataclass(frozen=True)
class PlaybackStarted:
    generation: int


@dataclass(frozen=True)
class PlaybackFailed:
    generation: int
    signal: FailureSignal


@dataclass(frozen=True)
class DeadlineExpired:
    generation: int


@dataclass(frozen=True)
class BackoffElapsed:
    generation: int


@dataclass(frozen=True)
class Reset:
    pass


# ----------------------------------------------------------------- effects
@dataclass(frozen=True)
class ReleaseEngine:
    pass


@dataclass(frozen=True)
class CancelDeadline:
    """Cancel any pending deadline or backoff timer."""


@dataclass(frozen=True)
class RequestPlayback:
    url: str
    generation: int


@dataclass(frozen=True)
class ScheduleDeadline:
    generation: int
    seconds: float


@dataclass(frozen=True)
class ScheduleBackoff:
    generation: int
    seconds: float


@dataclass(frozen=True)
class ReportSuccess:
    pass


@dataclass(frozen=True)
class ReportFailure:
    classification: ErrorClassification
    attempts: int


Transition = Tuple[SessionState, List[object]]


# -------------------------------------------------------------- transition
def _attempt_effects(url: str, generation: int, config: SessionConfig) -> List[object]:
    return [RequestPlayback(url, generation), ScheduleDeadline(generation, config.load_timeout)]


def _start(state: SessionState, request: StreamRequest, config: SessionConfig) -> Transition:
    generation = state.generation + 1
    url = request.normalized_url
    new_state = replace(
        initial_state(config, generation),
        phase=Phase.LOADING,
        request=request,
        candidate_url=url,
        tried_urls=frozenset({url}),
        attempt_count=1,
    )
    return new_state, [CancelDeadline(), ReleaseEngine()] + _attempt_effects(url, generation, config)


def _reset(state: SessionState, config: SessionConfig) -> Transition:
    return initial_state(config, state.generation + 1), [CancelDeadline(), ReleaseEngine()]


def _switch_candidate(
    state: SessionState,
    classification: ErrorClassification,
    config: SessionConfig,
    url: str,
    **changes,
) -> Transition:
    generation = state.generation + 1
    new_state = replace(
        state,
        generation=generation,
        phase=Phase.LOADING,
        candidate_url=url,
        tried_urls=state.tried_urls | {url},
        attempt_count=state.attempt_count + 1,
        last_error=classification,
        **changes,
    )
    return new_state, [CancelDeadline(), ReleaseEngine()] + _attempt_effects(url, generation, config)


def _exhaust(state: SessionState, classification: ErrorClassification) -> Transition:
    new_state = replace(state, phase=Phase.EXHAUSTED, last_error=classification)
    return new_state, [
        CancelDeadline(),
        ReleaseEngine(),
        ReportFailure(classification, state.attempt_count),
    ]


def _recover(state: SessionState, classification: ErrorClassification, config: SessionConfig) -> Transition:
    # Every remediation costs one attempt.
    if state.attempt_count >= state.max_attempts:
        return _exhaust(state, classification)

    category = classification.category
    if category in _NETWORK_CATEGORIES and state.network_retry_count < state.max_network_retries:
        generation = state.generation + 1
        new_state = replace(
            state,
            generation=generation,
            phase=Phase.RECOVERING,
            attempt_count=state.attempt_count + 1,
            network_retry_count=state.network_retry_count + 1,
            last_error=classification,
        )
        return new_state, [
            CancelDeadline(),
            ReleaseEngine(),
            ScheduleBackoff(generation, config.retry_backoff),
        ]

    if category is ErrorCategory.PROTOCOL_MISMATCH:
        toggled = toggle_scheme(state.candidate_url)
        if toggled and toggled not in state.tried_urls:
            return _switch_candidate(state, classification, config, toggled)

    extended = complete_extension(state.candidate_url, classify_format(state.candidate_url))
    if (
        extended
        and extended not in state.tried_urls
        and state.attempt_count <= config.extension_attempt_ceiling
    ):
        return _switch_candidate(state, classification, config, extended)

    if not state.fallback_used:
        return _switch_candidate(state, classification, config, config.fallback_url, fallback_used=True)

    return _exhaust(state, classification)


def transition(state: SessionState, event: object, config: SessionConfig) -> Transition:
    """Advance ``state`` by one event. Stale or out-of-phase events are no-ops."""
    if isinstance(event, Start):
        return _start(state, event.request, config)
    if isinstance(event, Reset):
        return _reset(state, config)
    if not isinstance(event, (PlaybackStarted, PlaybackFailed, DeadlineExpired, BackoffElapsed)):
        raise TypeError(f"Unknown session event: {event!r}")
    if event.generation != state.generation:
        return state, []

    if isinstance(event, BackoffElapsed):
        if state.phase is not Phase.RECOVERING:
            return state, []
        return replace(state, phase=Phase.LOADING), _attempt_effects(
            state.candidate_url, state.generation, config
        )

    if state.phase is not Phase.LOADING:
        return state, []
    if isinstance(event, PlaybackStarted):
        return replace(state, phase=Phase.SUCCESS), [CancelDeadline(), ReportSuccess()]
    if isinstance(event, PlaybackFailed):
        signal = event.signal
    else:
        signal = FailureSignal("deadline", f"No response within {config.load_timeout:g} seconds")
    return _recover(state, classify_failure(signal), config)


# -------------------------------------------------------------- controller
class PlaybackSession:
    """Drives one playback engine through the remediation ladder."""

    def __init__(
        self,
        engine: PlaybackEngine,
        scheduler: Scheduler,
        config: Optional[SessionConfig] = None,
        on_success: Optional[Callable[[], None]] = None,
        on_terminal_failure: Optional[Callable[[ErrorClassification, int], None]] = None,
        on_status: Optional[Callable[[SessionStatus], None]] = None,
    ) -> None:
        self._engine = engine
        self._scheduler = scheduler
        self.config = config or SessionConfig()
        self.on_success = on_success
        self.on_terminal_failure = on_terminal_failure
        self.on_status = on_status
        self._state = initial_state(self.config)
        self._deadline_handle = None
        self._backoff_handle = None
        self._pending: Deque[object] = deque()
        self._dispatching = False
        self._last_status: Optional[SessionStatus] = None
        self._closed = False

    # ------------------------------------------------------------ public
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        state = self._state
        return SessionStatus(
            waiting=state.waiting,
            attempt_number=state.attempt_count,
            max_attempts=state.max_attempts,
            phase=state.phase,
            candidate_url=state.candidate_url,
        )

    def start(self, raw_url: str) -> StreamRequest:
        """Begin a fresh session for ``raw_url``, superseding any current one."""
        if self._closed:
            raise RuntimeError("Playback session has been closed.")
        request = build_stream_request(raw_url)
        LOG.info(
            "Starting playback: %s (normalized=%s, format=%s)",
            request.raw_url,
            request.normalized_url,
            request.format.value,
        )
        self._dispatch(Start(request))
        return request

    def reset(self) -> None:
        self._dispatch(Reset())

    cancel = reset

    def close(self) -> None:
        if self._closed:
            return
        self.reset()
        self._closed = True
        try:
            self._engine.close()
        except Exception as err:
            LOG.warning("Playback engine shutdown failed: %s", err)

    # ---------------------------------------------------------- dispatch
    def _post(self, event: object) -> None:
        """Hand an engine callback (possibly from a foreign thread) to our thread."""
        self._scheduler.call_soon(lambda: self._dispatch(event))

    def _dispatch(self, event: object) -> None:
        self._pending.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                current = self._pending.popleft()
                previous = self._state
                self._state, effects = transition(previous, current, self.config)
                if self._state is previous and not effects:
                    LOG.debug(
                        "Ignoring %s (live generation %d, phase %s)",
                        type(current).__name__,
                        previous.generation,
                        previous.phase.value,
                    )
                    continue
                for effect in effects:
                    self._execute(effect)
                self._publish_status()
        finally:
            self._dispatching = False

    def _execute(self, effect: object) -> None:
        if isinstance(effect, CancelDeadline):
            self._cancel_timers()
        elif isinstance(effect, ReleaseEngine):
            try:
                self._engine.release()
            except Exception as err:
                LOG.warning("Failed to release playback resource: %s", err)
        elif isinstance(effect, RequestPlayback):
            self._request_playback(effect.url, effect.generation)
        elif isinstance(effect, ScheduleDeadline):
            generation = effect.generation
            self._deadline_handle = self._scheduler.call_later(
                effect.seconds, lambda: self._dispatch(DeadlineExpired(generation))
            )
        elif isinstance(effect, ScheduleBackoff):
            generation = effect.generation
            LOG.info("Retrying same stream in %.1fs", effect.seconds)
            self._backoff_handle = self._scheduler.call_later(
                effect.seconds, lambda: self._dispatch(BackoffElapsed(generation))
            )
        elif isinstance(effect, ReportSuccess):
            LOG.info("Playback started after %d attempt(s)", self._state.attempt_count)
            self._notify(self.on_success)
        elif isinstance(effect, ReportFailure):
            LOG.warning("Giving up: %s", describe_failure(effect.classification, effect.attempts))
            self._notify(self.on_terminal_failure, effect.classification, effect.attempts)
        else:
            raise TypeError(f"Unknown session effect: {effect!r}")

    def _request_playback(self, url: str, generation: int) -> None:
        LOG.info(
            "Attempt %d/%d (generation %d): %s",
            self._state.attempt_count,
            self._state.max_attempts,
            generation,
            url,
        )
        try:
            self._engine.play(
                url,
                lambda: self._post(PlaybackStarted(generation)),
                lambda signal: self._post(PlaybackFailed(generation, signal)),
            )
        except Exception as err:
            LOG.warning("Playback engine rejected %s: %s", url, err)
            # Queued behind the current dispatch.
            self._dispatch(PlaybackFailed(generation, FailureSignal("engine_error", str(err))))

    def _cancel_timers(self) -> None:
        for handle in (self._deadline_handle, self._backoff_handle):
            if handle is not None:
                handle.cancel()
        self._deadline_handle = None
        self._backoff_handle = None

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOG.exception("Error in playback session listener")

    def _publish_status(self) -> None:
        status = self.status
        if status == self._last_status:
            return
        self._last_status = status
        self._notify(self.on_status, status)
