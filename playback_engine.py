from typing import Callable

from playback_errors import FailureSignal

StartedCallback = Callable[[], None]
FailedCallback = Callable[[FailureSignal], None]


class EngineUnavailableError(RuntimeError):
    """Raised when the playback backend cannot be created."""


class PlaybackEngine:
    """Opaque media engine driven by a playback session.

    ``play`` starts one attempt and must eventually call exactly one of
    ``on_started`` or ``on_failed``. Callbacks may fire on any thread; the
    session stamps and serialises them itself.
    """

    def play(self, url: str, on_started: StartedCallback, on_failed: FailedCallback) -> None:
        raise NotImplementedError

    def release(self) -> None:
        """Stop and dispose of the current attempt, if any."""
        raise NotImplementedError

    def close(self) -> None:
        self.release()
