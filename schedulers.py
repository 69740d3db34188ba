import asyncio
import logging
from typing import Callable

try:
    import wx  # type: ignore
    _HAS_WX = True
except ModuleNotFoundError:  # wxPython optional for headless hosts
    wx = None  # type: ignore
    _HAS_WX = False

LOG = logging.getLogger(__name__)


class Scheduler:
    """Timer and hand-off primitives for the thread that owns a session."""

    def call_later(self, delay: float, callback: Callable[[], None]):
        """Run ``callback`` after ``delay`` seconds; return a handle with ``cancel()``."""
        raise NotImplementedError

    def call_soon(self, callback: Callable[[], None]) -> None:
        """Thread-safe: queue ``callback`` on the owning thread."""
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._loop.call_later(max(0.0, delay), callback)

    def call_soon(self, callback: Callable[[], None]) -> None:
        if self._loop.is_closed():
            LOG.debug("Event loop closed; dropping callback %r", callback)
            return
        self._loop.call_soon_threadsafe(callback)


class _WxTimerHandle:
    def __init__(self, timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        try:
            self._timer.Stop()
        except Exception as err:
            # Owning window already destroyed.
            LOG.debug("wx timer stop failed: %s", err)


class WxScheduler(Scheduler):
    """Runs session timers on the wx main loop (CallLater/CallAfter)."""

    def __init__(self) -> None:
        if not _HAS_WX:
            raise RuntimeError("wxPython is not installed; install the 'gui' extra.")

    def call_later(self, delay: float, callback: Callable[[], None]) -> _WxTimerHandle:
        millis = max(1, int(delay * 1000))
        return _WxTimerHandle(wx.CallLater(millis, callback))

    def call_soon(self, callback: Callable[[], None]) -> None:
        wx.CallAfter(callback)
