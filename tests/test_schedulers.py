"""
Tests for scheduler adapters and a session running on a real asyncio loop.
"""
import pytest
import asyncio
import os
import sys
import threading
from unittest.mock import patch

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import schedulers
from playback_engine import PlaybackEngine
from playback_errors import FailureSignal
from playback_session import FALLBACK_STREAM_URL, PlaybackSession, SessionConfig
from schedulers import AsyncioScheduler, WxScheduler


class ThreadedEngine(PlaybackEngine):
    """Reports from a worker thread, the way libVLC event callbacks arrive."""

    def __init__(self, fail_urls=()):
        self.fail_urls = set(fail_urls)
        self.played = []

    def play(self, url, on_started, on_failed):
        self.played.append(url)
        if url in self.fail_urls:
            target = lambda: on_failed(FailureSignal(404, "Not Found"))
        else:
            target = on_started
        threading.Thread(target=target, daemon=True).start()

    def release(self):
        pass


class TestAsyncioScheduler:
    """Test the asyncio scheduler adapter."""

    def test_call_later_and_cancel(self):
        """Test timers fire and cancelled timers do not."""
        loop = asyncio.new_event_loop()
        try:
            sched = AsyncioScheduler(loop)
            fired = []
            sched.call_later(0.01, lambda: fired.append("later"))
            handle = sched.call_later(0.01, lambda: fired.append("cancelled"))
            handle.cancel()
            sched.call_soon(lambda: fired.append("soon"))
            loop.run_until_complete(asyncio.sleep(0.05))
            assert fired == ["soon", "later"]
        finally:
            loop.close()

    def test_call_soon_after_close_is_dropped(self):
        """Test hand-offs to a closed loop are dropped."""
        loop = asyncio.new_event_loop()
        sched = AsyncioScheduler(loop)
        loop.close()
        sched.call_soon(lambda: None)


class TestWxScheduler:
    """Test the wx scheduler adapter."""

    def test_requires_wx(self):
        """Test construction fails without wxPython."""
        with patch.object(schedulers, "_HAS_WX", False):
            with pytest.raises(RuntimeError):
                WxScheduler()


class TestSessionOnAsyncio:
    """Test a session driven by a real event loop."""

    def test_started_from_worker_thread(self):
        """Test engine callbacks from another thread reach the session."""
        async def run():
            loop = asyncio.get_running_loop()
            done = loop.create_future()
            session = PlaybackSession(
                ThreadedEngine(),
                AsyncioScheduler(loop),
                on_success=lambda: done.set_result("ok"),
            )
            session.start("https://h/a.m3u8")
            try:
                return await asyncio.wait_for(done, 2)
            finally:
                session.close()

        assert asyncio.run(run()) == "ok"

    def test_recovers_to_fallback(self):
        """Test a failing stream recovers onto the fallback."""
        engine = ThreadedEngine(fail_urls={"https://h/a.m3u8"})

        async def run():
            loop = asyncio.get_running_loop()
            done = loop.create_future()
            session = PlaybackSession(
                engine,
                AsyncioScheduler(loop),
                SessionConfig(load_timeout=5),
                on_success=lambda: done.set_result(session.state.attempt_count),
            )
            session.start("https://h/a.m3u8")
            try:
                return await asyncio.wait_for(done, 2)
            finally:
                session.close()

        assert asyncio.run(run()) == 2
        assert engine.played == ["https://h/a.m3u8", FALLBACK_STREAM_URL]
