import logging
import os
import threading
import urllib.error
import urllib.request
from typing import Dict, List, Optional

from playback_engine import (
    EngineUnavailableError,
    FailedCallback,
    PlaybackEngine,
    StartedCallback,
)
from playback_errors import FailureSignal
from stream_utils import parse_stream_modifiers


def _prime_vlc_search_path() -> None:
    """Make sure libvlc.dll is discoverable before importing python-vlc."""
    candidates = [
        os.path.join(os.environ.get("ProgramFiles(x86)", ""), "VideoLAN", "VLC"),
        os.path.join(os.environ.get("ProgramFiles", ""), "VideoLAN", "VLC"),
    ]
    seen = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        dll_path = os.path.join(path, "libvlc.dll")
        if os.path.isfile(dll_path):
            try:
                os.add_dll_directory(path)  # type: ignore[attr-defined]
            except (AttributeError, OSError):
                # Fallback: prepend to PATH so ctypes finds it.
                os.environ["PATH"] = f"{path};" + os.environ.get("PATH", "")


_prime_vlc_search_path()

try:
    import vlc  # type: ignore
except Exception as _err:  # pragma: no cover - import guard
    vlc = None  # type: ignore
    _VLC_IMPORT_ERROR = _err
else:
    _VLC_IMPORT_ERROR = None

LOG = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/118.0.0.0 Safari/537.36"
)
DEFAULT_ACCEPT = (
    "application/x-mpegURL,application/vnd.apple.mpegurl,"
    "application/json,text/plain,*/*"
)

_INSTANCE_OPTIONS = [
    "--quiet",
    "--no-video-title-show",
    "--clock-synchro=0",
    "--no-drop-late-frames",
    "--no-skip-frames",
]

_VLC_RUNTIME_PREPARED = False


def _prepare_vlc_runtime() -> None:
    """Ensure python-vlc is ready. Minimal guard that surfaces import issues."""
    global _VLC_RUNTIME_PREPARED
    if _VLC_RUNTIME_PREPARED:
        return
    if vlc is None:
        detail = _VLC_IMPORT_ERROR or "python-vlc (libVLC) is not installed."
        raise EngineUnavailableError(str(detail))
    _VLC_RUNTIME_PREPARED = True


def _detect_system_http_proxy() -> Optional[str]:
    """Return system HTTP(S) proxy if configured (Windows honours IE settings)."""
    try:
        proxies = urllib.request.getproxies()
    except OSError:
        return None
    for key in ("http", "https"):
        proxy = proxies.get(key)
        if proxy:
            return proxy
    return None


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None  # libVLC follows redirects itself


class _Attempt:
    """One libVLC media player plus the callbacks it must settle exactly once."""

    def __init__(self, url: str, on_started: StartedCallback, on_failed: FailedCallback) -> None:
        self.url = url
        self.player = None
        self.media = None
        self._on_started = on_started
        self._on_failed = on_failed
        self._guard = threading.Lock()
        self._settled = False
        self.discarded = False

    def _claim(self) -> bool:
        with self._guard:
            if self._settled:
                return False
            self._settled = True
            return True

    def started(self, _event=None) -> None:
        if self._claim():
            self._on_started()

    def failed(self, signal: FailureSignal) -> None:
        if self._claim():
            self._on_failed(signal)

    def discard(self) -> None:
        with self._guard:
            self._settled = True
            self.discarded = True


class VlcPlaybackEngine(PlaybackEngine):
    """libVLC-backed engine: one shared instance, one media player per attempt.

    The HTTP preflight runs on a worker thread so ``play`` never blocks the
    caller; its result, like every libVLC event, arrives through the attempt
    callbacks.
    """

    _EVENT_NAMES = ("MediaPlayerPlaying", "MediaPlayerEncounteredError", "MediaPlayerEndReached")

    def __init__(
        self,
        *,
        preflight: bool = True,
        preflight_timeout: float = 5.0,
        network_caching_ms: int = 3000,
        user_agent: str = DEFAULT_USER_AGENT,
        instance_options: Optional[List[str]] = None,
    ) -> None:
        self.preflight = preflight
        self.preflight_timeout = preflight_timeout
        self.network_caching_ms = max(0, int(network_caching_ms))
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self._instance_options = list(instance_options) if instance_options is not None else list(_INSTANCE_OPTIONS)
        self.instance = None
        self._attempt: Optional[_Attempt] = None
        self._lock = threading.RLock()
        self._preflight_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ public
    def play(self, url: str, on_started: StartedCallback, on_failed: FailedCallback) -> None:
        if not url:
            raise EngineUnavailableError("No stream URL provided.")
        self._ensure_instance()
        self.release()

        base_url, headers = parse_stream_modifiers(url)
        attempt = _Attempt(base_url, on_started, on_failed)
        with self._lock:
            self._attempt = attempt

        if self.preflight and base_url.lower().startswith(("http://", "https://")):
            worker = threading.Thread(
                target=self._preflight_then_open,
                args=(attempt, headers),
                name="vlc-preflight",
                daemon=True,
            )
            self._preflight_thread = worker
            worker.start()
            return
        self._open(attempt, headers)

    def release(self) -> None:
        with self._lock:
            attempt = self._attempt
            self._attempt = None
            if attempt is None:
                return
            attempt.discard()
            if attempt.player is None:
                # Still in preflight; the worker sees the discard and stops.
                return
            try:
                events = attempt.player.event_manager()
                for name in self._EVENT_NAMES:
                    events.event_detach(getattr(vlc.EventType, name))
            except Exception as err:
                LOG.debug("Could not detach libVLC events: %s", err)
            for action in (attempt.player.stop, attempt.player.release, attempt.media.release):
                try:
                    action()
                except Exception as err:
                    LOG.debug("libVLC teardown step failed: %s", err)

    def close(self) -> None:
        with self._lock:
            self.release()
            if self.instance is not None:
                try:
                    self.instance.release()
                except Exception as err:
                    LOG.debug("libVLC instance release failed: %s", err)
                self.instance = None

    # ---------------------------------------------------------------- internal
    def _preflight_then_open(self, attempt: _Attempt, headers: Dict[str, object]) -> None:
        signal = self._preflight_check(attempt.url, headers)
        if attempt.discarded:
            LOG.debug("Dropping preflight result for released attempt %s", attempt.url)
            return
        if signal is not None:
            LOG.warning("Preflight check failed for %s: %s", attempt.url, signal.message)
            attempt.failed(signal)
            return
        try:
            self._open(attempt, headers)
        except EngineUnavailableError as err:
            attempt.failed(FailureSignal("engine_error", str(err)))

    def _open(self, attempt: _Attempt, headers: Dict[str, object]) -> None:
        with self._lock:
            if attempt.discarded or self._attempt is not attempt or self.instance is None:
                return
            media = self.instance.media_new(attempt.url)
            self._apply_cache_options(media)
            self._apply_stream_headers(media, headers)
            try:
                player = self.instance.media_player_new()
            except Exception as err:
                media.release()
                raise EngineUnavailableError(f"Failed to initialise media player: {err}") from err
            if not player:
                media.release()
                raise EngineUnavailableError("Could not create libVLC media player object.")
            player.set_media(media)
            attempt.player = player
            attempt.media = media

            events = player.event_manager()
            events.event_attach(vlc.EventType.MediaPlayerPlaying, attempt.started)
            events.event_attach(
                vlc.EventType.MediaPlayerEncounteredError,
                lambda _event: attempt.failed(FailureSignal("vlc_error", "libVLC could not open the stream")),
            )
            events.event_attach(
                vlc.EventType.MediaPlayerEndReached,
                lambda _event: attempt.failed(FailureSignal("end_of_stream", "Stream ended before playback started")),
            )

            LOG.debug("Calling player.play() for %s", attempt.url)
            refused = player.play() == -1
        if refused:
            attempt.failed(FailureSignal("vlc_play_failed", "libVLC refused to start playback"))

    def _ensure_instance(self) -> None:
        if self.instance is not None:
            return
        _prepare_vlc_runtime()
        try:
            self.instance = vlc.Instance(self._instance_options)
        except Exception as err:
            LOG.warning("libVLC rejected tuning flags (%s); retrying with defaults.", err)
            self.instance = vlc.Instance()
        if not self.instance:
            raise EngineUnavailableError("Failed to initialise libVLC instance.")

    def _apply_cache_options(self, media) -> None:
        media.add_option(":http-reconnect=true")
        media.add_option(":rtsp-tcp")
        proxy_url = _detect_system_http_proxy()
        if proxy_url:
            media.add_option(f":http-proxy={proxy_url}")
        media.add_option(f":network-caching={self.network_caching_ms}")
        media.add_option(f":live-caching={self.network_caching_ms}")
        media.add_option(f":file-caching={self.network_caching_ms}")

    def _apply_stream_headers(self, media, headers: Dict[str, object]) -> None:
        ua = headers.get("user-agent") or self.user_agent
        media.add_option(f":http-user-agent={ua}")
        ref = headers.get("referer")
        if ref:
            media.add_option(f":http-referrer={ref}")
        cookie = headers.get("cookie")
        if cookie:
            media.add_option(f":http-cookie={cookie}")
        origin = headers.get("origin")
        if origin:
            media.add_option(f":http-header=Origin: {origin}")
        auth = headers.get("authorization")
        if auth:
            media.add_option(f":http-header=Authorization: {auth}")
        extras = headers.get("_extra")
        if isinstance(extras, list):
            for hdr in extras:
                media.add_option(f":http-header={hdr}")

    def _request_headers(self, headers: Dict[str, object]) -> Dict[str, str]:
        req_headers: Dict[str, str] = {
            "User-Agent": str(headers.get("user-agent") or self.user_agent),
            "Accept": DEFAULT_ACCEPT,
        }
        for key, name in (("referer", "Referer"), ("origin", "Origin"), ("cookie", "Cookie"), ("authorization", "Authorization")):
            value = headers.get(key)
            if value:
                req_headers[name] = str(value)
        extras = headers.get("_extra")
        if isinstance(extras, list):
            for hdr in extras:
                if ":" not in str(hdr):
                    continue
                name, val = str(hdr).split(":", 1)
                name, val = name.strip(), val.strip()
                if name and val and name not in req_headers:
                    req_headers[name] = val
        return req_headers

    def _preflight_check(self, url: str, headers: Dict[str, object]) -> Optional[FailureSignal]:
        """Quick HTTP check to catch obvious errors before libVLC tries to open.

        Returns ``None`` when the stream looks reachable (or the check is
        inconclusive), otherwise a failure signal for the error classifier.
        Only the initial response is inspected; redirects are left to libVLC.
        """
        if not url or not url.lower().startswith(("http://", "https://")):
            return None
        req = urllib.request.Request(url, headers=self._request_headers(headers), method="GET")
        opener = urllib.request.build_opener(_NoRedirectHandler)
        try:
            resp = opener.open(req, timeout=self.preflight_timeout)
            status = resp.status
            resp.close()
        except urllib.error.HTTPError as e:
            if 300 <= e.code < 400:
                return None
            return FailureSignal(e.code, f"HTTP error {e.code}: {e.reason}")
        except urllib.error.URLError as e:
            reason = str(e.reason) if e.reason else "Unknown error"
            lower = reason.lower()
            if "ssl" in lower or "certificate" in lower:
                return FailureSignal("ssl_error", f"SSL/TLS error: {reason}")
            if "timeout" in lower or "timed out" in lower:
                return None  # let libVLC try with its own buffering
            if "refused" in lower:
                return FailureSignal("ECONNREFUSED", "Connection refused. The server may be down.")
            return FailureSignal("network_error", f"Connection error: {reason}")
        except (OSError, ValueError) as e:
            LOG.debug("Preflight check exception (non-fatal): %s", e)
            return None
        if status >= 400:
            return FailureSignal(status, f"HTTP error {status}")
        return None
