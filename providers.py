import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from playlist import Channel

LOG = logging.getLogger(__name__)

DEFAULT_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"

# kind -> default container extension
STREAM_KINDS: Dict[str, str] = {
    "live": "m3u8",
    "movie": "mp4",
    "series": "mp4",
}


class ProviderError(RuntimeError):
    """Raised when a provider fails to return usable data."""


def _normalize_base_url(url: str) -> str:
    url = url.strip()
    if not url:
        return url
    if "://" not in url:
        # Prefer HTTPS by default; "host:port" would otherwise parse as a scheme.
        url = "https://" + url.lstrip("/")
    parsed = urllib.parse.urlparse(url)
    path = parsed.path or ""
    # Users often paste the API endpoint itself; keep only the directory.
    if path.endswith(("player_api.php", "get.php")):
        path = path.rsplit("/", 1)[0]
    rebuilt = urllib.parse.urlunparse((
        parsed.scheme,
        parsed.netloc,
        path.rstrip('/'),
        '',
        '',
        ''
    ))
    return rebuilt.rstrip('/')


@dataclass
class XtreamCodesConfig:
    base_url: str
    username: str
    password: str
    name: Optional[str] = None
    timeout: int = 15
    user_agent: str = DEFAULT_UA


class XtreamCodesClient:
    def __init__(self, cfg: XtreamCodesConfig):
        self.cfg = cfg
        self._base = _normalize_base_url(cfg.base_url)

    @property
    def host(self) -> str:
        return self._base

    @property
    def api_url(self) -> str:
        return f"{self._base}/player_api.php"

    # ------------------------------------------------------------------ urls
    def stream_url(self, kind: str, stream_id: Union[int, str], extension: Optional[str] = None) -> str:
        if kind not in STREAM_KINDS:
            raise ValueError(f"Unknown stream kind: {kind!r}")
        ext = (extension or STREAM_KINDS[kind]).lstrip(".")
        return f"{self._base}/{kind}/{self.cfg.username}/{self.cfg.password}/{stream_id}.{ext}"

    def live_stream_url(self, stream_id: Union[int, str], extension: str = "m3u8") -> str:
        return self.stream_url("live", stream_id, extension)

    def vod_stream_url(self, stream_id: Union[int, str], extension: str = "mp4") -> str:
        return self.stream_url("movie", stream_id, extension)

    def series_stream_url(self, episode_id: Union[int, str], extension: str = "mp4") -> str:
        return self.stream_url("series", episode_id, extension)

    def playlist_url(self) -> str:
        params = urllib.parse.urlencode({
            "username": self.cfg.username,
            "password": self.cfg.password,
            "type": "m3u",
            "output": "m3u8",
        })
        return f"{self._base}/get.php?{params}"

    def describe(self) -> str:
        label = self.cfg.name or urllib.parse.urlparse(self._base).netloc
        return f"Xtream Codes ({label})"

    # --------------------------------------------------------------- requests
    def _request(self, params: Optional[Dict[str, object]] = None):
        query: Dict[str, object] = {"username": self.cfg.username, "password": self.cfg.password}
        if params:
            query.update({k: v for k, v in params.items() if v is not None})
        url = f"{self.api_url}?{urllib.parse.urlencode(query)}"
        LOG.debug("Xtream API request: action=%s", query.get("action", "user_info"))
        try:
            req = urllib.request.Request(url, headers={"User-Agent": self.cfg.user_agent, "Accept": "application/json"})
            with urllib.request.urlopen(req, timeout=self.cfg.timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            LOG.error("Xtream API request failed: HTTP %s", e.code)
            raise ProviderError(f"Server error ({e.code}): {e.reason}") from e
        except urllib.error.URLError as e:
            LOG.error("Xtream API request failed: %s", e.reason)
            if isinstance(e.reason, socket.timeout):
                raise ProviderError("Connection timed out. The server might be slow or unreachable.") from e
            raise ProviderError("Network error. Please check your internet connection and try again.") from e
        except socket.timeout as e:
            raise ProviderError("Connection timed out. The server might be slow or unreachable.") from e
        except ValueError as e:
            LOG.error("Xtream API request failed: %s", e)
            raise ProviderError(f"Invalid provider address: {self.cfg.base_url!r}") from e
        text = raw.decode("utf-8", "ignore")
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            raise ProviderError(f"Invalid response from provider: {text[:200]!r}")

    def get_user_info(self) -> Dict:
        return self._request()

    def get_live_categories(self) -> List[Dict]:
        return self._request({"action": "get_live_categories"})

    def get_live_streams(self, category_id: Optional[Union[int, str]] = None) -> List[Dict]:
        return self._request({"action": "get_live_streams", "category_id": category_id})

    def get_vod_categories(self) -> List[Dict]:
        return self._request({"action": "get_vod_categories"})

    def get_vod_streams(self, category_id: Optional[Union[int, str]] = None) -> List[Dict]:
        return self._request({"action": "get_vod_streams", "category_id": category_id})

    def get_series_categories(self) -> List[Dict]:
        return self._request({"action": "get_series_categories"})

    def get_series(self, category_id: Optional[Union[int, str]] = None) -> List[Dict]:
        return self._request({"action": "get_series", "category_id": category_id})

    def get_series_info(self, series_id: Union[int, str]) -> Dict:
        return self._request({"action": "get_series_info", "series_id": series_id})

    def get_short_epg(self, stream_id: Union[int, str], limit: Optional[int] = None) -> Dict:
        return self._request({"action": "get_short_epg", "stream_id": stream_id, "limit": limit})

    # ----------------------------------------------------------------- login
    def login(self) -> List[Channel]:
        """Authenticate and return the account's live channels as playable URLs."""
        info = self.get_user_info()
        if isinstance(info, dict):
            user = info.get("user_info") or {}
            if str(user.get("auth", "1")) == "0":
                raise ProviderError("Login rejected: check the username and password.")
            # Some panels inline the channel list in the login response.
            streams = info.get("available_channels") or info.get("live_streams")
        else:
            streams = None
        if not streams:
            streams = self.get_live_streams()
        if isinstance(streams, dict):
            streams = list(streams.values())
        channels: List[Channel] = []
        for item in streams or []:
            if not isinstance(item, dict) or item.get("stream_id") in (None, ""):
                continue
            channels.append(Channel(
                name=str(item.get("name") or f"Stream {item['stream_id']}"),
                url=self.live_stream_url(item["stream_id"]),
                group=str(item.get("category_name") or item.get("category_id") or ""),
                tvg_id=str(item.get("epg_channel_id") or ""),
                tvg_logo=str(item.get("stream_icon") or ""),
            ))
        if not channels:
            raise ProviderError("No channels found in the Xtream API response")
        LOG.info("%s returned %d live channels", self.describe(), len(channels))
        return channels
