import re
import logging
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

LOG = logging.getLogger(__name__)

DEFAULT_SCHEME = "https"

# Suffixes that mark a URL as already pointing at playable media.
TERMINAL_EXTENSIONS = (".m3u8", ".m3u", ".mp4", ".ts", ".webm", ".mkv")

# Xtream-style endpoints: get.php serves playlists, player_api.php handles login.
TEMPLATED_ENDPOINTS = ("get.php", "player_api.php")
TEMPLATED_OUTPUT = "m3u8"
TEMPLATED_DEFAULT_TYPE = "m3u"

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")
_DIRECT_MEDIA_RE = re.compile(r"\.(m3u8|mp4|ts|webm|mkv)($|\?)", re.IGNORECASE)


class InputValidationError(ValueError):
    """Raised when a raw stream URL cannot be used to start playback."""


class StreamFormat(str, Enum):
    HLS = "hls"
    MP4 = "mp4"
    TS = "ts"
    WEBM = "webm"
    MKV = "mkv"
    UNKNOWN = "unknown"


DEFAULT_EXTENSIONS: Dict[StreamFormat, str] = {
    StreamFormat.HLS: "m3u8",
    StreamFormat.MP4: "mp4",
    StreamFormat.TS: "ts",
    StreamFormat.WEBM: "webm",
    StreamFormat.MKV: "mkv",
    StreamFormat.UNKNOWN: "m3u8",
}

_SUFFIX_FORMATS: Tuple[Tuple[str, StreamFormat], ...] = (
    (".m3u8", StreamFormat.HLS),
    (".m3u", StreamFormat.HLS),
    (".mp4", StreamFormat.MP4),
    (".ts", StreamFormat.TS),
    (".webm", StreamFormat.WEBM),
    (".mkv", StreamFormat.MKV),
)

_OUTPUT_FORMATS: Dict[str, StreamFormat] = {
    "m3u8": StreamFormat.HLS,
    "hls": StreamFormat.HLS,
    "ts": StreamFormat.TS,
    "mpegts": StreamFormat.TS,
}


@dataclass(frozen=True)
class StreamRequest:
    raw_url: str
    normalized_url: str
    format: StreamFormat


def build_stream_request(raw_url) -> StreamRequest:
    if raw_url is None or not isinstance(raw_url, str):
        raise InputValidationError("No stream URL provided.")
    if not raw_url.strip():
        raise InputValidationError("Stream URL is empty.")
    normalized = normalize_stream_url(raw_url)
    return StreamRequest(raw_url=raw_url, normalized_url=normalized, format=classify_format(normalized))


# =========================
# Normalization
# =========================

def _ensure_scheme(url: str) -> str:
    url = url.strip()
    if not url or _SCHEME_RE.match(url):
        return url
    return f"{DEFAULT_SCHEME}://{url.lstrip('/')}"


def _split_url(url: str) -> Tuple[str, str, str, str]:
    """Split into (base, query, fragment, path) without re-encoding anything."""
    body, _, fragment = url.partition("#")
    base, _, query = body.partition("?")
    path = urllib.parse.urlsplit(base).path
    return base, query, fragment, path


def _join_url(base: str, query: str, fragment: str) -> str:
    url = base
    if query:
        url += "?" + query
    if fragment:
        url += "#" + fragment
    return url


def _is_templated_endpoint(path: str) -> bool:
    lower = path.lower()
    return any(endpoint in lower for endpoint in TEMPLATED_ENDPOINTS)


def _complete_api_query(query: str) -> str:
    tokens: List[str] = [t for t in query.split("&") if t] if query else []
    has_output = False
    has_type = False
    for idx, token in enumerate(tokens):
        key = token.split("=", 1)[0].lower()
        if key == "output":
            has_output = True
            tokens[idx] = f"{token.split('=', 1)[0]}={TEMPLATED_OUTPUT}"
        elif key == "type":
            has_type = True
    if not has_output:
        tokens.append(f"output={TEMPLATED_OUTPUT}")
    if not has_type:
        tokens.append(f"type={TEMPLATED_DEFAULT_TYPE}")
    return "&".join(tokens)


def normalize_stream_url(raw: str) -> str:
    """Canonicalize a user/playlist/API supplied address into a playable URL.

    Only the scheme prefix and the ``output``/``type`` parameters of templated
    API endpoints are ever touched; host and path segments are kept verbatim.
    Never raises: input that cannot be parsed comes back scheme-completed.
    """
    if not isinstance(raw, str):
        return raw
    url = _ensure_scheme(raw)
    if not url:
        return url
    if url.lower().endswith(TERMINAL_EXTENSIONS):
        return url
    try:
        base, query, fragment, path = _split_url(url)
    except ValueError as err:
        LOG.debug("Could not parse stream URL %r: %s", url, err)
        return url
    if not _is_templated_endpoint(path):
        return url
    return _join_url(base, _complete_api_query(query), fragment)


# =========================
# Format classification
# =========================

def _url_path(url: str) -> str:
    try:
        return urllib.parse.urlsplit(url).path
    except ValueError:
        return url.split("?", 1)[0].split("#", 1)[0]


def classify_format(url: str) -> StreamFormat:
    if not url or not isinstance(url, str):
        return StreamFormat.UNKNOWN
    path = _url_path(url).lower()
    for suffix, fmt in _SUFFIX_FORMATS:
        if path.endswith(suffix):
            return fmt
    segments = [seg for seg in path.split("/") if seg]
    if "m3u8" in segments or "hls" in segments:
        return StreamFormat.HLS
    query = url.partition("?")[2].partition("#")[0]
    for key, value in urllib.parse.parse_qsl(query, keep_blank_values=True):
        if key.lower() == "output":
            return _OUTPUT_FORMATS.get(value.strip().lower(), StreamFormat.UNKNOWN)
    return StreamFormat.UNKNOWN


def looks_like_direct_media(url: str) -> bool:
    return bool(url) and bool(_DIRECT_MEDIA_RE.search(url))


# =========================
# Remediation variants
# =========================

def toggle_scheme(url: str) -> Optional[str]:
    if not url:
        return None
    lower = url.lower()
    if lower.startswith("https://"):
        return "http://" + url[len("https://"):]
    if lower.startswith("http://"):
        return "https://" + url[len("http://"):]
    return None


def complete_extension(url: str, fmt: StreamFormat) -> Optional[str]:
    """Return ``url`` with the format's default extension appended to its path.

    ``None`` when the last path segment already carries an extension or
    there is no path segment to extend.
    """
    if not url:
        return None
    try:
        base, query, fragment, path = _split_url(url)
    except ValueError:
        return None
    last = path.rsplit("/", 1)[-1]
    if not last or "." in last:
        return None
    ext = DEFAULT_EXTENSIONS.get(fmt, DEFAULT_EXTENSIONS[StreamFormat.UNKNOWN])
    return _join_url(f"{base}.{ext}", query, fragment)


# =========================
# Stream modifiers (url|Header=value)
# =========================

def _normalize_header_name(key: str) -> str:
    return "-".join(part.capitalize() for part in key.split("-") if part)


def parse_stream_modifiers(url: str) -> Tuple[str, Dict[str, object]]:
    if not url:
        return "", {}
    base, sep, tail = url.partition("|")
    headers: Dict[str, object] = {}
    extras: List[str] = []
    if sep:
        for part in tail.split("|"):
            token = part.strip()
            if not token or "=" not in token:
                continue
            key, value = token.split("=", 1)
            key = key.strip().lower()
            value = urllib.parse.unquote_plus(value.strip())
            if not value:
                continue
            if key in ("user-agent", "ua", "http-user-agent"):
                headers["user-agent"] = value
            elif key in ("referer", "referrer", "http-referrer", "http-referer"):
                headers["referer"] = value
            elif key in ("origin", "http-origin"):
                headers["origin"] = value
            elif key in ("cookie", "http-cookie"):
                headers["cookie"] = value
            elif key in ("authorization", "auth", "http-authorization"):
                headers["authorization"] = value
            elif key in ("bearer", "token"):
                headers["authorization"] = f"Bearer {value}"
            else:
                extras.append(f"{_normalize_header_name(key)}: {value}")
    if extras:
        headers["_extra"] = extras
    return base.strip(), headers
