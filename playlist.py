import os
import re
import json
import time
import sqlite3
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from stream_utils import looks_like_direct_media, normalize_stream_url

LOG = logging.getLogger(__name__)

DEFAULT_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
DEFAULT_TTL_SECONDS = 48 * 60 * 60
DIRECT_STREAM_NAME = "Direct Stream"

_M3U_ATTR_RE = re.compile(r'([A-Za-z0-9_\-]+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^",\s]+))')
_SAFE_TAG_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


class ParseError(ValueError):
    """Raised when playlist text contains no usable entries."""


class PlaylistFetchError(RuntimeError):
    """Raised when a remote playlist cannot be downloaded."""


@dataclass
class Channel:
    name: str
    url: str
    group: str = ""
    tvg_id: str = ""
    tvg_logo: str = ""


# =========================
# Parsing
# =========================

def _extinf_attrs(line: str) -> Dict[str, str]:
    comma_idx = line.rfind(",")
    info_part = line if comma_idx == -1 else line[:comma_idx]
    colon_idx = info_part.find(":")
    segment = info_part[colon_idx + 1:] if colon_idx != -1 else ""
    attrs: Dict[str, str] = {}
    for match in _M3U_ATTR_RE.finditer(segment):
        key = match.group(1).lower()
        value = match.group(2) or match.group(3) or match.group(4) or ""
        attrs.setdefault(key, value.strip())
    return attrs


def _extinf_name(line: str, line_no: int) -> str:
    # Everything after the last comma is the display name.
    name = line.rsplit(",", 1)[-1] if "," in line else ""
    name = name.strip(" \"'\t")
    return name or f"Channel {line_no}"


def parse_m3u(text: str) -> List[Channel]:
    """Parse M3U / M3U-plus text into channels.

    Malformed entries (no URL line, or a URL that is not http(s)) are skipped
    with a warning; a document with no valid entries raises ParseError.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError("Invalid M3U data: input must be a non-empty string")

    stripped = text.strip()
    if "\n" not in stripped and looks_like_direct_media(stripped):
        return [Channel(name=DIRECT_STREAM_NAME, url=stripped)]

    if "#EXTM3U" not in text and "#EXTINF" not in text:
        raise ParseError("Invalid M3U format: missing #EXTM3U/#EXTINF headers")

    lines = text.splitlines()
    channels: List[Channel] = []
    warnings: List[str] = []
    for idx, raw_line in enumerate(lines):
        line = raw_line.strip()
        if not line.upper().startswith("#EXTINF"):
            continue
        line_no = idx + 1
        name = _extinf_name(line, line_no)
        url = ""
        for follow in lines[idx + 1:]:
            candidate = follow.strip()
            if not candidate:
                continue
            if candidate.upper().startswith(("#EXTVLCOPT", "#EXTGRP", "#KODIPROP")):
                continue
            if not candidate.startswith("#"):
                url = candidate
            break
        if not url:
            warnings.append(f"Missing URL for channel {name!r} at line {line_no}")
            continue
        if not url.lower().startswith("http"):
            warnings.append(f"Invalid URL format for channel {name!r}: {url}")
            continue
        attrs = _extinf_attrs(line)
        channels.append(Channel(
            name=name,
            url=url,
            group=attrs.get("group-title", ""),
            tvg_id=attrs.get("tvg-id", ""),
            tvg_logo=attrs.get("tvg-logo") or attrs.get("logo") or "",
        ))

    if warnings:
        LOG.warning("M3U parsing skipped %d entr%s: %s", len(warnings), "y" if len(warnings) == 1 else "ies", "; ".join(warnings))
    if not channels:
        raise ParseError("No valid channels found in M3U content")
    return channels


# =========================
# Loading
# =========================

def fetch_playlist_text(url: str, timeout: int = 30, user_agent: str = DEFAULT_UA) -> str:
    req = urllib.request.Request(url, headers={"User-Agent": user_agent})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as e:
        raise PlaylistFetchError(f"Server error ({e.code}): {e.reason}") from e
    except urllib.error.URLError as e:
        if isinstance(e.reason, socket.timeout):
            raise PlaylistFetchError("Connection timed out. The server might be slow or unreachable.") from e
        raise PlaylistFetchError("Network error. Please check your internet connection and try again.") from e
    except socket.timeout as e:
        raise PlaylistFetchError("Connection timed out. The server might be slow or unreachable.") from e
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1", "ignore")


def load_playlist(source: str, timeout: int = 30) -> List[Channel]:
    """Resolve a user supplied playlist source into channels.

    Direct media URLs become a one-channel playlist without a network round
    trip; existing local files are read from disk; everything else is fetched.
    """
    source = (source or "").strip()
    if not source:
        raise ParseError("No playlist source provided")
    if os.path.isfile(source):
        with open(source, "r", encoding="utf-8", errors="ignore") as f:
            return parse_m3u(f.read())
    url = normalize_stream_url(source)
    LOG.info("Loading playlist: %s (normalized=%s)", source, url)
    if looks_like_direct_media(url):
        LOG.info("Direct video URL detected, creating single channel playlist")
        return [Channel(name=DIRECT_STREAM_NAME, url=url)]
    return parse_m3u(fetch_playlist_text(url, timeout=timeout))


# =========================
# Tagged cache with TTL
# =========================

@dataclass
class SaveResult:
    tag: str
    count: int
    timestamp: float


@dataclass
class CachedPlaylist:
    tag: str
    channels: List[Channel]
    timestamp: float
    is_expired: bool


def safe_tag(tag: str) -> str:
    return _SAFE_TAG_RE.sub("_", tag or "default").lower()


class PlaylistCache:
    def __init__(self, db_path: str, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._open()

    def _open(self):
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self._create_tables()

    def _create_tables(self):
        c = self.conn.cursor()
        c.execute("""
            CREATE TABLE IF NOT EXISTS playlists (
                tag TEXT PRIMARY KEY,
                channels TEXT NOT NULL,
                saved_at REAL NOT NULL
            )
        """)
        self.conn.commit()

    def close(self):
        try:
            self.conn.close()
        except sqlite3.Error as e:
            LOG.debug("Closing playlist cache failed: %s", e)

    def save(self, channels: List[Channel], tag: str = "default") -> SaveResult:
        key = safe_tag(tag)
        now = self._clock()
        payload = json.dumps([asdict(ch) for ch in channels])
        try:
            self.conn.execute(
                "INSERT OR REPLACE INTO playlists (tag, channels, saved_at) VALUES (?, ?, ?)",
                (key, payload, now),
            )
            self.conn.commit()
        except sqlite3.Error:
            LOG.exception("Failed to save playlist %s", key)
            raise
        LOG.info("Saved %d channels under tag %s", len(channels), key)
        return SaveResult(tag=key, count=len(channels), timestamp=now)

    def load(self, tag: str = "default", check_ttl: bool = True, ttl: Optional[float] = None) -> Optional[CachedPlaylist]:
        key = safe_tag(tag)
        try:
            row = self.conn.execute(
                "SELECT channels, saved_at FROM playlists WHERE tag = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            LOG.error("Failed to load playlist %s: %s", key, e)
            return None
        if not row:
            return None
        try:
            channels = [Channel(**item) for item in json.loads(row[0])]
        except (ValueError, TypeError) as e:
            LOG.error("Cached playlist %s is corrupt: %s", key, e)
            return None
        limit = self.ttl_seconds if ttl is None else ttl
        saved_at = float(row[1])
        expired = bool(check_ttl and (self._clock() - saved_at) > limit)
        return CachedPlaylist(tag=key, channels=channels, timestamp=saved_at, is_expired=expired)

    def list_tags(self) -> List[str]:
        try:
            return [r[0] for r in self.conn.execute("SELECT tag FROM playlists ORDER BY saved_at")]
        except sqlite3.Error as e:
            LOG.error("Failed to load playlist tags: %s", e)
            return []

    def list_playlists(self) -> List[Dict[str, object]]:
        out: List[Dict[str, object]] = []
        for tag in self.list_tags():
            cached = self.load(tag, check_ttl=True)
            if cached:
                out.append({
                    "tag": tag,
                    "count": len(cached.channels),
                    "timestamp": cached.timestamp,
                    "is_expired": cached.is_expired,
                })
        return out

    def clear(self, tag: str = "default") -> None:
        self.conn.execute("DELETE FROM playlists WHERE tag = ?", (safe_tag(tag),))
        self.conn.commit()

    def clear_all(self) -> None:
        self.conn.execute("DELETE FROM playlists")
        self.conn.commit()
