import os
import sys
import json
import logging
import tempfile
from typing import Dict

from playback_session import FALLBACK_STREAM_URL, SessionConfig

LOG = logging.getLogger(__name__)

CONFIG_FILE = "iptvplayer.conf"
APP_DIR_NAME = "ResilientIPTV"
CACHE_DB_FILE = "playlists.db"
_CONFIG_PATH = None  # Path of config last loaded/saved

DEFAULT_CONFIG: Dict = {
    "max_attempts": 5,
    "max_network_retries": 2,
    "load_timeout_seconds": 30.0,
    "retry_backoff_seconds": 1.0,
    "fallback_url": FALLBACK_STREAM_URL,
    "preflight_check": True,
    "playlist_cache_ttl_hours": 48,
    "playlists": [],
}


def _is_writable_dir(path: str) -> bool:
    try:
        if not os.path.isdir(path):
            return False
        testfile = os.path.join(path, ".iptvplayer_write_test.tmp")
        with open(testfile, "w", encoding="utf-8") as f:
            f.write("test")
        os.remove(testfile)
        return True
    except OSError:
        return False


def get_app_dir():
    if getattr(sys, 'frozen', False):
        return os.path.dirname(sys.executable)
    return os.path.dirname(os.path.abspath(__file__))


def get_cwd_dir():
    try:
        return os.getcwd()
    except OSError:
        return None


def get_user_config_dir():
    """Per-user config directory, created on demand."""
    if sys.platform == "win32":
        path = os.path.join(os.getenv('APPDATA', os.path.expanduser('~')), APP_DIR_NAME)
    elif sys.platform == "darwin":
        path = os.path.join(os.path.expanduser('~/Library/Application Support'), APP_DIR_NAME)
    else:  # linux and other unix
        path = os.path.join(os.getenv('XDG_CONFIG_HOME', os.path.expanduser('~/.config')), APP_DIR_NAME)

    try:
        os.makedirs(path, exist_ok=True)
        return path
    except OSError:
        # Last resort if we can't create any directory
        return tempfile.gettempdir()


def get_config_read_candidates():
    # Priority: app dir, then CWD (portable override), then per-user dir.
    candidates = []

    app_dir = get_app_dir()
    if app_dir:
        candidates.append(os.path.join(app_dir, CONFIG_FILE))

    cwd = get_cwd_dir()
    if cwd:
        candidates.append(os.path.join(cwd, CONFIG_FILE))

    user_dir = get_user_config_dir()
    if user_dir:
        candidates.append(os.path.join(user_dir, CONFIG_FILE))

    unique_candidates = []
    seen = set()
    for c in candidates:
        if c not in seen:
            unique_candidates.append(c)
            seen.add(c)
    return unique_candidates


def get_config_write_target():
    # Prefer writing back to the file that was loaded, to avoid surprises.
    if _CONFIG_PATH:
        parent = os.path.dirname(_CONFIG_PATH)
        if parent and _is_writable_dir(parent):
            return _CONFIG_PATH
    return os.path.join(get_user_config_dir(), CONFIG_FILE)


def load_config() -> Dict:
    global _CONFIG_PATH
    for p in get_config_read_candidates():
        if os.path.exists(p):
            try:
                with open(p, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    for k, v in DEFAULT_CONFIG.items():
                        data.setdefault(k, v)
                    _CONFIG_PATH = p
                    LOG.debug("Loaded config from %s", p)
                    return data
                LOG.error("Ignoring config at %s: top level is not an object", p)
            except (OSError, ValueError) as e:
                LOG.error("Failed to load config from %s: %s", p, e)
                # Do not break; try the next candidate location.
    _CONFIG_PATH = None
    return json.loads(json.dumps(DEFAULT_CONFIG))


def save_config(cfg: Dict):
    global _CONFIG_PATH
    path = get_config_write_target()
    try:
        dir_path = os.path.dirname(path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _CONFIG_PATH = path
    except OSError as e:
        LOG.error("Failed to save config to %s: %s", path, e)


def get_loaded_config_path() -> str:
    """Return the config path most recently loaded or saved, if known."""
    return _CONFIG_PATH or ""


def get_cache_db_path() -> str:
    return os.path.join(get_user_config_dir(), CACHE_DB_FILE)


def cache_ttl_seconds(cfg: Dict) -> float:
    try:
        hours = float(cfg.get("playlist_cache_ttl_hours", DEFAULT_CONFIG["playlist_cache_ttl_hours"]))
    except (TypeError, ValueError):
        hours = DEFAULT_CONFIG["playlist_cache_ttl_hours"]
    return max(0.0, hours) * 3600


def session_config_from(cfg: Dict) -> SessionConfig:
    """Build a SessionConfig from user settings; bad values fall back to defaults."""
    try:
        return SessionConfig(
            max_attempts=int(cfg.get("max_attempts", DEFAULT_CONFIG["max_attempts"])),
            max_network_retries=int(cfg.get("max_network_retries", DEFAULT_CONFIG["max_network_retries"])),
            load_timeout=float(cfg.get("load_timeout_seconds", DEFAULT_CONFIG["load_timeout_seconds"])),
            retry_backoff=float(cfg.get("retry_backoff_seconds", DEFAULT_CONFIG["retry_backoff_seconds"])),
            fallback_url=str(cfg.get("fallback_url") or FALLBACK_STREAM_URL),
        )
    except (TypeError, ValueError) as e:
        LOG.warning("Invalid playback settings (%s); using defaults.", e)
        return SessionConfig()
