import os
import logging
import logging.handlers
import tempfile
from typing import Optional

LOG_PATH = os.path.join(tempfile.gettempdir(), "iptvplayer_debug.log")
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def debug_enabled() -> bool:
    return os.getenv("IPTV_DEBUG", "0").strip() not in {"", "0", "false", "False"}


def setup_logging(debug: Optional[bool] = None, log_path: str = LOG_PATH) -> logging.Logger:
    """Rotating file log in the temp dir, mirrored to stderr while debugging."""
    if debug is None:
        debug = debug_enabled()
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if getattr(root, "_iptvplayer_configured", False):
        return root
    fmt = logging.Formatter(_FORMAT)
    try:
        fh = logging.handlers.RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError as e:
        # Log file is a convenience; keep running without it.
        print(f"Could not initialize log file at {log_path}: {e}")
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    sh.setLevel(logging.DEBUG if debug else logging.WARNING)
    root.addHandler(sh)
    root._iptvplayer_configured = True  # type: ignore[attr-defined]
    root.debug("Logging initialized. File: %s", log_path)
    return root
