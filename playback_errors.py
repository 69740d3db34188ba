"""Map opaque playback-engine failures onto a small recovery taxonomy."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Union

LOG = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    CONNECTIVITY = "connectivity"
    TIMEOUT = "timeout"
    UNSUPPORTED_FORMAT = "unsupported_format"
    NOT_FOUND_OR_ACCESS_DENIED = "not_found_or_access_denied"
    PROTOCOL_MISMATCH = "protocol_mismatch"
    UNKNOWN = "unknown"


class Remediation(str, Enum):
    QUICK_RETRY = "quick_retry"
    TOGGLE_SCHEME = "toggle_scheme"
    ALTERNATE_EXTENSION = "alternate_extension"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class FailureSignal:
    code: Union[str, int, None] = None
    message: str = ""


@dataclass(frozen=True)
class ErrorClassification:
    category: ErrorCategory
    message: str
    retryable: bool
    remediation: Remediation
    code: Optional[str] = None

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self.category]


CATEGORY_LABELS: Dict[ErrorCategory, str] = {
    ErrorCategory.CONNECTIVITY: "Network connection failed",
    ErrorCategory.TIMEOUT: "Stream did not respond in time",
    ErrorCategory.UNSUPPORTED_FORMAT: "Unsupported stream format",
    ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED: "Stream not found or access denied",
    ErrorCategory.PROTOCOL_MISMATCH: "Secure/insecure protocol mismatch",
    ErrorCategory.UNKNOWN: "Unknown playback error",
}

# category -> (retryable, default remediation)
CATEGORY_POLICY: Dict[ErrorCategory, Tuple[bool, Remediation]] = {
    ErrorCategory.CONNECTIVITY: (True, Remediation.QUICK_RETRY),
    ErrorCategory.TIMEOUT: (True, Remediation.QUICK_RETRY),
    ErrorCategory.PROTOCOL_MISMATCH: (True, Remediation.TOGGLE_SCHEME),
    ErrorCategory.UNSUPPORTED_FORMAT: (False, Remediation.ALTERNATE_EXTENSION),
    ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED: (False, Remediation.FALLBACK),
    ErrorCategory.UNKNOWN: (False, Remediation.FALLBACK),
}

# Exact (lower-cased) engine codes. Integer codes are looked up as "http_<n>".
CODE_TABLE: Dict[str, ErrorCategory] = {
    "econnrefused": ErrorCategory.CONNECTIVITY,
    "econnreset": ErrorCategory.CONNECTIVITY,
    "enetunreach": ErrorCategory.CONNECTIVITY,
    "ehostunreach": ErrorCategory.CONNECTIVITY,
    "enotfound": ErrorCategory.CONNECTIVITY,
    "network_error": ErrorCategory.CONNECTIVITY,
    "connection_failed": ErrorCategory.CONNECTIVITY,
    "http_502": ErrorCategory.CONNECTIVITY,
    "http_503": ErrorCategory.CONNECTIVITY,
    "etimedout": ErrorCategory.TIMEOUT,
    "econnaborted": ErrorCategory.TIMEOUT,
    "timeout": ErrorCategory.TIMEOUT,
    "deadline": ErrorCategory.TIMEOUT,
    "http_408": ErrorCategory.TIMEOUT,
    "http_504": ErrorCategory.TIMEOUT,
    "ssl_error": ErrorCategory.PROTOCOL_MISMATCH,
    "tls_error": ErrorCategory.PROTOCOL_MISMATCH,
    "cleartext_not_permitted": ErrorCategory.PROTOCOL_MISMATCH,
    "scheme_rejected": ErrorCategory.PROTOCOL_MISMATCH,
    "mixed_content": ErrorCategory.PROTOCOL_MISMATCH,
    "unsupported_format": ErrorCategory.UNSUPPORTED_FORMAT,
    "codec_unsupported": ErrorCategory.UNSUPPORTED_FORMAT,
    "demux_error": ErrorCategory.UNSUPPORTED_FORMAT,
    "http_415": ErrorCategory.UNSUPPORTED_FORMAT,
    "http_401": ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED,
    "http_403": ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED,
    "http_404": ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED,
    "http_410": ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED,
    "not_found": ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED,
    "access_denied": ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED,
}

# Message keywords, consulted only when the code is absent or unknown.
KEYWORD_TABLE: Dict[ErrorCategory, Tuple[str, ...]] = {
    ErrorCategory.PROTOCOL_MISMATCH: (
        "ssl", "tls", "certificate", "cleartext", "app transport security",
        "mixed content", "insecure",
    ),
    ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED: (
        "404", "403", "401", "not found", "forbidden", "unauthorized", "access denied",
    ),
    ErrorCategory.UNSUPPORTED_FORMAT: (
        "unsupported", "codec", "no suitable decoder", "demux", "cannot play this format",
        "unrecognized format",
    ),
    ErrorCategory.TIMEOUT: ("timed out", "timeout", "deadline"),
    ErrorCategory.CONNECTIVITY: (
        "network", "connection", "refused", "unreachable", "offline", "dns",
        "reset by peer",
    ),
}

# When several keyword rows match, the earliest category here wins.
CATEGORY_PRECEDENCE: Tuple[ErrorCategory, ...] = (
    ErrorCategory.PROTOCOL_MISMATCH,
    ErrorCategory.NOT_FOUND_OR_ACCESS_DENIED,
    ErrorCategory.UNSUPPORTED_FORMAT,
    ErrorCategory.TIMEOUT,
    ErrorCategory.CONNECTIVITY,
)


def _normalize_code(code: Union[str, int, None]) -> Optional[str]:
    if code is None or isinstance(code, bool):
        return None
    if isinstance(code, int):
        return f"http_{code}"
    text = str(code).strip().lower()
    if not text:
        return None
    if text.isdigit():
        return f"http_{text}"
    return text


def _category_from_message(message: str) -> Optional[ErrorCategory]:
    lowered = (message or "").lower()
    if not lowered:
        return None
    matched = {
        category
        for category, keywords in KEYWORD_TABLE.items()
        if any(keyword in lowered for keyword in keywords)
    }
    for category in CATEGORY_PRECEDENCE:
        if category in matched:
            return category
    return None


def classify_failure(signal: Optional[FailureSignal]) -> ErrorClassification:
    if signal is None:
        signal = FailureSignal()
    code = _normalize_code(signal.code)
    category = CODE_TABLE.get(code) if code else None
    if category is None:
        category = _category_from_message(signal.message) or ErrorCategory.UNKNOWN
    retryable, remediation = CATEGORY_POLICY[category]
    return ErrorClassification(
        category=category,
        message=signal.message or "",
        retryable=retryable,
        remediation=remediation,
        code=code,
    )


def describe_failure(classification: ErrorClassification, attempts: int) -> str:
    plural = "attempt" if attempts == 1 else "attempts"
    text = f"{classification.label} after {attempts} {plural}."
    if classification.message:
        text += f" Last error: {classification.message}"
    return text
