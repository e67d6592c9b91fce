"""
Log sanitization engine.

Runs on every secure log call before anything is printed or buffered:
- strings go through an ordered list of regex redactions
- dict keys matching the sensitive vocabulary have their whole value replaced
- values found under sensitive keys are also scrubbed from every other
  string of the same payload, so an interpolated secret does not leak
  through a sibling field or the log message

Traversal is guarded against reference cycles and excessive depth.
"""

import re
from typing import Any, Iterable, List, Optional, Pattern, Set, Tuple

import structlog

logger = structlog.get_logger(__name__)

REDACTED = "[REDACTED]"
CIRCULAR = "[Circular]"
MAX_DEPTH_MARKER = "[MaxDepth]"

SENSITIVE_FIELDS: Tuple[str, ...] = (
    "password",
    "token",
    "secret",
    "key",
    "authorization",
    "cookie",
    "session",
    "credit_card",
    "ssn",
    "social_security",
)

# Order matters: credential keywords first, then digit groups, then emails
SENSITIVE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\bbearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(
        r"\b(?:password|passwd|pwd|secret|token|authorization|api[_-]?key)\b"
        r"(?:\s*[:=]\s*|\s+)[\"']?[^\s\"',;&]+[\"']?",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:password|secret|token|authorization|bearer|api[_-]?key)\b", re.IGNORECASE),
    re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"),
    re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
    re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.\w+\b"),
)

# Shorter values are not scrubbed from unrelated strings
MIN_SECRET_LENGTH = 3


class Sanitizer:
    """
    Redacts sensitive data from log payloads.

    Features:
    - Case-insensitive partial key matching against the sensitive vocabulary
    - Regex redaction of credentials, card numbers, SSNs and emails in strings
    - Deep traversal of dicts, lists, tuples and sets
    - Cycle and depth protection with placeholder markers
    """

    def __init__(
        self,
        sensitive_fields: Iterable[str] = SENSITIVE_FIELDS,
        patterns: Iterable[Pattern[str]] = SENSITIVE_PATTERNS,
        marker: str = REDACTED,
        max_depth: int = 10,
    ) -> None:
        self.sensitive_fields = tuple(field.lower() for field in sensitive_fields)
        self.patterns = tuple(patterns)
        self.marker = marker
        self.max_depth = max_depth

    def is_sensitive_key(self, key: Any) -> bool:
        key_lower = str(key).lower()
        return any(field in key_lower for field in self.sensitive_fields)

    def sanitize(self, data: Any, extra_secrets: Iterable[str] = ()) -> Any:
        """Return a sanitized deep copy of data."""
        secrets = self._ordered_secrets(set(extra_secrets) | self.collect_secrets(data))
        return self._sanitize(data, secrets, depth=0, seen=set())

    def sanitize_string(self, text: str, secrets: Iterable[str] = ()) -> str:
        sanitized = text
        for secret in secrets:
            if secret in sanitized:
                sanitized = sanitized.replace(secret, self.marker)
        for pattern in self.patterns:
            sanitized = pattern.sub(self.marker, sanitized)
        return sanitized

    def sanitize_event(self, message: str, metadata: Optional[Any]) -> Tuple[str, Optional[Any]]:
        """Sanitize a message and its metadata together, sharing discovered secrets."""
        secrets = self._ordered_secrets(self.collect_secrets(metadata)) if metadata is not None else []
        clean_message = self.sanitize_string(str(message), secrets)
        clean_metadata = (
            self._sanitize(metadata, secrets, depth=0, seen=set())
            if metadata is not None else None
        )
        return clean_message, clean_metadata

    def collect_secrets(self, data: Any) -> Set[str]:
        """Find every scalar value stored under a sensitive key, at any depth."""
        found: Set[str] = set()
        self._collect(data, found, inside_sensitive=False, depth=0, seen=set())
        return found

    def _ordered_secrets(self, secrets: Set[str]) -> List[str]:
        # Longest first so a secret containing another is replaced whole
        return sorted(
            (s for s in secrets if len(s) >= MIN_SECRET_LENGTH and s != self.marker),
            key=len,
            reverse=True,
        )

    def _collect(self, obj: Any, found: Set[str], inside_sensitive: bool, depth: int, seen: Set[int]) -> None:
        if depth > self.max_depth:
            return

        if isinstance(obj, dict):
            if id(obj) in seen:
                return
            seen.add(id(obj))
            for key, value in obj.items():
                self._collect(
                    value,
                    found,
                    inside_sensitive or self.is_sensitive_key(key),
                    depth + 1,
                    seen,
                )
            seen.discard(id(obj))
        elif isinstance(obj, (list, tuple, set, frozenset)):
            if id(obj) in seen:
                return
            seen.add(id(obj))
            for item in obj:
                self._collect(item, found, inside_sensitive, depth + 1, seen)
            seen.discard(id(obj))
        elif inside_sensitive and obj is not None and not isinstance(obj, bool):
            found.add(str(obj))

    def _sanitize(self, obj: Any, secrets: List[str], depth: int, seen: Set[int]) -> Any:
        if depth > self.max_depth:
            return MAX_DEPTH_MARKER

        if isinstance(obj, str):
            return self.sanitize_string(obj, secrets)

        if obj is None or isinstance(obj, (bool, int, float)):
            return obj

        if isinstance(obj, dict):
            if id(obj) in seen:
                return CIRCULAR
            seen.add(id(obj))
            sanitized = {}
            for key, value in obj.items():
                safe_key = key if isinstance(key, str) else str(key)
                if self.is_sensitive_key(safe_key):
                    sanitized[safe_key] = self.marker
                else:
                    sanitized[safe_key] = self._sanitize(value, secrets, depth + 1, seen)
            seen.discard(id(obj))
            return sanitized

        if isinstance(obj, (list, tuple, set, frozenset)):
            if id(obj) in seen:
                return CIRCULAR
            seen.add(id(obj))
            items = [self._sanitize(item, secrets, depth + 1, seen) for item in obj]
            seen.discard(id(obj))
            return items

        if isinstance(obj, BaseException):
            return self.sanitize_string(f"{type(obj).__name__}: {obj}", secrets)

        try:
            text = str(obj)
        except Exception:
            logger.debug("Unrepresentable log value", value_type=type(obj).__name__)
            return f"[Unserializable {type(obj).__name__}]"
        return self.sanitize_string(text, secrets)
