"""Input validation utilities for security hardening.

Provides protection against:
- Unsafe app names reaching the container engine and the filesystem
- Path traversal in generated file paths
- Dangerous generated content applied by the automated fixer
- Secrets leaking through logs and engine diagnostics
"""

from __future__ import annotations

import logging
import re
from pathlib import Path, PurePosixPath

from appforge.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = "generated-app"

# Words dropped when deriving an app name from a prompt
NAME_STOP_WORDS = frozenset(
    {"a", "an", "the", "with", "and", "or", "but", "build", "create", "make"}
)

MAX_GENERATED_CONTENT_CHARS = 50000

# Paths the automated fixer may touch, relative to the app directory
ALLOWED_FIX_PATTERNS = [
    re.compile(r"^package\.json$"),
    re.compile(r"^src/.*\.(js|ts|jsx|tsx|css|html|json)$"),
    re.compile(r"^public/.*\.(js|css|html|json|png|jpg|svg|ico)$"),
    re.compile(r"^components/.*\.(js|ts|jsx|tsx|css)$"),
    re.compile(r"^pages/.*\.(js|ts|jsx|tsx|css)$"),
    re.compile(r"^styles/.*\.(css|scss|less)$"),
    re.compile(r"^.*\.env\.example$"),
    re.compile(r"^README\.md$"),
    re.compile(r"^index\.(js|ts|html)$"),
    re.compile(r"^server\.(js|ts)$"),
    re.compile(r"^app\.(js|ts|jsx|tsx)$"),
    re.compile(r"^main\.(js|ts|jsx|tsx)$"),
]

# Content the automated fixer refuses to write
DANGEROUS_CONTENT_PATTERNS = [
    re.compile(r"require\s*\(\s*['\"]child_process['\"]"),
    re.compile(r"import.*child_process"),
    re.compile(r"\bexec\s*\("),
    re.compile(r"\bspawn\s*\("),
    re.compile(r"process\.env\."),
    re.compile(r"\.\./\.\."),
    re.compile(r"/etc/passwd"),
    re.compile(r"/root/"),
    re.compile(r"\bsudo\b"),
    re.compile(r"rm -rf"),
    re.compile(r"curl.*http"),
    re.compile(r"\bwget\b"),
    re.compile(r"\beval\s*\("),
    re.compile(r"new Function\s*\("),
]


def sanitize_name(name: str) -> str:
    """Reduce a name to something safe for container tags and directories.

    Only lowercase alphanumerics, hyphens and underscores survive, and the
    result may not start or end with a hyphen or underscore.

    Example:
        >>> sanitize_name("My App!")
        'myapp'
        >>> sanitize_name("--x--")
        'x'
    """
    sanitized = re.sub(r"[^a-zA-Z0-9\-_]", "", name).lower()
    sanitized = re.sub(r"^[-_]+", "", sanitized)
    sanitized = re.sub(r"[-_]+$", "", sanitized)
    return sanitized or DEFAULT_APP_NAME


def generate_app_name(prompt: str) -> str:
    """Derive a short descriptive app name from a generation prompt."""
    cleaned = re.sub(r"[^\w\s]", "", prompt.strip().lower())
    words = [w for w in cleaned.split() if w and w not in NAME_STOP_WORDS][:3]
    return sanitize_name("-".join(words) or DEFAULT_APP_NAME)


def validate_relative_path(path: str, base_dir: str | Path) -> str:
    """Validate a generated file path and return its normalized relative form.

    Args:
        path: Path as emitted by the generator (POSIX separators)
        base_dir: Directory the path must stay within

    Returns:
        Normalized relative path

    Raises:
        ValidationError: If the path is absolute, contains parent segments
            or backslashes, or resolves outside base_dir
    """
    if not path or not path.strip():
        raise ValidationError("Empty file path")
    if "\\" in path or "\x00" in path:
        raise ValidationError(f"Unsafe file path detected: {path!r}")

    pure = PurePosixPath(path.strip())
    if pure.is_absolute():
        raise ValidationError(f"Absolute paths not allowed: {path}")
    if ".." in pure.parts:
        raise ValidationError(f"Unsafe file path detected: {path}")

    parts = [p for p in pure.parts if p not in ("", ".")]
    if not parts:
        raise ValidationError(f"Empty file path: {path}")
    relative = "/".join(parts)

    try:
        base = Path(base_dir).resolve()
        resolved = (base / relative).resolve()
    except (ValueError, OSError) as e:
        raise ValidationError(f"Cannot resolve file path {path!r}: {e}") from e
    try:
        resolved.relative_to(base)
    except ValueError:
        raise ValidationError(
            f"Path escapes base directory: {path} resolves to {resolved}, "
            f"which is outside {base}"
        )
    if resolved == base:
        raise ValidationError(f"Path refers to the app directory itself: {path}")

    return relative


def validate_port(port: int) -> int:
    """Validate an unprivileged TCP port number."""
    if not isinstance(port, int) or isinstance(port, bool) or port < 1024 or port > 65535:
        raise ValidationError(f"Invalid port number: {port}")
    return port


def is_allowed_fix_file(path: str) -> bool:
    """Check whether the automated fixer may modify a path."""
    return any(pattern.match(path) for pattern in ALLOWED_FIX_PATTERNS)


def sanitize_generated_content(content: str) -> str:
    """Reject generated content that looks dangerous or is oversized.

    Raises:
        ValidationError: On a dangerous pattern or oversized content
    """
    if not isinstance(content, str):
        raise ValidationError("Content must be a string")
    for pattern in DANGEROUS_CONTENT_PATTERNS:
        if pattern.search(content):
            raise ValidationError(f"Dangerous pattern detected in generated content: {pattern.pattern}")
    if len(content) > MAX_GENERATED_CONTENT_CHARS:
        raise ValidationError("Content too large")
    return content


def sanitize_log_message(message: str, sensitive_patterns: list[str] | None = None) -> str:
    """Sanitize a log message to remove sensitive data.

    Args:
        message: Message to sanitize
        sensitive_patterns: Additional patterns to redact

    Returns:
        Sanitized message with sensitive data redacted
    """
    result = message

    default_patterns = [
        (r"Authorization:\s*Bearer\s+[A-Za-z0-9\-_.]+", "Authorization: Bearer [REDACTED]"),
        (r"Bearer\s+[A-Za-z0-9\-_.]+", "Bearer [REDACTED]"),
        (r"csk-[a-zA-Z0-9]{20,}", "[REDACTED_API_KEY]"),  # Cerebras keys
        (r"sk-[a-zA-Z0-9]{20,}", "[REDACTED_API_KEY]"),
        (r"CEREBRAS_API_KEY[\"':=\s]+[A-Za-z0-9\-_]+", "CEREBRAS_API_KEY=[REDACTED]"),
        (r"api[_-]?key[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9\-_]+", "api_key=[REDACTED]"),
        (r'password["\']?\s*[:=]\s*["\']?[^"\'\s]+', "password=[REDACTED]"),
        (r'secret["\']?\s*[:=]\s*["\']?[^"\'\s]+', "secret=[REDACTED]"),
        (r'token["\']?\s*[:=]\s*["\']?[^"\'\s]+', "token=[REDACTED]"),
    ]

    for pattern, replacement in default_patterns:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    if sensitive_patterns:
        for pattern in sensitive_patterns:
            result = re.sub(pattern, "[REDACTED]", result, flags=re.IGNORECASE)

    return result


def truncate_diagnostics(text: str, max_chars: int) -> str:
    """Keep the tail of engine output, where the failing step usually is."""
    if len(text) <= max_chars:
        return text
    return "...[truncated]...\n" + text[-max_chars:]
