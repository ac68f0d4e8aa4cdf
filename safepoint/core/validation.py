"""Input validation for snapshot requests.

Every value that ends up in a git argument, a file name or the audit log
passes through here first. Validation is pure: nothing in this module
touches storage or the environment.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass

from .errors import ValidationError
from .models import ApprovalToken, SnapshotKind

MAX_CREATOR_ID_LENGTH = 50
MAX_SNAPSHOT_NAME_LENGTH = 100
MAX_REASON_LENGTH = 200

# Leading character may not be "-" so a name is never read as an option.
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
CHANGE_ID_RE = re.compile(r"^[A-Za-z]{2,10}-[0-9]{1,10}$")

SHELL_METACHARACTERS = (";", "`", "$(", "|", "&")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

KIND_ALIASES = {
    "marker": SnapshotKind.MARKER,
    "tag": SnapshotKind.MARKER,
    "branch": SnapshotKind.BRANCH,
    "archive": SnapshotKind.ARCHIVE,
}

SECRET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("cloud access key id", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    ("GitHub token", re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})")),
    ("Slack token", re.compile(r"\bxox[abprs]-[A-Za-z0-9-]{10,}")),
    ("API secret key", re.compile(r"\bsk-[A-Za-z0-9_-]{20,}")),
    ("private key", re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----")),
)

HIGH_ENTROPY_MIN_LENGTH = 32
HIGH_ENTROPY_THRESHOLD = 4.0
# Only unbroken runs of key-alphabet characters are entropy candidates;
# paths and hyphenated names fall outside it.
_KEY_TOKEN_RE = re.compile(r"^[A-Za-z0-9+/=_]+$")


@dataclass(frozen=True)
class ValidatedRequest:
    """Normalized creator id, kind and reason."""
    creator_id: str
    kind: SnapshotKind
    reason: str


def _reject_metacharacters(field: str, value: str) -> None:
    for token in SHELL_METACHARACTERS:
        if token in value:
            raise ValidationError(field, f"contains forbidden shell metacharacter {token!r}")


def _validate_identifier(field: str, value: object, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must not be empty")
    value = value.strip()
    _reject_metacharacters(field, value)
    if len(value) > max_length:
        raise ValidationError(field, f"is {len(value)} characters, maximum is {max_length}")
    if not NAME_RE.match(value):
        raise ValidationError(
            field,
            "may only contain letters, digits, '-' and '_' and must start with a letter or digit",
        )
    return value


def validate_creator_id(creator_id: object) -> str:
    return _validate_identifier("creator_id", creator_id, MAX_CREATOR_ID_LENGTH)


def validate_snapshot_name(name: object) -> str:
    """Validate a full snapshot name, e.g. ``before-ci-agent-20251123T143022Z``.

    The character set alone excludes path traversal (``..``, ``/``).
    """
    return _validate_identifier("name", name, MAX_SNAPSHOT_NAME_LENGTH)


def validate_kind(kind: object) -> SnapshotKind:
    if isinstance(kind, SnapshotKind):
        return kind
    if not isinstance(kind, str) or not kind.strip():
        raise ValidationError("kind", "must not be empty")
    resolved = KIND_ALIASES.get(kind.strip().lower())
    if resolved is None:
        raise ValidationError("kind", f"unknown snapshot kind {kind!r}", hint="use marker, branch or archive")
    return resolved


def shannon_entropy(token: str) -> float:
    """Bits per character of ``token``."""
    if not token:
        return 0.0
    counts = Counter(token)
    total = len(token)
    return -sum((n / total) * math.log2(n / total) for n in counts.values())


def _looks_like_key(token: str) -> bool:
    if len(token) < HIGH_ENTROPY_MIN_LENGTH or not _KEY_TOKEN_RE.match(token):
        return False
    # Keys mix cases and digits; path segments and plain words do not.
    classes = (str.islower, str.isupper, str.isdigit)
    if not all(any(check(c) for c in token) for check in classes):
        return False
    return shannon_entropy(token) >= HIGH_ENTROPY_THRESHOLD


def find_secret(text: str) -> str | None:
    """Return a description of the first secret-like value in ``text``."""
    for label, pattern in SECRET_PATTERNS:
        if pattern.search(text):
            return label
    for token in text.split():
        if _looks_like_key(token):
            return "high-entropy token"
    return None


def validate_reason(reason: object) -> str:
    """Validate the free-text justification.

    Secrets are refused outright rather than redacted.
    """
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("reason", "must not be empty")
    reason = reason.strip()
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError("reason", f"is {len(reason)} characters, maximum is {MAX_REASON_LENGTH}")
    _reject_metacharacters("reason", reason)
    if _CONTROL_RE.search(reason):
        raise ValidationError("reason", "must not contain control characters or line breaks")
    secret = find_secret(reason)
    if secret:
        raise ValidationError(
            "reason",
            f"appears to contain a {secret}",
            hint="remove credentials from the reason; nothing was recorded",
        )
    return reason


def validate_request(creator_id: object, kind: object, reason: object) -> ValidatedRequest:
    return ValidatedRequest(
        creator_id=validate_creator_id(creator_id),
        kind=validate_kind(kind),
        reason=validate_reason(reason),
    )


def validate_approval_token(token: ApprovalToken | None) -> ApprovalToken:
    if token is None:
        raise ValidationError("approval", "a change-control token is required")
    change_id = token.change_id.strip() if isinstance(token.change_id, str) else ""
    if not CHANGE_ID_RE.match(change_id):
        raise ValidationError(
            "change_id",
            f"{token.change_id!r} is not a change identifier",
            hint="use the form ABC-1234",
        )
    approver = _validate_identifier("approver", token.approver, MAX_CREATOR_ID_LENGTH)
    return ApprovalToken(change_id=change_id, approver=approver)
