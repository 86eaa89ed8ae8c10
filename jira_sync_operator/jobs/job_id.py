"""
Work-unit identifiers.

Format: {prefix}-{yyyyMMdd-HHmmss}-{8 random chars from [a-z0-9]}

Identifiers double as cluster object names, so they must satisfy DNS-1123
label rules: at most 63 characters, [a-z0-9-] only, start and end
alphanumeric, and no "--".
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "job"
MIN_ID_LENGTH = 5
MAX_NAME_LENGTH = 63
SUFFIX_LENGTH = 8
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
_NAME_CHARS = re.compile(r"^[a-z0-9-]+$")
_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


def _random_suffix() -> str:
    try:
        return "".join(secrets.choice(_ALPHABET) for _ in range(SUFFIX_LENGTH))
    except (OSError, NotImplementedError) as e:
        logger.warning(f"Random source unavailable, using time-derived suffix: {e}")
        return f"{time.time_ns():x}"[-SUFFIX_LENGTH:]


def generate(prefix: str = "", now: Optional[datetime] = None) -> str:
    """Generate a unique identifier. Never raises."""
    prefix = prefix or DEFAULT_PREFIX
    stamp = (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)
    return f"{prefix}-{stamp}-{_random_suffix()}"


def generate_with_kind(kind: str, now: Optional[datetime] = None) -> str:
    """Generate an identifier whose prefix is the work kind (single, batch, jql)."""
    return generate(str(kind), now=now)


def validate(job_id: str) -> None:
    """
    Raise ValidationError unless job_id is a usable identifier.

    Rules: non-empty, 5..63 chars, [a-z0-9-] only, alphanumeric at both ends,
    no consecutive dashes.
    """
    if not job_id:
        raise ValidationError("job ID cannot be empty", field="job_id", value=job_id, code="EMPTY_JOB_ID")
    if len(job_id) < MIN_ID_LENGTH:
        raise ValidationError(
            f"job ID too short (minimum {MIN_ID_LENGTH} characters)",
            field="job_id", value=job_id, code="JOB_ID_TOO_SHORT",
        )
    if len(job_id) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"job ID too long (maximum {MAX_NAME_LENGTH} characters)",
            field="job_id", value=job_id, code="JOB_ID_TOO_LONG",
        )
    if not _NAME_CHARS.match(job_id):
        raise ValidationError(
            "job ID may only contain lowercase letters, digits and '-'",
            field="job_id", value=job_id, code="JOB_ID_INVALID_CHARS",
        )
    if not (job_id[0].isalnum() and job_id[-1].isalnum()):
        raise ValidationError(
            "job ID must start and end with an alphanumeric character",
            field="job_id", value=job_id, code="JOB_ID_INVALID_EDGES",
        )
    if "--" in job_id:
        raise ValidationError(
            "job ID cannot contain consecutive dashes",
            field="job_id", value=job_id, code="JOB_ID_DOUBLE_DASH",
        )


def is_valid(job_id: str) -> bool:
    try:
        validate(job_id)
    except ValidationError:
        return False
    return True


def format_name(value: str) -> str:
    """
    Normalize any string into a cluster-safe name.

    Total: always returns a name that passes validate(), whatever the input.
    """
    name = value.lower().replace("_", "-").replace(".", "-")
    name = _INVALID_CHARS.sub("-", name)
    name = re.sub(r"-{2,}", "-", name)

    if not name or not name[0].isalnum():
        name = f"job-{name.lstrip('-')}"

    name = name[:MAX_NAME_LENGTH].rstrip("-")

    # "job" alone (from an empty or all-symbol input) is under the minimum length
    if len(name) < MIN_ID_LENGTH:
        name = f"{name}-{'0' * max(1, MIN_ID_LENGTH - len(name) - 1)}"
    return name


@dataclass(frozen=True)
class ParsedJobID:
    """Components of a generated identifier."""

    prefix: str
    timestamp: str
    suffix: str
    kind: str


def parse(job_id: str) -> ParsedJobID:
    """Split a generated identifier into prefix, timestamp and suffix."""
    validate(job_id)
    parts = job_id.split("-")
    if len(parts) < 4:
        raise ValidationError(
            "job ID does not follow {prefix}-{date}-{time}-{suffix}",
            field="job_id", value=job_id, code="JOB_ID_UNPARSEABLE",
        )
    prefix = "-".join(parts[:-3])
    timestamp = f"{parts[-3]}-{parts[-2]}"
    return ParsedJobID(prefix=prefix, timestamp=timestamp, suffix=parts[-1], kind=prefix)
