"""Object name codec: the only schema imposed on the shared store."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from enum import Enum


class Direction(str, Enum):
    """Which peer wrote the object."""

    IN = "in"
    OUT = "out"


class Kind(str, Enum):
    """Role of the object within its direction."""

    DATA = "dat"
    SIGNATURE = "sig"
    ERROR = "err"


_NAME_RE = re.compile(r"(\d+)-(\w+)\.(in|out)\.(dat|sig|err)", re.ASCII)
_TASK_ID_RE = re.compile(r"\w+", re.ASCII)


@dataclass(frozen=True, slots=True)
class StoreObject:
    """Decoded view of one named object in the store."""

    name: str
    created_at_ms: int
    task_id: str
    direction: Direction
    kind: Kind


def encode_name(
    timestamp_ms: int,
    task_id: str,
    direction: Direction | str,
    kind: Kind | str,
) -> str:
    """Build ``{epochMillis}-{taskId}.{direction}.{kind}``."""

    if timestamp_ms < 0:
        raise ValueError(f"Timestamp must be non-negative: {timestamp_ms}")
    if not _TASK_ID_RE.fullmatch(task_id):
        raise ValueError(f"Task id must be an ASCII word-character token: {task_id!r}")
    return f"{timestamp_ms}-{task_id}.{Direction(direction).value}.{Kind(kind).value}"


def decode_name(name: str) -> StoreObject | None:
    """Parse an object name, or return ``None`` when it does not follow the grammar."""

    match = _NAME_RE.fullmatch(name)
    if match is None:
        return None
    timestamp, task_id, direction, kind = match.groups()
    return StoreObject(
        name=name,
        created_at_ms=int(timestamp),
        task_id=task_id,
        direction=Direction(direction),
        kind=Kind(kind),
    )


def new_task_id() -> str:
    return secrets.token_hex(16)
