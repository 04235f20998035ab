"""Reclaim store objects left behind by abandoned or crashed tasks."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from remote_task.errors import StoreError
from remote_task.mailbox.naming import StoreObject, decode_name
from remote_task.store.base import ObjectStore

logger = logging.getLogger(__name__)


def is_expired(obj: StoreObject, *, now_ms: int, expiration_ms: int) -> bool:
    """Objects live for twice the task expiration window."""

    return now_ms - obj.created_at_ms > 2 * expiration_ms


def sweep(
    store: ObjectStore,
    objects: Iterable[StoreObject],
    *,
    now_ms: int,
    expiration_ms: int,
) -> list[StoreObject]:
    """Delete expired objects and return the ones still in the store.

    A failed delete keeps the object in the result; the next sweep retries it.
    """

    surviving: list[StoreObject] = []
    for obj in objects:
        if not is_expired(obj, now_ms=now_ms, expiration_ms=expiration_ms):
            surviving.append(obj)
            continue
        logger.info("Deleting expired object %s", obj.name)
        try:
            store.delete(obj.name)
        except StoreError as error:
            logger.warning("Error deleting expired object %s: %s", obj.name, error)
            surviving.append(obj)
    return surviving


def list_objects(store: ObjectStore, *, now_ms: int, expiration_ms: int) -> list[StoreObject]:
    """List the store, keep names that follow the grammar, and sweep expired ones."""

    decoded = [obj for obj in map(decode_name, store.list()) if obj is not None]
    return sweep(store, decoded, now_ms=now_ms, expiration_ms=expiration_ms)
