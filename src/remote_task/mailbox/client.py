"""Client side of the mailbox: submit one task and wait for its signed result."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from remote_task.config import Settings
from remote_task.errors import (
    BadSignatureError,
    ConfigurationError,
    RemoteTaskError,
    StoreError,
    TaskTimeoutError,
)
from remote_task.mailbox.assembler import Task, assemble
from remote_task.mailbox.gc import list_objects
from remote_task.mailbox.naming import Direction, Kind, encode_name, new_task_id
from remote_task.mailbox.signing import KeyMaterial
from remote_task.store.base import ObjectStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReceivedResult:
    """Answer of a resolved task, fully downloaded but not yet verified."""

    task: Task
    payload: bytes
    signature: bytes
    is_error: bool


class ClientSession:
    """Submits tasks through ``store`` and verifies the server's answers.

    Keys are loaded and self-tested on the first ``submit`` and kept for the
    lifetime of the session.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._keys: KeyMaterial | None = None

    @property
    def keys(self) -> KeyMaterial:
        if self._keys is None:
            keys = self.settings.keys
            if (
                keys.client_private_key is None
                or keys.client_public_key is None
                or keys.server_public_key is None
            ):
                raise ConfigurationError("Client key material is not configured")
            self._keys = KeyMaterial.load(
                private_key_path=keys.client_private_key,
                public_key_path=keys.client_public_key,
                counterpart_public_key_path=keys.server_public_key,
            )
        return self._keys

    def submit(self, input_data: bytes) -> bytes:
        """Run one remote task and return its result bytes.

        Raises ``RemoteTaskError`` with the server's error text when the task
        failed remotely, ``BadSignatureError`` when the answer is not signed by
        the configured server key and ``TaskTimeoutError`` when no answer
        arrived within the task expiration window.
        """

        self.settings.validate_for_client()
        keys = self.keys
        signature = keys.sign(input_data)
        task_id = new_task_id()

        logger.info("Sending a remote task with ID %s...", task_id)
        submitted_at_ms = self._now_ms()
        self.store.put(encode_name(submitted_at_ms, task_id, Direction.IN, Kind.DATA), input_data)
        self.store.put(
            encode_name(submitted_at_ms, task_id, Direction.IN, Kind.SIGNATURE),
            signature,
        )
        logger.info("Task %s successfully sent, waiting for results...", task_id)

        received = self._wait_for_result(task_id=task_id, submitted_at_ms=submitted_at_ms)
        try:
            return self._consume_result(received, keys=keys)
        finally:
            self._delete_task(received.task)

    def _wait_for_result(self, *, task_id: str, submitted_at_ms: int) -> ReceivedResult:
        protocol = self.settings.protocol
        while True:
            self._sleep(protocol.poll_millis / 1000)
            try:
                received = self._download_resolved(task_id)
            except StoreError as error:
                logger.warning("Poll error: %s", error)
                received = None
            else:
                logger.info("Poll: %s", "result found" if received else "no results yet")
            if received is not None:
                return received
            if self._now_ms() - submitted_at_ms > protocol.task_expiration_millis:
                raise TaskTimeoutError(
                    f"Task {task_id} got no result within "
                    f"{protocol.task_expiration_millis} ms",
                )

    def _download_resolved(self, task_id: str) -> ReceivedResult | None:
        objects = list_objects(
            self.store,
            now_ms=self._now_ms(),
            expiration_ms=self.settings.protocol.task_expiration_millis,
        )
        task = next(
            (task for task in assemble(objects) if task.id == task_id and task.is_resolved),
            None,
        )
        if task is None:
            return None
        output = task.output
        if output is None or output.sig is None:
            raise RuntimeError("Resolved task must carry an output signature.")
        payload_object = output.dat or output.err
        if payload_object is None:
            raise RuntimeError("No output or error file found")
        signature = self.store.get(output.sig.name)
        payload = self.store.get(payload_object.name)
        return ReceivedResult(
            task=task,
            payload=payload,
            signature=signature,
            is_error=output.dat is None,
        )

    def _consume_result(self, received: ReceivedResult, *, keys: KeyMaterial) -> bytes:
        task_id = received.task.id
        if not keys.verify_counterpart(received.payload, received.signature):
            what = "an error" if received.is_error else "a result"
            raise BadSignatureError(f"Received {what} with a bad signature")

        if not received.is_error:
            logger.info(
                "Task %s completed successfully (%d bytes)",
                task_id,
                len(received.payload),
            )
            return received.payload

        text = received.payload.decode("utf-8", errors="replace")
        logger.info("Task %s completed with error:\n%s", task_id, text)
        raise RemoteTaskError(text)

    def _delete_task(self, task: Task) -> None:
        for obj in task.objects():
            logger.info("Deleting task file %s", obj.name)
            try:
                self.store.delete(obj.name)
            except StoreError as error:
                logger.warning("Could not delete %s: %s", obj.name, error)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
