"""Group a flat store listing into logical tasks."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from remote_task.mailbox.naming import Direction, Kind, StoreObject, decode_name


@dataclass(slots=True)
class TaskSlots:
    """Objects observed for one direction of a task, at most one per kind."""

    dat: StoreObject | None = None
    sig: StoreObject | None = None
    err: StoreObject | None = None

    def put(self, obj: StoreObject) -> None:
        if obj.kind is Kind.DATA:
            self.dat = obj
        elif obj.kind is Kind.SIGNATURE:
            self.sig = obj
        else:
            self.err = obj

    def objects(self) -> list[StoreObject]:
        return [obj for obj in (self.dat, self.err, self.sig) if obj is not None]


@dataclass(slots=True)
class Task:
    """One unit of work reconstructed from store objects."""

    id: str
    submitted_at_ms: int
    input: TaskSlots
    output: TaskSlots | None = None

    @property
    def is_pending(self) -> bool:
        return self.output is None

    @property
    def is_resolved(self) -> bool:
        """Output signature is present together with exactly one payload."""

        if self.output is None or self.output.sig is None:
            return False
        return (self.output.dat is None) != (self.output.err is None)

    def objects(self) -> list[StoreObject]:
        """Every object belonging to the task, inputs first."""

        objects = self.input.objects()
        if self.output is not None:
            objects.extend(self.output.objects())
        return objects


def assemble(objects: Iterable[StoreObject | str]) -> list[Task]:
    """Build tasks from a listing, oldest submission first.

    Raw names are decoded and the ones outside the naming grammar are dropped.
    Groups without both ``in.dat`` and ``in.sig`` are not tasks yet.
    If the listing holds duplicates for one slot, the last one wins.
    """

    groups: dict[str, dict[Direction, TaskSlots]] = {}
    for obj in _decoded(objects):
        directions = groups.setdefault(obj.task_id, {})
        directions.setdefault(obj.direction, TaskSlots()).put(obj)

    tasks: list[Task] = []
    for directions in groups.values():
        task_input = directions.get(Direction.IN)
        if task_input is None or task_input.dat is None or task_input.sig is None:
            continue
        tasks.append(
            Task(
                id=task_input.sig.task_id,
                submitted_at_ms=task_input.sig.created_at_ms,
                input=task_input,
                output=directions.get(Direction.OUT),
            ),
        )
    tasks.sort(key=lambda task: task.submitted_at_ms)
    return tasks


def _decoded(objects: Iterable[StoreObject | str]) -> Iterator[StoreObject]:
    for item in objects:
        obj = decode_name(item) if isinstance(item, str) else item
        if obj is not None:
            yield obj
