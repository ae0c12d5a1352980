"""Value objects returned by the admission controller."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Partition:
    """The set of runs one concurrency cap applies to.

    ``kind`` is ``workflow`` when the workflow carries its own cap, otherwise
    ``project``: every workflow without a cap shares the project's slots.
    ``cap`` of ``None`` means unlimited.
    """

    kind: str
    key: str
    cap: Optional[int]
    source: str  # workflow | project | default | none

    def has_room(self, active: int) -> bool:
        return self.cap is None or active < self.cap


@dataclass(frozen=True)
class Permit:
    workflow_id: str
    partition: Partition
    active: int


@dataclass(frozen=True)
class Queued:
    """Not an error: the run stays pending until a slot frees up."""

    workflow_id: str
    partition: Partition
    active: int
    # pending runs of the partition enqueued before this one and still waiting
    behind: int = 0

    @property
    def reason(self) -> str:
        if self.behind:
            return f"{self.behind} older run(s) of this {self.partition.kind} are queued first"
        return f"{self.partition.kind} concurrency limit reached ({self.active}/{self.partition.cap})"


@dataclass(frozen=True)
class ConcurrencySetting:
    workflow_id: str
    cap: Optional[int]
    source: str
    parallelism_disabled: bool
    notice: Optional[str] = None
