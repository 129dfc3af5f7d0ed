from dataclasses import dataclass
from enum import Enum
from typing import Callable


class LifecycleState(str, Enum):
    DOWN = "down"
    STARTING = "starting"
    UP = "up"
    STOPPING = "stopping"
    WEIRD = "weird"


@dataclass
class ServerRecord:
    """In-memory record of the single managed instance.

    Only the LifecycleController mutates it. Nothing is persisted; a fresh
    process starts from ``down`` unless an operator forces another state.
    """
    state: LifecycleState = LifecycleState.DOWN
    instance_id: int | str | None = None
    address: str | None = None
    on_ready: Callable[[], None] | None = None

    def snapshot(self) -> "StatusSnapshot":
        return StatusSnapshot(
            state=self.state, address=self.address, instance_id=self.instance_id,
        )

    def clear_instance(self) -> None:
        self.instance_id = None
        self.address = None


@dataclass(frozen=True)
class StatusSnapshot:
    state: LifecycleState
    address: str | None = None
    instance_id: int | str | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "address": self.address,
            "instance_id": self.instance_id,
        }
