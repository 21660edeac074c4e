"""In-process stand-in for a channel, used to test proxies and the registry."""

from conduit.owner import ChannelOwner
from conduit.owner import Listener
from conduit.registry import HandleNotFound
from conduit.registry import ObjectRegistry


class RecordingContext:
    """Records calls and runs listeners synchronously on the emitting thread."""

    calls: list[tuple[str, str, dict[str, object] | None, float | None]]
    registry: ObjectRegistry
    result: dict[str, object]

    def __init__(self) -> None:
        self.calls = []
        self.registry = ObjectRegistry(self)
        self.result = {"ok": True}

    def call(
        self,
        guid: str,
        method: str,
        params: dict[str, object] | None = None,
        timeout: float | None = None,
    ) -> dict[str, object]:
        self.calls.append((guid, method, params, timeout))
        return self.result

    def schedule_listeners(self, listeners: list[Listener], payload: dict[str, object]) -> None:
        for listener in listeners:
            listener(payload)

    def run_listeners(self, listeners: list[Listener], payload: dict[str, object]) -> None:
        self.schedule_listeners(listeners, payload)

    def lookup(self, handle: str) -> ChannelOwner | None:
        resolved: ChannelOwner | HandleNotFound = self.registry.resolve(handle)
        if isinstance(resolved, HandleNotFound) is True:
            return None
        return resolved

    def children_of(self, handle: str) -> list[ChannelOwner]:
        return self.registry.children_of(handle)

    def check_blocking_wait(self) -> None:
        return None
