"""Base capability shared by every local proxy of a remote object."""

import enum
import threading
from collections.abc import Callable
from typing import ClassVar
from typing import Protocol

from conduit.errors import CallTimeoutError
from conduit.errors import ObjectDisposedError
from conduit.kinds import ObjectKind

CLOSE_EVENT: str = "close"
Listener = Callable[[dict[str, object]], None]


class OwnerState(enum.Enum):
    """Lifecycle of one proxy. ``DISPOSED`` is terminal."""

    CREATED = "created"
    ACTIVE = "active"
    DISPOSED = "disposed"


class ChannelContext(Protocol):
    """What a proxy needs from the channel it belongs to."""

    def call(
        self,
        guid: str,
        method: str,
        params: dict[str, object] | None = None,
        timeout: float | None = None,
    ) -> dict[str, object]:
        """Send one call and wait for its result."""
        ...

    def schedule_listeners(self, listeners: list[Listener], payload: dict[str, object]) -> None:
        """Deliver ``payload`` to ``listeners`` in order."""
        ...

    def run_listeners(self, listeners: list[Listener], payload: dict[str, object]) -> None:
        """Run ``listeners`` in order on the calling thread."""
        ...

    def lookup(self, handle: str) -> "ChannelOwner | None":
        """Return the live proxy for ``handle``, if any."""
        ...

    def children_of(self, handle: str) -> "list[ChannelOwner]":
        """Return the live children of ``handle`` in creation order."""
        ...

    def check_blocking_wait(self) -> None:
        """Raise when the current thread must not block on channel traffic."""
        ...


class _OnceListener:
    """Listener wrapper removed from its subscriber list when it first fires."""

    listener: Listener

    def __init__(self, listener: Listener) -> None:
        self.listener = listener

    def __call__(self, payload: dict[str, object]) -> None:
        self.listener(payload)


class ChannelOwner:
    """Local stand-in for one remote object.

    A proxy owns exactly one handle. It refers to its parent only by handle,
    resolved through the channel's registry, so the object graph never holds
    reference cycles.
    """

    kind: ClassVar[ObjectKind]

    _context: ChannelContext
    _handle: str
    _parent_handle: str | None
    _initializer: dict[str, object]
    _state: OwnerState
    _listeners: dict[str, list[Listener]]
    _lock: threading.Lock

    def __init__(
        self,
        context: ChannelContext,
        handle: str,
        parent_handle: str | None,
        initializer: dict[str, object] | None = None,
    ) -> None:
        """Initialize a proxy in the ``CREATED`` state.

        :param context: Channel this proxy talks through.
        :param handle: Engine-assigned handle.
        :param parent_handle: Handle of the creating object, or ``None`` at top level.
        :param initializer: Engine-supplied initial attributes.
        """
        self._context = context
        self._handle = handle
        self._parent_handle = parent_handle
        self._initializer = dict(initializer or {})
        self._state = OwnerState.CREATED
        self._listeners = {}
        self._lock = threading.Lock()

    @property
    def handle(self) -> str:
        """Return the engine-assigned handle.

        :returns: Handle string.
        """
        return self._handle

    @property
    def parent_handle(self) -> str | None:
        """Return the creating object's handle.

        :returns: Parent handle or ``None``.
        """
        return self._parent_handle

    @property
    def parent(self) -> "ChannelOwner | None":
        """Return the live parent proxy.

        :returns: Parent proxy, or ``None`` at top level or after the parent is gone.
        """
        if self._parent_handle is None:
            return None
        return self._context.lookup(self._parent_handle)

    @property
    def children(self) -> "list[ChannelOwner]":
        """Return live child proxies in creation order.

        :returns: Child proxies.
        """
        return self._context.children_of(self._handle)

    @property
    def initializer(self) -> dict[str, object]:
        """Return a copy of the engine-supplied initial attributes.

        :returns: Initializer mapping.
        """
        return dict(self._initializer)

    @property
    def state(self) -> OwnerState:
        """Return the lifecycle state.

        :returns: Current state.
        """
        with self._lock:
            return self._state

    @property
    def is_disposed(self) -> bool:
        """Report whether this proxy reached the terminal state.

        :returns: ``True`` once disposed.
        """
        return self.state is OwnerState.DISPOSED

    def invoke(
        self,
        method: str,
        params: dict[str, object] | None = None,
        timeout: float | None = None,
    ) -> dict[str, object]:
        """Call ``method`` on the remote object.

        :param method: Remote method name.
        :param params: Method parameters.
        :param timeout: Optional deadline in seconds.
        :returns: Result payload.
        :raises ObjectDisposedError: If this proxy has been disposed.
        """
        if self.is_disposed is True:
            raise ObjectDisposedError(self._handle)
        return self._context.call(self._handle, method, params, timeout)

    def on(self, event: str, listener: Listener) -> None:
        """Register ``listener`` for future ``event`` deliveries.

        :param event: Event name.
        :param listener: Called with the event payload.
        :raises ObjectDisposedError: If this proxy has been disposed.
        """
        with self._lock:
            if self._state is OwnerState.DISPOSED:
                raise ObjectDisposedError(self._handle)
            self._listeners.setdefault(event, []).append(listener)

    def once(self, event: str, listener: Listener) -> None:
        """Register ``listener`` for the next ``event`` delivery only.

        :param event: Event name.
        :param listener: Called with the event payload.
        """
        self.on(event, _OnceListener(listener))

    def off(self, event: str, listener: Listener) -> bool:
        """Unregister the earliest registration of ``listener`` for ``event``.

        :param event: Event name.
        :param listener: Listener passed to :meth:`on` or :meth:`once`.
        :returns: ``True`` when a registration was removed.
        """
        with self._lock:
            registered: list[Listener] | None = self._listeners.get(event)
            if registered is None:
                return False
            for index, entry in enumerate(registered):
                is_match: bool = entry is listener
                if isinstance(entry, _OnceListener) is True and entry.listener is listener:
                    is_match = True
                if is_match is True:
                    del registered[index]
                    if len(registered) == 0:
                        del self._listeners[event]
                    return True
            return False

    def listener_count(self, event: str) -> int:
        """Return the number of listeners registered for ``event``.

        :param event: Event name.
        :returns: Listener count.
        """
        with self._lock:
            return len(self._listeners.get(event, []))

    def wait_for_event(self, event: str, timeout: float | None = None) -> dict[str, object]:
        """Block until the next ``event`` and return its payload.

        :param event: Event name.
        :param timeout: Optional deadline in seconds.
        :returns: Event payload.
        :raises CallTimeoutError: If the deadline expires first.
        :raises ObjectDisposedError: If the proxy is disposed while waiting.
        """
        self._context.check_blocking_wait()
        settled: threading.Event = threading.Event()
        outcome: dict[str, dict[str, object]] = {}

        def on_event(payload: dict[str, object]) -> None:
            outcome.setdefault("event", payload)
            settled.set()

        def on_close(payload: dict[str, object]) -> None:
            outcome.setdefault("close", payload)
            settled.set()

        self.once(event, on_event)
        if event != CLOSE_EVENT:
            self.once(CLOSE_EVENT, on_close)
        try:
            fired: bool = settled.wait(timeout)
        finally:
            self.off(event, on_event)
            self.off(CLOSE_EVENT, on_close)

        if fired is False:
            raise CallTimeoutError(f"No {event!r} event on {self._handle!r} within {timeout} seconds")
        has_event: bool = "event" in outcome
        if has_event is True:
            return outcome["event"]
        raise ObjectDisposedError(self._handle)

    def _activate(self) -> None:
        """Move from ``CREATED`` to ``ACTIVE`` once registered."""
        with self._lock:
            if self._state is OwnerState.CREATED:
                self._state = OwnerState.ACTIVE

    def _emit(self, event: str, payload: dict[str, object]) -> bool:
        """Deliver one inbound event to this proxy's listeners.

        :param event: Event name.
        :param payload: Event payload.
        :returns: ``False`` when the event was dropped because the proxy is not active.
        """
        with self._lock:
            if self._state is not OwnerState.ACTIVE:
                return False
            registered: list[Listener] = self._listeners.get(event, [])
            snapshot: list[Listener] = list(registered)
            remaining: list[Listener] = [
                entry for entry in registered if isinstance(entry, _OnceListener) is False
            ]
            if len(remaining) != len(registered):
                if len(remaining) == 0:
                    self._listeners.pop(event, None)
                else:
                    self._listeners[event] = remaining

        self._on_event(event, payload)
        if len(snapshot) > 0:
            self._context.schedule_listeners(snapshot, payload)
        return True

    def _dispose(self, reason: str | None = None) -> bool:
        """Enter the terminal state and run ``close`` listeners on the calling thread.

        The listeners finish before this returns, so they still find the proxy
        in the registry. The subscriber set is cleared once they have run.

        :param reason: Optional engine-supplied reason.
        :returns: ``False`` when already disposed.
        """
        with self._lock:
            if self._state is OwnerState.DISPOSED:
                return False
            self._state = OwnerState.DISPOSED
            close_listeners: list[Listener] = list(self._listeners.get(CLOSE_EVENT, []))

        if len(close_listeners) > 0:
            payload: dict[str, object] = {"guid": self._handle, "reason": reason}
            self._context.run_listeners(close_listeners, payload)
        with self._lock:
            self._listeners.clear()
        return True

    def _on_event(self, event: str, payload: dict[str, object]) -> None:
        """Update local state from an inbound event before listeners run.

        :param event: Event name.
        :param payload: Event payload.
        """

    def _initializer_owner(self, key: str) -> "ChannelOwner | None":
        """Resolve a ``{"guid": ...}`` reference stored in the initializer.

        :param key: Initializer field name.
        :returns: Live proxy or ``None``.
        """
        value: object = self._initializer.get(key)
        if isinstance(value, ChannelOwner) is True:
            return value
        if isinstance(value, dict) is False:
            return None
        guid: object = value.get("guid")
        if isinstance(guid, str) is False:
            return None
        return self._context.lookup(guid)

    def __repr__(self) -> str:
        """Return a debugging representation.

        :returns: Representation string.
        """
        return f"<{type(self).__name__} handle={self._handle!r} state={self.state.value}>"
