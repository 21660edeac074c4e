"""Channel context tying transport, framing, correlation and the object registry together."""

import logging
import queue
import threading
from collections.abc import Callable
from typing import Literal

from conduit.codec import DEFAULT_MAX_FRAME_BYTES
from conduit.codec import DecodedFrame
from conduit.codec import Event
from conduit.codec import FrameDecoder
from conduit.codec import Request
from conduit.codec import encode_message
from conduit.dispatcher import Dispatcher
from conduit.dispatcher import PendingCall
from conduit.errors import ChannelClosedError
from conduit.errors import MalformedResponseError
from conduit.errors import ProtocolError
from conduit.errors import TransportError
from conduit.errors import UnsupportedInteractionError
from conduit.objects import Playwright
from conduit.owner import ChannelOwner
from conduit.owner import Listener
from conduit.registry import HandleNotFound
from conduit.registry import ObjectRegistry
from conduit.transport import Transport

logger = logging.getLogger(__name__)

EventDispatchMode = Literal["thread", "inline"]
ProtocolErrorCallback = Callable[[ProtocolError], None]
ROOT_GUID: str = ""
CREATE_METHOD: str = "__create__"
DISPOSE_METHOD: str = "__dispose__"
_PUMP_JOIN_TIMEOUT_SECONDS: float = 5.0


def _validate_event_dispatch(event_dispatch: str) -> EventDispatchMode:
    """Validate and normalize the listener delivery mode.

    :param event_dispatch: Requested mode.
    :returns: Validated mode.
    :raises ValueError: If the mode is unsupported.
    """
    if event_dispatch == "thread":
        return "thread"
    if event_dispatch == "inline":
        return "inline"
    raise ValueError("event_dispatch must be one of: inline, thread")


def _run_listener(listener: Listener, payload: dict[str, object]) -> None:
    """Run one listener, logging its failure instead of stopping delivery.

    :param listener: Listener to run.
    :param payload: Event payload.
    """
    try:
        listener(payload)
    except Exception:
        logger.exception("Event listener %r failed", listener)


def _encode_reference(value: object) -> object:
    """Encode proxies inside outgoing params as handle references.

    :param value: Value ``json`` cannot encode natively.
    :returns: ``{"guid": handle}`` for proxies.
    :raises TypeError: For any other value.
    """
    if isinstance(value, ChannelOwner) is True:
        return {"guid": value.handle}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class _EventPump:
    """Single thread that runs listeners in submission order."""

    _queue: "queue.SimpleQueue[tuple[list[Listener], dict[str, object]] | None]"
    _thread: threading.Thread
    _lock: threading.Lock
    _is_stopped: bool

    def __init__(self, name: str) -> None:
        """Initialize an idle pump.

        :param name: Label used for the thread name.
        """
        self._queue = queue.SimpleQueue()
        self._thread = threading.Thread(target=self._run, name=f"conduit-{name}-events", daemon=True)
        self._lock = threading.Lock()
        self._is_stopped = False

    def start(self) -> None:
        self._thread.start()

    def is_current_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def submit(self, listeners: list[Listener], payload: dict[str, object]) -> bool:
        """Queue one delivery.

        :param listeners: Listeners to run in order.
        :param payload: Event payload.
        :returns: ``False`` when the pump has stopped and the delivery was dropped.
        """
        with self._lock:
            if self._is_stopped is True:
                return False
            self._queue.put((listeners, payload))
            return True

    def stop(self) -> None:
        """Run every queued delivery, then stop the thread."""
        with self._lock:
            if self._is_stopped is True:
                return
            self._is_stopped = True
            self._queue.put(None)
        is_running: bool = self._thread.is_alive()
        if is_running is True and self.is_current_thread() is False:
            self._thread.join(timeout=_PUMP_JOIN_TIMEOUT_SECONDS)

    def _run(self) -> None:
        while True:
            item: tuple[list[Listener], dict[str, object]] | None = self._queue.get()
            if item is None:
                return
            listeners, payload = item
            for listener in listeners:
                _run_listener(listener, payload)


class Channel:
    """One engine connection and the remote objects living on it.

    The channel is the explicit context every proxy is constructed with.
    Inbound frames are processed sequentially on the transport's reader thread;
    callers on any other thread suspend in :meth:`call`.
    """

    _transport: Transport
    _decoder: FrameDecoder
    _dispatcher: Dispatcher
    _registry: ObjectRegistry
    _default_timeout: float | None
    _event_dispatch: EventDispatchMode
    _pump: _EventPump | None
    _on_protocol_error: ProtocolErrorCallback | None
    _lock: threading.Lock
    _is_started: bool
    _close_reason: ChannelClosedError | None
    _closed_event: threading.Event
    _protocol_error_count: int

    def __init__(
        self,
        transport: Transport,
        default_timeout: float | None = None,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        event_dispatch: str = "thread",
        on_protocol_error: ProtocolErrorCallback | None = None,
    ) -> None:
        """Initialize an unstarted channel.

        :param transport: Unstarted transport to the engine; the channel takes ownership.
        :param default_timeout: Deadline applied to calls that pass no timeout.
        :param max_frame_bytes: Largest accepted inbound frame.
        :param event_dispatch: ``thread`` runs listeners on an event thread, ``inline`` on the reader.
        :param on_protocol_error: Optional callback for every reported protocol error.
        """
        self._transport = transport
        self._decoder = FrameDecoder(max_frame_bytes=max_frame_bytes)
        self._dispatcher = Dispatcher(
            self._send_request,
            self._route_event,
            protocol_error_sink=self._report_protocol_error,
            result_transform=self._resolve_result,
        )
        self._registry = ObjectRegistry(self)
        self._default_timeout = default_timeout
        self._event_dispatch = _validate_event_dispatch(event_dispatch)
        self._pump = None
        if self._event_dispatch == "thread":
            self._pump = _EventPump(transport.name)
        self._on_protocol_error = on_protocol_error
        self._lock = threading.Lock()
        self._is_started = False
        self._close_reason = None
        self._closed_event = threading.Event()
        self._protocol_error_count = 0

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def registry(self) -> ObjectRegistry:
        return self._registry

    @property
    def is_closed(self) -> bool:
        """Report whether the channel has been torn down.

        :returns: ``True`` after teardown.
        """
        with self._lock:
            return self._close_reason is not None

    @property
    def close_reason(self) -> ChannelClosedError | None:
        """Return the error pending calls were failed with.

        :returns: Teardown error or ``None`` while open.
        """
        with self._lock:
            return self._close_reason

    @property
    def pending_count(self) -> int:
        return self._dispatcher.pending_count

    @property
    def protocol_error_count(self) -> int:
        """Return how many protocol errors were reported on this channel.

        :returns: Error count.
        """
        with self._lock:
            return self._protocol_error_count

    def start(self) -> None:
        """Start reading from the transport.

        :raises ChannelClosedError: If the channel was already closed.
        :raises TransportError: If the transport cannot be started.
        """
        with self._lock:
            if self._close_reason is not None:
                raise ChannelClosedError(f"Channel is closed: {self._close_reason}")
            if self._is_started is True:
                return
            self._is_started = True
        if self._pump is not None:
            self._pump.start()
        try:
            self._transport.start(self._on_data, self._on_transport_closed)
        except TransportError as exc:
            closed: ChannelClosedError = ChannelClosedError(f"Transport failed to start: {exc}")
            closed.__cause__ = exc
            self._teardown(closed)
            raise

    def begin_call(
        self,
        guid: str,
        method: str,
        params: dict[str, object] | None = None,
    ) -> PendingCall:
        """Send one call without waiting for its result.

        :param guid: Target handle.
        :param method: Method name.
        :param params: Method parameters; proxies are sent as handle references.
        :returns: Pending call.
        """
        return self._dispatcher.begin_call(guid, method, params)

    def call(
        self,
        guid: str,
        method: str,
        params: dict[str, object] | None = None,
        timeout: float | None = None,
    ) -> dict[str, object]:
        """Send one call and wait for its result.

        Handle references of live objects in the result are replaced by proxies.

        :param guid: Target handle.
        :param method: Method name.
        :param params: Method parameters; proxies are sent as handle references.
        :param timeout: Deadline in seconds; defaults to the channel's default timeout.
        :returns: Result payload.
        :raises UnsupportedInteractionError: If called from the channel's read loop.
        :raises CallTimeoutError: If the deadline expires first.
        :raises RemoteCallError: If the engine answers with an error.
        :raises ChannelClosedError: If the channel is or becomes torn down.
        """
        if self._transport.is_reader_thread() is True:
            raise UnsupportedInteractionError(
                f"Blocking call to {method} from the channel read loop would deadlock; use begin_call"
            )
        effective_timeout: float | None = timeout
        if effective_timeout is None:
            effective_timeout = self._default_timeout
        pending: PendingCall = self._dispatcher.begin_call(guid, method, params)
        return pending.result(timeout=effective_timeout)

    def initialize(self, timeout: float | None = None) -> Playwright:
        """Run the engine handshake and return the top-level object.

        :param timeout: Optional deadline in seconds.
        :returns: Top-level proxy named by the handshake result.
        :raises ProtocolError: If the result does not reference a top-level object.
        """
        result: dict[str, object] = self.call(ROOT_GUID, "initialize", {"sdkLanguage": "python"}, timeout)
        playwright: object = result.get("playwright")
        if isinstance(playwright, Playwright) is False:
            raise ProtocolError(f"initialize did not return a Playwright object: {playwright!r}")
        return playwright

    def resolve(self, handle: str) -> ChannelOwner | HandleNotFound:
        return self._registry.resolve(handle)

    def lookup(self, handle: str) -> ChannelOwner | None:
        """Return the live proxy for ``handle``.

        :param handle: Handle to look up.
        :returns: Proxy or ``None``.
        """
        resolved: ChannelOwner | HandleNotFound = self._registry.resolve(handle)
        if isinstance(resolved, HandleNotFound) is True:
            return None
        return resolved

    def children_of(self, handle: str) -> list[ChannelOwner]:
        return self._registry.children_of(handle)

    def schedule_listeners(self, listeners: list[Listener], payload: dict[str, object]) -> None:
        """Deliver ``payload`` to ``listeners`` in order.

        :param listeners: Listener snapshot.
        :param payload: Event payload.
        """
        pump: _EventPump | None = self._pump
        if pump is None:
            for listener in listeners:
                _run_listener(listener, payload)
            return
        accepted: bool = pump.submit(listeners, payload)
        if accepted is False:
            logger.debug("Dropping delivery to %d listeners after teardown", len(listeners))

    def run_listeners(self, listeners: list[Listener], payload: dict[str, object]) -> None:
        """Run ``listeners`` in order on the calling thread.

        Used for ``close`` notifications, which must finish before the proxy
        leaves the registry. On the reader thread the listeners cannot block on
        channel calls.

        :param listeners: Listener snapshot.
        :param payload: Event payload.
        """
        for listener in listeners:
            _run_listener(listener, payload)

    def check_blocking_wait(self) -> None:
        """Reject waits that would stall inbound processing.

        :raises UnsupportedInteractionError: On the reader or event thread.
        """
        if self._transport.is_reader_thread() is True:
            raise UnsupportedInteractionError("Cannot wait for events on the channel read loop")
        pump: _EventPump | None = self._pump
        if pump is not None and pump.is_current_thread() is True:
            raise UnsupportedInteractionError("Cannot wait for events from inside an event listener")

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the channel is torn down.

        :param timeout: Optional deadline in seconds.
        :returns: ``True`` when the channel closed within the deadline.
        """
        return self._closed_event.wait(timeout)

    def close(self) -> None:
        """Tear the channel down. Safe to call repeatedly."""
        self._teardown(ChannelClosedError("Channel closed"))

    def __enter__(self) -> "Channel":
        self.start()
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()

    def _send_request(self, request: Request) -> None:
        data: bytes = encode_message(request, default=_encode_reference)
        self._transport.send(data)

    def _resolve_references(self, value: object) -> object:
        """Replace ``{"guid": handle}`` references to live objects with proxies.

        :param value: Decoded JSON value.
        :returns: Value with references resolved.
        """
        if isinstance(value, list) is True:
            return [self._resolve_references(item) for item in value]
        if isinstance(value, dict) is False:
            return value

        guid: object = value.get("guid")
        if len(value) == 1 and isinstance(guid, str) is True:
            owner: ChannelOwner | None = self.lookup(guid)
            if owner is not None:
                return owner
            logger.debug("Result references handle %r that is not live", guid)
            return value
        return {key: self._resolve_references(item) for key, item in value.items()}

    def _resolve_result(self, result: dict[str, object]) -> dict[str, object]:
        return {key: self._resolve_references(item) for key, item in result.items()}

    def _on_data(self, chunk: bytes) -> None:
        """Decode and process inbound bytes on the reader thread.

        :param chunk: Raw inbound bytes.
        """
        self._decoder.feed(chunk)
        for frame in self._decoder:
            if self.is_closed is True:
                return
            self._process_frame(frame)

    def _process_frame(self, frame: DecodedFrame) -> None:
        if isinstance(frame.error, MalformedResponseError) is True:
            self._dispatcher.on_malformed_response(frame.error)
            return
        if frame.error is not None:
            self._report_protocol_error(frame.error)
            return
        if frame.message is not None:
            self._dispatcher.on_message(frame.message)

    def _route_event(self, event: Event) -> None:
        """Apply lifecycle events and forward the rest to the addressed proxy.

        :param event: Inbound event.
        """
        if event.method == CREATE_METHOD:
            self._handle_create(event)
            return
        if event.method == DISPOSE_METHOD:
            reason: object = event.params.get("reason")
            self._registry.dispose(event.guid, reason if isinstance(reason, str) is True else None)
            return

        target: ChannelOwner | HandleNotFound = self._registry.resolve(event.guid)
        if isinstance(target, HandleNotFound) is True:
            logger.debug("Dropping %r event for %r (retired=%s)", event.method, event.guid, target.retired)
            return
        params: dict[str, object] = self._resolve_result(event.params)
        delivered: bool = target._emit(event.method, params)
        if delivered is False:
            logger.debug("Dropping %r event for disposed %r", event.method, event.guid)

    def _handle_create(self, event: Event) -> None:
        """Register the object announced by a creation event.

        :param event: ``__create__`` event addressed to the parent handle.
        """
        parent_handle: str | None = event.guid
        if parent_handle == ROOT_GUID:
            parent_handle = None
        handle: object = event.params.get("guid")
        kind: object = event.params.get("type")
        initializer: object = event.params.get("initializer", {})
        try:
            if isinstance(handle, str) is False:
                raise ProtocolError(f"Creation event carries no handle: {event.params!r}")
            if isinstance(initializer, dict) is False:
                raise ProtocolError(f"Initializer for {handle!r} must be an object")
            self._registry.register(handle, parent_handle, kind, initializer)
        except ProtocolError as exc:
            self._report_protocol_error(exc)

    def _report_protocol_error(self, error: ProtocolError) -> None:
        """Log one protocol error and keep processing.

        :param error: Error to report.
        """
        with self._lock:
            self._protocol_error_count += 1
        logger.warning("Protocol error on %s: %s", self._transport.name, error)
        callback: ProtocolErrorCallback | None = self._on_protocol_error
        if callback is None:
            return
        try:
            callback(error)
        except Exception:
            logger.exception("Protocol error callback failed")

    def _on_transport_closed(self, error: TransportError | None) -> None:
        """Tear down after the stream ended or failed.

        :param error: Stream failure, or ``None`` for a clean end of stream.
        """
        if error is None:
            closed: ChannelClosedError = ChannelClosedError("Engine closed the connection")
        else:
            logger.warning("Transport %s failed: %s", self._transport.name, error)
            closed = ChannelClosedError(f"Transport failed: {error}")
            closed.__cause__ = error
        self._teardown(closed)

    def _teardown(self, error: ChannelClosedError) -> None:
        """Fail pending calls, release the transport, then dispose every proxy. Runs once.

        Proxies are disposed only after the reader has stopped, so no creation
        event can register an object behind the sweep.

        :param error: Error delivered to pending callers.
        """
        with self._lock:
            if self._close_reason is not None:
                return
            self._close_reason = error

        failed_count: int = self._dispatcher.fail_all(error)
        try:
            self._transport.close()
        finally:
            disposed_count: int = len(self._registry.dispose_all(str(error)))
            if self._pump is not None:
                self._pump.stop()
            self._closed_event.set()
        logger.info(
            "Channel on %s closed: %s (%d pending calls failed, %d objects disposed)",
            self._transport.name,
            error,
            failed_count,
            disposed_count,
        )
