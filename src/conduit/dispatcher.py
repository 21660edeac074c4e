"""Correlate requests with responses and hand events to the router."""

import concurrent.futures
import logging
import threading
from collections.abc import Callable

from conduit.codec import Event
from conduit.codec import Message
from conduit.codec import Request
from conduit.codec import Response
from conduit.errors import CallTimeoutError
from conduit.errors import ChannelClosedError
from conduit.errors import MalformedResponseError
from conduit.errors import ProtocolError
from conduit.errors import RemoteCallError
from conduit.errors import TransportError

logger = logging.getLogger(__name__)

SendRequest = Callable[[Request], None]
EventSink = Callable[[Event], None]
ProtocolErrorSink = Callable[[ProtocolError], None]
ResultTransform = Callable[[dict[str, object]], dict[str, object]]
DEFAULT_MAX_ABANDONED_IDS: int = 1024


def _identity_transform(result: dict[str, object]) -> dict[str, object]:
    return result


def _report_by_logging(error: ProtocolError) -> None:
    logger.warning("Protocol error: %s", error)


def _remote_error_from_payload(method: str, payload: dict[str, object]) -> RemoteCallError:
    """Build a typed failure from an engine error payload.

    :param method: Method of the failed call.
    :param payload: ``error`` object from the response.
    :returns: Remote call error.
    """
    name_obj: object = payload.get("name", "Error")
    message_obj: object = payload.get("message", "")
    stack_obj: object = payload.get("stack", "")

    remote_name: str = "Error"
    if isinstance(name_obj, str) is True:
        remote_name = name_obj
    remote_message: str = ""
    if isinstance(message_obj, str) is True:
        remote_message = message_obj
    remote_stack: str = ""
    if isinstance(stack_obj, str) is True:
        remote_stack = stack_obj
    return RemoteCallError(method, remote_name, remote_message, remote_stack)


class PendingCall:
    """One in-flight request awaiting its correlated response."""

    _dispatcher: "Dispatcher"
    _request_id: int
    _guid: str
    _method: str
    _future: "concurrent.futures.Future[dict[str, object]]"

    def __init__(self, dispatcher: "Dispatcher", request_id: int, guid: str, method: str) -> None:
        """Initialize a pending call.

        :param dispatcher: Dispatcher holding the waiter entry.
        :param request_id: Correlation id.
        :param guid: Target handle.
        :param method: Method name.
        """
        self._dispatcher = dispatcher
        self._request_id = request_id
        self._guid = guid
        self._method = method
        self._future = concurrent.futures.Future()

    @property
    def request_id(self) -> int:
        """Return the correlation id.

        :returns: Correlation id.
        """
        return self._request_id

    @property
    def guid(self) -> str:
        """Return the target handle.

        :returns: Target handle.
        """
        return self._guid

    @property
    def method(self) -> str:
        """Return the method name.

        :returns: Method name.
        """
        return self._method

    def done(self) -> bool:
        """Report whether the call has settled.

        :returns: ``True`` once resolved, failed or cancelled.
        """
        return self._future.done()

    def result(self, timeout: float | None = None) -> dict[str, object]:
        """Wait for the call to settle.

        :param timeout: Optional deadline in seconds; ``None`` waits indefinitely.
        :returns: Result payload.
        :raises CallTimeoutError: If the deadline expires first.
        :raises RemoteCallError: If the engine answered with an error.
        :raises ChannelClosedError: If the channel was torn down.
        :raises concurrent.futures.CancelledError: If the call was cancelled.
        """
        try:
            return self._future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            removed: bool = self._dispatcher.abandon(self._request_id)
            if removed is False:
                return self._future.result()
            raise CallTimeoutError(
                f"{self._method} on {self._guid!r} timed out after {timeout} seconds"
            ) from None

    def cancel(self) -> bool:
        """Abandon interest in this call; a late response is discarded.

        :returns: ``True`` when the call was still pending.
        """
        removed: bool = self._dispatcher.abandon(self._request_id)
        if removed is True:
            self._future.cancel()
        return removed

    def add_done_callback(self, callback: Callable[["PendingCall"], None]) -> None:
        """Run ``callback`` once the call settles.

        :param callback: Called with this pending call.
        """
        self._future.add_done_callback(lambda _future: callback(self))

    def _resolve(self, result: dict[str, object]) -> None:
        self._future.set_result(result)

    def _fail(self, error: BaseException) -> None:
        self._future.set_exception(error)


class Dispatcher:
    """Own the pending call table and route inbound messages.

    Every table mutation happens under one lock held only for the lookup,
    insert or remove. Waiters are settled outside the lock.
    """

    _send_request: SendRequest
    _event_sink: EventSink
    _protocol_error_sink: ProtocolErrorSink
    _result_transform: ResultTransform
    _lock: threading.Lock
    _pending: dict[int, PendingCall]
    _abandoned: dict[int, None]
    _max_abandoned: int
    _next_request_id: int
    _closed_error: ChannelClosedError | None

    def __init__(
        self,
        send_request: SendRequest,
        event_sink: EventSink,
        protocol_error_sink: ProtocolErrorSink | None = None,
        result_transform: ResultTransform | None = None,
        max_abandoned: int = DEFAULT_MAX_ABANDONED_IDS,
    ) -> None:
        """Initialize a dispatcher.

        :param send_request: Frames and writes one request.
        :param event_sink: Receives every inbound event, in arrival order.
        :param protocol_error_sink: Receives protocol errors; defaults to logging.
        :param result_transform: Applied to success payloads before waiters resolve.
        :param max_abandoned: How many timed-out or cancelled ids to remember; the oldest is
            forgotten first, and a response for a forgotten id is reported as unknown.
        :raises ValueError: If ``max_abandoned`` is less than ``1``.
        """
        if max_abandoned < 1:
            raise ValueError("max_abandoned must be >= 1")
        self._send_request = send_request
        self._event_sink = event_sink
        self._protocol_error_sink = _report_by_logging
        if protocol_error_sink is not None:
            self._protocol_error_sink = protocol_error_sink
        self._result_transform = _identity_transform
        if result_transform is not None:
            self._result_transform = result_transform
        self._lock = threading.Lock()
        self._pending = {}
        self._abandoned = {}
        self._max_abandoned = max_abandoned
        self._next_request_id = 1
        self._closed_error = None

    @property
    def pending_count(self) -> int:
        """Return the number of calls awaiting a response.

        :returns: Pending call count.
        """
        with self._lock:
            return len(self._pending)

    @property
    def is_closed(self) -> bool:
        """Report whether :meth:`fail_all` has run.

        :returns: ``True`` after teardown.
        """
        with self._lock:
            return self._closed_error is not None

    def begin_call(self, guid: str, method: str, params: dict[str, object] | None = None) -> PendingCall:
        """Send one request and return its pending handle without waiting.

        :param guid: Target handle.
        :param method: Method name.
        :param params: Method parameters.
        :returns: Pending call.
        :raises ChannelClosedError: If the channel is torn down or the write fails.
        """
        with self._lock:
            closed_error: ChannelClosedError | None = self._closed_error
            if closed_error is not None:
                raise ChannelClosedError(f"Cannot call {method}: {closed_error}")
            request_id: int = self._next_request_id
            self._next_request_id += 1
            pending: PendingCall = PendingCall(self, request_id, guid, method)
            self._pending[request_id] = pending

        request: Request = Request(id=request_id, guid=guid, method=method, params=dict(params or {}))
        try:
            self._send_request(request)
        except TransportError as exc:
            removed: bool = self._discard(request_id)
            if removed is True:
                raise ChannelClosedError(f"Cannot call {method}: transport failed") from exc
        except Exception:
            self._discard(request_id)
            raise
        return pending

    def call(
        self,
        guid: str,
        method: str,
        params: dict[str, object] | None = None,
        timeout: float | None = None,
    ) -> dict[str, object]:
        """Send one request and wait for its result.

        :param guid: Target handle.
        :param method: Method name.
        :param params: Method parameters.
        :param timeout: Optional deadline in seconds.
        :returns: Result payload.
        """
        pending: PendingCall = self.begin_call(guid, method, params)
        return pending.result(timeout=timeout)

    def abandon(self, request_id: int) -> bool:
        """Remove a waiter whose caller lost interest.

        A late response for an abandoned id is discarded without error.

        :param request_id: Correlation id.
        :returns: ``True`` when the waiter was still pending.
        """
        with self._lock:
            pending: PendingCall | None = self._pending.pop(request_id, None)
            if pending is None:
                return False
            self._abandoned[request_id] = None
            if len(self._abandoned) > self._max_abandoned:
                oldest: int = next(iter(self._abandoned))
                del self._abandoned[oldest]
            return True

    def _discard(self, request_id: int) -> bool:
        with self._lock:
            pending: PendingCall | None = self._pending.pop(request_id, None)
            return pending is not None

    def on_message(self, message: Message) -> None:
        """Route one inbound message.

        :param message: Decoded message from the reader thread.
        """
        if isinstance(message, Response) is True:
            self._on_response(message)
            return
        if isinstance(message, Event) is True:
            self._event_sink(message)
            return
        self._protocol_error_sink(
            ProtocolError(f"Engine sent a request ({message.method!r}); requests only flow to the engine")
        )

    def on_malformed_response(self, error: MalformedResponseError) -> None:
        """Fail the waiter whose response could not be decoded.

        :param error: Decode failure carrying the response id.
        """
        self._protocol_error_sink(error)
        with self._lock:
            pending: PendingCall | None = self._pending.pop(error.request_id, None)
            if pending is None:
                self._abandoned.pop(error.request_id, None)
        if pending is not None:
            pending._fail(error)

    def _on_response(self, response: Response) -> None:
        """Settle the waiter matching ``response``.

        :param response: Inbound response.
        """
        was_abandoned: bool = False
        with self._lock:
            pending: PendingCall | None = self._pending.pop(response.id, None)
            if pending is None:
                was_abandoned = response.id in self._abandoned
                if was_abandoned is True:
                    del self._abandoned[response.id]
        if pending is None:
            if was_abandoned is True:
                logger.debug("Discarding late response for abandoned request %d", response.id)
                return
            self._protocol_error_sink(ProtocolError(f"Response for unknown request id {response.id}"))
            return

        if response.error is not None:
            pending._fail(_remote_error_from_payload(pending.method, response.error))
            return

        result: dict[str, object] = {} if response.result is None else response.result
        try:
            transformed: dict[str, object] = self._result_transform(result)
        except Exception as exc:
            pending._fail(exc)
            return
        pending._resolve(transformed)

    def fail_all(self, error: ChannelClosedError) -> int:
        """Fail every pending waiter and refuse further calls.

        :param error: Error delivered to each waiter.
        :returns: Number of waiters failed by this call.
        """
        with self._lock:
            if self._closed_error is None:
                self._closed_error = error
            failed: list[PendingCall] = list(self._pending.values())
            self._pending.clear()
            self._abandoned.clear()

        for pending in failed:
            pending._fail(ChannelClosedError(f"{pending.method} on {pending.guid!r} failed: {error}"))
        if len(failed) > 0:
            logger.debug("Failed %d pending calls on teardown", len(failed))
        return len(failed)
