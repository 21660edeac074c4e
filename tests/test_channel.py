"""Channel behaviour against a scripted engine peer."""

import concurrent.futures
import logging
import socket
import threading

import pytest

from conduit.channel import Channel
from conduit.dispatcher import PendingCall
from conduit.errors import CallTimeoutError
from conduit.errors import ChannelClosedError
from conduit.errors import MalformedResponseError
from conduit.errors import ObjectDisposedError
from conduit.errors import ProtocolError
from conduit.errors import RemoteCallError
from conduit.errors import UnknownParentError
from conduit.errors import UnsupportedInteractionError
from conduit.objects import Frame
from conduit.objects import Page
from conduit.objects import Playwright
from conduit.objects import Response
from conduit.owner import ChannelOwner
from conduit.owner import Listener
from conduit.owner import OwnerState
from conduit.registry import HandleNotFound
from conduit.transport import SocketTransport
from tests.fixtures.scripted_engine import READ_TIMEOUT_SECONDS
from tests.fixtures.scripted_engine import ScriptedEngine
from tests.fixtures.scripted_engine import open_scripted_channel
from tests.fixtures.scripted_engine import sync_channel


def _live(channel: Channel, handle: str) -> ChannelOwner:
    """Resolve a handle that the test expects to be live.

    :param channel: Channel under test.
    :param handle: Handle to resolve.
    :returns: Live proxy.
    """
    resolved: ChannelOwner | HandleNotFound = channel.resolve(handle)
    assert isinstance(resolved, ChannelOwner), resolved
    return resolved


def _create_page(channel: Channel, engine: ScriptedEngine, handle: str = "p1") -> Page:
    engine.create("", "Page", handle, {"url": "about:blank"})
    sync_channel(channel, engine)
    page: ChannelOwner = _live(channel, handle)
    assert isinstance(page, Page)
    return page


def test_call_returns_correlated_result() -> None:
    """A blocking call suspends until the response with its id arrives."""
    channel, engine = open_scripted_channel()
    try:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
            future: concurrent.futures.Future[dict[str, object]] = executor.submit(
                channel.call, "h1", "goto", {"url": "https://example.com"}
            )
            request: dict[str, object] = engine.read_message()
            assert request == {
                "id": 1,
                "guid": "h1",
                "method": "goto",
                "params": {"url": "https://example.com"},
            }
            engine.respond(1, {"status": 200})
            assert future.result(timeout=READ_TIMEOUT_SECONDS) == {"status": 200}
    finally:
        channel.close()
        engine.close()


def test_dispose_event_cascades_to_descendants() -> None:
    """Disposing a parent handle disposes its children and blocks further calls."""
    channel, engine = open_scripted_channel()
    try:
        engine.create("", "Page", "h2")
        engine.create("h2", "Frame", "h3")
        sync_channel(channel, engine)
        parent: ChannelOwner = _live(channel, "h2")
        child: ChannelOwner = _live(channel, "h3")
        assert isinstance(child, Frame)
        assert child.parent is parent

        engine.dispose("h2", reason="page closed")
        sync_channel(channel, engine)

        assert parent.state is OwnerState.DISPOSED
        assert child.state is OwnerState.DISPOSED
        for owner in (parent, child):
            with pytest.raises(ObjectDisposedError):
                owner.invoke("evaluate", {"expression": "1"})
        assert isinstance(channel.resolve("h3"), HandleNotFound)
    finally:
        channel.close()
        engine.close()


def test_stream_end_fails_every_pending_call() -> None:
    """Pending callers see ChannelClosedError when the engine goes away."""
    channel, engine = open_scripted_channel()
    try:
        for _ in range(4):
            sync_channel(channel, engine)
        call_a: PendingCall = channel.begin_call("h1", "callA")
        call_b: PendingCall = channel.begin_call("h1", "callB")
        assert call_a.request_id == 5
        assert call_b.request_id == 6
        assert [engine.read_message()["id"] for _ in range(2)] == [5, 6]

        engine.close()

        for pending in (call_a, call_b):
            with pytest.raises(ChannelClosedError):
                pending.result(timeout=READ_TIMEOUT_SECONDS)
        assert channel.wait_closed(timeout=READ_TIMEOUT_SECONDS) is True
        assert channel.is_closed is True
        with pytest.raises(ChannelClosedError):
            channel.call("h1", "late")
    finally:
        channel.close()


def test_response_for_unknown_id_is_reported_and_processing_continues() -> None:
    reported: list[ProtocolError] = []
    channel, engine = open_scripted_channel(on_protocol_error=reported.append)
    try:
        engine.respond(42, {})
        engine.create("", "Page", "p1")
        sync_channel(channel, engine)

        assert len(reported) == 1
        assert "42" in str(reported[0])
        assert channel.protocol_error_count == 1
        assert "p1" in channel.registry
        assert channel.is_closed is False
    finally:
        channel.close()
        engine.close()


def test_malformed_frame_is_isolated(caplog: pytest.LogCaptureFixture) -> None:
    channel, engine = open_scripted_channel()
    try:
        with caplog.at_level(logging.WARNING, logger="conduit.channel"):
            engine.send_raw(b'{"guid": "p1", "method": \n')
            engine.create("", "Page", "p1")
            sync_channel(channel, engine)

        assert channel.protocol_error_count == 1
        assert "p1" in channel.registry
        assert any("Protocol error" in record.getMessage() for record in caplog.records)
    finally:
        channel.close()
        engine.close()


def test_unknown_parent_and_unknown_kind_are_reported() -> None:
    reported: list[ProtocolError] = []
    channel, engine = open_scripted_channel(on_protocol_error=reported.append)
    try:
        engine.create("ghost", "Frame", "f1")
        engine.create("", "ServiceWorker", "w1")
        sync_channel(channel, engine)

        assert len(reported) == 2
        assert isinstance(reported[0], UnknownParentError)
        assert "f1" not in channel.registry
        assert "w1" not in channel.registry
    finally:
        channel.close()
        engine.close()


def test_reused_handle_is_reported() -> None:
    reported: list[ProtocolError] = []
    channel, engine = open_scripted_channel(on_protocol_error=reported.append)
    try:
        page: Page = _create_page(channel, engine)
        engine.create("", "Page", "p1")
        engine.dispose("p1")
        engine.create("", "Page", "p1")
        sync_channel(channel, engine)

        assert len(reported) == 2
        assert page.is_disposed is True
        assert "p1" not in channel.registry
    finally:
        channel.close()
        engine.close()


def test_events_reach_listeners_in_wire_order() -> None:
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        other: Page = _create_page(channel, engine, "p2")
        seen: list[tuple[str, object]] = []
        done: threading.Event = threading.Event()

        def record(name: str) -> Listener:
            def listener(payload: dict[str, object]) -> None:
                seen.append((name, payload["index"]))
                if name == "p2" and payload["index"] == 19:
                    done.set()

            return listener

        page.on("tick", record("p1"))
        other.on("tick", record("p2"))
        for index in range(20):
            engine.emit("p1", "tick", {"index": index})
            engine.emit("p2", "tick", {"index": index})

        assert done.wait(READ_TIMEOUT_SECONDS) is True
        assert [index for name, index in seen if name == "p1"] == list(range(20))
        assert [index for name, index in seen if name == "p2"] == list(range(20))
    finally:
        channel.close()
        engine.close()


def test_events_for_unknown_or_disposed_handles_are_dropped() -> None:
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        seen: list[dict[str, object]] = []
        page.on("load", seen.append)
        engine.emit("nobody", "load", {})
        engine.dispose("p1")
        engine.emit("p1", "load", {})
        sync_channel(channel, engine)

        assert seen == []
        assert channel.protocol_error_count == 0
    finally:
        channel.close()
        engine.close()


def test_handle_references_resolve_to_proxies() -> None:
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        engine.create("p1", "Response", "r1", {"url": "https://a.test", "status": 201})
        sync_channel(channel, engine)

        pending: PendingCall = channel.begin_call("p1", "goto", {"url": "https://a.test"})
        request: dict[str, object] = engine.read_message()
        engine.respond(
            request["id"],
            {"response": {"guid": "r1"}, "missing": {"guid": "gone"}, "items": [{"guid": "p1"}]},
        )
        result: dict[str, object] = pending.result(timeout=READ_TIMEOUT_SECONDS)

        response: object = result["response"]
        assert isinstance(response, Response)
        assert response.status == 201
        assert response.ok is True
        assert result["missing"] == {"guid": "gone"}
        assert result["items"] == [page]
    finally:
        channel.close()
        engine.close()


def test_proxies_in_params_are_sent_as_references() -> None:
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        channel.begin_call("p1", "adopt", {"target": page, "list": [page]})
        request: dict[str, object] = engine.read_message()
        assert request["params"] == {"target": {"guid": "p1"}, "list": [{"guid": "p1"}]}
    finally:
        channel.close()
        engine.close()


def test_page_proxy_goto_and_navigation_state() -> None:
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
            future: concurrent.futures.Future[Response | None] = executor.submit(page.goto, "https://b.test/")
            request: dict[str, object] = engine.read_message()
            assert request["method"] == "goto"
            engine.create("p1", "Response", "r1", {"url": "https://b.test/", "status": 200})
            engine.emit("p1", "navigated", {"url": "https://b.test/"})
            engine.respond(request["id"], {"response": {"guid": "r1"}})
            response: Response | None = future.result(timeout=READ_TIMEOUT_SECONDS)

        assert response is not None
        assert response.url == "https://b.test/"
        assert page.url == "https://b.test/"
    finally:
        channel.close()
        engine.close()


def test_listener_may_call_back_into_the_channel() -> None:
    """With threaded delivery a listener can issue blocking calls."""
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        titles: list[str] = []
        done: threading.Event = threading.Event()

        def on_load(payload: dict[str, object]) -> None:
            titles.append(page.title(timeout=READ_TIMEOUT_SECONDS))
            done.set()

        page.on("load", on_load)
        engine.emit("p1", "load", {})
        request: dict[str, object] = engine.read_message()
        assert request["method"] == "title"
        engine.respond(request["id"], {"value": "Example"})

        assert done.wait(READ_TIMEOUT_SECONDS) is True
        assert titles == ["Example"]
    finally:
        channel.close()
        engine.close()


def test_inline_listener_cannot_block_on_the_read_loop() -> None:
    channel, engine = open_scripted_channel(event_dispatch="inline")
    try:
        page: Page = _create_page(channel, engine)
        errors: list[Exception] = []

        def on_load(payload: dict[str, object]) -> None:
            try:
                page.title()
            except UnsupportedInteractionError as exc:
                errors.append(exc)

        page.on("load", on_load)
        engine.emit("p1", "load", {})
        sync_channel(channel, engine)

        assert len(errors) == 1
        assert channel.pending_count == 0
    finally:
        channel.close()
        engine.close()


def test_wait_for_event_from_listener_is_rejected() -> None:
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        errors: list[Exception] = []
        done: threading.Event = threading.Event()

        def on_load(payload: dict[str, object]) -> None:
            try:
                page.wait_for_event("navigated", timeout=1)
            except UnsupportedInteractionError as exc:
                errors.append(exc)
            done.set()

        page.on("load", on_load)
        engine.emit("p1", "load", {})
        assert done.wait(READ_TIMEOUT_SECONDS) is True
        assert len(errors) == 1
    finally:
        channel.close()
        engine.close()


def test_remote_error_surfaces_as_remote_call_error() -> None:
    channel, engine = open_scripted_channel()
    try:
        pending: PendingCall = channel.begin_call("p1", "goto", {"url": "error:dns"})
        request: dict[str, object] = engine.read_message()
        engine.fail(request["id"], "net::ERR_NAME_NOT_RESOLVED", name="NavigationError")

        with pytest.raises(RemoteCallError) as excinfo:
            pending.result(timeout=READ_TIMEOUT_SECONDS)
        assert excinfo.value.remote_name == "NavigationError"
        assert channel.is_closed is False
    finally:
        channel.close()
        engine.close()


def test_timeout_then_late_response_is_discarded() -> None:
    channel, engine = open_scripted_channel()
    try:
        with pytest.raises(CallTimeoutError):
            channel.call("p1", "slow", timeout=0.05)
        request: dict[str, object] = engine.read_message()
        engine.respond(request["id"], {"value": "late"})
        sync_channel(channel, engine)

        assert channel.protocol_error_count == 0
        assert channel.pending_count == 0
    finally:
        channel.close()
        engine.close()


def test_default_timeout_applies_when_call_passes_none() -> None:
    channel, engine = open_scripted_channel(default_timeout=0.05)
    try:
        with pytest.raises(CallTimeoutError):
            channel.call("p1", "slow")
    finally:
        channel.close()
        engine.close()


def test_cancelled_call_ignores_its_response() -> None:
    channel, engine = open_scripted_channel()
    try:
        pending: PendingCall = channel.begin_call("p1", "slow")
        assert pending.cancel() is True
        request: dict[str, object] = engine.read_message()
        engine.respond(request["id"])
        sync_channel(channel, engine)
        assert channel.protocol_error_count == 0
    finally:
        channel.close()
        engine.close()


def test_concurrent_callers_each_get_their_own_result() -> None:
    """Responses answered in reverse order still reach the right callers."""
    channel, engine = open_scripted_channel()
    caller_count: int = 20
    try:
        with concurrent.futures.ThreadPoolExecutor(max_workers=caller_count) as executor:
            futures: list[concurrent.futures.Future[dict[str, object]]] = [
                executor.submit(channel.call, "p1", "echo", {"n": index}, READ_TIMEOUT_SECONDS)
                for index in range(caller_count)
            ]
            requests: list[dict[str, object]] = [engine.read_message() for _ in range(caller_count)]
            for request in reversed(requests):
                engine.respond(request["id"], {"n": request["params"]["n"]})

            results: list[dict[str, object]] = [future.result(timeout=READ_TIMEOUT_SECONDS) for future in futures]

        assert results == [{"n": index} for index in range(caller_count)]
        assert len({request["id"] for request in requests}) == caller_count
    finally:
        channel.close()
        engine.close()


def test_close_is_idempotent_and_disposes_objects() -> None:
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        closes: list[dict[str, object]] = []
        closed: threading.Event = threading.Event()

        def on_close(payload: dict[str, object]) -> None:
            closes.append(payload)
            closed.set()

        page.on("close", on_close)
        pending: PendingCall = channel.begin_call("p1", "slow")
        engine.read_message()

        channel.close()
        channel.close()

        assert closed.wait(READ_TIMEOUT_SECONDS) is True
        assert len(closes) == 1
        assert closes[0]["guid"] == "p1"
        assert page.is_disposed is True
        assert len(channel.registry) == 0
        with pytest.raises(ChannelClosedError):
            pending.result(timeout=READ_TIMEOUT_SECONDS)
        assert str(channel.close_reason) == "Channel closed"
    finally:
        engine.close()


def test_initialize_returns_top_level_object() -> None:
    channel, engine = open_scripted_channel()
    try:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
            future: concurrent.futures.Future[Playwright] = executor.submit(channel.initialize, READ_TIMEOUT_SECONDS)
            request: dict[str, object] = engine.read_message()
            assert request["guid"] == ""
            assert request["method"] == "initialize"
            engine.create("", "Playwright", "pw", {"chromium": {"guid": "bt1"}})
            engine.create("pw", "BrowserType", "bt1", {"name": "chromium"})
            engine.respond(request["id"], {"playwright": {"guid": "pw"}})
            playwright: Playwright = future.result(timeout=READ_TIMEOUT_SECONDS)

        assert playwright.handle == "pw"
        assert playwright.chromium.name == "chromium"
        with pytest.raises(ProtocolError):
            playwright.browser_type("webkit")
    finally:
        channel.close()
        engine.close()


def test_invalid_event_dispatch_mode_is_rejected() -> None:
    client_socket, engine_socket = socket.socketpair()
    try:
        with pytest.raises(ValueError):
            Channel(SocketTransport(client_socket), event_dispatch="eventually")
    finally:
        client_socket.close()
        engine_socket.close()


def test_close_listeners_run_before_the_handle_leaves_the_registry() -> None:
    """With listeners on the event thread, close notifications still run during disposal."""
    channel, engine = open_scripted_channel(event_dispatch="thread")
    try:
        page: Page = _create_page(channel, engine)
        engine.create("p1", "Frame", "f1")
        sync_channel(channel, engine)
        frame: ChannelOwner = _live(channel, "f1")
        observed: list[tuple[str, bool, bool]] = []
        frame.on("close", lambda payload: observed.append(("f1", "f1" in channel.registry, "p1" in channel.registry)))
        page.on("close", lambda payload: observed.append(("p1", "p1" in channel.registry, "f1" in channel.registry)))

        engine.dispose("p1")
        sync_channel(channel, engine)

        assert observed == [("f1", True, True), ("p1", True, False)]
        assert page.listener_count("close") == 0
        assert len(channel.registry) == 0
    finally:
        channel.close()
        engine.close()


def test_malformed_response_fails_the_matching_call() -> None:
    reported: list[ProtocolError] = []
    channel, engine = open_scripted_channel(on_protocol_error=reported.append)
    try:
        pending: PendingCall = channel.begin_call("p1", "goto")
        request: dict[str, object] = engine.read_message()
        engine.send({"id": request["id"], "result": "ok"})

        with pytest.raises(MalformedResponseError):
            pending.result(timeout=READ_TIMEOUT_SECONDS)
        sync_channel(channel, engine)

        assert len(reported) == 1
        assert isinstance(reported[0], MalformedResponseError)
        assert channel.protocol_error_count == 1
        assert channel.is_closed is False
    finally:
        channel.close()
        engine.close()


def test_object_created_while_closing_is_disposed(monkeypatch: pytest.MonkeyPatch) -> None:
    """A creation the reader finishes during transport shutdown is still swept."""
    channel, engine = open_scripted_channel()
    try:
        page: Page = _create_page(channel, engine)
        created: list[ChannelOwner] = []
        close_transport = channel.transport.close

        def close_after_late_create() -> None:
            created.append(channel.registry.register("late", None, "Page"))
            close_transport()

        monkeypatch.setattr(channel.transport, "close", close_after_late_create)
        channel.close()

        assert len(created) == 1
        assert created[0].is_disposed is True
        assert page.is_disposed is True
        assert len(channel.registry) == 0
    finally:
        engine.close()
