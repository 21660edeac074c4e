"""Reference engine that speaks the conduit wire protocol.

It keeps a small in-memory object tree shaped like a browser-automation
backend (browser types, browsers, contexts, pages, frames) and answers
requests on stdin/stdout, or on one TCP connection with ``--port``. No
browser is driven; navigation and evaluation are simulated.
"""

import argparse
import json
import os
import socket
import sys
import threading
import traceback
from collections.abc import Callable
from typing import BinaryIO

ROOT_GUID: str = ""
BROWSER_TYPE_NAMES: tuple[str, ...] = ("chromium", "firefox", "webkit")
ENGINE_VERSION: str = "reference-1.0"
Handler = Callable[["_EngineObject", dict[str, object]], dict[str, object] | None]


class EngineError(Exception):
    """Failure reported to the client as an error response."""


class _EngineObject:
    """Engine-side record of one remote object."""

    type_name: str
    guid: str
    parent_guid: str
    children: list[str]
    state: dict[str, object]

    def __init__(self, type_name: str, guid: str, parent_guid: str, state: dict[str, object]) -> None:
        self.type_name = type_name
        self.guid = guid
        self.parent_guid = parent_guid
        self.children = []
        self.state = state


def _ref(guid: str) -> dict[str, object]:
    return {"guid": guid}


class ReferenceEngine:
    """Single-connection engine serving requests in arrival order."""

    _output: BinaryIO
    _write_lock: threading.Lock
    _objects: dict[str, _EngineObject]
    _guid_counters: dict[str, int]
    _timers: list[threading.Timer]
    _output_broken: bool
    _handlers: dict[tuple[str, str], Handler]

    def __init__(self, output: BinaryIO) -> None:
        """Initialize an engine with an empty object tree.

        :param output: Binary stream responses and events are written to.
        """
        self._output = output
        self._write_lock = threading.Lock()
        self._objects = {}
        self._guid_counters = {}
        self._timers = []
        self._output_broken = False
        self._handlers = {
            ("BrowserType", "launch"): self._browser_type_launch,
            ("Browser", "newContext"): self._browser_new_context,
            ("Browser", "close"): self._dispose_target,
            ("BrowserContext", "newPage"): self._context_new_page,
            ("BrowserContext", "close"): self._dispose_target,
            ("Page", "goto"): self._page_goto,
            ("Page", "title"): self._page_title,
            ("Page", "evaluate"): self._evaluate,
            ("Page", "evaluateHandle"): self._page_evaluate_handle,
            ("Page", "querySelector"): self._page_query_selector,
            ("Page", "triggerDialog"): self._page_trigger_dialog,
            ("Page", "close"): self._dispose_target,
            ("Frame", "evaluate"): self._evaluate,
            ("JSHandle", "evaluate"): self._evaluate,
            ("JSHandle", "dispose"): self._dispose_target,
            ("ElementHandle", "evaluate"): self._evaluate,
            ("ElementHandle", "click"): self._element_click,
            ("ElementHandle", "dispose"): self._dispose_target,
            ("Dialog", "accept"): self._dispose_target,
            ("Dialog", "dismiss"): self._dispose_target,
        }

    def serve(self, input_stream: BinaryIO) -> int:
        """Answer requests until the client closes its side.

        :param input_stream: Binary stream requests are read from.
        :returns: Process exit code.
        """
        for raw_line in input_stream:
            stripped: bytes = raw_line.strip()
            if len(stripped) == 0:
                continue
            self._handle_line(stripped)
            if self._output_broken is True:
                break

        for timer in self._timers:
            timer.cancel()
        root_guids: list[str] = [
            guid for guid, entry in self._objects.items() if entry.parent_guid == ROOT_GUID
        ]
        for guid in root_guids:
            self._dispose(guid, "Engine shutting down")
        return 0

    def _send(self, message: dict[str, object]) -> None:
        data: bytes = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        with self._write_lock:
            if self._output_broken is True:
                return
            try:
                self._output.write(data)
                self._output.flush()
            except (BrokenPipeError, OSError, ValueError):
                self._output_broken = True

    def _emit(self, guid: str, method: str, params: dict[str, object]) -> None:
        self._send({"guid": guid, "method": method, "params": params})

    def _next_guid(self, type_name: str) -> str:
        count: int = self._guid_counters.get(type_name, 0) + 1
        self._guid_counters[type_name] = count
        return f"{type_name}@{count}"

    def _create(
        self,
        parent_guid: str,
        type_name: str,
        initializer: dict[str, object],
        guid: str | None = None,
    ) -> str:
        """Create one object and announce it to the client.

        :param parent_guid: Creating object's guid, ``""`` for top level.
        :param type_name: Object type tag.
        :param initializer: Initial attributes sent to the client.
        :param guid: Pre-allocated guid, if any.
        :returns: New guid.
        """
        new_guid: str = guid if guid is not None else self._next_guid(type_name)
        entry: _EngineObject = _EngineObject(type_name, new_guid, parent_guid, dict(initializer))
        self._objects[new_guid] = entry
        parent: _EngineObject | None = self._objects.get(parent_guid)
        if parent is not None:
            parent.children.append(new_guid)
        self._emit(parent_guid, "__create__", {"type": type_name, "guid": new_guid, "initializer": initializer})
        return new_guid

    def _dispose(self, guid: str, reason: str | None = None) -> None:
        """Drop an object and its descendants; announce only the subtree root.

        :param guid: Object to dispose.
        :param reason: Optional reason sent to the client.
        """
        entry: _EngineObject | None = self._objects.get(guid)
        if entry is None:
            return
        parent: _EngineObject | None = self._objects.get(entry.parent_guid)
        if parent is not None and guid in parent.children:
            parent.children.remove(guid)

        stack: list[str] = [guid]
        while len(stack) > 0:
            current: str = stack.pop()
            removed: _EngineObject | None = self._objects.pop(current, None)
            if removed is not None:
                stack.extend(removed.children)

        params: dict[str, object] = {}
        if reason is not None:
            params["reason"] = reason
        self._emit(guid, "__dispose__", params)

    def _handle_line(self, line: bytes) -> None:
        try:
            message: object = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            print(f"reference engine: dropping malformed frame: {exc}", file=sys.stderr)
            return
        if isinstance(message, dict) is False:
            print("reference engine: dropping non-object frame", file=sys.stderr)
            return

        request_id: object = message.get("id")
        guid: object = message.get("guid")
        method: object = message.get("method")
        params: object = message.get("params", {})
        if isinstance(request_id, int) is False:
            print("reference engine: dropping request without id", file=sys.stderr)
            return

        try:
            if isinstance(guid, str) is False or isinstance(method, str) is False:
                raise EngineError("Request must carry string guid and method")
            if isinstance(params, dict) is False:
                raise EngineError("Request params must be an object")
            result: dict[str, object] | None = self._dispatch(request_id, guid, method, params)
        except EngineError as exc:
            self._send({"id": request_id, "error": {"name": "Error", "message": str(exc)}})
            return
        except Exception as exc:
            self._send(
                {
                    "id": request_id,
                    "error": {
                        "name": type(exc).__name__,
                        "message": str(exc),
                        "stack": traceback.format_exc(),
                    },
                }
            )
            return

        if result is not None:
            self._send({"id": request_id, "result": result})

    def _dispatch(
        self,
        request_id: int,
        guid: str,
        method: str,
        params: dict[str, object],
    ) -> dict[str, object] | None:
        """Run one request.

        :param request_id: Correlation id, needed by deferred answers.
        :param guid: Target guid.
        :param method: Method name.
        :param params: Method parameters.
        :returns: Result payload, or ``None`` when the answer is sent later.
        :raises EngineError: For unknown targets or methods.
        """
        if guid == ROOT_GUID:
            if method != "initialize":
                raise EngineError(f"Root object has no method {method!r}")
            return self._initialize()

        target: _EngineObject | None = self._objects.get(guid)
        if target is None:
            raise EngineError(f"Object {guid!r} does not exist")

        if method == "echo":
            return {"params": params}
        if method == "delay":
            self._delay(request_id, params)
            return None
        if method == "emit":
            return self._emit_many(target, params)
        if method == "crash":
            exit_code: object = params.get("exitCode", 3)
            os._exit(exit_code if isinstance(exit_code, int) is True else 3)

        handler: Handler | None = self._handlers.get((target.type_name, method))
        if handler is None:
            raise EngineError(f"{target.type_name}.{method} is not supported")
        return handler(target, params)

    def _initialize(self) -> dict[str, object]:
        type_guids: dict[str, str] = {name: self._next_guid("BrowserType") for name in BROWSER_TYPE_NAMES}
        initializer: dict[str, object] = {name: _ref(guid) for name, guid in type_guids.items()}
        playwright_guid: str = self._create(ROOT_GUID, "Playwright", initializer)
        for name, guid in type_guids.items():
            self._create(playwright_guid, "BrowserType", {"name": name}, guid=guid)
        return {"playwright": _ref(playwright_guid)}

    def _delay(self, request_id: int, params: dict[str, object]) -> None:
        seconds: object = params.get("seconds", 0.1)
        if isinstance(seconds, (int, float)) is False:
            raise EngineError("delay seconds must be a number")
        response: dict[str, object] = {"id": request_id, "result": {"value": params.get("value")}}
        timer: threading.Timer = threading.Timer(float(seconds), self._send, args=(response,))
        timer.daemon = True
        self._timers.append(timer)
        timer.start()

    def _emit_many(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        event: object = params.get("event", "ping")
        count: object = params.get("count", 1)
        if isinstance(event, str) is False or isinstance(count, int) is False:
            raise EngineError("emit needs a string event and an integer count")
        for index in range(count):
            self._emit(target.guid, event, {"index": index})
        return {"emitted": count}

    def _dispose_target(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        _ = params
        self._dispose(target.guid, f"{target.type_name} closed")
        return {}

    def _browser_type_launch(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        initializer: dict[str, object] = {
            "name": target.state.get("name", ""),
            "version": ENGINE_VERSION,
            "options": params,
        }
        return {"browser": _ref(self._create(target.guid, "Browser", initializer))}

    def _browser_new_context(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        return {"context": _ref(self._create(target.guid, "BrowserContext", {"options": params}))}

    def _context_new_page(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        _ = params
        page_guid: str = self._next_guid("Page")
        frame_guid: str = self._next_guid("Frame")
        self._create(
            target.guid,
            "Page",
            {"url": "about:blank", "mainFrame": _ref(frame_guid)},
            guid=page_guid,
        )
        self._create(page_guid, "Frame", {"url": "about:blank", "name": ""}, guid=frame_guid)
        self._objects[page_guid].state["mainFrame"] = frame_guid
        self._objects[page_guid].state["url"] = "about:blank"
        return {"page": _ref(page_guid)}

    def _page_goto(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        url: object = params.get("url")
        if isinstance(url, str) is False:
            raise EngineError("goto needs a url")
        if url.startswith("error:") is True:
            raise EngineError(f"net::ERR_NAME_NOT_RESOLVED at {url}")

        request_guid: str = self._create(target.guid, "Request", {"url": url, "method": "GET"})
        self._emit(target.guid, "request", {"request": _ref(request_guid)})
        status: int = 404 if url.endswith("/missing") is True else 200
        response_guid: str = self._create(
            target.guid,
            "Response",
            {"url": url, "status": status, "request": _ref(request_guid)},
        )
        self._emit(target.guid, "response", {"response": _ref(response_guid)})

        target.state["url"] = url
        frame_guid: object = target.state.get("mainFrame")
        if isinstance(frame_guid, str) is True and frame_guid in self._objects:
            self._objects[frame_guid].state["url"] = url
            self._emit(frame_guid, "navigated", {"url": url})
        self._emit(target.guid, "navigated", {"url": url})
        self._emit(target.guid, "load", {})
        return {"response": _ref(response_guid)}

    def _page_title(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        _ = params
        url: object = target.state.get("url", "about:blank")
        return {"value": f"Reference page for {url}"}

    def _evaluate(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        expression: object = params.get("expression")
        if isinstance(expression, str) is False:
            raise EngineError("evaluate needs an expression")
        if expression == "location.href":
            return {"value": target.state.get("url", "about:blank")}
        if expression.startswith("throw") is True:
            raise EngineError(f"Evaluation failed: {expression}")
        return {"value": params.get("arg")}

    def _page_evaluate_handle(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        expression: object = params.get("expression", "")
        handle_guid: str = self._create(target.guid, "JSHandle", {"preview": str(expression)})
        return {"handle": _ref(handle_guid)}

    def _page_query_selector(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        selector: object = params.get("selector")
        if isinstance(selector, str) is False:
            raise EngineError("querySelector needs a selector")
        element_guid: str = self._create(target.guid, "ElementHandle", {"preview": selector})
        return {"element": _ref(element_guid)}

    def _element_click(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        _ = params
        self._emit(target.parent_guid, "click", {"element": _ref(target.guid)})
        return {}

    def _page_trigger_dialog(self, target: _EngineObject, params: dict[str, object]) -> dict[str, object]:
        message: object = params.get("message", "")
        dialog_guid: str = self._create(target.guid, "Dialog", {"message": str(message)})
        self._emit(target.guid, "dialog", {"dialog": _ref(dialog_guid)})
        return {"dialog": _ref(dialog_guid)}


def serve_stdio() -> int:
    """Serve the protocol on this process's stdin/stdout.

    :returns: Process exit code.
    """
    engine: ReferenceEngine = ReferenceEngine(sys.stdout.buffer)
    return engine.serve(sys.stdin.buffer)


def serve_tcp(host: str, port: int) -> int:
    """Accept one TCP connection and serve the protocol on it.

    The bound port is printed as ``LISTENING <port>`` before accepting.

    :param host: Interface to bind.
    :param port: Port to bind; ``0`` picks a free one.
    :returns: Process exit code.
    """
    with socket.create_server((host, port)) as server:
        bound_port: int = server.getsockname()[1]
        print(f"LISTENING {bound_port}", flush=True)
        connection, _address = server.accept()
    with connection:
        reader: BinaryIO = connection.makefile("rb")
        writer: BinaryIO = connection.makefile("wb")
        engine: ReferenceEngine = ReferenceEngine(writer)
        try:
            return engine.serve(reader)
        finally:
            reader.close()
            try:
                writer.close()
            except OSError:
                pass


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    :param argv: Optional argument list; defaults to ``sys.argv``.
    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(description="Reference engine for the conduit wire protocol.")
    parser.add_argument("--port", type=int, default=None, help="Serve one TCP connection instead of stdio.")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind with --port.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the engine.

    :param argv: Optional argument list.
    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args(argv)
    if args.port is None:
        return serve_stdio()
    return serve_tcp(str(args.host), int(args.port))


if __name__ == "__main__":
    raise SystemExit(main())
