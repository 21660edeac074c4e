"""Proxy variants, one per engine object kind."""

from typing import TypeVar

from conduit.errors import ProtocolError
from conduit.kinds import ObjectKind
from conduit.owner import ChannelContext
from conduit.owner import ChannelOwner

OwnerT = TypeVar("OwnerT", bound=ChannelOwner)


def _expect_owner(result: dict[str, object], key: str, expected: type[OwnerT]) -> OwnerT:
    """Extract a required proxy reference from a call result.

    :param result: Call result with references already resolved.
    :param key: Result field name.
    :param expected: Proxy variant the field must hold.
    :returns: Referenced proxy.
    :raises ProtocolError: If the field is missing or has another type.
    """
    value: object = result.get(key)
    if isinstance(value, expected) is False:
        raise ProtocolError(f"Result field {key!r} must reference a {expected.__name__}, got {value!r}")
    return value


def _optional_owner(result: dict[str, object], key: str, expected: type[OwnerT]) -> OwnerT | None:
    """Extract an optional proxy reference from a call result.

    :param result: Call result with references already resolved.
    :param key: Result field name.
    :param expected: Proxy variant the field must hold when present.
    :returns: Referenced proxy or ``None``.
    """
    value: object = result.get(key)
    if value is None:
        return None
    return _expect_owner(result, key, expected)


def _children_of_kind(owner: ChannelOwner, expected: type[OwnerT]) -> list[OwnerT]:
    return [child for child in owner.children if isinstance(child, expected) is True]


class Playwright(ChannelOwner):
    """Top-level object handed out by the engine's ``initialize`` call."""

    kind = ObjectKind.PLAYWRIGHT

    def browser_type(self, name: str) -> "BrowserType":
        """Return the browser type named ``name``.

        :param name: Initializer key such as ``chromium``.
        :returns: Browser type proxy.
        :raises ProtocolError: If the engine did not announce that browser type.
        """
        owner: ChannelOwner | None = self._initializer_owner(name)
        if isinstance(owner, BrowserType) is False:
            raise ProtocolError(f"Engine did not announce browser type {name!r}")
        return owner

    @property
    def chromium(self) -> "BrowserType":
        return self.browser_type("chromium")

    @property
    def firefox(self) -> "BrowserType":
        return self.browser_type("firefox")

    @property
    def webkit(self) -> "BrowserType":
        return self.browser_type("webkit")


class BrowserType(ChannelOwner):
    """One browser engine flavour that can launch browsers."""

    kind = ObjectKind.BROWSER_TYPE

    @property
    def name(self) -> str:
        value: object = self._initializer.get("name", "")
        return value if isinstance(value, str) is True else ""

    def launch(self, timeout: float | None = None, **options: object) -> "Browser":
        """Launch a browser.

        :param timeout: Optional deadline in seconds.
        :param options: Launch options forwarded to the engine.
        :returns: Browser proxy.
        """
        result: dict[str, object] = self.invoke("launch", dict(options), timeout)
        return _expect_owner(result, "browser", Browser)


class Browser(ChannelOwner):
    """A launched browser."""

    kind = ObjectKind.BROWSER

    @property
    def version(self) -> str:
        value: object = self._initializer.get("version", "")
        return value if isinstance(value, str) is True else ""

    @property
    def contexts(self) -> "list[BrowserContext]":
        return _children_of_kind(self, BrowserContext)

    def new_context(self, timeout: float | None = None, **options: object) -> "BrowserContext":
        """Create an isolated browser context.

        :param timeout: Optional deadline in seconds.
        :param options: Context options forwarded to the engine.
        :returns: Browser context proxy.
        """
        result: dict[str, object] = self.invoke("newContext", dict(options), timeout)
        return _expect_owner(result, "context", BrowserContext)

    def close(self, timeout: float | None = None) -> None:
        """Close the browser; the engine disposes it and everything it owns.

        :param timeout: Optional deadline in seconds.
        """
        self.invoke("close", {}, timeout)


class BrowserContext(ChannelOwner):
    """An isolated browsing session."""

    kind = ObjectKind.BROWSER_CONTEXT

    @property
    def pages(self) -> "list[Page]":
        return _children_of_kind(self, Page)

    def new_page(self, timeout: float | None = None) -> "Page":
        """Open a page in this context.

        :param timeout: Optional deadline in seconds.
        :returns: Page proxy.
        """
        result: dict[str, object] = self.invoke("newPage", {}, timeout)
        return _expect_owner(result, "page", Page)

    def close(self, timeout: float | None = None) -> None:
        self.invoke("close", {}, timeout)


class Page(ChannelOwner):
    """A page (tab) inside a browser context."""

    kind = ObjectKind.PAGE

    _url: str

    def __init__(
        self,
        context: ChannelContext,
        handle: str,
        parent_handle: str | None,
        initializer: dict[str, object] | None = None,
    ) -> None:
        super().__init__(context, handle, parent_handle, initializer)
        url: object = self._initializer.get("url", "about:blank")
        self._url = url if isinstance(url, str) is True else "about:blank"

    @property
    def url(self) -> str:
        """Return the last URL the engine reported for this page.

        :returns: URL text.
        """
        return self._url

    @property
    def main_frame(self) -> "Frame | None":
        owner: ChannelOwner | None = self._initializer_owner("mainFrame")
        if isinstance(owner, Frame) is False:
            return None
        return owner

    def goto(self, url: str, timeout: float | None = None) -> "Response | None":
        """Navigate to ``url``.

        :param url: Target URL.
        :param timeout: Optional deadline in seconds.
        :returns: Main resource response, or ``None`` when the engine reports none.
        """
        result: dict[str, object] = self.invoke("goto", {"url": url}, timeout)
        return _optional_owner(result, "response", Response)

    def evaluate(self, expression: str, arg: object = None, timeout: float | None = None) -> object:
        """Evaluate ``expression`` in the page and return its JSON value.

        :param expression: Script source.
        :param arg: Optional JSON-serializable argument.
        :param timeout: Optional deadline in seconds.
        :returns: Evaluation result.
        """
        result: dict[str, object] = self.invoke("evaluate", {"expression": expression, "arg": arg}, timeout)
        return result.get("value")

    def title(self, timeout: float | None = None) -> str:
        result: dict[str, object] = self.invoke("title", {}, timeout)
        value: object = result.get("value", "")
        return value if isinstance(value, str) is True else ""

    def close(self, timeout: float | None = None) -> None:
        self.invoke("close", {}, timeout)

    def _on_event(self, event: str, payload: dict[str, object]) -> None:
        if event != "navigated":
            return
        url: object = payload.get("url")
        if isinstance(url, str) is True:
            self._url = url


class Frame(ChannelOwner):
    """A frame inside a page."""

    kind = ObjectKind.FRAME

    _url: str

    def __init__(
        self,
        context: ChannelContext,
        handle: str,
        parent_handle: str | None,
        initializer: dict[str, object] | None = None,
    ) -> None:
        super().__init__(context, handle, parent_handle, initializer)
        url: object = self._initializer.get("url", "about:blank")
        self._url = url if isinstance(url, str) is True else "about:blank"

    @property
    def url(self) -> str:
        return self._url

    @property
    def name(self) -> str:
        value: object = self._initializer.get("name", "")
        return value if isinstance(value, str) is True else ""

    def evaluate(self, expression: str, arg: object = None, timeout: float | None = None) -> object:
        result: dict[str, object] = self.invoke("evaluate", {"expression": expression, "arg": arg}, timeout)
        return result.get("value")

    def _on_event(self, event: str, payload: dict[str, object]) -> None:
        if event != "navigated":
            return
        url: object = payload.get("url")
        if isinstance(url, str) is True:
            self._url = url


class JSHandle(ChannelOwner):
    """Reference to a value living inside the page."""

    kind = ObjectKind.JS_HANDLE

    def evaluate(self, expression: str, timeout: float | None = None) -> object:
        result: dict[str, object] = self.invoke("evaluate", {"expression": expression}, timeout)
        return result.get("value")

    def dispose(self, timeout: float | None = None) -> None:
        """Ask the engine to release the remote value.

        The proxy becomes disposed when the engine's disposal event arrives.

        :param timeout: Optional deadline in seconds.
        """
        self.invoke("dispose", {}, timeout)


class ElementHandle(JSHandle):
    """Reference to a DOM element."""

    kind = ObjectKind.ELEMENT_HANDLE

    def click(self, timeout: float | None = None) -> None:
        self.invoke("click", {}, timeout)


class Request(ChannelOwner):
    """A network request issued by a page."""

    kind = ObjectKind.REQUEST

    @property
    def url(self) -> str:
        value: object = self._initializer.get("url", "")
        return value if isinstance(value, str) is True else ""

    @property
    def method(self) -> str:
        value: object = self._initializer.get("method", "GET")
        return value if isinstance(value, str) is True else "GET"


class Response(ChannelOwner):
    """A network response received by a page."""

    kind = ObjectKind.RESPONSE

    @property
    def url(self) -> str:
        value: object = self._initializer.get("url", "")
        return value if isinstance(value, str) is True else ""

    @property
    def status(self) -> int:
        value: object = self._initializer.get("status", 0)
        if isinstance(value, bool) is True or isinstance(value, int) is False:
            return 0
        return value

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def request(self) -> Request | None:
        owner: ChannelOwner | None = self._initializer_owner("request")
        if isinstance(owner, Request) is False:
            return None
        return owner


class Route(ChannelOwner):
    """An intercepted request awaiting a routing decision."""

    kind = ObjectKind.ROUTE

    def fulfill(self, status: int = 200, body: str = "", timeout: float | None = None) -> None:
        self.invoke("fulfill", {"status": status, "body": body}, timeout)

    def continue_(self, timeout: float | None = None) -> None:
        self.invoke("continue", {}, timeout)

    def abort(self, error_code: str = "failed", timeout: float | None = None) -> None:
        self.invoke("abort", {"errorCode": error_code}, timeout)


class Dialog(ChannelOwner):
    """A JavaScript dialog raised by a page."""

    kind = ObjectKind.DIALOG

    @property
    def message(self) -> str:
        value: object = self._initializer.get("message", "")
        return value if isinstance(value, str) is True else ""

    def accept(self, prompt_text: str | None = None, timeout: float | None = None) -> None:
        params: dict[str, object] = {}
        if prompt_text is not None:
            params["promptText"] = prompt_text
        self.invoke("accept", params, timeout)

    def dismiss(self, timeout: float | None = None) -> None:
        self.invoke("dismiss", {}, timeout)


_VARIANTS_BY_KIND: dict[ObjectKind, type[ChannelOwner]] = {
    variant.kind: variant
    for variant in (
        Playwright,
        BrowserType,
        Browser,
        BrowserContext,
        Page,
        Frame,
        JSHandle,
        ElementHandle,
        Request,
        Response,
        Route,
        Dialog,
    )
}


def create_owner(
    context: ChannelContext,
    kind: ObjectKind,
    handle: str,
    parent_handle: str | None,
    initializer: dict[str, object] | None = None,
) -> ChannelOwner:
    """Construct the proxy variant for ``kind``.

    :param context: Channel the proxy talks through.
    :param kind: Validated object kind.
    :param handle: Engine-assigned handle.
    :param parent_handle: Creating object's handle, or ``None``.
    :param initializer: Engine-supplied initial attributes.
    :returns: New proxy in the ``CREATED`` state.
    """
    variant: type[ChannelOwner] = _VARIANTS_BY_KIND[kind]
    return variant(context, handle, parent_handle, initializer)
