"""Closed enumeration of remote object kinds the engine may create."""

import enum

from conduit.errors import ProtocolError


class ObjectKind(enum.Enum):
    """Type tag carried by the engine's creation event."""

    PLAYWRIGHT = "Playwright"
    BROWSER_TYPE = "BrowserType"
    BROWSER = "Browser"
    BROWSER_CONTEXT = "BrowserContext"
    PAGE = "Page"
    FRAME = "Frame"
    ELEMENT_HANDLE = "ElementHandle"
    JS_HANDLE = "JSHandle"
    REQUEST = "Request"
    RESPONSE = "Response"
    ROUTE = "Route"
    DIALOG = "Dialog"


def parse_kind(value: object) -> ObjectKind:
    """Validate an engine type tag.

    :param value: Raw tag from the wire, or an :class:`ObjectKind`.
    :returns: Matching kind.
    :raises ProtocolError: If the tag is not part of the enumeration.
    """
    if isinstance(value, ObjectKind) is True:
        return value
    if isinstance(value, str) is False:
        raise ProtocolError(f"Object type tag must be a string, got {value!r}")
    try:
        return ObjectKind(value)
    except ValueError:
        raise ProtocolError(f"Unknown object type {value!r}") from None
