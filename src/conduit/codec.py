"""Message types and newline-delimited JSON framing for the engine wire."""

import json
from collections.abc import Callable
from collections.abc import Iterator
from dataclasses import dataclass
from dataclasses import field

from conduit.errors import MalformedResponseError
from conduit.errors import ProtocolError

FRAME_DELIMITER: bytes = b"\n"
DEFAULT_MAX_FRAME_BYTES: int = 64 * 1024 * 1024
JsonDefault = Callable[[object], object]


@dataclass(frozen=True)
class Request:
    """Call from this process to one remote object."""

    id: int
    guid: str
    method: str
    params: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class Response:
    """Engine answer correlated to one request by ``id``."""

    id: int
    result: dict[str, object] | None = None
    error: dict[str, object] | None = None

    def __post_init__(self) -> None:
        """Normalize a missing success payload to an empty result."""
        if self.error is None and self.result is None:
            object.__setattr__(self, "result", {})

    @property
    def is_error(self) -> bool:
        """Report whether this response carries an error payload.

        :returns: ``True`` for error responses.
        """
        return self.error is not None


@dataclass(frozen=True)
class Event:
    """Unsolicited engine notification addressed to one remote object."""

    guid: str
    method: str
    params: dict[str, object] = field(default_factory=dict)


Message = Request | Response | Event


@dataclass(frozen=True)
class DecodedFrame:
    """Outcome of decoding one frame: a message or a frame-local error."""

    raw: bytes
    message: Message | None = None
    error: ProtocolError | None = None

    @property
    def request_id(self) -> int | None:
        """Return the correlation id of a response frame that failed to decode.

        :returns: Id whose waiter the error belongs to, or ``None``.
        """
        if isinstance(self.error, MalformedResponseError) is True:
            return self.error.request_id
        return None


def _is_strict_int(value: object) -> bool:
    """Check for an ``int`` that is not a ``bool``.

    :param value: Candidate value.
    :returns: ``True`` for real integers.
    """
    if isinstance(value, bool) is True:
        return False
    return isinstance(value, int)


def _require_id(obj: dict[str, object]) -> int:
    """Extract and validate a correlation id.

    :param obj: Decoded wire object.
    :returns: Positive correlation id.
    :raises ProtocolError: If the id is missing or not a positive integer.
    """
    value: object = obj.get("id")
    if _is_strict_int(value) is False:
        raise ProtocolError(f"Message id must be an integer, got {value!r}")
    if value < 1:
        raise ProtocolError(f"Message id must be positive, got {value!r}")
    return value


def _require_str(obj: dict[str, object], key: str) -> str:
    """Extract one string field.

    :param obj: Decoded wire object.
    :param key: Field name.
    :returns: Field value.
    :raises ProtocolError: If the field is missing or not a string.
    """
    value: object = obj.get(key)
    if isinstance(value, str) is False:
        raise ProtocolError(f"Message field {key!r} must be a string")
    return value


def _optional_dict(obj: dict[str, object], key: str) -> dict[str, object]:
    """Extract one optional object field, defaulting to an empty dict.

    :param obj: Decoded wire object.
    :param key: Field name.
    :returns: Field value or ``{}``.
    :raises ProtocolError: If the field is present but not an object.
    """
    value: object = obj.get(key)
    if value is None:
        return {}
    if isinstance(value, dict) is False:
        raise ProtocolError(f"Message field {key!r} must be an object")
    return value


def _response_payload(request_id: int, obj: dict[str, object]) -> Response:
    """Build a response from its validated id and raw payload fields.

    :param request_id: Correlation id.
    :param obj: Decoded wire object.
    :returns: Parsed response.
    :raises ProtocolError: If the result or error payload is invalid.
    """
    has_error: bool = "error" in obj
    if has_error is True:
        error: dict[str, object] = _optional_dict(obj, "error")
        message_obj: object = error.get("message")
        if isinstance(message_obj, str) is False:
            raise ProtocolError("Error response must carry a string message")
        return Response(id=request_id, error=error)
    return Response(id=request_id, result=_optional_dict(obj, "result"))


def message_to_wire(message: Message) -> dict[str, object]:
    """Convert one message to its JSON-ready wire mapping.

    :param message: Message to convert.
    :returns: Wire mapping.
    :raises TypeError: If ``message`` is not a known message type.
    """
    if isinstance(message, Request) is True:
        return {
            "id": message.id,
            "guid": message.guid,
            "method": message.method,
            "params": message.params,
        }
    if isinstance(message, Response) is True:
        if message.error is not None:
            return {"id": message.id, "error": message.error}
        result: dict[str, object] = {} if message.result is None else message.result
        return {"id": message.id, "result": result}
    if isinstance(message, Event) is True:
        return {
            "guid": message.guid,
            "method": message.method,
            "params": message.params,
        }
    raise TypeError(f"Unsupported message type: {type(message).__name__}")


def message_from_wire(obj: object) -> Message:
    """Build one message from a decoded wire value.

    Requests carry ``id`` and ``method``, responses carry ``id`` without
    ``method``, events carry ``guid`` and ``method`` without ``id``.

    :param obj: Decoded JSON value.
    :returns: Parsed message.
    :raises ProtocolError: If the value does not have a valid message shape.
    """
    if isinstance(obj, dict) is False:
        raise ProtocolError("Frame must contain a JSON object")

    has_id: bool = "id" in obj
    has_method: bool = "method" in obj

    if has_id is True and has_method is True:
        return Request(
            id=_require_id(obj),
            guid=_require_str(obj, "guid"),
            method=_require_str(obj, "method"),
            params=_optional_dict(obj, "params"),
        )

    if has_id is True:
        request_id: int = _require_id(obj)
        try:
            return _response_payload(request_id, obj)
        except ProtocolError as exc:
            raise MalformedResponseError(request_id, str(exc)) from exc

    if has_method is True:
        return Event(
            guid=_require_str(obj, "guid"),
            method=_require_str(obj, "method"),
            params=_optional_dict(obj, "params"),
        )

    raise ProtocolError("Frame is neither a request, a response nor an event")


def encode_message(message: Message, default: JsonDefault | None = None) -> bytes:
    """Encode one message as a single delimited frame.

    :param message: Message to encode.
    :param default: Optional ``json.dumps`` fallback for non-JSON values.
    :returns: UTF-8 JSON text followed by the frame delimiter.
    """
    wire: dict[str, object] = message_to_wire(message)
    text: str = json.dumps(wire, separators=(",", ":"), ensure_ascii=False, default=default)
    return text.encode("utf-8") + FRAME_DELIMITER


def decode_frame(frame: bytes) -> Message:
    """Decode one frame without its delimiter.

    :param frame: Raw frame bytes.
    :returns: Parsed message.
    :raises ProtocolError: If the frame is not valid JSON or not a valid message.
    """
    try:
        obj: object = json.loads(frame.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise ProtocolError("Frame is not valid UTF-8") from exc
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Malformed JSON frame: {exc.msg}") from exc
    return message_from_wire(obj)


class FrameDecoder:
    """Split an arbitrary byte stream into decoded frames.

    Chunks may split or merge frame boundaries. Iterating the decoder yields
    every complete frame buffered so far and stops when only a partial frame
    remains; iterating again after more :meth:`feed` calls resumes from there.
    """

    _buffer: bytearray
    _max_frame_bytes: int
    _discarding: bool

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        """Initialize an empty decoder.

        :param max_frame_bytes: Largest accepted frame, delimiter excluded.
        :raises ValueError: If ``max_frame_bytes`` is less than ``1``.
        """
        if max_frame_bytes < 1:
            raise ValueError("max_frame_bytes must be >= 1")
        self._buffer = bytearray()
        self._max_frame_bytes = max_frame_bytes
        self._discarding = False

    @property
    def buffered_bytes(self) -> int:
        """Return the size of the buffered partial frame.

        :returns: Byte count.
        """
        return len(self._buffer)

    def feed(self, chunk: bytes) -> None:
        """Append one inbound chunk.

        :param chunk: Raw bytes in arrival order.
        """
        self._buffer.extend(chunk)

    def __iter__(self) -> Iterator[DecodedFrame]:
        """Yield decoded frames that are complete in the buffer.

        :yields: One :class:`DecodedFrame` per complete frame.
        """
        while True:
            delimiter_index: int = self._buffer.find(FRAME_DELIMITER)
            if delimiter_index < 0:
                if self._discarding is True:
                    self._buffer.clear()
                    return
                if len(self._buffer) > self._max_frame_bytes:
                    size: int = len(self._buffer)
                    self._buffer.clear()
                    self._discarding = True
                    yield DecodedFrame(
                        raw=b"",
                        error=ProtocolError(
                            f"Frame exceeds {self._max_frame_bytes} bytes ({size} buffered)"
                        ),
                    )
                return

            raw: bytes = bytes(self._buffer[:delimiter_index])
            del self._buffer[: delimiter_index + 1]

            if self._discarding is True:
                self._discarding = False
                continue

            stripped: bytes = raw.strip()
            if len(stripped) == 0:
                continue

            if len(stripped) > self._max_frame_bytes:
                yield DecodedFrame(
                    raw=raw,
                    error=ProtocolError(f"Frame exceeds {self._max_frame_bytes} bytes"),
                )
                continue

            try:
                message: Message = decode_frame(stripped)
            except ProtocolError as exc:
                yield DecodedFrame(raw=raw, error=exc)
                continue
            yield DecodedFrame(raw=raw, message=message)
