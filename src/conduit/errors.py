"""Custom error types for conduit."""


class ConduitError(Exception):
    """Base class for all conduit errors."""


class TransportError(ConduitError):
    """Raised for stream-level I/O failures on the engine connection."""


class ProtocolError(ConduitError):
    """Raised for malformed frames or messages that violate the channel protocol."""


class MalformedResponseError(ProtocolError):
    """Raised when a response carries a valid id but an invalid payload."""

    request_id: int

    def __init__(self, request_id: int, message: str) -> None:
        """Initialize a malformed-response error.

        :param request_id: Correlation id read from the frame.
        :param message: What was wrong with the payload.
        """
        self.request_id = request_id
        super().__init__(f"Response {request_id}: {message}")


class UnknownParentError(ProtocolError):
    """Raised when a remote object is created under a handle that is not registered."""

    handle: str
    parent_handle: str

    def __init__(self, handle: str, parent_handle: str) -> None:
        """Initialize an unknown-parent error.

        :param handle: Handle of the object being created.
        :param parent_handle: Declared parent handle that is not registered.
        """
        self.handle = handle
        self.parent_handle = parent_handle
        super().__init__(f"Cannot create {handle!r}: parent {parent_handle!r} is not registered")


class RemoteCallError(ConduitError):
    """Raised when the engine answers a call with an error response."""

    method: str
    remote_name: str
    remote_message: str
    remote_stack: str

    def __init__(
        self,
        method: str,
        remote_name: str,
        remote_message: str,
        remote_stack: str = "",
    ) -> None:
        """Initialize a remote call failure.

        :param method: Method name of the failed call.
        :param remote_name: Error name reported by the engine.
        :param remote_message: Error message reported by the engine.
        :param remote_stack: Optional remote stack text.
        """
        self.method = method
        self.remote_name = remote_name
        self.remote_message = remote_message
        self.remote_stack = remote_stack
        formatted: str = f"{method}: engine raised {remote_name}: {remote_message}"
        if len(remote_stack) > 0:
            formatted = formatted + f"\nRemote stack:\n{remote_stack}"
        super().__init__(formatted)


class ObjectDisposedError(ConduitError):
    """Raised when a disposed remote object is used."""

    handle: str

    def __init__(self, handle: str) -> None:
        """Initialize a disposed-object error.

        :param handle: Handle of the disposed object.
        """
        self.handle = handle
        super().__init__(f"Remote object {handle!r} has been disposed")


class ChannelClosedError(ConduitError):
    """Raised for calls that cannot complete because the channel was torn down."""


class CallTimeoutError(ConduitError, TimeoutError):
    """Raised when a caller-imposed deadline expires before a result arrives."""


class UnsupportedInteractionError(ConduitError):
    """Raised when an interaction would block the channel's own read loop."""
