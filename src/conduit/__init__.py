"""Public package API for conduit."""

import logging

from conduit.api import connect_socket
from conduit.api import connect_subprocess
from conduit.api import launch_reference_engine
from conduit.channel import Channel
from conduit.dispatcher import PendingCall
from conduit.errors import CallTimeoutError
from conduit.errors import ChannelClosedError
from conduit.errors import ConduitError
from conduit.errors import ObjectDisposedError
from conduit.errors import MalformedResponseError
from conduit.errors import ProtocolError
from conduit.errors import RemoteCallError
from conduit.errors import TransportError
from conduit.errors import UnknownParentError
from conduit.errors import UnsupportedInteractionError
from conduit.kinds import ObjectKind
from conduit.objects import Browser
from conduit.objects import BrowserContext
from conduit.objects import BrowserType
from conduit.objects import Dialog
from conduit.objects import ElementHandle
from conduit.objects import Frame
from conduit.objects import JSHandle
from conduit.objects import Page
from conduit.objects import Playwright
from conduit.objects import Request
from conduit.objects import Response
from conduit.objects import Route
from conduit.owner import ChannelOwner
from conduit.owner import OwnerState
from conduit.registry import HandleNotFound
from conduit.transport import SocketTransport
from conduit.transport import StreamTransport
from conduit.transport import SubprocessTransport
from conduit.transport import Transport

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__: list[str] = [
    "connect_socket",
    "connect_subprocess",
    "launch_reference_engine",
    "Browser",
    "BrowserContext",
    "BrowserType",
    "CallTimeoutError",
    "Channel",
    "ChannelClosedError",
    "ChannelOwner",
    "ConduitError",
    "Dialog",
    "ElementHandle",
    "Frame",
    "HandleNotFound",
    "JSHandle",
    "MalformedResponseError",
    "ObjectDisposedError",
    "ObjectKind",
    "OwnerState",
    "Page",
    "PendingCall",
    "Playwright",
    "ProtocolError",
    "RemoteCallError",
    "Request",
    "Response",
    "Route",
    "SocketTransport",
    "StreamTransport",
    "SubprocessTransport",
    "Transport",
    "TransportError",
    "UnknownParentError",
    "UnsupportedInteractionError",
]
