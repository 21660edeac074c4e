"""User-facing entrypoints for opening engine channels."""

import os
import pathlib
import sys
from typing import BinaryIO

from conduit.channel import Channel
from conduit.channel import ProtocolErrorCallback
from conduit.codec import DEFAULT_MAX_FRAME_BYTES
from conduit.transport import SocketTransport
from conduit.transport import SubprocessTransport

REFERENCE_ENGINE_MODULE: str = "conduit.demo.reference_engine"
_PACKAGE_PARENT: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent


def _reference_engine_env() -> dict[str, str]:
    """Build an environment in which the child interpreter imports this copy of conduit.

    :returns: Environment mapping.
    """
    env: dict[str, str] = dict(os.environ)
    existing: str = env.get("PYTHONPATH", "")
    entries: list[str] = [str(_PACKAGE_PARENT)]
    if len(existing) > 0:
        entries.append(existing)
    env["PYTHONPATH"] = os.pathsep.join(entries)
    return env


def connect_subprocess(
    argv: list[str],
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    stderr: int | BinaryIO | None = None,
    default_timeout: float | None = None,
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    event_dispatch: str = "thread",
    on_protocol_error: ProtocolErrorCallback | None = None,
    shutdown_timeout: float = 5.0,
) -> Channel:
    """Spawn an engine and open a started channel over its stdio.

    :param argv: Engine command line.
    :param env: Optional engine environment.
    :param cwd: Optional engine working directory.
    :param stderr: Where engine stderr goes; ``None`` inherits ours.
    :param default_timeout: Deadline applied to calls that pass no timeout.
    :param max_frame_bytes: Largest accepted inbound frame.
    :param event_dispatch: Listener delivery mode, ``thread`` or ``inline``.
    :param on_protocol_error: Optional callback for protocol errors.
    :param shutdown_timeout: Seconds to wait at each engine shutdown step.
    :returns: Started channel.
    """
    transport: SubprocessTransport = SubprocessTransport(
        argv,
        env=env,
        cwd=cwd,
        stderr=stderr,
        shutdown_timeout=shutdown_timeout,
    )
    channel: Channel = Channel(
        transport,
        default_timeout=default_timeout,
        max_frame_bytes=max_frame_bytes,
        event_dispatch=event_dispatch,
        on_protocol_error=on_protocol_error,
    )
    channel.start()
    return channel


def connect_socket(
    host: str,
    port: int,
    connect_timeout: float = 10.0,
    default_timeout: float | None = None,
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    event_dispatch: str = "thread",
    on_protocol_error: ProtocolErrorCallback | None = None,
) -> Channel:
    """Connect to an engine listening on a TCP port and open a started channel.

    :param host: Engine host.
    :param port: Engine port.
    :param connect_timeout: Connect timeout in seconds.
    :param default_timeout: Deadline applied to calls that pass no timeout.
    :param max_frame_bytes: Largest accepted inbound frame.
    :param event_dispatch: Listener delivery mode, ``thread`` or ``inline``.
    :param on_protocol_error: Optional callback for protocol errors.
    :returns: Started channel.
    """
    transport: SocketTransport = SocketTransport.connect(host, port, timeout=connect_timeout)
    channel: Channel = Channel(
        transport,
        default_timeout=default_timeout,
        max_frame_bytes=max_frame_bytes,
        event_dispatch=event_dispatch,
        on_protocol_error=on_protocol_error,
    )
    channel.start()
    return channel


def launch_reference_engine(
    default_timeout: float | None = None,
    event_dispatch: str = "thread",
    on_protocol_error: ProtocolErrorCallback | None = None,
    engine_args: list[str] | None = None,
) -> Channel:
    """Run the bundled reference engine in a child interpreter.

    :param default_timeout: Deadline applied to calls that pass no timeout.
    :param event_dispatch: Listener delivery mode, ``thread`` or ``inline``.
    :param on_protocol_error: Optional callback for protocol errors.
    :param engine_args: Extra command-line arguments for the engine.
    :returns: Started channel.
    """
    argv: list[str] = [sys.executable, "-m", REFERENCE_ENGINE_MODULE]
    if engine_args is not None:
        argv.extend(engine_args)
    return connect_subprocess(
        argv,
        env=_reference_engine_env(),
        default_timeout=default_timeout,
        event_dispatch=event_dispatch,
        on_protocol_error=on_protocol_error,
    )
