"""Byte-stream transports between this process and an engine."""

import atexit
import logging
import socket
import subprocess
import threading
from collections.abc import Callable
from typing import BinaryIO

from conduit.errors import TransportError

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]
CloseCallback = Callable[[TransportError | None], None]
_READ_CHUNK_BYTES: int = 64 * 1024
_READER_JOIN_TIMEOUT_SECONDS: float = 5.0


class Transport:
    """Ordered bidirectional byte stream with a dedicated reader thread.

    Subclasses implement the stream hooks; this base owns thread lifecycle,
    write ordering and the exactly-once close notification.
    """

    _name: str
    _on_data: DataCallback | None
    _on_close: CloseCallback | None
    _write_lock: threading.Lock
    _state_lock: threading.Lock
    _is_started: bool
    _is_closing: bool
    _close_notified: bool
    _reader_thread: threading.Thread | None

    def __init__(self, name: str) -> None:
        """Initialize shared transport state.

        :param name: Short label used for thread names and log lines.
        """
        self._name = name
        self._on_data = None
        self._on_close = None
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._is_started = False
        self._is_closing = False
        self._close_notified = False
        self._reader_thread = None

    @property
    def name(self) -> str:
        """Return the transport label.

        :returns: Label text.
        """
        return self._name

    @property
    def is_closed(self) -> bool:
        """Report whether the transport is closed or closing.

        :returns: ``True`` once :meth:`close` ran or the stream ended.
        """
        with self._state_lock:
            return self._is_closing is True or self._close_notified is True

    def is_reader_thread(self) -> bool:
        """Report whether the current thread is this transport's reader.

        :returns: ``True`` when called from the reader thread.
        """
        reader_thread: threading.Thread | None = self._reader_thread
        if reader_thread is None:
            return False
        return threading.current_thread() is reader_thread

    def start(self, on_data: DataCallback, on_close: CloseCallback) -> None:
        """Open the stream and start delivering inbound bytes.

        :param on_data: Called from the reader thread with each inbound chunk.
        :param on_close: Called exactly once when the stream ends or fails.
        :raises TransportError: If already started, closed, or the stream cannot be opened.
        """
        with self._state_lock:
            if self._is_started is True:
                raise TransportError(f"Transport {self._name} already started")
            if self._is_closing is True:
                raise TransportError(f"Transport {self._name} is closed")
            self._on_data = on_data
            self._on_close = on_close
            self._open()
            reader_thread: threading.Thread = threading.Thread(
                target=self._read_loop,
                name=f"conduit-{self._name}-reader",
                daemon=True,
            )
            self._reader_thread = reader_thread
            self._is_started = True
        reader_thread.start()

    def send(self, data: bytes) -> None:
        """Write one buffer, preserving order across concurrent senders.

        :param data: Bytes to write.
        :raises TransportError: If the transport is closed or the write fails.
        """
        with self._write_lock:
            if self.is_closed is True:
                raise TransportError(f"Transport {self._name} is closed")
            try:
                self._write(data)
            except (OSError, ValueError) as exc:
                raise TransportError(f"Failed to write to {self._name}") from exc

    def close(self) -> None:
        """Shut the stream down and release it. Safe to call repeatedly."""
        with self._state_lock:
            if self._is_closing is True:
                return
            self._is_closing = True
            is_started: bool = self._is_started
            reader_thread: threading.Thread | None = self._reader_thread

        try:
            if is_started is True:
                self._shutdown()
        finally:
            reader_alive: bool = False
            if reader_thread is not None and reader_thread is not threading.current_thread():
                reader_thread.join(timeout=_READER_JOIN_TIMEOUT_SECONDS)
                reader_alive = reader_thread.is_alive()
            if reader_alive is True:
                logger.warning("Reader for %s did not stop; leaving its stream open", self._name)
            self._release(reader_alive)
            self._notify_closed(None)

    def _read_loop(self) -> None:
        """Deliver inbound chunks until end of stream."""
        error: TransportError | None = None
        try:
            while True:
                chunk: bytes = self._read_chunk()
                if len(chunk) == 0:
                    logger.debug("End of stream on %s", self._name)
                    break
                on_data: DataCallback | None = self._on_data
                if on_data is not None:
                    on_data(chunk)
        except (OSError, ValueError) as exc:
            with self._state_lock:
                is_closing: bool = self._is_closing
            if is_closing is False:
                error = TransportError(f"Failed to read from {self._name}")
                error.__cause__ = exc
        except Exception as exc:
            logger.exception("Inbound handler failed on %s", self._name)
            error = TransportError(f"Inbound handler failed on {self._name}")
            error.__cause__ = exc
        finally:
            self._notify_closed(error)

    def _notify_closed(self, error: TransportError | None) -> None:
        """Invoke the close callback once.

        :param error: Failure that ended the stream, or ``None`` for a clean end.
        """
        with self._state_lock:
            if self._close_notified is True:
                return
            self._close_notified = True
            on_close: CloseCallback | None = self._on_close
        if on_close is not None:
            on_close(error)

    def _open(self) -> None:
        """Open the underlying stream. Called once from :meth:`start`."""

    def _read_chunk(self) -> bytes:
        """Read the next available bytes.

        :returns: A non-empty chunk, or ``b""`` at end of stream.
        """
        raise NotImplementedError

    def _write(self, data: bytes) -> None:
        """Write and flush ``data`` completely.

        :param data: Bytes to write.
        """
        raise NotImplementedError

    def _shutdown(self) -> None:
        """Ask the peer to finish so the reader reaches end of stream."""

    def _release(self, reader_alive: bool) -> None:
        """Release underlying handles after shutdown.

        :param reader_alive: ``True`` when the reader thread is still blocked.
        """


class StreamTransport(Transport):
    """Transport over an already-open pair of binary streams."""

    _reader: BinaryIO
    _writer: BinaryIO

    def __init__(self, reader: BinaryIO, writer: BinaryIO, name: str = "stream") -> None:
        """Initialize a stream transport.

        :param reader: Buffered binary stream the engine writes to.
        :param writer: Binary stream the engine reads from.
        :param name: Label used for thread names and log lines.
        """
        super().__init__(name)
        self._reader = reader
        self._writer = writer

    def _read_chunk(self) -> bytes:
        return self._reader.read1(_READ_CHUNK_BYTES)

    def _write(self, data: bytes) -> None:
        self._writer.write(data)
        self._writer.flush()

    def _shutdown(self) -> None:
        try:
            self._writer.close()
        except OSError:
            logger.debug("Ignoring error while closing writer of %s", self._name)

    def _release(self, reader_alive: bool) -> None:
        if reader_alive is True:
            return
        try:
            self._reader.close()
        except OSError:
            logger.debug("Ignoring error while closing reader of %s", self._name)


class SubprocessTransport(Transport):
    """Transport that spawns the engine and speaks over its stdin/stdout."""

    _argv: list[str]
    _env: dict[str, str] | None
    _cwd: str | None
    _stderr: int | BinaryIO | None
    _shutdown_timeout: float
    _process: subprocess.Popen[bytes] | None

    def __init__(
        self,
        argv: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        stderr: int | BinaryIO | None = None,
        shutdown_timeout: float = 5.0,
    ) -> None:
        """Initialize a subprocess transport.

        :param argv: Engine command line.
        :param env: Optional environment for the engine.
        :param cwd: Optional working directory for the engine.
        :param stderr: Where engine stderr goes; ``None`` inherits ours.
        :param shutdown_timeout: Seconds to wait at each shutdown escalation step.
        :raises ValueError: If ``argv`` is empty.
        """
        if len(argv) == 0:
            raise ValueError("argv must name the engine executable")
        super().__init__(f"engine:{argv[0]}")
        self._argv = list(argv)
        self._env = env
        self._cwd = cwd
        self._stderr = stderr
        self._shutdown_timeout = shutdown_timeout
        self._process = None

    @property
    def pid(self) -> int | None:
        """Return the engine process id once started.

        :returns: Process id or ``None``.
        """
        process: subprocess.Popen[bytes] | None = self._process
        if process is None:
            return None
        return process.pid

    @property
    def returncode(self) -> int | None:
        """Return the engine exit status once it has exited.

        :returns: Exit status or ``None`` while running.
        """
        process: subprocess.Popen[bytes] | None = self._process
        if process is None:
            return None
        return process.poll()

    def _open(self) -> None:
        try:
            process: subprocess.Popen[bytes] = subprocess.Popen(
                self._argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=self._stderr,
                env=self._env,
                cwd=self._cwd,
            )
        except OSError as exc:
            raise TransportError(f"Failed to start engine {self._argv[0]!r}") from exc
        self._process = process
        atexit.register(self.close)
        logger.info("Engine %s started (pid %d)", self._argv[0], process.pid)

    def _require_process(self) -> subprocess.Popen[bytes]:
        """Return the running engine process.

        :returns: Process handle.
        :raises TransportError: If the engine was never started.
        """
        process: subprocess.Popen[bytes] | None = self._process
        if process is None:
            raise TransportError(f"Transport {self._name} is not started")
        return process

    def _read_chunk(self) -> bytes:
        process: subprocess.Popen[bytes] = self._require_process()
        if process.stdout is None:
            raise TransportError("Engine stdout is not a pipe")
        return process.stdout.read1(_READ_CHUNK_BYTES)

    def _write(self, data: bytes) -> None:
        process: subprocess.Popen[bytes] = self._require_process()
        if process.stdin is None:
            raise TransportError("Engine stdin is not a pipe")
        process.stdin.write(data)
        process.stdin.flush()

    def _shutdown(self) -> None:
        process: subprocess.Popen[bytes] = self._require_process()
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:
                logger.debug("Ignoring error while closing engine stdin")

        try:
            process.wait(timeout=self._shutdown_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Engine pid %d ignored stdin close; terminating", process.pid)
            process.terminate()
            try:
                process.wait(timeout=self._shutdown_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Engine pid %d ignored terminate; killing", process.pid)
                process.kill()
                process.wait()
        logger.info("Engine pid %d exited with status %s", process.pid, process.returncode)

    def _release(self, reader_alive: bool) -> None:
        atexit.unregister(self.close)
        process: subprocess.Popen[bytes] | None = self._process
        if process is None or reader_alive is True:
            return
        if process.stdout is not None:
            try:
                process.stdout.close()
            except OSError:
                logger.debug("Ignoring error while closing engine stdout")


class SocketTransport(Transport):
    """Transport over a connected stream socket."""

    _socket: socket.socket

    def __init__(self, sock: socket.socket, name: str = "socket") -> None:
        """Initialize a socket transport.

        :param sock: Connected stream socket; the transport takes ownership.
        :param name: Label used for thread names and log lines.
        """
        super().__init__(name)
        self._socket = sock

    @classmethod
    def connect(cls, host: str, port: int, timeout: float = 10.0) -> "SocketTransport":
        """Connect to an engine listening on ``host:port``.

        :param host: Engine host.
        :param port: Engine port.
        :param timeout: Connect timeout in seconds.
        :returns: Unstarted transport.
        :raises TransportError: If the connection fails.
        """
        try:
            sock: socket.socket = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise TransportError(f"Failed to connect to engine at {host}:{port}") from exc
        sock.settimeout(None)
        return cls(sock, name=f"socket:{host}:{port}")

    def _read_chunk(self) -> bytes:
        return self._socket.recv(_READ_CHUNK_BYTES)

    def _write(self, data: bytes) -> None:
        self._socket.sendall(data)

    def _shutdown(self) -> None:
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            logger.debug("Ignoring error while shutting down %s", self._name)

    def _release(self, reader_alive: bool) -> None:
        _ = reader_alive
        self._socket.close()
