"""An HTTP proxy server: CONNECT tunnels and forwarded plain requests."""

from __future__ import annotations

import logging
import queue
import re
import threading
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple
from urllib.parse import urlsplit

from tunnelkit.dokodemo import _put
from tunnelkit.freedom import StreamConn
from tunnelkit.metadata import (
    Address,
    AddressError,
    Metadata,
    address_from_addr,
    address_from_host_port,
)

logger = logging.getLogger(__name__)

NAME = "HTTP"
_POLL = 0.1
_CHUNK = 4096
_MAX_LINE = 65536
_VERSION_RE = re.compile(r"HTTP/(\d+)\.(\d+)")


class _ParseError(ValueError):
    """A malformed or truncated HTTP message."""


class _Pipe:
    """An in-memory byte stream between the server and a forwarded exchange."""

    def __init__(self, stopped: threading.Event) -> None:
        self._buf = bytearray()
        self._closed = False
        self._cond = threading.Condition()
        self._stopped = stopped

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._closed:
                raise BrokenPipeError("http pipe closed")
            self._buf += data
            self._cond.notify_all()
        return len(data)

    def read(self, n: int) -> bytes:
        with self._cond:
            while not self._buf and not self._closed and not self._stopped.is_set():
                self._cond.wait(_POLL)
            if not self._buf:
                return b""
            chunk = bytes(self._buf[:n])
            del self._buf[:n]
            return chunk

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class _Reader:
    """Line and exact-length reads over anything with read(n)."""

    def __init__(self, source: Any) -> None:
        self._read = source.read
        self._buf = bytearray()
        self._eof = False

    def _fill(self) -> bool:
        if self._eof:
            return False
        chunk = self._read(_CHUNK)
        if not chunk:
            self._eof = True
            return False
        self._buf += chunk
        return True

    def readline(self) -> bytes:
        while True:
            index = self._buf.find(b"\n")
            if index >= 0:
                line = bytes(self._buf[: index + 1])
                del self._buf[: index + 1]
                return line
            if len(self._buf) > _MAX_LINE:
                raise _ParseError("header line too long")
            if not self._fill():
                line = bytes(self._buf)
                self._buf.clear()
                return line

    def read_exact(self, size: int) -> bytes:
        while len(self._buf) < size:
            if not self._fill():
                raise _ParseError("unexpected end of message body")
        data = bytes(self._buf[:size])
        del self._buf[:size]
        return data

    def read_to_end(self) -> bytes:
        while self._fill():
            pass
        data = bytes(self._buf)
        self._buf.clear()
        return data

    def take_buffered(self) -> bytes:
        data = bytes(self._buf)
        self._buf.clear()
        return data


@dataclass
class _Message:
    start_line: str
    headers: List[Tuple[str, str]]
    head: bytes

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None


@dataclass
class _Request:
    method: str
    uri: str
    major: int
    minor: int
    host: str
    message: _Message

    def serialize(self, body: bytes) -> bytes:
        lines = [f"{self.method} {self.uri} HTTP/{self.major}.{self.minor}", f"Host: {self.host}"]
        lines += [f"{key}: {value}" for key, value in self.message.headers if key.lower() != "host"]
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def _read_head(reader: _Reader) -> Optional[_Message]:
    first = reader.readline()
    if not first:
        return None
    if not first.endswith(b"\n"):
        raise _ParseError("truncated message head")
    lines = [first]
    headers: List[Tuple[str, str]] = []
    while True:
        line = reader.readline()
        if not line.endswith(b"\n"):
            raise _ParseError("truncated message head")
        lines.append(line)
        text = line.rstrip(b"\r\n")
        if not text:
            break
        name, sep, value = text.decode("latin-1").partition(":")
        if not sep or not name or name != name.strip():
            raise _ParseError(f"malformed header line {text!r}")
        headers.append((name, value.strip()))
    return _Message(first.rstrip(b"\r\n").decode("latin-1"), headers, b"".join(lines))


def _parse_version(text: str) -> Tuple[int, int]:
    match = _VERSION_RE.fullmatch(text)
    if match is None:
        raise _ParseError(f"malformed HTTP version {text!r}")
    return int(match.group(1)), int(match.group(2))


def _parse_request(message: _Message) -> _Request:
    parts = message.start_line.split(" ")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise _ParseError(f"malformed request line {message.start_line!r}")
    method, target, version = parts
    major, minor = _parse_version(version)
    if method.upper() == "CONNECT":
        return _Request(method, target, major, minor, target, message)
    if "://" in target:
        split = urlsplit(target)
        uri = split.path or "/"
        if split.query:
            uri += "?" + split.query
        return _Request(method, uri, major, minor, split.netloc, message)
    return _Request(method, target, major, minor, message.header("host") or "", message)


def _parse_status(message: _Message) -> int:
    parts = message.start_line.split(" ", 2)
    if len(parts) < 2 or not parts[1].isdigit() or len(parts[1]) != 3:
        raise _ParseError(f"malformed status line {message.start_line!r}")
    _parse_version(parts[0])
    return int(parts[1])


def _read_chunked(reader: _Reader) -> bytes:
    parts = []
    while True:
        line = reader.readline()
        if not line.endswith(b"\n"):
            raise _ParseError("truncated chunk size")
        parts.append(line)
        try:
            size = int(line.split(b";", 1)[0].strip(), 16)
        except ValueError:
            raise _ParseError(f"malformed chunk size {line!r}") from None
        if size < 0:
            raise _ParseError("negative chunk size")
        if size == 0:
            break
        parts.append(reader.read_exact(size + 2))
    while True:
        line = reader.readline()
        if not line.endswith(b"\n"):
            raise _ParseError("truncated trailer")
        parts.append(line)
        if not line.strip():
            break
    return b"".join(parts)


def _read_body(reader: _Reader, message: _Message, until_eof: bool) -> bytes:
    if "chunked" in (message.header("transfer-encoding") or "").lower():
        return _read_chunked(reader)
    length = message.header("content-length")
    if length is not None:
        if not length.isdigit():
            raise _ParseError(f"malformed content length {length!r}")
        return reader.read_exact(int(length))
    return reader.read_to_end() if until_eof else b""


def _has_port(host: str) -> bool:
    if host.startswith("["):
        return "]:" in host
    return host.count(":") == 1


def _target_address(host: str) -> Address:
    if _has_port(host):
        try:
            return address_from_addr("tcp", host)
        except (AddressError, ValueError):
            pass
    return address_from_host_port("tcp", host, 80)


class ConnectConn(StreamConn):
    """A CONNECT tunnel; bytes the client sent after its request are read first."""

    def __init__(self, sock, metadata: Metadata, pending: bytes = b"") -> None:
        super().__init__(sock, metadata)
        self._pending = pending

    def read(self, n: int = 8192) -> bytes:
        if self._pending:
            chunk, self._pending = self._pending[:n], self._pending[n:]
            return chunk
        return super().read(n)


class ForwardConn:
    """One plain HTTP exchange: read the request, write the response."""

    def __init__(self, local: StreamConn, metadata: Metadata, stopped: Optional[threading.Event] = None) -> None:
        stopped = stopped if stopped is not None else threading.Event()
        self.local = local
        self.metadata = metadata
        self._request = _Pipe(stopped)
        self._response = _Pipe(stopped)

    def __enter__(self) -> "ForwardConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read(self, n: int = 8192) -> bytes:
        """Return request bytes; b"" once the exchange is over."""
        return self._request.read(n)

    def write(self, data: bytes) -> int:
        """Pass response bytes back to the client."""
        return self._response.write(bytes(data))

    def close(self) -> None:
        self._request.close()
        self._response.close()


class HTTPProxyServer:
    """Reads proxy requests from an underlying server's connections."""

    def __init__(self, underlay: Any) -> None:
        self._underlay = underlay
        self._conns: queue.Queue = queue.Queue(maxsize=32)
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "HTTPProxyServer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        """Start accepting connections from the underlay."""
        if self._thread is None:
            self._thread = threading.Thread(target=self._accept_loop, daemon=True)
            self._thread.start()

    def _accept_loop(self) -> None:
        accept = getattr(self._underlay, "accept_http", None) or self._underlay.accept_conn
        while not self._stopped.is_set():
            try:
                conn = accept()
            except (ConnectionError, OSError) as exc:
                if self._stopped.is_set():
                    logger.debug("http closed")
                    return
                logger.error("http failed to accept connection: %s", exc)
                self._stopped.wait(_POLL)
                continue
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn: StreamConn) -> None:
        reader = _Reader(conn)
        try:
            message = _read_head(reader)
            if message is None:
                raise _ParseError("connection closed before a request")
            request = _parse_request(message)
        except (_ParseError, OSError) as exc:
            logger.error("not a valid http request: %s", exc)
            conn.close()
            return
        if request.method.upper() == "CONNECT":
            self._connect(conn, reader, request)
            return
        try:
            self._forward_loop(conn, reader, request)
        finally:
            conn.close()

    def _connect(self, conn: StreamConn, reader: _Reader, request: _Request) -> None:
        try:
            address = address_from_addr("tcp", request.host)
        except (AddressError, ValueError) as exc:
            logger.error("invalid http dest address: %s", exc)
            conn.close()
            return
        reply = f"HTTP/{request.major}.{request.minor} 200 Connection established\r\n\r\n"
        try:
            conn.write(reply.encode("ascii"))
        except OSError as exc:
            logger.error("http failed to respond connect request: %s", exc)
            conn.close()
            return
        tunnel = ConnectConn(conn.sock, Metadata(address=address), reader.take_buffered())
        if not _put(self._conns, tunnel, self._stopped.is_set):
            tunnel.close()

    def _forward_loop(self, conn: StreamConn, reader: _Reader, request: _Request) -> None:
        while True:
            address = _target_address(request.host)
            logger.debug("http dest %s", address)
            try:
                body = _read_body(reader, request.message, until_eof=False)
            except (_ParseError, OSError) as exc:
                logger.error("http failed to read the request body: %s", exc)
                return
            forward = ForwardConn(conn, Metadata(address=address), self._stopped)
            forward._request.write(request.serialize(body))
            if not _put(self._conns, forward, self._stopped.is_set):
                forward.close()
                return
            response_reader = _Reader(forward._response)
            try:
                head = _read_head(response_reader)
                if head is None:
                    raise _ParseError("no response")
                status = _parse_status(head)
                no_body = status < 200 or status in (204, 304) or request.method.upper() == "HEAD"
                response_body = b"" if no_body else _read_body(response_reader, head, until_eof=True)
            except _ParseError as exc:
                logger.error("http failed to read http response: %s", exc)
                forward.close()
                return
            try:
                conn.write(head.head + response_body)
            except OSError as exc:
                logger.error("http failed to write the response back: %s", exc)
                forward.close()
                return
            forward.close()
            try:
                message = _read_head(reader)
                if message is None:
                    logger.debug("http client closed the connection")
                    return
                request = _parse_request(message)
            except (_ParseError, OSError) as exc:
                logger.error("http failed to read the request from local: %s", exc)
                return

    def accept_conn(self):
        """Wait for the next CONNECT tunnel or forwarded exchange."""
        while True:
            try:
                return self._conns.get(timeout=_POLL)
            except queue.Empty:
                if self._stopped.is_set():
                    raise ConnectionError("http server closed") from None

    def close(self) -> None:
        self._stopped.set()
        self._underlay.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)