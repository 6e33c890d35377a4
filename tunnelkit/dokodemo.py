"""A port forwarder: traffic arriving on a local port is bound for one fixed target."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from tunnelkit.freedom import StreamConn
from tunnelkit.metadata import Metadata, address_from_host_port

logger = logging.getLogger(__name__)

NAME = "DOKODEMO"
MAX_PACKET_SIZE = 1024 * 8
_POLL = 0.1


@dataclass(frozen=True)
class DokodemoConfig:
    local_host: str = ""
    local_port: int = 0
    target_host: str = ""
    target_port: int = 0
    udp_timeout: float = 60


def _put(q: queue.Queue, item, done: Callable[[], bool]) -> bool:
    """Put item into q, giving up once done() turns true."""
    while not done():
        try:
            q.put(item, timeout=_POLL)
            return True
        except queue.Full:
            continue
    return False


def _listen(host: str, port: int, kind: int) -> socket.socket:
    family, _, proto, _, sockaddr = socket.getaddrinfo(
        host or None, port, socket.AF_UNSPEC, kind, 0, socket.AI_PASSIVE
    )[0]
    sock = socket.socket(family, kind, proto)
    try:
        if kind == socket.SOCK_STREAM:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6 and not host:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        sock.bind(sockaddr)
        if kind == socket.SOCK_STREAM:
            sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


class DokodemoConn(StreamConn):
    """An accepted TCP connection whose metadata names the fixed target."""

    def __init__(self, sock: socket.socket, metadata: Metadata) -> None:
        super().__init__(sock, metadata)


class DokodemoPacketConn:
    """One UDP source's session; packets are fed in by the server's dispatcher."""

    def __init__(self, src: Tuple, metadata: Metadata, server_stopped: Optional[threading.Event] = None) -> None:
        self.src = src
        self.metadata = metadata
        self._input: queue.Queue = queue.Queue(maxsize=16)
        self._output: queue.Queue = queue.Queue(maxsize=16)
        self._closed = threading.Event()
        self._server_stopped = server_stopped if server_stopped is not None else threading.Event()

    def __enter__(self) -> "DokodemoPacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _done(self) -> bool:
        return self._closed.is_set() or self._server_stopped.is_set()

    def read_with_metadata(self) -> Tuple[bytes, Metadata]:
        """Wait for the next payload; the metadata is always the target."""
        while True:
            try:
                return self._input.get(timeout=_POLL), self.metadata
            except queue.Empty:
                if self._done():
                    raise ConnectionError("dokodemo packet conn closed") from None

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        """Queue a reply to the source; the metadata is not used."""
        data = bytes(payload)
        if not _put(self._output, data, self._done):
            raise ConnectionError("dokodemo packet conn failed to write")
        return len(data)

    def close(self) -> None:
        """End the session; the shared UDP socket stays open."""
        self._closed.set()


class DokodemoServer:
    """Listens on TCP and UDP at one local address and hands out sessions."""

    def __init__(self, config: DokodemoConfig) -> None:
        self._config = config
        self._target = address_from_host_port("tcp", config.target_host, config.target_port)
        self._timeout = config.udp_timeout
        self._tcp: Optional[socket.socket] = None
        self._udp: Optional[socket.socket] = None
        self._packets: queue.Queue = queue.Queue(maxsize=32)
        self._mapping: Dict[Tuple, DokodemoPacketConn] = {}
        self._mapping_lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "DokodemoServer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        """Bind the listeners and start dispatching UDP packets."""
        if self._tcp is not None:
            return
        host, port = self._config.local_host, self._config.local_port
        try:
            tcp = _listen(host, port, socket.SOCK_STREAM)
        except OSError as exc:
            raise ConnectionError("failed to listen tcp") from exc
        try:
            udp = _listen(host, port, socket.SOCK_DGRAM)
        except OSError as exc:
            tcp.close()
            raise ConnectionError("failed to listen udp") from exc
        udp.settimeout(_POLL)
        self._tcp, self._udp = tcp, udp
        self._thread = threading.Thread(target=self._dispatch_loop, daemon=True)
        self._thread.start()

    def _dispatch_loop(self) -> None:
        fixed = Metadata(address=self._target)
        while not self._stopped.is_set():
            try:
                data, src = self._udp.recvfrom(MAX_PACKET_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._stopped.is_set():
                    logger.error("dokodemo failed to read from udp socket: %s", exc)
                return
            logger.debug("udp packet from %s", src)
            with self._mapping_lock:
                conn = self._mapping.get(src)
                is_new = conn is None
                if is_new:
                    conn = DokodemoPacketConn(src, fixed, self._stopped)
                    self._mapping[src] = conn
            if not _put(conn._input, data, conn._done):
                if self._stopped.is_set():
                    return
                continue
            if is_new:
                if not _put(self._packets, conn, self._stopped.is_set):
                    return
                threading.Thread(target=self._write_loop, args=(conn,), daemon=True).start()

    def _write_loop(self, conn: DokodemoPacketConn) -> None:
        deadline = time.monotonic() + self._timeout
        while not self._stopped.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                with self._mapping_lock:
                    if self._mapping.get(conn.src) is conn:
                        del self._mapping[conn.src]
                conn.close()
                logger.debug("closing timeout packetConn")
                return
            try:
                payload = conn._output.get(timeout=min(_POLL, remaining))
            except queue.Empty:
                continue
            try:
                self._udp.sendto(payload, conn.src)
            except OSError as exc:
                logger.error("dokodemo udp write error: %s", exc)
                return
            deadline = time.monotonic() + self._timeout

    def accept_conn(self) -> DokodemoConn:
        """Wait for the next TCP connection."""
        if self._tcp is None:
            raise ConnectionError("dokodemo server is not started")
        try:
            sock, _ = self._tcp.accept()
        except OSError as exc:
            raise ConnectionError("dokodemo failed to accept connection") from exc
        return DokodemoConn(sock, Metadata(address=self._target))

    def accept_packet(self) -> DokodemoPacketConn:
        """Wait for the next new UDP session."""
        while True:
            try:
                return self._packets.get(timeout=_POLL)
            except queue.Empty:
                if self._stopped.is_set():
                    raise ConnectionError("dokodemo server closed") from None

    def close(self) -> None:
        self._stopped.set()
        if self._tcp is not None:
            try:
                self._tcp.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._tcp.close()
        if self._udp is not None:
            self._udp.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)