"""Direct outbound connections, optionally through a SOCKS5 forward proxy."""

from __future__ import annotations

import io
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple

from tunnelkit.metadata import (
    Address,
    AddressError,
    AddressType,
    Metadata,
    address_from_host_port,
    read_address,
)

logger = logging.getLogger(__name__)

NAME = "FREEDOM"
MAX_PACKET_SIZE = 1024 * 8

_SOCKS_CONNECT = 1
_SOCKS_UDP_ASSOCIATE = 3


@dataclass(frozen=True)
class TCPConfig:
    prefer_ipv4: bool = False
    keep_alive: bool = True
    no_delay: bool = True


@dataclass(frozen=True)
class ForwardProxyConfig:
    enabled: bool = False
    proxy_host: str = ""
    proxy_port: int = 0
    username: str = ""
    password: str = ""


@dataclass(frozen=True)
class FreedomConfig:
    local_host: str = ""
    local_port: int = 0
    tcp: TCPConfig = field(default_factory=TCPConfig)
    forward_proxy: ForwardProxyConfig = field(default_factory=ForwardProxyConfig)


class _SocketReader:
    """Unbuffered reads from a socket, so nothing past a reply is consumed."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read(self, n: int) -> bytes:
        return self._sock.recv(n)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError("connection closed by the socks proxy")
        data += chunk
    return data


def _peer_address(network: str, peer: Tuple) -> Address:
    host = str(peer[0]).split("%", 1)[0]
    return address_from_host_port(network, host, int(peer[1]))


def _open_udp(prefer_ipv4: bool) -> socket.socket:
    if not prefer_ipv4 and socket.has_ipv6:
        try:
            sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
        except OSError:
            pass
        else:
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                sock.bind(("::", 0))
                return sock
            except OSError:
                sock.close()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(("", 0))
    except OSError:
        sock.close()
        raise
    return sock


class StreamConn:
    """A connected TCP stream, with the metadata it was opened for, if any."""

    def __init__(self, sock: socket.socket, metadata: Optional[Metadata] = None) -> None:
        self.sock = sock
        self.metadata = metadata

    def __enter__(self) -> "StreamConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read(self, n: int = MAX_PACKET_SIZE) -> bytes:
        """Return up to n bytes; b"" at end of stream."""
        return self.sock.recv(n)

    def write(self, data: bytes) -> int:
        self.sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self.sock.close()


class UDPPacketConn:
    """A plain UDP socket addressed with metadata."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock

    def __enter__(self) -> "UDPPacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        address = metadata.address
        ip = address.resolve_ip()
        host = str(ip)
        if self.sock.family == socket.AF_INET6 and ip.version == 4:
            host = f"::ffff:{ip}"
        return self.sock.sendto(payload, (host, address.port))

    def read_with_metadata(self) -> Tuple[bytes, Metadata]:
        """Receive one datagram and the address it came from."""
        data, peer = self.sock.recvfrom(MAX_PACKET_SIZE)
        return data, Metadata(address=_peer_address("udp", peer))

    def close(self) -> None:
        self.sock.close()


class SocksPacketConn:
    """UDP relayed through a SOCKS5 proxy's UDP ASSOCIATE."""

    def __init__(self, sock: socket.socket, relay: Tuple[str, int], control: socket.socket) -> None:
        self.sock = sock
        self._relay = relay
        self._control = control

    def __enter__(self) -> "SocksPacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        packet = b"\x00\x00\x00" + metadata.address.to_bytes() + bytes(payload)
        self.sock.sendto(packet, self._relay)
        logger.debug("sent udp packet to %s with metadata %s", self._relay, metadata)
        return len(payload)

    def read_with_metadata(self) -> Tuple[bytes, Metadata]:
        data, peer = self.sock.recvfrom(MAX_PACKET_SIZE)
        logger.debug("recv udp packet from %s", peer)
        reader = io.BytesIO(data[3:])
        try:
            address = read_address(reader)
        except AddressError as exc:
            raise AddressError(f"socks5 failed to parse addr in the packet: {exc}") from exc
        payload = reader.read()
        if not payload:
            raise EOFError("socks5 packet carries no payload")
        return payload, Metadata(address=address)

    def close(self) -> None:
        self._control.close()
        self.sock.close()


class FreedomClient:
    """Dials targets directly, or through the configured SOCKS5 proxy."""

    def __init__(self, config: Optional[FreedomConfig] = None) -> None:
        config = config if config is not None else FreedomConfig()
        self._tcp = config.tcp
        self._proxy = config.forward_proxy
        self._closed = threading.Event()

    def __enter__(self) -> "FreedomClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise ConnectionError("freedom client closed")

    def _connect(self, address: Address) -> socket.socket:
        if address.address_type == AddressType.DOMAIN_NAME:
            host = address.domain_name
        else:
            host = str(address.ip)
        if not self._tcp.prefer_ipv4:
            return socket.create_connection((host, address.port))
        last: Optional[OSError] = None
        for family, kind, proto, _, sockaddr in socket.getaddrinfo(
            host, address.port, socket.AF_INET, socket.SOCK_STREAM
        ):
            sock = socket.socket(family, kind, proto)
            try:
                sock.connect(sockaddr)
                return sock
            except OSError as exc:
                sock.close()
                last = exc
        raise last if last is not None else OSError(f"no IPv4 address for {host}")

    def _socks_handshake(self) -> socket.socket:
        proxy = self._proxy
        sock = socket.create_connection((proxy.proxy_host, proxy.proxy_port))
        try:
            methods = b"\x00\x02" if proxy.username else b"\x00"
            sock.sendall(b"\x05" + bytes([len(methods)]) + methods)
            version, method = _recv_exact(sock, 2)
            if version != 5:
                raise ConnectionError(f"unexpected socks version {version}")
            if method == 2 and proxy.username:
                user = proxy.username.encode()
                secret = proxy.password.encode()
                sock.sendall(b"\x01" + bytes([len(user)]) + user + bytes([len(secret)]) + secret)
                if _recv_exact(sock, 2)[1] != 0:
                    raise ConnectionError("socks username/password authentication failed")
            elif method != 0:
                raise ConnectionError("socks proxy accepted no authentication method")
        except BaseException:
            sock.close()
            raise
        return sock

    @staticmethod
    def _socks_request(sock: socket.socket, command: int, address: Address) -> Address:
        sock.sendall(bytes([5, command, 0]) + address.to_bytes())
        version, reply, _ = _recv_exact(sock, 3)
        if version != 5:
            raise ConnectionError(f"unexpected socks version {version}")
        if reply != 0:
            raise ConnectionError(f"socks request failed with code {reply}")
        return read_address(_SocketReader(sock))

    def dial_conn(self, address: Address) -> StreamConn:
        """Open a TCP stream to address."""
        self._check_open()
        if self._proxy.enabled:
            try:
                sock = self._socks_handshake()
            except (OSError, AddressError) as exc:
                raise ConnectionError(f"freedom failed to dial target address via socks proxy {address}") from exc
            try:
                self._socks_request(sock, _SOCKS_CONNECT, address)
            except (OSError, AddressError) as exc:
                sock.close()
                raise ConnectionError(f"freedom failed to dial target address via socks proxy {address}") from exc
            return StreamConn(sock)
        try:
            sock = self._connect(address)
        except (OSError, UnicodeError) as exc:
            raise ConnectionError(f"freedom failed to dial {address}") from exc
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, int(self._tcp.keep_alive))
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(self._tcp.no_delay))
        except OSError as exc:
            logger.debug("failed to set socket options: %s", exc)
        return StreamConn(sock)

    def dial_packet(self):
        """Open a UDP packet connection, direct or relayed by the proxy."""
        self._check_open()
        if self._proxy.enabled:
            return self._dial_socks_packet()
        try:
            sock = _open_udp(self._tcp.prefer_ipv4)
        except OSError as exc:
            raise ConnectionError("freedom failed to listen udp socket") from exc
        return UDPPacketConn(sock)

    def _dial_socks_packet(self) -> SocksPacketConn:
        try:
            control = self._socks_handshake()
        except (OSError, AddressError) as exc:
            raise ConnectionError("freedom failed to negotiate socks") from exc
        try:
            placeholder = Address(address_type=AddressType.IPV4, ip="1.1.1.1", port=53)
            bound = self._socks_request(control, _SOCKS_UDP_ASSOCIATE, placeholder)
        except (OSError, AddressError) as exc:
            control.close()
            raise ConnectionError("freedom failed to dial udp to socks") from exc
        try:
            ip = bound.resolve_ip()
        except AddressError as exc:
            control.close()
            raise ConnectionError("freedom recv invalid socks bind addr") from exc
        relay_host = self._proxy.proxy_host if ip.is_unspecified else str(ip)
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.bind(("127.0.0.1", 0))
        except OSError as exc:
            control.close()
            raise ConnectionError("freedom failed to listen udp") from exc
        return SocksPacketConn(sock, (relay_host, bound.port), control)

    def close(self) -> None:
        """Refuse further dials."""
        self._closed.set()