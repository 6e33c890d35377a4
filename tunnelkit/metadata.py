"""Proxy request metadata: a command byte followed by a SOCKS5-style address."""

from __future__ import annotations

import asyncio
import ipaddress
import re
import socket
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Generator, Optional, Tuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_PORT_RE = re.compile(r"[+-]?\d+")

# A parser yields (byte count, failure message) and receives the bytes read.
_Request = Tuple[int, str]


class AddressError(ValueError):
    """Raised when an address cannot be parsed, encoded or resolved."""


class AddressType(IntEnum):
    IPV4 = 1
    DOMAIN_NAME = 3
    IPV6 = 4


def _parse_ip(text: str) -> Optional[IPAddress]:
    if "%" in text:
        return None
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    return _normalize_ip(ip)


def _normalize_ip(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _type_of(ip: IPAddress) -> AddressType:
    return AddressType.IPV4 if ip.version == 4 else AddressType.IPV6


@dataclass
class Address:
    """A destination: an IP address or a domain name, plus a port."""

    address_type: int
    port: int = 0
    domain_name: str = ""
    ip: Optional[IPAddress] = None
    network: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.ip, str):
            self.ip = ipaddress.ip_address(self.ip)
        if self.ip is not None:
            self.ip = _normalize_ip(self.ip)

    def __str__(self) -> str:
        if self.address_type == AddressType.IPV4:
            return f"{self.ip}:{self.port}"
        if self.address_type == AddressType.IPV6:
            return f"[{self.ip}]:{self.port}"
        if self.address_type == AddressType.DOMAIN_NAME:
            return f"{self.domain_name}:{self.port}"
        return "INVALID_ADDRESS_TYPE"

    def to_bytes(self) -> bytes:
        """Encode as ATYP, address and big-endian port."""
        if self.address_type == AddressType.DOMAIN_NAME:
            name = self.domain_name.encode()
            body = bytes([len(name) & 0xFF]) + name
        elif self.address_type in (AddressType.IPV4, AddressType.IPV6):
            if self.ip is None:
                raise AddressError("address has no IP")
            if self.address_type == AddressType.IPV4:
                if self.ip.version != 4:
                    raise AddressError(f"{self.ip} is not an IPv4 address")
                body = self.ip.packed
            elif self.ip.version == 4:
                body = ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + self.ip.packed).packed
            else:
                body = self.ip.packed
        else:
            raise AddressError(f"invalid ATYP {int(self.address_type)}")
        return bytes([int(self.address_type)]) + body + (self.port & 0xFFFF).to_bytes(2, "big")

    def resolve_ip(self) -> IPAddress:
        """Return the IP address, looking the domain name up if needed."""
        if self.address_type in (AddressType.IPV4, AddressType.IPV6) or self.ip is not None:
            if self.ip is None:
                raise AddressError("address has no IP")
            return self.ip
        try:
            infos = socket.getaddrinfo(self.domain_name, None)
        except (OSError, UnicodeError) as exc:
            raise AddressError(f"failed to resolve {self.domain_name}") from exc
        if not infos:
            raise AddressError(f"failed to resolve {self.domain_name}")
        ip = _parse_ip(str(infos[0][4][0]))
        if ip is None:
            raise AddressError(f"failed to resolve {self.domain_name}")
        self.ip = ip
        return ip


@dataclass
class Metadata:
    """A command together with its target address."""

    address: Address
    command: int = 0

    @property
    def network(self) -> str:
        return self.address.network

    def __str__(self) -> str:
        return str(self.address)

    def to_bytes(self) -> bytes:
        data = bytes([self.command & 0xFF]) + self.address.to_bytes()
        self.address.network = "tcp"
        return data


def address_from_host_port(network: str, host: str, port: int) -> Address:
    """Build an address, classifying the host as IPv4, IPv6 or a domain name."""
    ip = _parse_ip(host)
    if ip is not None:
        return Address(address_type=_type_of(ip), ip=ip, port=port, network=network)
    return Address(address_type=AddressType.DOMAIN_NAME, domain_name=host, port=port, network=network)


def _split_host_port(addr: str) -> Tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise AddressError(f"address {addr}: missing ']'")
        rest = addr[end + 1:]
        if not rest:
            raise AddressError(f"address {addr}: missing port")
        if not rest.startswith(":"):
            raise AddressError(f"address {addr}: unexpected text after ']'")
        host, port = addr[1:end], rest[1:]
        if "[" in host or "]" in port or "[" in port:
            raise AddressError(f"address {addr}: unexpected bracket")
        return host, port
    index = addr.rfind(":")
    if index < 0:
        raise AddressError(f"address {addr}: missing port")
    host, port = addr[:index], addr[index + 1:]
    if ":" in host:
        raise AddressError(f"address {addr}: too many colons")
    if "[" in host or "]" in host or "[" in port or "]" in port:
        raise AddressError(f"address {addr}: unexpected bracket")
    return host, port


def address_from_addr(network: str, addr: str) -> Address:
    """Parse a "host:port" string."""
    host, port_text = _split_host_port(addr)
    if not _PORT_RE.fullmatch(port_text):
        raise AddressError(f"invalid port {port_text!r}")
    return address_from_host_port(network, host, int(port_text))


def _address_parser() -> Generator[_Request, bytes, Address]:
    atyp = (yield 1, "unable to read ATYP")[0]
    if atyp == AddressType.IPV4:
        buf = yield 6, "failed to read IPv4"
        ip = ipaddress.IPv4Address(buf[:4])
        return Address(address_type=AddressType.IPV4, ip=ip, port=int.from_bytes(buf[4:6], "big"))
    if atyp == AddressType.IPV6:
        buf = yield 18, "failed to read IPv6"
        ip = _normalize_ip(ipaddress.IPv6Address(buf[:16]))
        return Address(address_type=AddressType.IPV6, ip=ip, port=int.from_bytes(buf[16:18], "big"))
    if atyp == AddressType.DOMAIN_NAME:
        length = (yield 1, "failed to read domain name length")[0]
        buf = yield length + 2, "failed to read domain name"
        host = buf[:length].decode("utf-8", errors="replace")
        port = int.from_bytes(buf[length:length + 2], "big")
        ip = _parse_ip(host)
        if ip is not None:
            # Clients sometimes send an IP literal as a domain name.
            return Address(address_type=_type_of(ip), ip=ip, port=port)
        return Address(address_type=AddressType.DOMAIN_NAME, domain_name=host, port=port)
    raise AddressError(f"invalid ATYP {atyp}")


def _metadata_parser() -> Generator[_Request, bytes, Metadata]:
    command = (yield 1, "failed to read command")[0]
    try:
        address = yield from _address_parser()
    except AddressError as exc:
        raise AddressError(f"failed to marshal address: {exc}") from exc
    return Metadata(address=address, command=command)


def _read_exactly(reader: BinaryIO, size: int) -> Optional[bytes]:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            return None
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _run_sync(parser, reader: BinaryIO):
    request = next(parser)
    while True:
        size, message = request
        data = _read_exactly(reader, size)
        try:
            if data is None:
                request = parser.throw(AddressError(message))
            else:
                request = parser.send(data)
        except StopIteration as stop:
            return stop.value


async def _run_async(parser, reader: asyncio.StreamReader):
    request = next(parser)
    while True:
        size, message = request
        try:
            data: Optional[bytes] = await reader.readexactly(size)
        except asyncio.IncompleteReadError:
            data = None
        try:
            if data is None:
                request = parser.throw(AddressError(message))
            else:
                request = parser.send(data)
        except StopIteration as stop:
            return stop.value


def read_address(reader: BinaryIO) -> Address:
    """Read an encoded address from a binary file-like object."""
    return _run_sync(_address_parser(), reader)


async def read_address_async(reader: asyncio.StreamReader) -> Address:
    """Read an encoded address from an asyncio stream."""
    return await _run_async(_address_parser(), reader)


def read_metadata(reader: BinaryIO) -> Metadata:
    """Read a command byte and an address from a binary file-like object."""
    return _run_sync(_metadata_parser(), reader)


async def read_metadata_async(reader: asyncio.StreamReader) -> Metadata:
    """Read a command byte and an address from an asyncio stream."""
    return await _run_async(_metadata_parser(), reader)