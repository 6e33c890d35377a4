import asyncio
import io
import ipaddress

import pytest

from tunnelkit.metadata import (
    Address,
    AddressError,
    AddressType,
    Metadata,
    address_from_addr,
    address_from_host_port,
    read_address,
    read_address_async,
    read_metadata,
    read_metadata_async,
)


def test_ipv4_wire_bytes():
    addr = address_from_host_port("tcp", "127.0.0.1", 80)
    assert addr.to_bytes() == b"\x01\x7f\x00\x00\x01\x00\x50"


def test_domain_wire_layout():
    addr = address_from_host_port("tcp", "example.com", 443)
    data = addr.to_bytes()
    assert data[0] == AddressType.DOMAIN_NAME
    assert data[1] == len("example.com")
    assert data[2:-2] == b"example.com"
    assert int.from_bytes(data[-2:], "big") == 443


@pytest.mark.parametrize(
    "host,port,kind",
    [
        ("127.0.0.1", 80, AddressType.IPV4),
        ("::1", 8080, AddressType.IPV6),
        ("example.com", 443, AddressType.DOMAIN_NAME),
    ],
)
def test_round_trip(host, port, kind):
    addr = address_from_host_port("tcp", host, port)
    assert addr.address_type == kind
    parsed = read_address(io.BytesIO(addr.to_bytes()))
    assert parsed.address_type == kind
    assert parsed.port == port
    assert str(parsed) == str(addr)


def test_string_forms():
    assert str(address_from_host_port("tcp", "::1", 8080)) == "[::1]:8080"
    assert str(Address(address_type=2, port=1)) == "INVALID_ADDRESS_TYPE"


def test_domain_holding_ip_is_reclassified():
    raw = Address(address_type=AddressType.DOMAIN_NAME, domain_name="10.0.0.1", port=53).to_bytes()
    parsed = read_address(io.BytesIO(raw))
    assert parsed.address_type == AddressType.IPV4
    assert parsed.ip == ipaddress.ip_address("10.0.0.1")
    assert parsed.domain_name == ""


def test_invalid_atyp_raises():
    with pytest.raises(AddressError, match="invalid ATYP"):
        read_address(io.BytesIO(b"\x02\x00\x00"))


def test_truncated_raises():
    with pytest.raises(AddressError, match="IPv4"):
        read_address(io.BytesIO(b"\x01\x7f\x00"))
    with pytest.raises(AddressError, match="ATYP"):
        read_address(io.BytesIO(b""))


def test_to_bytes_invalid_type():
    with pytest.raises(AddressError):
        Address(address_type=7, port=1).to_bytes()


def test_address_from_addr_ipv6():
    addr = address_from_addr("udp", "[::1]:53")
    assert addr.address_type == AddressType.IPV6
    assert addr.port == 53
    assert addr.network == "udp"


def test_address_from_addr_domain():
    addr = address_from_addr("tcp", "google.com:443")
    assert addr.domain_name == "google.com"
    assert addr.port == 443


@pytest.mark.parametrize("bad", ["nohost", "a:b:c", "[::1", "host:", "host:abc"])
def test_address_from_addr_errors(bad):
    with pytest.raises(AddressError):
        address_from_addr("tcp", bad)


def test_metadata_round_trip_sets_network():
    meta = Metadata(command=3, address=address_from_host_port("", "test.com", 443))
    data = meta.to_bytes()
    assert meta.network == "tcp"
    parsed = read_metadata(io.BytesIO(data))
    assert parsed.command == 3
    assert str(parsed) == str(meta)


def test_metadata_bad_address_wrapped():
    with pytest.raises(AddressError, match="failed to marshal address"):
        read_metadata(io.BytesIO(b"\x01\x09"))


def test_resolve_ip_literal_and_localhost():
    addr = address_from_host_port("tcp", "192.168.1.2", 1)
    assert addr.resolve_ip() == ipaddress.ip_address("192.168.1.2")
    local = Address(address_type=AddressType.DOMAIN_NAME, domain_name="localhost", port=1)
    assert local.resolve_ip().is_loopback
    assert local.ip == local.resolve_ip()


@pytest.mark.asyncio
async def test_async_readers():
    meta = Metadata(command=1, address=address_from_host_port("tcp", "::1", 9))
    reader = asyncio.StreamReader()
    reader.feed_data(meta.to_bytes() + address_from_host_port("tcp", "a.org", 7).to_bytes())
    reader.feed_eof()
    parsed = await read_metadata_async(reader)
    assert parsed.command == 1
    assert parsed.address.ip == ipaddress.ip_address("::1")
    second = await read_address_async(reader)
    assert second.domain_name == "a.org"
    assert second.port == 7
    with pytest.raises(AddressError):
        await read_address_async(reader)