import socket
import threading

import pytest

from tunnelkit.metadata import Address, AddressType, Metadata
from tunnelkit.router import (
    CidrRule,
    DomainRule,
    DomainRuleType,
    DomainStrategy,
    Policy,
    RouterClient,
    RouterConfig,
    RouterError,
    load_code,
    match_domain,
    match_ip,
)


class MockPacketConn:
    def __init__(self):
        self.closed = False

    def write_with_metadata(self, payload, metadata):
        raise ConnectionError("mockproxy")

    def read_with_metadata(self):
        raise ConnectionError("mockproxy")

    def close(self):
        self.closed = True


class MockClient:
    def dial_conn(self, address):
        raise ConnectionError("mockproxy")

    def dial_packet(self):
        return MockPacketConn()

    def close(self):
        pass


class FakeGeodata:
    def load_ip(self, filename, code):
        if code != "cn":
            raise LookupError(f"code {code} not found in {filename}")
        return [CidrRule("10.0.0.0", 8)]

    def load_site(self, filename, code):
        if code != "google":
            raise LookupError(f"code {code} not found in {filename}")
        return [
            DomainRule(DomainRuleType.DOMAIN, "google.com"),
            DomainRule(DomainRuleType.DOMAIN, "doubleclick.net", ("ads",)),
        ]


SOURCE_CONFIG = RouterConfig(
    enabled=True,
    bypass=("regex:bypassreg(.*)", "full:bypassfull", "full:localhost", "domain:bypass.com"),
    block=("regexp:blockreg(.*)", "full:blockfull", "domain:block.com"),
    proxy=("regexp:proxyreg(.*)", "full:proxyfull", "domain:proxy.com", "cidr:192.168.1.1/16"),
)


def domain(name, port=80):
    return Address(address_type=AddressType.DOMAIN_NAME, domain_name=name, port=port)


def ipv4(ip, port=80):
    return Address(address_type=AddressType.IPV4, ip=ip, port=port)


@pytest.fixture
def client():
    c = RouterClient(SOURCE_CONFIG, MockClient())
    yield c
    c.close()


@pytest.mark.parametrize("name", ["proxy.com", "proxyreg123456", "proxyfull"])
def test_proxied_domains_go_to_underlay(client, name):
    with pytest.raises(ConnectionError, match="^mockproxy$"):
        client.dial_conn(domain(name))


def test_proxied_cidr_goes_to_underlay(client):
    with pytest.raises(ConnectionError, match="^mockproxy$"):
        client.dial_conn(ipv4("192.168.123.123"))


def test_blocked_domain(client):
    with pytest.raises(RouterError, match="block"):
        client.dial_conn(domain("block.com"))


def test_bypass_dials_directly(client):
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen()
    port = server.getsockname()[1]
    try:
        conn = client.dial_conn(domain("localhost", port))
        accepted, _ = server.accept()
        accepted.settimeout(5)
        try:
            conn.write(b"hello")
            assert accepted.recv(5) == b"hello"
            accepted.sendall(b"world")
            received = b""
            while len(received) < 5:
                chunk = conn.read(5 - len(received))
                if not chunk:
                    break
                received += chunk
            assert received == b"world"
        finally:
            accepted.close()
            conn.close()
    finally:
        server.close()


def test_packet_to_proxied_domain_uses_proxy(client):
    packet = client.dial_packet()
    try:
        with pytest.raises(ConnectionError, match="^mockproxy$"):
            packet.write_with_metadata(bytes(10), Metadata(address=domain("proxyfull", 1234)))
    finally:
        packet.close()


def test_packet_to_blocked_domain_is_refused(client):
    packet = client.dial_packet()
    try:
        with pytest.raises(RouterError, match="blocked"):
            packet.write_with_metadata(b"x", Metadata(address=domain("blockfull", 53)))
    finally:
        packet.close()


def test_packet_bypass_round_trip():
    config = RouterConfig(bypass=("cidr:127.0.0.0/8",))
    echo = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    echo.bind(("127.0.0.1", 0))
    echo.settimeout(5)
    port = echo.getsockname()[1]

    def serve():
        data, peer = echo.recvfrom(2048)
        echo.sendto(data, peer)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    with RouterClient(config, MockClient()) as router:
        packet = router.dial_packet()
        try:
            sent = packet.write_with_metadata(b"ping", Metadata(address=ipv4("127.0.0.1", port)))
            payload, metadata = packet.read_with_metadata()
        finally:
            packet.close()
    thread.join(timeout=5)
    echo.close()
    assert sent == 4
    assert payload == b"ping"
    assert metadata.address.port == port
    assert str(metadata.address.ip) == "127.0.0.1"


def test_read_after_close_raises_eof(client):
    packet = client.dial_packet()
    packet.close()
    with pytest.raises(EOFError):
        packet.read_with_metadata()


def test_route_values(client):
    assert client.route(domain("bypass.com")) is Policy.BYPASS
    assert client.route(domain("www.block.com")) is Policy.BLOCK
    assert client.route(domain("blockreg-x")) is Policy.BLOCK
    assert client.route(domain("unknown.org")) is Policy.PROXY
    assert client.route(ipv4("8.8.8.8")) is Policy.PROXY


def test_default_policy_and_case_insensitive_names():
    config = RouterConfig(default_policy="BLOCK", domain_strategy="As-Is")
    with RouterClient(config, MockClient()) as router:
        assert router.default_policy is Policy.BLOCK
        assert router.domain_strategy is DomainStrategy.AS_IS
        with pytest.raises(RouterError, match="blocked"):
            router.dial_conn(domain("anything.org"))


def test_unknown_strategy():
    with pytest.raises(RouterError, match="unknown strategy"):
        RouterClient(RouterConfig(domain_strategy="sometimes"), MockClient())


def test_unknown_default_policy():
    with pytest.raises(RouterError, match="unknown policy"):
        RouterClient(RouterConfig(default_policy="maybe"), MockClient())


def test_invalid_regex():
    with pytest.raises(RouterError, match="invalid regular expression"):
        RouterClient(RouterConfig(block=("regex:(unclosed",)), MockClient())


@pytest.mark.parametrize(
    "rule, message",
    [
        ("cidr:10.0.0.0", "invalid cidr"),
        ("cidr:notanip/8", "invalid cidr ip"),
        ("cidr:10.0.0.0/x", "invalid prefix"),
    ],
)
def test_invalid_cidr(rule, message):
    with pytest.raises(RouterError, match=message):
        RouterClient(RouterConfig(block=(rule,)), MockClient())


def test_ip_on_demand_checks_cidr_before_domain():
    config = RouterConfig(
        domain_strategy="ip_on_demand",
        proxy=("domain:example.test",),
        block=("cidr:10.1.0.0/16",),
    )
    target = Address(
        address_type=AddressType.DOMAIN_NAME, domain_name="www.example.test", ip="10.1.2.3", port=80
    )
    with RouterClient(config, MockClient()) as router:
        assert router.route(target) is Policy.BLOCK


def test_ip_if_non_match_uses_cidr_only_without_domain_hit():
    config = RouterConfig(
        domain_strategy="IPIfNonMatch",
        default_policy="proxy",
        proxy=("domain:example.test",),
        bypass=("cidr:10.1.0.0/16",),
    )
    matched = Address(address_type=AddressType.DOMAIN_NAME, domain_name="example.test", ip="10.1.2.3")
    unmatched = Address(address_type=AddressType.DOMAIN_NAME, domain_name="other.test", ip="10.1.2.3")
    with RouterClient(config, MockClient()) as router:
        assert router.route(matched) is Policy.PROXY
        assert router.route(unmatched) is Policy.BYPASS


def test_as_is_does_not_resolve():
    config = RouterConfig(bypass=("cidr:10.1.0.0/16",))
    target = Address(address_type=AddressType.DOMAIN_NAME, domain_name="other.test", ip="10.1.2.3")
    with RouterClient(config, MockClient()) as router:
        assert router.route(target) is Policy.PROXY


def test_geodata_rules():
    config = RouterConfig(
        block=("geoip:cn", "geoip:missing"),
        bypass=("geosite:google@ads", "geosite:@cn", "geosite:google@"),
        proxy=("geosite:google",),
    )
    with RouterClient(config, MockClient(), geodata=FakeGeodata()) as router:
        assert router.route(ipv4("10.2.3.4")) is Policy.BLOCK
        assert router.route(domain("ad.doubleclick.net")) is Policy.BYPASS
        assert router.route(domain("mail.google.com")) is Policy.PROXY


def test_geodata_without_loader_is_skipped():
    config = RouterConfig(default_policy="bypass", block=("geoip:cn", "geosite:google"))
    with RouterClient(config, MockClient()) as router:
        assert router.route(ipv4("10.2.3.4")) is Policy.BYPASS
        assert router.route(domain("google.com")) is Policy.BYPASS


def test_load_code_order_and_empty_rules():
    config = RouterConfig(
        bypass=("full:a", "domain:b"),
        proxy=("full:c", "full:"),
        block=("full:d",),
    )
    assert load_code(config, "full:") == [
        ("c", Policy.PROXY),
        ("a", Policy.BYPASS),
        ("d", Policy.BLOCK),
    ]
    assert load_code(config, "domain:") == [("b", Policy.BYPASS)]


@pytest.mark.parametrize(
    "rule, target, expected",
    [
        (DomainRule(DomainRuleType.FULL, "example.com"), "example.com", True),
        (DomainRule(DomainRuleType.FULL, "example.com"), "www.example.com", False),
        (DomainRule(DomainRuleType.DOMAIN, "example.com"), "www.example.com", True),
        (DomainRule(DomainRuleType.DOMAIN, "example.com"), "example.com", True),
        (DomainRule(DomainRuleType.DOMAIN, "example.com"), "badexample.com", False),
        (DomainRule(DomainRuleType.PLAIN, "tube"), "www.youtube.com", True),
        (DomainRule(DomainRuleType.PLAIN, "tube"), "www.example.com", False),
        (DomainRule(DomainRuleType.REGEX, "^ad[0-9]+\\."), "ad12.example.com", True),
        (DomainRule(DomainRuleType.REGEX, "^ad[0-9]+\\."), "add.example.com", False),
        (DomainRule(DomainRuleType.REGEX, "(bad"), "anything", False),
    ],
)
def test_match_domain(rule, target, expected):
    assert match_domain([rule], target) is expected


@pytest.mark.parametrize(
    "rule, ip, expected",
    [
        (CidrRule("192.168.1.1", 16), "192.168.200.1", True),
        (CidrRule("192.168.1.1", 16), "192.169.0.1", False),
        (CidrRule("192.168.1.1", 16), "::ffff:192.168.0.9", True),
        (CidrRule("192.168.1.1", 16), "fe80::1", False),
        (CidrRule("2001:db8::", 32), "2001:db8::5", True),
        (CidrRule("2001:db8::", 32), "10.0.0.1", False),
        (CidrRule("10.0.0.0", 40), "10.0.0.1", False),
    ],
)
def test_match_ip(rule, ip, expected):
    assert match_ip([rule], ip) is expected


def test_match_ip_none_is_false():
    assert match_ip([CidrRule("0.0.0.0", 0)], None) is False