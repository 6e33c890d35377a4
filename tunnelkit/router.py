"""Rule-based routing of outbound traffic: proxy it, send it directly, or block it."""

from __future__ import annotations

import ipaddress
import logging
import queue
import re
import socket
import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from tunnelkit.freedom import FreedomClient, FreedomConfig
from tunnelkit.metadata import (
    Address,
    AddressError,
    AddressType,
    Metadata,
    address_from_host_port,
)

logger = logging.getLogger(__name__)

NAME = "ROUTER"
MAX_PACKET_SIZE = 1024 * 8
_POLL = 0.1
_PREFIX_RE = re.compile(r"[+-]?\d+")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class RouterError(ConnectionError):
    """Raised when the router blocks, cannot dial, or is misconfigured."""


class Policy(IntEnum):
    BLOCK = 0
    BYPASS = 1
    PROXY = 2


class DomainStrategy(IntEnum):
    AS_IS = 0
    IP_IF_NON_MATCH = 1
    IP_ON_DEMAND = 2


_STRATEGY_NAMES = {
    "as_is": DomainStrategy.AS_IS,
    "as-is": DomainStrategy.AS_IS,
    "asis": DomainStrategy.AS_IS,
    "ip_if_non_match": DomainStrategy.IP_IF_NON_MATCH,
    "ip-if-non-match": DomainStrategy.IP_IF_NON_MATCH,
    "ipifnonmatch": DomainStrategy.IP_IF_NON_MATCH,
    "ip_on_demand": DomainStrategy.IP_ON_DEMAND,
    "ip-on-demand": DomainStrategy.IP_ON_DEMAND,
    "ipondemand": DomainStrategy.IP_ON_DEMAND,
}

_POLICY_NAMES = {
    "proxy": Policy.PROXY,
    "bypass": Policy.BYPASS,
    "block": Policy.BLOCK,
}


class DomainRuleType(Enum):
    FULL = "full"
    DOMAIN = "domain"
    PLAIN = "keyword"
    REGEX = "regex"


def _to_ip(value: Union[str, IPAddress]) -> IPAddress:
    ip = ipaddress.ip_address(value) if isinstance(value, str) else value
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


@dataclass(frozen=True)
class DomainRule:
    """A domain matcher; attributes are the keys a geosite entry carries."""

    type: DomainRuleType
    value: str
    attributes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CidrRule:
    """An IP network given by an address and a prefix length."""

    ip: IPAddress
    prefix: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "ip", _to_ip(self.ip))


@dataclass(frozen=True)
class RouterConfig:
    """Rule lists per policy, the domain strategy and the default policy."""

    enabled: bool = False
    bypass: Tuple[str, ...] = ()
    proxy: Tuple[str, ...] = ()
    block: Tuple[str, ...] = ()
    domain_strategy: str = "as_is"
    default_policy: str = "proxy"
    geoip: str = "geoip.dat"
    geosite: str = "geosite.dat"

    def __post_init__(self) -> None:
        for name in ("bypass", "proxy", "block"):
            object.__setattr__(self, name, tuple(getattr(self, name)))


class GeodataLoader(Protocol):
    """Supplies rules for geoip: and geosite: codes from data files."""

    def load_ip(self, filename: str, code: str) -> Sequence[CidrRule]: ...

    def load_site(self, filename: str, code: str) -> Sequence[DomainRule]: ...


def match_domain(rules: Sequence[DomainRule], target: str) -> bool:
    """True if any rule matches the domain name."""
    for rule in rules:
        if rule.type is DomainRuleType.FULL:
            if rule.value == target:
                logger.debug("domain %s hit domain(full) rule: %s", target, rule.value)
                return True
        elif rule.type is DomainRuleType.DOMAIN:
            if target.endswith(rule.value):
                index = target.find(rule.value)
                if index == 0 or target[index - 1] == ".":
                    logger.debug("domain %s hit domain rule: %s", target, rule.value)
                    return True
        elif rule.type is DomainRuleType.PLAIN:
            if rule.value in target:
                logger.debug("domain %s hit keyword rule: %s", target, rule.value)
                return True
        elif rule.type is DomainRuleType.REGEX:
            try:
                matched = re.search(rule.value, target) is not None
            except re.error:
                logger.error("invalid regex %s", rule.value)
                return False
            if matched:
                logger.debug("domain %s hit regex rule: %s", target, rule.value)
                return True
        else:
            logger.debug("unknown rule type: %s", rule.type)
    return False


def match_ip(rules: Sequence[CidrRule], ip: Optional[Union[str, IPAddress]]) -> bool:
    """True if the IP falls inside any rule of the same address family."""
    if ip is None:
        return False
    target = _to_ip(ip)
    bits = 32 if target.version == 4 else 128
    for rule in rules:
        if rule.ip.version != target.version:
            continue
        if not 0 <= rule.prefix <= bits:
            continue
        network = ipaddress.ip_network((rule.ip, rule.prefix), strict=False)
        if target in network:
            return True
    return False


def load_code(config: RouterConfig, prefix: str) -> List[Tuple[str, Policy]]:
    """Collect (code, policy) for rules with the prefix: proxy, then bypass, then block."""
    codes: List[Tuple[str, Policy]] = []
    for rules, policy in ((config.proxy, Policy.PROXY), (config.bypass, Policy.BYPASS), (config.block, Policy.BLOCK)):
        for rule in rules:
            if not rule.startswith(prefix):
                continue
            rest = rule[len(prefix):]
            if rest:
                codes.append((rest, policy))
            else:
                logger.warning("invalid empty rule: %s", rule)
    return codes


def _resolved(address: Address) -> Optional[IPAddress]:
    try:
        return address.resolve_ip()
    except AddressError as exc:
        logger.debug("router failed to resolve ip: %s", exc)
        return None


def _open_udp() -> socket.socket:
    if socket.has_ipv6:
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


class RouterClient:
    """Chooses, per destination, between the underlying proxy, a direct dial and a block."""

    def __init__(
        self,
        config: RouterConfig,
        underlay: Any,
        *,
        direct: Optional[FreedomClient] = None,
        geodata: Optional[GeodataLoader] = None,
    ) -> None:
        strategy = _STRATEGY_NAMES.get(config.domain_strategy.lower())
        if strategy is None:
            raise RouterError(f"unknown strategy: {config.domain_strategy}")
        policy = _POLICY_NAMES.get(config.default_policy.lower())
        if policy is None:
            raise RouterError(f"unknown policy: {config.default_policy}")
        self.domain_strategy = strategy
        self.default_policy = policy
        self._underlay = underlay
        self._direct = direct if direct is not None else FreedomClient(FreedomConfig())
        self._domains: Dict[Policy, List[DomainRule]] = {p: [] for p in Policy}
        self._cidrs: Dict[Policy, List[CidrRule]] = {p: [] for p in Policy}
        self._load_geoip(config, geodata)
        self._load_geosite(config, geodata)
        self._load_plain_rules(config)
        logger.info("router client created")

    def __enter__(self) -> "RouterClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _load_geoip(self, config: RouterConfig, geodata: Optional[GeodataLoader]) -> None:
        for code, policy in load_code(config, "geoip:"):
            if geodata is None:
                logger.error("geoip:%s cannot be loaded: no geodata loader", code)
                continue
            try:
                cidrs = list(geodata.load_ip(config.geoip, code))
            except (OSError, ValueError, LookupError) as exc:
                logger.error("%s", exc)
                continue
            logger.info("geoip:%s loaded", code)
            self._cidrs[policy].extend(cidrs)

    def _load_geosite(self, config: RouterConfig, geodata: Optional[GeodataLoader]) -> None:
        for full_code, policy in load_code(config, "geosite:"):
            code, wanted = full_code, ""
            index = full_code.find("@")
            if index > 0:
                if full_code.endswith("@"):
                    logger.warning("geosite:%s invalid", full_code)
                    continue
                code, wanted = full_code[:index], full_code[index + 1:]
            elif index == 0:
                logger.warning("geosite:%s invalid", full_code)
                continue
            if geodata is None:
                logger.error("geosite:%s cannot be loaded: no geodata loader", full_code)
                continue
            try:
                domains = list(geodata.load_site(config.geosite, code))
            except (OSError, ValueError, LookupError) as exc:
                logger.error("%s", exc)
                continue
            found = False
            if wanted:
                for domain in domains:
                    for attribute in domain.attributes:
                        if attribute.casefold() == wanted.casefold():
                            self._domains[policy].append(domain)
                            found = True
            else:
                self._domains[policy].extend(domains)
                found = True
            if found:
                logger.info("geosite:%s loaded", full_code)
            else:
                logger.error("geosite:%s not found", full_code)

    def _load_plain_rules(self, config: RouterConfig) -> None:
        for code, policy in load_code(config, "domain:"):
            self._domains[policy].append(DomainRule(DomainRuleType.DOMAIN, code.lower()))
        for code, policy in load_code(config, "keyword:"):
            self._domains[policy].append(DomainRule(DomainRuleType.PLAIN, code.lower()))
        for prefix in ("regex:", "regexp:"):
            for code, policy in load_code(config, prefix):
                try:
                    re.compile(code)
                except re.error as exc:
                    raise RouterError(f"invalid regular expression: {code}") from exc
                self._domains[policy].append(DomainRule(DomainRuleType.REGEX, code))
        for code, policy in load_code(config, "full:"):
            self._domains[policy].append(DomainRule(DomainRuleType.FULL, code.lower()))
        for code, policy in load_code(config, "cidr:"):
            parts = code.split("/")
            if len(parts) != 2:
                raise RouterError(f"invalid cidr: {code}")
            try:
                ip = _to_ip(parts[0])
            except ValueError:
                raise RouterError(f"invalid cidr ip: {code}") from None
            if not _PREFIX_RE.fullmatch(parts[1]):
                raise RouterError(f"invalid prefix: {parts[1]}")
            self._cidrs[policy].append(CidrRule(ip, int(parts[1])))

    def _match_cidrs(self, ip: Optional[IPAddress]) -> Optional[Policy]:
        for policy in Policy:
            if match_ip(self._cidrs[policy], ip):
                return policy
        return None

    def route(self, address: Address) -> Policy:
        """Return the policy that applies to the address."""
        if address.address_type == AddressType.DOMAIN_NAME:
            if self.domain_strategy == DomainStrategy.IP_ON_DEMAND:
                ip = _resolved(address)
                if ip is not None:
                    hit = self._match_cidrs(ip)
                    if hit is not None:
                        return hit
            for policy in Policy:
                if match_domain(self._domains[policy], address.domain_name):
                    return policy
            if self.domain_strategy == DomainStrategy.IP_IF_NON_MATCH:
                ip = _resolved(address)
                if ip is not None:
                    hit = self._match_cidrs(ip)
                    if hit is not None:
                        return hit
        else:
            hit = self._match_cidrs(address.ip)
            if hit is not None:
                return hit
        return self.default_policy

    def dial_conn(self, address: Address):
        """Open a stream to address according to its policy."""
        policy = self.route(address)
        if policy == Policy.PROXY:
            return self._underlay.dial_conn(address)
        if policy == Policy.BLOCK:
            raise RouterError(f"router blocked address: {address}")
        try:
            return self._direct.dial_conn(address)
        except ConnectionError as exc:
            raise RouterError("router dial error") from exc

    def dial_packet(self) -> "RouterPacketConn":
        """Open a packet connection that routes each datagram by its metadata."""
        try:
            sock = _open_udp()
        except OSError as exc:
            raise RouterError("router failed to dial udp (direct)") from exc
        try:
            proxy = self._underlay.dial_packet()
        except ConnectionError as exc:
            sock.close()
            raise RouterError("router failed to dial udp (proxy)") from exc
        conn = RouterPacketConn(self, sock, proxy)
        conn._start()
        return conn

    def close(self) -> None:
        self._direct.close()
        self._underlay.close()


class RouterPacketConn:
    """Merges datagrams from the proxy and from a direct UDP socket."""

    def __init__(self, client: RouterClient, sock: socket.socket, proxy: Any) -> None:
        self._client = client
        self.sock = sock
        self._proxy = proxy
        self._packets: queue.Queue = queue.Queue(maxsize=16)
        self._stopped = threading.Event()
        self._threads: List[threading.Thread] = []

    def __enter__(self) -> "RouterPacketConn":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _start(self) -> None:
        self.sock.settimeout(_POLL)
        for target in (self._proxy_loop, self._direct_loop):
            thread = threading.Thread(target=target, daemon=True)
            thread.start()
            self._threads.append(thread)

    def _enqueue(self, item: Tuple[bytes, Metadata]) -> None:
        while not self._stopped.is_set():
            try:
                self._packets.put(item, timeout=_POLL)
                return
            except queue.Full:
                continue

    def _proxy_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                payload, metadata = self._proxy.read_with_metadata()
            except (OSError, EOFError, AddressError) as exc:
                if self._stopped.is_set():
                    return
                logger.error("router packetConn error: %s", exc)
                self._stopped.wait(_POLL)
                continue
            self._enqueue((payload, metadata))

    def _direct_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                data, peer = self.sock.recvfrom(MAX_PACKET_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stopped.is_set():
                    return
                logger.error("router packetConn error: %s", exc)
                self._stopped.wait(_POLL)
                continue
            host = str(peer[0]).split("%", 1)[0]
            address = address_from_host_port("udp", host, int(peer[1]))
            self._enqueue((data, Metadata(address=address)))

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        """Send a datagram through the proxy or directly, or refuse it."""
        address = metadata.address
        policy = self._client.route(address)
        if policy == Policy.PROXY:
            return self._proxy.write_with_metadata(payload, metadata)
        if policy == Policy.BLOCK:
            raise RouterError(f"router blocked address (udp): {address}")
        try:
            ip = address.resolve_ip()
        except AddressError as exc:
            raise RouterError("router failed to resolve udp address") from exc
        host = str(ip)
        if self.sock.family == socket.AF_INET6 and ip.version == 4:
            host = f"::ffff:{ip}"
        return self.sock.sendto(bytes(payload), (host, address.port))

    def read_with_metadata(self) -> Tuple[bytes, Metadata]:
        """Wait for the next datagram from either side; EOFError once closed."""
        while True:
            try:
                return self._packets.get(timeout=_POLL)
            except queue.Empty:
                if self._stopped.is_set():
                    raise EOFError("router packet conn closed") from None

    def close(self) -> None:
        self._stopped.set()
        try:
            self._proxy.close()
        finally:
            self.sock.close()
            for thread in self._threads:
                if thread is not threading.current_thread():
                    thread.join(timeout=2.0)