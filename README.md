# tunnelkit

Building blocks for proxy tunnels: SOCKS5-style address metadata, per-user
traffic accounting, rule-based routing, direct outbound dialing, a
port forwarder and an HTTP proxy front end. Servers and connections run on
plain sockets and background threads.

## Modules

- `tunnelkit.metadata`: `Address`, `AddressType` and `Metadata`.
  `Address.to_bytes()` and `Metadata.to_bytes()` encode; `read_address`,
  `read_metadata` (binary file-like objects) and `read_address_async`,
  `read_metadata_async` (`asyncio.StreamReader`) decode.
  `address_from_host_port` and `address_from_addr` build addresses;
  `Address.resolve_ip()` looks a domain name up. Failures raise
  `AddressError`.
- `tunnelkit.statistics`: the `Authenticator`, `Persistencer` and
  `UserMetadata` protocols, `AuthError`, and a driver registry:
  `register_authenticator_creator(name, creator)` and
  `new_authenticator(key, name)`, which creates one authenticator per key.
  Importing `tunnelkit.memory` registers `"MEMORY"`; importing
  `tunnelkit.mysql_auth` registers `"MYSQL"`.
- `tunnelkit.memory`: `MemoryAuthenticator` keeps `User` objects with
  traffic counters (`traffic`, `reset_traffic`, `speed`), token-bucket speed
  limits (`set_speed_limit`, backed by `RateLimiter`) and IP limits
  (`add_ip`, `del_ip`, `ip_count`). `new_memory_authenticator(MemoryConfig)`
  adds a user for the SHA-224 of each configured password (`sha224_hex`)
  and, if `MemoryConfig.sqlite` names a file, loads and saves users there.
- `tunnelkit.sqlite_store`: `SqlitePersistencer` stores `StoredUser` rows
  in SQLite, traffic counters as 8-byte big-endian values.
- `tunnelkit.mysql_auth`: `MySQLAuthenticator` periodically adds the
  buffered traffic to the `upload`/`download` columns of a MySQL `users`
  table and adds or removes users by quota (`sync_once`, `start`, `close`).
  `connect_database(MySQLConfig)` opens the connection with PyMySQL.
- `tunnelkit.freedom`: `FreedomClient` dials TCP (`dial_conn`) and opens
  UDP (`dial_packet`) directly, or through a SOCKS5 forward proxy set in
  `FreedomConfig.forward_proxy`.
- `tunnelkit.dokodemo`: `DokodemoServer` listens on one local TCP and UDP
  port and hands out connections and UDP sessions whose metadata always
  names the configured target.
- `tunnelkit.router`: `RouterClient` chooses `Policy.PROXY`,
  `Policy.BYPASS` or `Policy.BLOCK` per destination from `domain:`,
  `full:`, `keyword:`, `regex:`/`regexp:` and `cidr:` rules, with a
  `DomainStrategy` for resolving names. `geoip:` and `geosite:` rules need a
  loader passed as `geodata=`; without one they are logged and skipped.
  `dial_packet` returns a `RouterPacketConn` that routes each datagram.
- `tunnelkit.http_proxy`: `HTTPProxyServer` reads requests from the
  connections of an underlying server (anything with `accept_conn` or
  `accept_http`, and `close`) and yields `ConnectConn` tunnels for CONNECT
  and `ForwardConn` exchanges for plain requests.
- `tunnelkit.mux_conn`: `MuxConfig` and `StickyConn`, which holds bare
  8-byte SYN/FIN frames back and sends them with the next payload.

## Install

    pip install .

## Examples

Encode an address:

    from tunnelkit.metadata import address_from_host_port

    addr = address_from_host_port("tcp", "example.com", 443)
    addr.to_bytes()   # b"\x03\x0bexample.com\x01\xbb"

Account for a user's traffic:

    from tunnelkit.memory import MemoryConfig, new_memory_authenticator

    with new_memory_authenticator(MemoryConfig()) as auth:
        auth.add_user("user1")
        valid, user = auth.auth_user("user1")
        user.add_sent_traffic(100)
        user.traffic()    # (100, 0)

Route destinations:

    from tunnelkit.metadata import address_from_host_port
    from tunnelkit.router import RouterClient, RouterConfig

    config = RouterConfig(block=("domain:example.com",), default_policy="proxy")
    router = RouterClient(config, underlay)   # underlay: dial_conn, dial_packet, close
    router.route(address_from_host_port("tcp", "www.example.com", 80))  # Policy.BLOCK

## What it does not do

- There is no command-line program; the pieces are meant to be wired
  together in your own code.
- There is no local SOCKS5 server and no listener that serves SOCKS5 and
  HTTP on one port; `HTTPProxyServer` needs an underlying server to accept
  connections from.
- There is no stream multiplexer; `tunnelkit.mux_conn` only provides the
  settings and the frame-coalescing `StickyConn`.
- No geoip/geosite data files are read by the package itself.

## Tests

    pip install .[test]
    pytest