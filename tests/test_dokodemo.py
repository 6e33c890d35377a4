import socket
import time

import pytest

from tunnelkit.dokodemo import DokodemoConfig, DokodemoServer
from tunnelkit.metadata import Metadata, address_from_addr


def _free_port():
    while True:
        with socket.socket() as tcp:
            tcp.bind(("127.0.0.1", 0))
            port = tcp.getsockname()[1]
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
                try:
                    udp.bind(("127.0.0.1", port))
                except OSError:
                    continue
        return port


def _config(udp_timeout=30):
    return DokodemoConfig(
        local_host="127.0.0.1",
        local_port=_free_port(),
        target_host="127.0.0.1",
        target_port=_free_port(),
        udp_timeout=udp_timeout,
    )


@pytest.fixture
def server():
    config = _config()
    srv = DokodemoServer(config)
    srv.start()
    yield srv, config
    srv.close()


def _udp_client():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5)
    return sock


def _read_exactly(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def test_tcp_connection_carries_target(server):
    srv, config = server
    with socket.create_connection(("127.0.0.1", config.local_port)) as client:
        client.settimeout(5)
        with srv.accept_conn() as conn:
            assert conn.metadata.address.port == config.target_port
            assert str(conn.metadata) == f"127.0.0.1:{config.target_port}"
            client.sendall(b"ping")
            assert _read_exactly(conn, 4) == b"ping"
            conn.write(b"pong")
            assert client.recv(4) == b"pong"


def test_udp_sessions_per_source(server):
    srv, config = server
    local = ("127.0.0.1", config.local_port)
    packet1 = _udp_client()
    packet3 = _udp_client()
    try:
        packet1.sendto(b"hello1", local)
        session1 = srv.accept_packet()
        data, metadata = session1.read_with_metadata()
        assert data == b"hello1"
        assert metadata.address.port == config.target_port

        packet3.sendto(b"hello2", local)
        session2 = srv.accept_packet()
        data, metadata = session2.read_with_metadata()
        assert data == b"hello2"
        assert metadata.address.port == config.target_port
        assert session2 is not session1

        packet1.sendto(b"again", local)
        data, _ = session1.read_with_metadata()
        assert data == b"again"

        reply = Metadata(address=address_from_addr("udp", f"127.0.0.1:{config.target_port}"))
        assert session1.write_with_metadata(b"reply1", reply) == 6
        assert session2.write_with_metadata(b"reply2", reply) == 6
        assert packet1.recvfrom(100) == (b"reply1", local)
        assert packet3.recvfrom(100) == (b"reply2", local)
    finally:
        packet1.close()
        packet3.close()


def test_udp_session_times_out_and_restarts():
    config = _config(udp_timeout=0.5)
    with DokodemoServer(config) as srv:
        local = ("127.0.0.1", config.local_port)
        client = _udp_client()
        try:
            client.sendto(b"first", local)
            session = srv.accept_packet()
            assert session.read_with_metadata()[0] == b"first"
            time.sleep(1.0)
            with pytest.raises(ConnectionError, match="closed"):
                session.read_with_metadata()
            client.sendto(b"second", local)
            renewed = srv.accept_packet()
            assert renewed is not session
            assert renewed.read_with_metadata()[0] == b"second"
        finally:
            client.close()


def test_closed_session_refuses_writes(server):
    srv, config = server
    client = _udp_client()
    try:
        client.sendto(b"x", ("127.0.0.1", config.local_port))
        session = srv.accept_packet()
        session.close()
        target = Metadata(address=address_from_addr("udp", f"127.0.0.1:{config.target_port}"))
        with pytest.raises(ConnectionError, match="failed to write"):
            session.write_with_metadata(b"data", target)
    finally:
        client.close()


def test_closed_server_refuses_accepts():
    srv = DokodemoServer(_config())
    srv.start()
    srv.close()
    with pytest.raises(ConnectionError, match="dokodemo server closed"):
        srv.accept_packet()
    with pytest.raises(ConnectionError, match="failed to accept"):
        srv.accept_conn()


def test_port_in_use_fails_to_start(server):
    _, config = server
    clash = DokodemoServer(config)
    with pytest.raises(ConnectionError, match="failed to listen"):
        clash.start()