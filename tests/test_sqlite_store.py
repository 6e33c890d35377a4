import pytest

from tunnelkit.sqlite_store import SqlitePersistencer, StoredUser


@pytest.fixture
def store(tmp_path):
    with SqlitePersistencer(str(tmp_path / "users.db")) as persistencer:
        yield persistencer


def test_from_bytes_decodes_big_endian():
    user = StoredUser.from_bytes("h", b"\x00" * 7 + b"\x01", b"\x01" + b"\x00" * 7, 2, 3, 4)
    assert user.traffic() == (1, 1 << 56)
    assert user.speed_limit() == (3, 4)
    assert user.ip_limit() == 2


def test_from_bytes_rejects_wrong_length():
    with pytest.raises(ValueError):
        StoredUser.from_bytes("h", b"\x00", b"\x00" * 8, 0, 0, 0)


def test_save_and_load_round_trip(store):
    user = StoredUser("abc", sent=2**64 - 1, recv=12345, max_ip_num=3, send_limit=10, recv_limit=20)
    store.save_user(user)
    assert store.load_user("abc") == user


def test_save_overwrites(store):
    store.save_user(StoredUser("abc", sent=1, recv=2, max_ip_num=1))
    store.save_user(StoredUser("abc", sent=5, recv=6, max_ip_num=9))
    loaded = store.load_user("abc")
    assert loaded.traffic() == (5, 6)
    assert loaded.ip_limit() == 9


def test_save_none_raises(store):
    with pytest.raises(ValueError, match="user is nil"):
        store.save_user(None)


def test_load_missing_raises(store):
    with pytest.raises(KeyError):
        store.load_user("nobody")


def test_delete(store):
    store.save_user(StoredUser("abc"))
    store.delete_user("abc")
    store.delete_user("abc")
    with pytest.raises(KeyError):
        store.load_user("abc")


def test_update_traffic_keeps_limits(store):
    store.save_user(StoredUser("abc", sent=1, recv=1, max_ip_num=4, send_limit=7, recv_limit=8))
    store.update_user_traffic("abc", 100, 200)
    loaded = store.load_user("abc")
    assert loaded.traffic() == (100, 200)
    assert loaded.speed_limit() == (7, 8)
    assert loaded.ip_limit() == 4


def test_update_missing_user_creates_nothing(store):
    store.update_user_traffic("ghost", 1, 2)
    with pytest.raises(KeyError):
        store.load_user("ghost")


def test_list_user_visits_and_stops(store):
    for name in ("a", "b", "c"):
        store.save_user(StoredUser(name, sent=len(name)))
    seen = []
    store.list_user(lambda h, u: seen.append((h, u.hash)) or True)
    assert sorted(h for h, _ in seen) == ["a", "b", "c"]
    assert all(h == uh for h, uh in seen)

    stopped = []
    store.list_user(lambda h, u: stopped.append(h) and False)
    assert len(stopped) == 1


def test_data_survives_reopen(tmp_path):
    path = str(tmp_path / "users.db")
    with SqlitePersistencer(path) as first:
        first.save_user(StoredUser("abc", sent=11, recv=22))
    with SqlitePersistencer(path) as second:
        assert second.load_user("abc").traffic() == (11, 22)