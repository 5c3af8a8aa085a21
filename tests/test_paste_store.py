"""Tests for PasteStore."""

import threading

import pytest
from hypothesis import given, settings, strategies as st

from paste_store import PasteStore, ReadWriteLock

OWNERS = st.sampled_from(["DEVICE01", "DEVICE02", "DEVICE03"])


def test_lookup_returns_inserted_bytes(store):
    store.insert("abc", b"hello\x00world", "DEVICE01")
    assert store.lookup("abc", "DEVICE01") == b"hello\x00world"


def test_lookup_nonexistent(store):
    assert store.lookup("nosuchid", "DEVICE01") is None


def test_lookup_wrong_owner_looks_like_missing(store):
    store.insert("abc", b"secret", "DEVICE01")
    assert store.lookup("abc", "DEVICE02") is None
    assert store.lookup("abc", "DEVICE02") == store.lookup("zzz", "DEVICE02")


def test_list_ids_empty(store):
    assert store.list_ids("DEVICE01") == []


def test_list_ids_newest_first(store):
    store.insert("a", b"1", "DEVICE01")
    store.insert("b", b"2", "DEVICE01")
    assert store.list_ids("DEVICE01") == ["b", "a"]


def test_third_insert_evicts_oldest(store):
    store.insert("a", b"A", "DEVICE01")
    store.insert("b", b"B", "DEVICE01")
    store.insert("c", b"C", "DEVICE01")

    assert store.list_ids("DEVICE01") == ["c", "b"]
    assert store.lookup("a", "DEVICE01") is None
    assert store.lookup("b", "DEVICE01") == b"B"


def test_owners_do_not_evict_each_other(store):
    store.insert("a1", b"", "DEVICE01")
    store.insert("b1", b"", "DEVICE02")
    store.insert("a2", b"", "DEVICE01")
    store.insert("a3", b"", "DEVICE01")

    assert store.list_ids("DEVICE01") == ["a3", "a2"]
    assert store.list_ids("DEVICE02") == ["b1"]


def test_limit_of_one_keeps_only_latest():
    store = PasteStore(device_paste_limit=1)
    store.insert("a", b"A", "DEVICE01")
    store.insert("b", b"B", "DEVICE01")
    assert store.list_ids("DEVICE01") == ["b"]


def test_invalid_limit():
    with pytest.raises(ValueError):
        PasteStore(device_paste_limit=0)


def test_colliding_id_overwrites(store):
    store.insert("same", b"first", "DEVICE01")
    store.insert("same", b"second", "DEVICE02")

    assert store.lookup("same", "DEVICE01") is None
    assert store.lookup("same", "DEVICE02") == b"second"
    assert len(store) == 1


def test_known_owners(store):
    assert store.known_owners() == set()
    store.insert("a", b"", "DEVICE01")
    store.insert("b", b"", "DEVICE02")
    store.insert("c", b"", "DEVICE01")
    assert store.known_owners() == {"DEVICE01", "DEVICE02"}


def test_len(store):
    store.insert("a", b"", "DEVICE01")
    store.insert("b", b"", "DEVICE01")
    store.insert("c", b"", "DEVICE01")
    assert len(store) == 2


@settings(max_examples=100)
@given(st.lists(st.tuples(OWNERS, st.binary(max_size=16)), max_size=40), st.integers(min_value=1, max_value=4))
def test_property_store_invariants(inserts, limit):
    store = PasteStore(device_paste_limit=limit)
    expected = {}

    for n, (owner, content) in enumerate(inserts):
        paste_id = f"id{n}"
        before = {o: store.list_ids(o) for o in ("DEVICE01", "DEVICE02", "DEVICE03") if o != owner}

        store.insert(paste_id, content, owner)
        expected.setdefault(owner, []).insert(0, (paste_id, content))
        del expected[owner][limit:]

        ids = store.list_ids(owner)
        assert len(ids) <= limit
        assert ids[0] == paste_id
        # Other devices are untouched
        for other, other_ids in before.items():
            assert store.list_ids(other) == other_ids

    for owner, pastes in expected.items():
        assert store.list_ids(owner) == [paste_id for paste_id, _ in pastes]
        for paste_id, content in pastes:
            assert store.lookup(paste_id, owner) == content


def test_concurrent_inserts_respect_limit():
    store = PasteStore(device_paste_limit=2)
    owners = [f"DEVICE0{i}" for i in range(4)]

    def worker(owner):
        for n in range(200):
            store.insert(f"{owner}-{n}", b"x", owner)
            assert len(store.list_ids(owner)) <= 2

    threads = [threading.Thread(target=worker, args=(owner,)) for owner in owners]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for owner in owners:
        assert store.list_ids(owner) == [f"{owner}-199", f"{owner}-198"]
    assert len(store) == 8


def test_rwlock_readers_share():
    lock = ReadWriteLock()
    entered = threading.Barrier(2, timeout=5)

    def reader():
        with lock.read():
            entered.wait()

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert not any(t.is_alive() for t in threads)


def test_rwlock_writer_excludes_readers():
    lock = ReadWriteLock()
    events = []
    writer_in = threading.Event()

    def reader():
        writer_in.wait()
        with lock.read():
            events.append("read")

    t = threading.Thread(target=reader)
    t.start()
    with lock.write():
        writer_in.set()
        t.join(timeout=0.2)
        events.append("write done")
    t.join(timeout=5)

    assert events == ["write done", "read"]
