import threading
from queue import Empty

import pytest

from ssdp_discovery.cache import CacheEntry, ServiceCache, is_newer
from test_message import LOCATION, NOW, make_message

OTHER_LOCATION = "http://10.0.0.6:80/desc.xml"


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    cache = ServiceCache(clock=clock)
    yield cache
    cache.close()


def store(cache, message, descriptor="<root/>"):
    assert cache.offer(message)
    assert cache.complete(message, descriptor)


@pytest.mark.parametrize(
    "expires_at, location, expected",
    [
        (NOW + 1801, LOCATION, True),
        (NOW + 1800, LOCATION, False),
        (NOW + 1799, LOCATION, False),
        (NOW + 1800, OTHER_LOCATION, True),
        (NOW + 1799, OTHER_LOCATION, True),
    ],
)
def test_is_newer(expires_at, location, expected):
    reference = make_message(expires_at=NOW + 1800)
    message = make_message(expires_at=expires_at, location=location)
    assert is_newer(message, reference) == expected


def test_is_newer_than_nothing():
    assert is_newer(make_message(), None)


def test_offer_unknown_service(cache):
    assert cache.offer(make_message())


def test_complete_stores_and_queues(cache):
    message = make_message()
    store(cache, message)
    assert cache.snapshot() == {"uuid:abc": CacheEntry(message, "<root/>")}
    assert cache.read(timeout=1) == (message, "<root/>")


def test_stale_announcement_is_dropped(cache):
    store(cache, make_message(expires_at=NOW + 1800))
    stale = make_message(expires_at=NOW + 1000)
    assert not cache.offer(stale)
    assert cache.snapshot()["uuid:abc"].message.expires_at == NOW + 1800


def test_identical_announcement_is_dropped(cache):
    message = make_message()
    store(cache, message)
    assert not cache.offer(make_message())


def test_later_announcement_refreshes(cache):
    store(cache, make_message(expires_at=NOW + 1800), "<old/>")
    newer = make_message(expires_at=NOW + 3600)
    store(cache, newer, "<new/>")
    assert cache.snapshot()["uuid:abc"] == CacheEntry(newer, "<new/>")


def test_moved_service_refreshes(cache):
    store(cache, make_message(expires_at=NOW + 1800))
    moved = make_message(expires_at=NOW + 1000, location=OTHER_LOCATION)
    store(cache, moved, "<moved/>")
    assert cache.snapshot()["uuid:abc"].message.location == OTHER_LOCATION


def test_burst_collapses_into_one_fetch(cache):
    first = make_message(expires_at=NOW + 1800)
    assert cache.offer(first)
    assert not cache.offer(make_message(expires_at=NOW + 1801))
    assert not cache.offer(make_message(expires_at=NOW + 1802))
    assert cache.complete(first, "<root/>")
    # the entry carries the expiry of the latest announcement
    assert cache.snapshot()["uuid:abc"].message.expires_at == NOW + 1802


def test_superseded_fetch_is_discarded(cache):
    first = make_message(expires_at=NOW + 1800)
    moved = make_message(expires_at=NOW + 1800, location=OTHER_LOCATION)
    assert cache.offer(first)
    assert cache.offer(moved)
    assert cache.complete(moved, "<moved/>")
    assert not cache.complete(first, "<old/>")
    assert cache.snapshot()["uuid:abc"] == CacheEntry(moved, "<moved/>")


def test_failed_fetch_returns_to_unknown(cache):
    message = make_message()
    assert cache.offer(message)
    cache.fail(message)
    assert cache.snapshot() == {}
    assert cache.offer(make_message())


def test_failure_of_superseded_fetch_is_ignored(cache):
    first = make_message()
    moved = make_message(location=OTHER_LOCATION)
    assert cache.offer(first)
    assert cache.offer(moved)
    cache.fail(first)
    assert cache.complete(moved, "<moved/>")


def test_complete_without_offer_is_discarded(cache):
    assert not cache.complete(make_message(), "<root/>")
    assert cache.snapshot() == {}


def test_read_is_fifo(cache):
    for index in range(3):
        store(cache, make_message(service_id=f"uuid:{index}"), f"<root{index}/>")
    read = [cache.read(timeout=1).message.service_id for _ in range(3)]
    assert read == ["uuid:0", "uuid:1", "uuid:2"]


def test_read_prunes_expired(cache, clock):
    store(cache, make_message(service_id="uuid:long", expires_at=NOW + 100))
    store(cache, make_message(service_id="uuid:short", expires_at=NOW + 10))
    clock.now = NOW + 50
    entry = cache.read(timeout=1)
    assert entry.message.service_id == "uuid:long"
    assert "uuid:short" not in cache.snapshot()


def test_read_skips_expired(cache, clock):
    store(cache, make_message(expires_at=NOW + 10))
    clock.now = NOW + 50
    with pytest.raises(Empty):
        cache.read(timeout=0.05)


def test_read_no_expired_entry_remains(cache, clock):
    for index in range(5):
        store(cache, make_message(service_id=f"uuid:{index}", expires_at=NOW + index * 10))
    clock.now = NOW + 25
    cache.read(timeout=1)
    remaining = cache.snapshot()
    assert all(not entry.message.is_expired(clock.now) for entry in remaining.values())
    assert set(remaining) == {"uuid:3", "uuid:4"}


def test_read_timeout_keeps_next_item(cache):
    with pytest.raises(Empty):
        cache.read(timeout=0.05)
    message = make_message()
    store(cache, message)
    assert cache.read(timeout=1).message == message


def test_timed_out_readers_are_forgotten(cache):
    for _ in range(50):
        with pytest.raises(Empty):
            cache.read(timeout=0.0001)
    # a snapshot is answered after every earlier read was handled
    cache.snapshot()
    assert len(cache._waiting_readers) <= 1


def test_read_waits_for_completion(cache):
    results = []
    reader = threading.Thread(target=lambda: results.append(cache.read(timeout=5)))
    reader.start()
    message = make_message()
    store(cache, message)
    reader.join(timeout=5)
    assert results == [CacheEntry(message, "<root/>")]


def test_concurrent_readers_get_distinct_items(cache):
    results = []
    lock = threading.Lock()

    def read():
        entry = cache.read(timeout=5)
        with lock:
            results.append(entry)

    readers = [threading.Thread(target=read) for _ in range(4)]
    for reader in readers:
        reader.start()
    for index in range(4):
        store(cache, make_message(service_id=f"uuid:{index}"))
    for reader in readers:
        reader.join(timeout=5)

    service_ids = [entry.message.service_id for entry in results]
    assert sorted(service_ids) == ["uuid:0", "uuid:1", "uuid:2", "uuid:3"]


def test_close_wakes_readers(cache):
    results = []
    readers = [
        threading.Thread(target=lambda: results.append(cache.read()))
        for _ in range(3)
    ]
    for reader in readers:
        reader.start()
    cache.close()
    for reader in readers:
        reader.join(timeout=5)
    assert results == [None, None, None]


def test_closed_cache(cache):
    cache.close()
    assert cache.closed
    assert cache.read() is None
    assert not cache.offer(make_message())
    assert not cache.complete(make_message(), "<root/>")
    assert cache.snapshot() == {}


def test_close_is_idempotent(cache):
    cache.close()
    cache.close()
    assert cache.closed
