import threading

from events import ChangeNotifier, QueryCache


def test_subscribe_and_unsubscribe():
    notifier = ChangeNotifier()
    received = []
    unsubscribe = notifier.subscribe("timeentry", received.append)

    notifier.publish("timeentry", "insert", "e1", "user-1")
    notifier.publish("project", "insert", "p1", "user-1")
    assert [(c.collection, c.document_id) for c in received] == [("timeentry", "e1")]

    unsubscribe()
    unsubscribe()
    notifier.publish("timeentry", "delete", "e1", "user-1")
    assert len(received) == 1


def test_cache_invalidation_is_scoped_to_user():
    notifier = ChangeNotifier()
    cache = QueryCache()
    cache.invalidate_on(notifier, "timeentry", "summary:{user_id}:")
    cache.set("summary:user-1:Today:2024-06-10", {"p1": 60})
    cache.set("summary:user-2:Today:2024-06-10", {"p2": 30})

    notifier.publish("timeentry", "update", "e1", "user-1")
    assert "summary:user-1:Today:2024-06-10" not in cache
    assert cache.get("summary:user-2:Today:2024-06-10") == {"p2": 30}


def test_invalidate_returns_count():
    cache = QueryCache()
    cache.set("a:1", 1)
    cache.set("a:2", 2)
    cache.set("b:1", 3)
    assert cache.invalidate("a:") == 2
    assert cache.invalidate("a:") == 0


def test_failing_subscriber_does_not_stop_delivery():
    notifier = ChangeNotifier()
    received = []

    def broken(change):
        raise RuntimeError("boom")

    notifier.subscribe("timeentry", broken)
    notifier.subscribe("timeentry", received.append)
    notifier.publish("timeentry", "insert", "e1", "user-1")
    assert [c.document_id for c in received] == ["e1"]


def test_cache_survives_concurrent_writers():
    cache = QueryCache(max_size=100_000)
    errors = []
    done = threading.Event()

    def writer():
        try:
            for i in range(20_000):
                cache.set(f"summary:u1:Today:{i}", i)
        except Exception as e:
            errors.append(e)
        finally:
            done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    try:
        while not done.is_set():
            cache.invalidate("summary:u1:")
    except RuntimeError as e:
        errors.append(e)
    thread.join()
    assert errors == []


def test_set_replaces_older_keys_in_scope():
    cache = QueryCache()
    cache.set("summary:u1:Today:2024-06-09T00:00:00+00:00", 1)
    cache.set("summary:u1:Week:2024-06-09T00:00:00+00:00", 2)
    cache.set("summary:u1:Today:2024-06-10T00:00:00+00:00", 3, replaces="summary:u1:Today:")
    assert "summary:u1:Today:2024-06-09T00:00:00+00:00" not in cache
    assert cache.get("summary:u1:Week:2024-06-09T00:00:00+00:00") == 2
    assert len(cache) == 2


def test_cache_evicts_least_recently_used():
    cache = QueryCache(max_size=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
