import threading
import time
import importlib

import pytest

from rlock import (RLock, LockConfig, LockHandle, ReleaseCapability, RLockConfigError, RLockTimeoutError,
                   RLockCancelledError, RLockBackendError, RLockException, RLockWarmUpException)
import rlock


def test_acquire_then_release_round_trip(locks, store):
    acquired, release = locks.acquire("orders")
    assert acquired is True
    assert store.get("RLOCK_orders") == release.token
    assert release() is True
    assert store.get("RLOCK_orders") is None


def test_second_release_reports_failure(locks):
    acquired, release = locks.acquire("orders")
    assert acquired
    assert release() is True
    assert release() is False


def test_token_is_unique_per_acquisition(locks):
    _, first = locks.acquire("orders")
    first()
    _, second = locks.acquire("orders")
    assert first.token != second.token
    assert second.token.startswith("orders_")
    second()


def test_try_acquire_makes_a_single_attempt(locks, store, monkeypatch):
    calls = []
    original = store.set_if_absent

    def counting(key, value, ttl):
        calls.append(key)
        return original(key, value, ttl)

    held, release = locks.try_acquire("orders")
    assert held
    monkeypatch.setattr(store, "set_if_absent", counting)
    acquired, noop = locks.try_acquire("orders")
    assert acquired is False
    assert calls == ["RLOCK_orders"]
    release()


def test_failed_acquisition_returns_noop_release(locks, store):
    _, holder = locks.acquire("orders")
    acquired, release = locks.try_acquire("orders")
    assert acquired is False
    assert isinstance(release, ReleaseCapability)
    assert release.acquired is False
    assert release() is False
    assert store.get("RLOCK_orders") == holder.token


def test_mutual_exclusion_between_threads(locks, store):
    active = []
    max_active = []
    guard = threading.Lock()
    results = []

    def worker():
        acquired, release = locks.acquire("shared", timeout=4.0, retry_interval=0.005)
        results.append(acquired)
        if not acquired:
            return
        try:
            assert store.get("RLOCK_shared") == release.token
            with guard:
                active.append(1)
                max_active.append(len(active))
            time.sleep(0.01)
            with guard:
                active.pop()
        finally:
            assert release() is True

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [True] * 8
    assert max(max_active) == 1
    assert store.get("RLOCK_shared") is None


def test_stale_release_does_not_delete_new_holder(locks, store):
    acquired, stale = locks.try_acquire("orders", expiration=0.1)
    assert acquired
    time.sleep(0.25)

    acquired, current = locks.try_acquire("orders")
    assert acquired
    assert stale() is False
    assert store.get("RLOCK_orders") == current.token
    assert current() is True


def test_record_expires_with_its_ttl(locks):
    acquired, _ = locks.try_acquire("orders", expiration=0.2)
    assert acquired
    info = locks.get_lock_info("orders")
    assert info.return_code == 200
    assert 0 < info.ttl <= 0.2
    time.sleep(0.35)
    assert locks.is_locked("orders") is False
    assert locks.get_lock_info("orders").return_code == 404


def test_acquire_gives_up_at_the_deadline(locks):
    locks.try_acquire("orders")
    start = time.monotonic()
    acquired, release = locks.acquire("orders", timeout=0.3, retry_interval=0.05)
    elapsed = time.monotonic() - start
    assert acquired is False
    assert release() is False
    assert 0.25 <= elapsed < 0.6


def test_acquire_succeeds_when_holder_releases(locks):
    _, holder = locks.acquire("orders")
    timer = threading.Timer(0.1, holder)
    timer.start()
    acquired, release = locks.acquire("orders", timeout=0.9)
    timer.join()
    assert acquired is True
    assert release() is True


def test_backend_error_fails_fast(locks, server, capsys):
    server.connected = False
    start = time.monotonic()
    acquired, release = locks.acquire("orders", timeout=0.9)
    assert acquired is False
    assert time.monotonic() - start < 0.5
    assert release() is False
    assert "[ERROR]" in capsys.readouterr().out


def test_release_during_outage_reports_failure_and_keeps_record(locks, server, store):
    acquired, release = locks.acquire("orders")
    assert acquired
    server.connected = False
    assert release() is False
    server.connected = True
    assert store.get("RLOCK_orders") == release.token
    assert release() is True


def test_cancel_before_first_attempt(locks, store):
    cancel = threading.Event()
    cancel.set()
    acquired, _ = locks.acquire("orders", cancel=cancel)
    assert acquired is False
    assert store.get("RLOCK_orders") is None


def test_cancel_interrupts_the_wait(locks):
    locks.try_acquire("orders")
    cancel = threading.Event()
    timer = threading.Timer(0.1, cancel.set)
    timer.start()
    start = time.monotonic()
    acquired, _ = locks.acquire("orders", timeout=0.9, retry_interval=0.5, cancel=cancel)
    timer.join()
    assert acquired is False
    assert time.monotonic() - start < 0.4


def test_overrides_do_not_change_defaults(locks):
    handle = locks.new_handle("orders", expiration=3.0, retry_timeout=0.5)
    assert isinstance(handle, LockHandle)
    assert handle.key == "RLOCK_orders"
    assert handle.config.expiration == 3.0
    assert handle.config.retry_timeout == 0.5
    assert locks.config == LockConfig(expiration=5.0, retry_interval=0.01, retry_timeout=1.0)


def test_timeout_longer_than_expiration_is_rejected(locks):
    with pytest.raises(RLockConfigError):
        locks.acquire("orders", timeout=6.0)


@pytest.mark.parametrize("name", ["", None])
def test_empty_name_is_rejected(locks, name):
    with pytest.raises(RLockConfigError):
        locks.acquire(name)


def test_custom_prefix(store):
    locks = RLock(store, LockConfig(prefix="jobs:"))
    acquired, release = locks.try_acquire("nightly")
    assert acquired
    assert store.get("jobs:nightly") == release.token
    release()


def test_lock_context_manager(locks):
    with locks.lock("orders") as release:
        assert locks.is_locked("orders")
        assert release.acquired
    assert locks.is_locked("orders") is False


def test_lock_context_manager_timeout(locks):
    locks.try_acquire("orders")
    with pytest.raises(RLockTimeoutError):
        with locks.lock("orders", timeout=0.05):
            pass


def test_release_capability_as_context_manager(locks):
    acquired, release = locks.acquire("orders")
    with release:
        assert locks.is_locked("orders")
    assert locks.is_locked("orders") is False


def test_get_lock_info_on_backend_error(locks, server):
    server.connected = False
    info = locks.get_lock_info("orders")
    assert info.return_code == 500
    assert info.lock_key == "RLOCK_orders"


def test_store_must_be_a_store_adapter(client):
    with pytest.raises(AttributeError):
        RLock(client)


def test_warmup(store, server):
    assert RLock(store, warmup=True).warmup() is True
    server.connected = False
    with pytest.raises(RLockWarmUpException):
        RLock(store, warmup=True)


def test_from_url_uses_redis_url_env(monkeypatch, client):
    seen = []

    def fake_client(url):
        seen.append(url)
        return client

    monkeypatch.setattr("rlock.stores.new_redis_client", fake_client)
    monkeypatch.setenv("REDIS_URL", "redis://cache:6380/2")
    locks = RLock.from_url()
    assert seen == ["redis://cache:6380/2"]
    acquired, release = locks.try_acquire("orders")
    assert acquired and release()


def test_debug_logging(store, capsys):
    locks = RLock(store, verbose=True, debug=True)
    _, release = locks.acquire("orders")
    release()
    out = capsys.readouterr().out
    assert "[INFO] Initialized RLock" in out
    assert "successfully acquired" in out
    assert "successfully released" in out


@pytest.fixture
def no_default(monkeypatch):
    monkeypatch.setattr(importlib.import_module("rlock.rlock"), "_default_manager", None)


def test_default_manager_must_be_set(no_default):
    with pytest.raises(RLockException):
        rlock.get_default()
    with pytest.raises(RLockException):
        rlock.acquire("orders")


def test_default_manager(no_default, locks):
    assert rlock.set_default(locks) is locks
    assert rlock.set_default(locks) is locks
    assert rlock.get_default() is locks
    acquired, release = rlock.acquire("orders")
    assert acquired
    assert rlock.try_acquire("orders")[0] is False
    assert release() is True


@pytest.mark.parametrize("options", [
    {"timeout": float("nan")},
    {"timeout": float("inf")},
    {"expiration": float("inf")},
    {"retry_interval": float("nan")},
])
def test_non_finite_overrides_are_rejected_before_any_attempt(locks, store, options):
    locks.try_acquire("orders")
    start = time.monotonic()
    with pytest.raises(RLockConfigError):
        locks.acquire("orders", **options)
    assert time.monotonic() - start < 0.5
    with pytest.raises(RLockConfigError):
        locks.try_acquire("other", expiration=float("inf"))
    assert store.get("RLOCK_other") is None


def test_lock_context_manager_reports_cancellation(locks):
    locks.try_acquire("orders")
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RLockCancelledError, match="cancelled"):
        with locks.lock("orders", cancel=cancel):
            pass


def test_lock_context_manager_reports_backend_error(locks, server):
    server.connected = False
    with pytest.raises(RLockBackendError):
        with locks.lock("orders"):
            pass


def test_handle_records_outcome(locks, server):
    handle = locks.new_handle("orders", retry_timeout=0)
    assert handle.acquire()[0] is True
    assert handle.outcome == "acquired"
    busy = locks.new_handle("orders", retry_timeout=0)
    assert busy.acquire()[0] is False
    assert busy.outcome == "timeout"
    server.connected = False
    broken = locks.new_handle("orders", retry_timeout=0)
    assert broken.acquire()[0] is False
    assert broken.outcome == "backend_error"
    assert isinstance(broken.error, RLockBackendError)


def test_managers_sharing_a_store_keep_the_first_logger(store):
    first = RLock(store, debug=True)
    second = RLock(store)
    assert store.logger is first.logger
    assert second.logger is not first.logger
    replacement = second.logger
    store.set_logger(replacement, replace=True)
    assert store.logger is replacement
