import gc
import threading

from compliance_vault.services.cache import KeyValueCache
from compliance_vault.services.locks import LockRegistry


class TestKeyValueCache:
    def test_put_evicts_expired_entries(self, clock):
        cache = KeyValueCache(clock)
        for n in range(5):
            cache.put(f"stale-{n}", n, ttl_seconds=60)
        clock.advance(minutes=2)

        cache.put("fresh", "value", ttl_seconds=60)

        assert len(cache) == 1
        assert cache.get("fresh") == "value"

    def test_unexpired_entries_survive_put(self, clock):
        cache = KeyValueCache(clock)
        cache.put("long", 1, ttl_seconds=600)
        clock.advance(minutes=5)
        cache.put("short", 2, ttl_seconds=60)
        assert len(cache) == 2
        assert cache.get("long") == 1

    def test_get_after_expiry(self, clock):
        cache = KeyValueCache(clock)
        cache.put("k", "v", ttl_seconds=30)
        clock.advance(seconds=30)
        assert cache.get("k") is None


class TestLockRegistry:
    def test_same_lock_while_referenced(self):
        registry = LockRegistry()
        lock = registry.employee("emp-1")
        assert registry.employee("emp-1") is lock
        assert registry.scope("emp-1", "certificates") is not lock

    def test_released_locks_are_dropped(self):
        registry = LockRegistry()
        for n in range(50):
            with registry.employee(f"emp-{n}"):
                with registry.scope(f"emp-{n}", "documents"):
                    assert len(registry) >= 2
        gc.collect()
        assert len(registry) == 0

    def test_waiter_keeps_lock_alive(self):
        registry = LockRegistry()
        holder = registry.employee("emp-1")
        holder.acquire()
        acquired = threading.Event()

        def contend():
            with registry.employee("emp-1"):
                acquired.set()

        worker = threading.Thread(target=contend)
        worker.start()
        assert not acquired.wait(0.1)
        holder.release()
        worker.join(timeout=5)
        assert acquired.is_set()

    def test_store_leaves_no_locks_behind(self, file_store, containers, make_employee, pdf_file):
        employee = make_employee()
        file_store.store(pdf_file(), employee.employee_id, "certificates")
        gc.collect()
        assert len(containers.locks) == 0
