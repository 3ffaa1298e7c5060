"""Tests for per-Service locks."""

import threading
import time

from portforward.locks import KeyedLocks


class TestKeyedLocks:
    def test_same_key_is_exclusive(self) -> None:
        locks = KeyedLocks()
        active = 0
        overlaps = []
        guard = threading.Lock()

        def work() -> None:
            nonlocal active
            with locks.hold("default/web"):
                with guard:
                    active += 1
                    overlaps.append(active)
                time.sleep(0.01)
                with guard:
                    active -= 1

        threads = [threading.Thread(target=work) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert max(overlaps) == 1

    def test_different_keys_do_not_block(self) -> None:
        locks = KeyedLocks()
        entered = threading.Event()

        def other() -> None:
            with locks.hold("default/api"):
                entered.set()

        with locks.hold("default/web"):
            thread = threading.Thread(target=other)
            thread.start()
            thread.join(timeout=1)

        assert entered.is_set()

    def test_locks_are_dropped_when_released(self) -> None:
        locks = KeyedLocks()

        with locks.hold("default/web"):
            assert len(locks) == 1

        assert len(locks) == 0
