"""
Tests for the per-key lock.
"""

import threading

import pytest

from slotsync.services.locks import KeyedLock


class TestKeyedLock:
    """Tests for KeyedLock."""

    def test_same_key_is_serialized(self):
        locks = KeyedLock()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold("r1"):
                order.append("first-in")
                entered.set()
                release.wait(timeout=5)
                order.append("first-out")

        def second():
            entered.wait(timeout=5)
            with locks.hold("r1"):
                order.append("second-in")

        t1 = threading.Thread(target=first)
        t2 = threading.Thread(target=second)
        t1.start()
        t2.start()

        entered.wait(timeout=5)
        assert locks.is_held("r1")
        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)

        assert order == ["first-in", "first-out", "second-in"]

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        acquired = threading.Event()

        def other():
            with locks.hold("r2"):
                acquired.set()

        with locks.hold("r1"):
            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=5)
            thread.join(timeout=5)

    def test_idle_keys_are_dropped(self):
        locks = KeyedLock()

        with locks.hold("r1"):
            assert len(locks) == 1

        assert len(locks) == 0
        assert not locks.is_held("r1")

    def test_released_on_error(self):
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            with locks.hold(42):
                raise RuntimeError("boom")

        assert not locks.is_held("42")
        assert len(locks) == 0
