import pytest

from attachment_store.storage.locks import KeyLockRegistry, LockTimeout


def test_lock_entries_are_released():
    locks = KeyLockRegistry()
    with locks.hold("local", "key"):
        assert len(locks) == 1
    assert len(locks) == 0


def test_same_key_times_out():
    locks = KeyLockRegistry(timeout=5)
    with locks.hold("local", "key"):
        with pytest.raises(LockTimeout):
            with locks.hold("local", "key", timeout=0.01):
                pass
    assert len(locks) == 0


def test_different_keys_do_not_block():
    locks = KeyLockRegistry(timeout=0.01)
    with locks.hold("local", "a"):
        with locks.hold("local", "b"):
            with locks.hold("other", "a"):
                assert len(locks) == 3
