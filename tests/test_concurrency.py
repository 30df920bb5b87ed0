"""
Test locking: parallel signing across accounts, serialized signing per
account, the account-lock timeout and the wallet read/write lock.
"""

import threading
import time

import pytest

import keymanager.direct
from conftest import PASSWORD, make_config
from keymanager.base import AccountLocks, ReadWriteLock
from wallet.errors import AccountBusy
from wallet.keys import sign_root, verify_signature
from wallet.manager import Wallet

ROOT = bytes.fromhex("77" * 32)
SIGN_DELAY = 0.3


@pytest.fixture
def slow_signing(monkeypatch):
    """Make every direct sign take SIGN_DELAY and record (start, end) per call."""
    intervals = []
    guard = threading.Lock()

    def slow_sign_root(secret, signing_root):
        start = time.monotonic()
        time.sleep(SIGN_DELAY)
        signature = sign_root(secret, signing_root)
        with guard:
            intervals.append((start, time.monotonic()))
        return signature

    monkeypatch.setattr(keymanager.direct, "sign_root", slow_sign_root)
    return intervals


def run_threads(targets):
    errors = []

    def wrap(target):
        def run():
            try:
                target()
            except Exception as e:
                errors.append(e)
        return run

    threads = [threading.Thread(target=wrap(t)) for t in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return errors


def overlaps(first, second) -> bool:
    return first[0] < second[1] and second[0] < first[1]


def test_different_accounts_sign_in_parallel(direct_wallet, slow_signing):
    first, second = direct_wallet.create_account(), direct_wallet.create_account()
    signatures = {}

    def signer(public_key):
        return lambda: signatures.__setitem__(public_key, direct_wallet.sign(public_key, ROOT))

    assert run_threads([signer(first), signer(second)]) == []
    assert len(slow_signing) == 2
    assert overlaps(*slow_signing)
    for public_key, signature in signatures.items():
        assert verify_signature(public_key, ROOT, signature)


def test_same_account_signs_serially(direct_wallet, slow_signing):
    public_key = direct_wallet.create_account()
    roots = [bytes([i]) * 32 for i in range(3)]
    errors = run_threads([lambda r=r: direct_wallet.sign(public_key, r) for r in roots])
    assert errors == []
    assert len(slow_signing) == 3
    ordered = sorted(slow_signing)
    for earlier, later in zip(ordered, ordered[1:]):
        assert not overlaps(earlier, later)


def test_account_busy_after_timeout(wallet_dir, slow_signing):
    config = make_config(wallet_dir, sign_lock_timeout=0.05)
    with Wallet.create(config, PASSWORD) as wallet:
        wallet.unlock(PASSWORD)
        public_key = wallet.create_account()
        errors = run_threads([lambda: wallet.sign(public_key, ROOT), lambda: wallet.sign(public_key, ROOT)])
    assert len(errors) == 1
    assert isinstance(errors[0], AccountBusy)
    assert len(slow_signing) == 1


def test_writer_waits_for_signers(direct_wallet, slow_signing):
    public_key = direct_wallet.create_account()
    finished = {}

    def sign():
        direct_wallet.sign(public_key, ROOT)
        finished["sign"] = time.monotonic()

    def create():
        time.sleep(SIGN_DELAY / 3)
        direct_wallet.create_account()
        finished["create"] = time.monotonic()

    assert run_threads([sign, create]) == []
    assert finished["create"] >= slow_signing[0][1]


# ============================================
# Lock primitives
# ============================================

def test_rwlock_many_readers():
    lock = ReadWriteLock()
    inside = threading.Barrier(3, timeout=5)

    def reader():
        with lock.read():
            inside.wait()

    assert run_threads([reader, reader, reader]) == []


def test_rwlock_writer_is_exclusive():
    lock = ReadWriteLock()
    events = []

    def writer(name):
        def run():
            with lock.write():
                events.append(f"{name}-in")
                time.sleep(0.05)
                events.append(f"{name}-out")
        return run

    assert run_threads([writer("a"), writer("b")]) == []
    assert events[0][0] == events[1][0]
    assert events[2][0] == events[3][0]


def test_rwlock_writer_is_reentrant():
    lock = ReadWriteLock()
    with lock.write():
        with lock.write():
            with lock.read():
                pass
    # Fully released
    acquired = []

    def writer():
        with lock.write():
            acquired.append(True)

    assert run_threads([writer]) == []
    assert acquired == [True]


def test_rwlock_released_on_error():
    lock = ReadWriteLock()
    with pytest.raises(RuntimeError):
        with lock.write():
            raise RuntimeError("boom")
    with pytest.raises(RuntimeError):
        with lock.read():
            raise RuntimeError("boom")
    with lock.write():
        pass


def test_account_locks_are_per_key():
    locks = AccountLocks(timeout=0.05)

    def contender():
        with locks.hold(b"\x01" * 64):
            pass

    with locks.hold(b"\x01" * 64):
        with locks.hold(b"\x02" * 64):
            pass
        errors = run_threads([contender])
    assert len(errors) == 1
    assert isinstance(errors[0], AccountBusy)
