"""Credential pool checkout, cooldown and exhaustion."""
import threading

import pytest

from speakeval.errors import InvalidInput, NoCredentialAvailable
from speakeval.infrastructure.quota import Capability, Credential, QuotaPool

STT = Capability.SPEECH_TO_TEXT


def make_pool(clock, count=2, **credential_kwargs):
    return QuotaPool([Credential(f"key-{i}", f"secret-{i}", frozenset({STT}), **credential_kwargs)
                      for i in range(1, count + 1)], clock=clock)


def test_checkout_locks_credential(clock):
    pool = make_pool(clock, count=1)
    credential = pool.checkout(STT, "job-1", 60)
    assert credential.credential_id == "key-1"
    with pytest.raises(NoCredentialAvailable) as exc:
        pool.checkout(STT, "job-2", 60)
    assert not exc.value.permanent
    assert exc.value.retry_after_seconds == pytest.approx(60)


def test_release_makes_credential_available(clock):
    pool = make_pool(clock, count=1)
    pool.checkout(STT, "job-1", 60)
    assert not pool.release("key-1", "someone-else")
    assert pool.release("key-1", "job-1")
    assert pool.checkout(STT, "job-2", 60).credential_id == "key-1"


def test_lock_expires(clock):
    pool = make_pool(clock, count=1)
    pool.checkout(STT, "job-1", 60)
    clock.advance(61)
    assert pool.checkout(STT, "job-2", 60).credential_id == "key-1"


def test_release_cooldown(clock):
    pool = make_pool(clock, count=1)
    pool.checkout(STT, "job-1", 60)
    pool.release("key-1", "job-1", cooldown_seconds=5, capability=STT)
    assert pool.try_checkout(STT, "job-2", 60) is None
    clock.advance(5.1)
    assert pool.try_checkout(STT, "job-2", 60) is not None


def test_concurrent_checkouts_never_share_a_credential(clock):
    pool = make_pool(clock, count=3)
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker(idx):
        barrier.wait()
        credential = pool.try_checkout(STT, f"job-{idx}", 60)
        with lock:
            results.append(credential)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    handed_out = [c.credential_id for c in results if c is not None]
    assert len(handed_out) == 3
    assert len(set(handed_out)) == 3


def test_rate_limit_cools_down_then_recovers(clock):
    pool = make_pool(clock, count=1)
    pool.checkout(STT, "job-1", 60)
    pool.mark_exhausted("key-1", STT, permanent=False, retry_after_seconds=30)
    assert pool.try_checkout(STT, "job-2", 60) is None
    clock.advance(31)
    assert pool.try_checkout(STT, "job-2", 60) is not None


def test_permanent_exhaustion_until_reactivated(clock):
    pool = make_pool(clock, count=1)
    pool.mark_exhausted("key-1", STT, permanent=True, reason="billing")
    with pytest.raises(NoCredentialAvailable) as exc:
        pool.checkout(STT, "job-1", 60)
    assert exc.value.permanent
    pool.reactivate("key-1")
    assert pool.checkout(STT, "job-1", 60).credential_id == "key-1"


def test_repeated_rate_limits_escalate(clock):
    pool = QuotaPool([Credential("key-1", "s", frozenset({STT}))], clock=clock,
                     rate_limit_cooldown_seconds=10, escalated_cooldown_seconds=600, escalation_after=3)
    for _ in range(3):
        pool.mark_exhausted("key-1", STT, permanent=False)
    clock.advance(11)
    assert pool.try_checkout(STT, "job", 60) is None
    clock.advance(600)
    assert pool.try_checkout(STT, "job", 60) is not None


def test_success_resets_escalation(clock):
    pool = QuotaPool([Credential("key-1", "s", frozenset({STT}))], clock=clock,
                     rate_limit_cooldown_seconds=10, escalated_cooldown_seconds=600, escalation_after=3)
    pool.mark_exhausted("key-1", STT, permanent=False)
    pool.mark_exhausted("key-1", STT, permanent=False)
    pool.record_success("key-1", STT)
    pool.mark_exhausted("key-1", STT, permanent=False)
    clock.advance(11)
    assert pool.try_checkout(STT, "job", 60) is not None


def test_capability_filtering(clock):
    pool = QuotaPool([Credential("scoring", "s", frozenset({Capability.SCORING}))], clock=clock)
    with pytest.raises(NoCredentialAvailable) as exc:
        pool.checkout(STT, "job", 60)
    assert exc.value.permanent


def test_empty_pool_fails_permanently(clock):
    with pytest.raises(NoCredentialAvailable) as exc:
        QuotaPool(clock=clock).checkout(STT, "job", 60)
    assert exc.value.permanent


def test_daily_limit_and_reset(clock):
    pool = make_pool(clock, count=1, per_day_limit=100)
    credential = pool.checkout(STT, "job", 60)
    pool.record_usage(credential.credential_id, 100)
    pool.release(credential.credential_id, "job")
    assert pool.try_checkout(STT, "job", 60) is None
    clock.advance(24 * 3600)
    assert pool.try_checkout(STT, "job", 60) is not None


def test_per_minute_limit(clock):
    pool = make_pool(clock, count=1, per_minute_limit=2)
    for _ in range(2):
        credential = pool.checkout(STT, "job", 60)
        pool.release(credential.credential_id, "job")
    assert pool.try_checkout(STT, "job", 60) is None
    clock.advance(60)
    assert pool.try_checkout(STT, "job", 60) is not None


def test_prefers_most_remaining_quota(clock):
    pool = make_pool(clock, count=2, per_day_limit=100)
    pool.record_usage("key-1", 50)
    assert pool.checkout(STT, "job", 60).credential_id == "key-2"


def test_blocking_checkout_waits_for_release():
    pool = QuotaPool([Credential("key-1", "s", frozenset({STT}))])
    pool.checkout(STT, "job-1", 60)
    timer = threading.Timer(0.1, pool.release, args=("key-1", "job-1"))
    timer.start()
    try:
        credential = pool.checkout(STT, "job-2", 60, wait_timeout=5)
    finally:
        timer.cancel()
    assert credential.credential_id == "key-1"


def test_usage_recorded_and_snapshot_hides_secrets(clock):
    pool = make_pool(clock, count=1)
    pool.record_usage("key-1", 12.5)
    row = pool.snapshot()[0]
    assert row["units_today"] == 12.5
    assert "secret-1" not in repr(row)
    assert "secret-1" not in repr(pool.checkout(STT, "job", 60))


def test_invalid_arguments(clock):
    pool = make_pool(clock, count=1)
    with pytest.raises(InvalidInput):
        pool.checkout(STT, "job", 0)
    with pytest.raises(InvalidInput):
        pool.record_usage("key-1", -1)
    with pytest.raises(InvalidInput):
        pool.mark_exhausted("missing", STT, permanent=True)
