"""
tests/test_job_store.py — Chat Job Queue Tests
===============================================
Covers enqueue idempotency, exclusive FIFO claims, stale-lock recovery,
completion / failure bookkeeping and queue statistics.

Uses an in-memory SQLite database via the shared conftest fixtures
(``FOR UPDATE SKIP LOCKED`` compiles away on SQLite, so exclusivity is
checked through successive claims).  Concurrent claimers run only against
PostgreSQL (``KICKBACK_TEST_DATABASE_URL``) and are skipped otherwise.
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from conftest import make_payload
from kickback.database.models import ChatJob, JobStatus
from kickback.engine.events import InvalidPayloadError
from kickback.engine.reward import as_utc
from kickback.services import job_store
from kickback.services.job_store import ChatJobStore


@pytest.fixture
def store(db_engine, clock, no_sleep_retry):
    return ChatJobStore(db_engine, retry_policy=no_sleep_retry, clock=clock)


def _job(engine, job_id: int) -> ChatJob:
    with Session(engine) as session:
        job = session.get(ChatJob, job_id)
        session.expunge(job)
        return job


def _count(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(ChatJob))


# ===========================================================================
# Enqueue
# ===========================================================================
class TestEnqueue:
    def test_creates_pending_job(self, store, db_engine):
        job_id = store.enqueue(make_payload("m1", sender_id=7, broadcaster_id=42))

        job = _job(db_engine, job_id)
        assert job.message_id == "m1"
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.sender_user_id == 7
        assert job.broadcaster_user_id == 42
        assert job.payload["sender"]["username"] == "viewer_one"

    def test_redelivery_updates_existing_row(self, store, db_engine):
        first = store.enqueue(make_payload("m1", content="first version"))
        second = store.enqueue(make_payload("m1", content="second version"))

        assert first == second
        assert _count(db_engine) == 1
        assert _job(db_engine, first).payload["content"] == "second version"

    def test_redelivery_resets_claimed_job_to_pending(self, store, db_engine):
        job_id = store.enqueue(make_payload("m1"))
        store.claim_batch(10)
        assert _job(db_engine, job_id).status == JobStatus.PROCESSING

        store.enqueue(make_payload("m1"))

        job = _job(db_engine, job_id)
        assert job.status == JobStatus.PENDING
        assert job.locked_at is None

    def test_invalid_payload_writes_nothing(self, store, db_engine):
        bad = make_payload("m1")
        del bad["sender"]
        with pytest.raises(InvalidPayloadError):
            store.enqueue(bad)
        assert _count(db_engine) == 0

    def test_external_id_must_match_message_id(self, store, db_engine):
        with pytest.raises(InvalidPayloadError, match="does not match"):
            store.enqueue(make_payload("m1"), external_id="m2")
        assert _count(db_engine) == 0

    def test_matching_external_id_is_accepted(self, store):
        assert store.enqueue(make_payload("m1"), external_id="m1") > 0


# ===========================================================================
# Claim
# ===========================================================================
class TestClaimBatch:
    def test_claims_oldest_first(self, store):
        ids = [store.enqueue(make_payload(f"m{i}")) for i in range(3)]

        claimed = store.claim_batch(2)

        assert [j.id for j in claimed] == ids[:2]

    def test_successive_claims_are_disjoint_and_complete(self, store):
        ids = {store.enqueue(make_payload(f"m{i}")) for i in range(5)}

        batches = [store.claim_batch(2) for _ in range(4)]
        seen = [j.id for batch in batches for j in batch]

        assert len(seen) == len(set(seen))
        assert set(seen) == ids
        assert [len(b) for b in batches] == [2, 2, 1, 0]

    def test_claim_marks_processing_and_counts_attempt(self, store, db_engine, clock):
        job_id = store.enqueue(make_payload("m1"))

        [claimed] = store.claim_batch(5)

        assert claimed.attempts == 1
        assert claimed.message_id == "m1"
        assert claimed.payload["message_id"] == "m1"
        job = _job(db_engine, job_id)
        assert job.status == JobStatus.PROCESSING
        assert as_utc(job.locked_at) == clock()

    def test_zero_batch_claims_nothing(self, store):
        store.enqueue(make_payload("m1"))
        assert store.claim_batch(0) == []

    def test_stale_lock_is_reclaimed(self, store, clock):
        store.enqueue(make_payload("m1"))
        [first] = store.claim_batch(1, stale_lock_timeout=300)

        clock.advance(301)
        [again] = store.claim_batch(1, stale_lock_timeout=300)

        assert again.id == first.id
        assert again.attempts == 2

    def test_fresh_lock_is_not_reclaimed(self, store, clock):
        store.enqueue(make_payload("m1"))
        store.claim_batch(1, stale_lock_timeout=300)

        clock.advance(120)

        assert store.claim_batch(1, stale_lock_timeout=300) == []

    def test_transient_errors_past_budget_yield_empty_batch(self, store, monkeypatch):
        store.enqueue(make_payload("m1"))
        calls = []

        def locked(*args):
            calls.append(args)
            raise OperationalError("UPDATE chat_jobs", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "_claim", locked)

        assert store.claim_batch(5) == []
        assert len(calls) == 3


# ===========================================================================
# Complete / fail / quarantine
# ===========================================================================
class TestFinish:
    def test_complete(self, store, db_engine, clock):
        store.enqueue(make_payload("m1"))
        [job] = store.claim_batch(1)
        clock.advance(2)

        assert store.complete(job.id) is True

        row = _job(db_engine, job.id)
        assert row.status == JobStatus.COMPLETED
        assert row.locked_at is None
        assert as_utc(row.processed_at) == clock()

    def test_fail_below_max_returns_to_pending(self, store, db_engine):
        store.enqueue(make_payload("m1"))
        [job] = store.claim_batch(1)

        store.fail(job.id, "boom", job.attempts, max_attempts=5)

        row = _job(db_engine, job.id)
        assert row.status == JobStatus.PENDING
        assert row.locked_at is None
        assert row.processed_at is None
        assert row.last_error == "boom"
        # and it can be claimed again
        assert [j.id for j in store.claim_batch(1)] == [job.id]

    def test_fail_at_max_is_terminal(self, store, db_engine):
        store.enqueue(make_payload("m1"))
        [job] = store.claim_batch(1)

        store.fail(job.id, "boom", attempts=5, max_attempts=5)

        row = _job(db_engine, job.id)
        assert row.status == JobStatus.FAILED
        assert row.processed_at is not None
        assert store.claim_batch(1) == []

    def test_fail_uses_store_default_max_attempts(self, db_engine, clock, no_sleep_retry):
        store = ChatJobStore(db_engine, retry_policy=no_sleep_retry, clock=clock, max_attempts=1)
        store.enqueue(make_payload("m1"))
        [job] = store.claim_batch(1)

        store.fail(job.id, "boom", job.attempts)

        assert _job(db_engine, job.id).status == JobStatus.FAILED

    def test_error_text_is_truncated(self, store, db_engine):
        store.enqueue(make_payload("m1"))
        [job] = store.claim_batch(1)

        store.fail(job.id, "x" * 5000, job.attempts)

        assert len(_job(db_engine, job.id).last_error) == 1000

    def test_quarantine_fails_immediately(self, store, db_engine):
        store.enqueue(make_payload("m1"))
        [job] = store.claim_batch(1)

        store.quarantine(job.id, "invalid payload: sender missing")

        row = _job(db_engine, job.id)
        assert row.status == JobStatus.FAILED
        assert row.attempts == 1
        assert row.last_error.startswith("invalid payload")


# ===========================================================================
# Stats
# ===========================================================================
class TestStats:
    def test_counts_per_status_and_stale_locks(self, store, clock):
        for i in range(4):
            store.enqueue(make_payload(f"m{i}"))
        a, b = store.claim_batch(2)
        store.complete(a.id)
        store.fail(b.id, "boom", attempts=5, max_attempts=5)
        store.claim_batch(1)          # one left processing
        clock.advance(400)

        stats = store.stats(stale_lock_timeout=300)

        assert stats.as_dict() == {
            "pending": 1,
            "processing": 1,
            "completed": 1,
            "failed": 1,
            "stale_locks": 1,
        }

    def test_empty_queue(self, store):
        assert store.stats().as_dict() == {
            "pending": 0, "processing": 0, "completed": 0, "failed": 0, "stale_locks": 0,
        }


# ===========================================================================
# Transaction bounds
# ===========================================================================
class TestTransactionTimeouts:
    @pytest.fixture
    def applied(self, monkeypatch) -> list[tuple[int, int]]:
        calls: list[tuple[int, int]] = []

        def record(session, *, lock_timeout_ms, statement_timeout_ms):
            calls.append((lock_timeout_ms, statement_timeout_ms))

        monkeypatch.setattr(job_store, "apply_transaction_timeouts", record)
        return calls

    @pytest.fixture
    def bounded_store(self, db_engine, clock, no_sleep_retry):
        return ChatJobStore(
            db_engine,
            retry_policy=no_sleep_retry,
            clock=clock,
            lock_timeout_ms=2_500,
            statement_timeout_ms=7_000,
        )

    def test_every_write_is_bounded(self, bounded_store, applied):
        job_id = bounded_store.enqueue(make_payload("m1"))
        assert applied == [(2_500, 7_000)]

        bounded_store.claim_batch(1)
        assert len(applied) == 2

        bounded_store.complete(job_id)
        bounded_store.fail(job_id, "boom", attempts=1)
        bounded_store.quarantine(job_id, "bad")
        assert applied == [(2_500, 7_000)] * 5

    def test_defaults_match_reward_policy(self, store, applied):
        store.enqueue(make_payload("m1"))

        assert applied == [(10_000, 30_000)]


# ===========================================================================
# Concurrent claimers (PostgreSQL only)
# ===========================================================================
class TestConcurrentClaims:
    WORKERS = 4
    JOBS = 40

    def test_parallel_claimers_never_share_a_job(self, pg_engine):
        store = ChatJobStore(pg_engine)
        expected = {store.enqueue(make_payload(f"race-{i}")) for i in range(self.JOBS)}

        barrier = threading.Barrier(self.WORKERS)
        claimed: list[list[int]] = [[] for _ in range(self.WORKERS)]
        errors: list[Exception] = []

        def claimer(slot: int) -> None:
            try:
                barrier.wait(timeout=10)
                while True:
                    batch = store.claim_batch(3)
                    if not batch:
                        return
                    claimed[slot].extend(job.id for job in batch)
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=claimer, args=(slot,)) for slot in range(self.WORKERS)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert not errors
        every = [job_id for ids in claimed for job_id in ids]
        assert len(every) == len(set(every))
        assert set(every) == expected
        stats = store.stats()
        assert stats.pending == 0
        assert stats.processing == self.JOBS
