"""
tests/test_processor.py — End-to-end Job Processing Tests
==========================================================
Enqueue → claim → ``ChatJobProcessor.process`` against in-memory SQLite:
live vs offline routing, redelivery, bot filtering, emote counting and
quarantine of unreadable payloads.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import T0, make_payload, seed_session
from kickback.config import RewardConfig
from kickback.database.models import (
    ChatJob,
    ChatMessage,
    CoinLedgerEntry,
    JobStatus,
    OfflineChatMessage,
    User,
    UserCoinBalance,
)
from kickback.engine.reward import Awarded, NotEligible, Reason, RateLimited
from kickback.services.job_store import ChatJobStore
from kickback.services.reward_service import CoinAwarder
from kickback.services.session_resolver import SessionResolver
from kickback.worker.processor import ChatJobProcessor

BROADCASTER = 42
VIEWER = 1001


@pytest.fixture
def store(db_engine, clock, no_sleep_retry):
    return ChatJobStore(db_engine, retry_policy=no_sleep_retry, clock=clock)


@pytest.fixture
def processor(db_engine, clock, no_sleep_retry, store):
    cfg = RewardConfig()
    return ChatJobProcessor(
        db_engine,
        cfg,
        store,
        SessionResolver(db_engine, cfg.post_end_attach_seconds),
        CoinAwarder(db_engine, cfg, retry_policy=no_sleep_retry, clock=clock),
    )


@pytest.fixture
def live_session(db_engine) -> int:
    return seed_session(db_engine, BROADCASTER)


def _deliver(store, processor, payload):
    """Enqueue *payload*, claim it and process it; return (outcome, job_id)."""
    job_id = store.enqueue(payload)
    [job] = store.claim_batch(1)
    assert job.id == job_id
    return processor.process(job), job_id


def _one(engine, stmt):
    with Session(engine) as session:
        return session.execute(stmt).scalar_one_or_none()


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


def _coins(engine, kick_user_id: int) -> int | None:
    return _one(
        engine,
        select(UserCoinBalance.total_coins)
        .join(User, User.id == UserCoinBalance.user_id)
        .where(User.kick_user_id == kick_user_id),
    )


# ===========================================================================
# Live messages
# ===========================================================================
class TestLiveMessage:
    def test_persists_and_awards(self, store, processor, db_engine, live_session):
        outcome, job_id = _deliver(store, processor, make_payload("m1", content="hello everyone!"))

        assert outcome == Awarded(1)
        assert _coins(db_engine, VIEWER) == 1
        msg = _one(db_engine, select(ChatMessage).where(ChatMessage.message_id == "m1"))
        assert msg.stream_session_id == live_session
        assert msg.coins_earned == 1
        assert msg.coins_reason is None
        assert msg.sent_when_offline is False
        assert msg.sender_user_id == VIEWER
        assert msg.message_length == len("hello everyone!")
        assert _one(db_engine, select(ChatJob.status).where(ChatJob.id == job_id)) == JobStatus.COMPLETED

    def test_upserts_sender_and_broadcaster(self, store, processor, db_engine, live_session):
        _deliver(store, processor, make_payload("m1"))

        with Session(db_engine) as session:
            names = dict(session.execute(select(User.kick_user_id, User.username)).all())
        assert names == {VIEWER: "viewer_one", BROADCASTER: "streamer"}

    def test_redelivered_message_is_paid_once(self, store, processor, db_engine, clock, live_session):
        first, _ = _deliver(store, processor, make_payload("m1"))
        clock.advance(3600)
        second, _ = _deliver(store, processor, make_payload("m1"))

        assert first.awarded
        assert second == NotEligible(Reason.ALREADY_PROCESSED, 1)
        assert _count(db_engine, CoinLedgerEntry) == 1
        assert _count(db_engine, ChatMessage) == 1
        assert _coins(db_engine, VIEWER) == 1
        msg = _one(db_engine, select(ChatMessage).where(ChatMessage.message_id == "m1"))
        assert msg.coins_earned == 1

    def test_rate_limit_reason_is_written_to_message(
        self, store, processor, db_engine, clock, live_session
    ):
        _deliver(store, processor, make_payload("m1", content="first message here"))
        clock.advance(60)
        outcome, _ = _deliver(store, processor, make_payload("m2", content="second message here"))

        assert isinstance(outcome, RateLimited)
        msg = _one(db_engine, select(ChatMessage).where(ChatMessage.message_id == "m2"))
        assert msg.coins_earned == 0
        assert msg.coins_reason == "rate limited: 4m 0s remaining"

    def test_emotes_are_counted(self, store, processor, db_engine, live_session):
        emotes = [{"emote_id": "37226", "positions": [{"s": 0, "e": 18}, {"s": 20, "e": 38}]}]
        payload = make_payload(
            "m1", content="[emote:37226:KEKW] [emote:37226:KEKW]", emotes=emotes
        )

        _deliver(store, processor, payload)

        emote_total = _one(
            db_engine,
            select(UserCoinBalance.total_emotes)
            .join(User, User.id == UserCoinBalance.user_id)
            .where(User.kick_user_id == VIEWER),
        )
        assert emote_total == 2
        msg = _one(db_engine, select(ChatMessage).where(ChatMessage.message_id == "m1"))
        assert msg.has_emotes is True
        assert msg.emotes_counted is True
        assert msg.emotes[0]["emote_id"] == "37226"

    @pytest.mark.parametrize("first_gap", [0, 60], ids=["awarded", "rate_limited"])
    def test_redelivered_emotes_are_counted_once(
        self, store, processor, db_engine, clock, live_session, first_gap
    ):
        emotes = [{"emote_id": "37226", "positions": [{"s": 0, "e": 17}]}]
        payload = make_payload("m2", content="[emote:37226:KEKW] nice", emotes=emotes)
        if first_gap:
            # an earlier award keeps m2 inside the rate-limit window
            _deliver(store, processor, make_payload("m1", content="first message here"))
            clock.advance(first_gap)

        first, _ = _deliver(store, processor, payload)
        clock.advance(30)
        _deliver(store, processor, payload)

        assert first.awarded is (first_gap == 0)
        emote_total = _one(
            db_engine,
            select(UserCoinBalance.total_emotes)
            .join(User, User.id == UserCoinBalance.user_id)
            .where(User.kick_user_id == VIEWER),
        )
        assert emote_total == 1


# ===========================================================================
# Offline routing
# ===========================================================================
class TestOfflineMessage:
    def test_no_session_goes_to_offline_table(self, store, processor, db_engine):
        outcome, job_id = _deliver(store, processor, make_payload("m1"))

        assert outcome.awarded is False
        assert outcome.reason == "stream offline"
        assert _count(db_engine, OfflineChatMessage) == 1
        assert _count(db_engine, ChatMessage) == 0
        assert _count(db_engine, CoinLedgerEntry) == 0
        assert _one(db_engine, select(ChatJob.status).where(ChatJob.id == job_id)) == JobStatus.COMPLETED

    def test_recently_ended_session_is_offline(self, store, processor, db_engine):
        seed_session(db_engine, BROADCASTER, ended_at=T0 - timedelta(seconds=60))

        outcome, _ = _deliver(store, processor, make_payload("m1"))

        assert outcome == NotEligible(Reason.STREAM_OFFLINE)
        assert _count(db_engine, OfflineChatMessage) == 1

    def test_other_broadcasters_session_does_not_count(self, store, processor, db_engine):
        seed_session(db_engine, broadcaster_user_id=77)

        outcome, _ = _deliver(store, processor, make_payload("m1"))

        assert outcome.reason == Reason.STREAM_OFFLINE


# ===========================================================================
# Session hints carried in the payload
# ===========================================================================
class TestPayloadSessionHint:
    def test_active_hint_is_trusted(self, store, processor, db_engine, live_session):
        payload = make_payload("m1", stream_session_id=live_session, is_stream_active=True)

        outcome, _ = _deliver(store, processor, payload)

        assert outcome.awarded

    def test_hint_without_flag_checks_liveness(self, store, processor, db_engine):
        ended = seed_session(db_engine, BROADCASTER, ended_at=T0 - timedelta(hours=2))
        payload = make_payload("m1", stream_session_id=ended)

        outcome, _ = _deliver(store, processor, payload)

        assert outcome.reason == Reason.STREAM_OFFLINE
        assert _count(db_engine, OfflineChatMessage) == 1


# ===========================================================================
# Bots
# ===========================================================================
class TestBots:
    def test_bot_username_is_not_paid(self, store, processor, db_engine, live_session):
        outcome, _ = _deliver(store, processor, make_payload("m1", sender_id=5, sender_name="Botrix"))

        assert outcome == NotEligible(Reason.BOT_ACCOUNT)
        assert _count(db_engine, ChatMessage) == 1
        assert _count(db_engine, CoinLedgerEntry) == 0

    def test_bot_like_content_is_not_paid(self, store, processor, db_engine, live_session):
        payload = make_payload(
            "m1", content="follow my channel https://a.example https://b.example"
        )

        outcome, _ = _deliver(store, processor, payload)

        assert outcome == NotEligible(Reason.BOT_DETECTED)
        msg = _one(db_engine, select(ChatMessage).where(ChatMessage.message_id == "m1"))
        assert msg.coins_reason == "bot detected"
        assert _count(db_engine, CoinLedgerEntry) == 0

    def test_repeated_short_message_is_flagged(self, store, processor, db_engine, clock, live_session):
        first, _ = _deliver(store, processor, make_payload("m1", content="gg"))
        clock.advance(400)
        second, _ = _deliver(store, processor, make_payload("m2", content="gg"))

        assert first.awarded
        assert second == NotEligible(Reason.BOT_DETECTED)


# ===========================================================================
# Unreadable payloads
# ===========================================================================
class TestQuarantine:
    def test_invalid_stored_payload_is_failed_without_retry(self, store, processor, db_engine):
        with Session(db_engine) as session:
            session.add(
                ChatJob(
                    message_id="broken",
                    payload={"message_id": "broken", "content": "no sender"},
                    sender_user_id=1,
                    broadcaster_user_id=BROADCASTER,
                )
            )
            session.commit()
        [job] = store.claim_batch(1)

        assert processor.process(job) is None

        with Session(db_engine) as session:
            row = session.get(ChatJob, job.id)
            assert row.status == JobStatus.FAILED
            assert row.last_error.startswith("invalid payload")
