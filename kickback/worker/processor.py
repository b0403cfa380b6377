"""
kickback.worker.processor — One chat job, end to end
=====================================================

Runs synchronously on a worker thread:

1. Validate the stored payload (invalid → quarantine, never retried).
2. Upsert sender and broadcaster users.
3. Resolve the stream session (payload hint first, then lookup).
4. Offline → ``offline_chat_messages``.  Live → ``chat_messages``, then
   bot heuristics, coin award and emote count, and the coin result is
   written back onto the message row.
5. Mark the job completed.

Every step is idempotent, so a job redelivered after a crash converges
on the same rows and never pays twice.  Unexpected errors propagate to
the caller, which records them with ``ChatJobStore.fail``.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine

from kickback.config import RewardConfig
from kickback.database.engine import get_session
from kickback.engine.anti_gaming import detect_bot_message
from kickback.engine.events import ChatJobPayload, InvalidPayloadError, parse_payload
from kickback.engine.reward import AwardOutcome, NotEligible, Reason, is_bot_username
from kickback.services.job_store import ChatJobStore, ClaimedJob
from kickback.services.message_service import (
    recent_contents,
    save_live_message,
    save_offline_message,
    set_coin_result,
    upsert_participants,
)
from kickback.services.reward_service import CoinAwarder
from kickback.services.session_resolver import SessionResolver

logger = logging.getLogger(__name__)


class ChatJobProcessor:
    """Turns a claimed job into persisted rows and (maybe) coins.

    ``duplicate_window`` is how many of the sender's previous lines are
    compared against the current one by the bot heuristics.
    """

    def __init__(
        self,
        engine: Engine,
        config: RewardConfig,
        store: ChatJobStore,
        resolver: SessionResolver,
        awarder: CoinAwarder,
        *,
        duplicate_window: int = 5,
    ) -> None:
        self.engine = engine
        self.config = config
        self.store = store
        self.resolver = resolver
        self.awarder = awarder
        self.duplicate_window = duplicate_window

    def process(self, job: ClaimedJob) -> AwardOutcome | None:
        """Process *job*.  Returns the award outcome, or ``None`` if quarantined."""
        try:
            payload = parse_payload(job.payload)
        except InvalidPayloadError as exc:
            self.store.quarantine(job.id, f"invalid payload: {exc}")
            return None

        session_id, live = self._resolve_session(payload)

        if not live:
            with get_session(self.engine) as session:
                upsert_participants(session, payload)
                save_offline_message(session, payload)
            outcome: AwardOutcome = NotEligible(Reason.STREAM_OFFLINE)
        else:
            with get_session(self.engine) as session:
                upsert_participants(session, payload)
                save_live_message(session, payload, session_id)
                recent = recent_contents(
                    session,
                    payload.sender.kick_user_id,
                    exclude_message_id=payload.message_id,
                    limit=self.duplicate_window,
                )
            outcome = self._reward(payload, session_id, recent)
            with get_session(self.engine) as session:
                # already-processed redeliveries keep the recorded amount
                set_coin_result(session, payload.message_id, outcome.amount, outcome.reason)

        self.store.complete(job.id)
        logger.debug("Job %d (%s) done: %s", job.id, payload.message_id, outcome)
        return outcome

    def _resolve_session(self, payload: ChatJobPayload) -> tuple[int | None, bool]:
        if payload.stream_session_id is not None:
            live = payload.is_stream_active
            if live is None:
                live = self.resolver.is_live(payload.stream_session_id)
            return payload.stream_session_id, live

        resolved = self.resolver.resolve(payload.broadcaster.kick_user_id, payload.timestamp)
        if resolved is None:
            logger.debug("No session for broadcaster %s, storing %s as offline",
                         payload.broadcaster.username, payload.message_id)
            return None, False
        logger.debug("Resolved session %d (active: %s) for broadcaster %s",
                     resolved.session_id, resolved.is_active, payload.broadcaster.username)
        return resolved.session_id, resolved.is_active

    def _reward(
        self, payload: ChatJobPayload, session_id: int, recent: list[str]
    ) -> AwardOutcome:
        if is_bot_username(payload.sender.username, self.config):
            return NotEligible(Reason.BOT_ACCOUNT)

        detection = detect_bot_message(payload.content, recent)
        if detection.is_bot:
            logger.info("Bot-like message %s from %s (score %d: %s)",
                        payload.message_id, payload.sender.username,
                        detection.score, ", ".join(detection.reasons))
            return NotEligible(Reason.BOT_DETECTED)

        outcome = self.awarder.award(
            payload.sender.kick_user_id,
            stream_session_id=session_id,
            source_message_id=payload.message_id,
            badges=payload.sender.badges,
        )
        # Keyed on the chat_messages row, so redelivery never counts twice
        self.awarder.award_emotes(
            payload.sender.kick_user_id, payload.emotes, payload.message_id
        )
        return outcome
