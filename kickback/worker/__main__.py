"""
kickback.worker.__main__ — Entry point for ``python -m kickback.worker``
========================================================================

Wiring:
1. Load .env (DATABASE_URL and the CHAT_WORKER_* knobs).
2. Load config.yaml (reward policy).
3. Create the SQLAlchemy engine sized for the worker's concurrency.
4. Build the job store, session resolver, coin awarder and processor.
5. Run the worker (blocking — owns the asyncio event loop).

Run with::

    uv run python -m kickback.worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from kickback.config import load_config, load_worker_config
from kickback.database.engine import create_db_engine
from kickback.engine.retry import RetryPolicy
from kickback.services.job_store import ChatJobStore
from kickback.services.reward_service import CoinAwarder
from kickback.services.session_resolver import SessionResolver
from kickback.worker.lock import SingletonLock
from kickback.worker.pool import ChatWorker
from kickback.worker.processor import ChatJobProcessor

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("kickback")


def build_worker() -> ChatWorker:
    """Assemble a :class:`ChatWorker` from the environment and config.yaml."""
    knobs = load_worker_config()
    if knobs.verbose:
        logger.setLevel(logging.DEBUG)

    policy = load_config(os.getenv("KICKBACK_CONFIG", "config.yaml"))
    logger.info(
        "Config loaded — %d coin(s)/message (%d for subs), rate limit %ds",
        policy.coins_per_message, policy.coins_per_message_subscriber,
        policy.rate_limit_seconds,
    )

    # One connection per in-flight job, plus the poll loop and the lock
    engine = create_db_engine(pool_size=knobs.concurrency + 2)
    retry = RetryPolicy.from_config(policy)

    store = ChatJobStore(
        engine,
        retry_policy=retry,
        max_attempts=knobs.max_attempts,
        lock_timeout_ms=policy.lock_timeout_ms,
        statement_timeout_ms=policy.statement_timeout_ms,
    )
    resolver = SessionResolver(engine, policy.post_end_attach_seconds)
    awarder = CoinAwarder(engine, policy, retry_policy=retry)
    processor = ChatJobProcessor(engine, policy, store, resolver, awarder)
    return ChatWorker(knobs, store, processor, SingletonLock(engine))


def main() -> None:
    """Bootstrap and run the chat worker."""
    load_dotenv()

    try:
        worker = build_worker()
    except (FileNotFoundError, RuntimeError, ValueError) as exc:
        logger.critical("%s", exc)
        sys.exit(1)

    try:
        code = asyncio.run(worker.run())
    except Exception:
        logger.exception("Fatal error in chat worker")
        sys.exit(1)

    logging.shutdown()
    if worker.abandoned:
        # Worker threads are still inside jobs; don't wait for them
        os._exit(code)
    sys.exit(code)


if __name__ == "__main__":
    main()
