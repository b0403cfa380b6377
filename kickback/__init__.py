"""
Kickback — Chat-Event Ingestion & Coin Rewards for Live Streams
================================================================
Consumes chat events from a durable PostgreSQL queue, persists every chat
line, and awards viewers coins for chatting while a stream is live:
exactly once per message, at most once per user per rate-limit window.

Package layout::

    kickback/
    ├── config.py          # YAML + env → frozen config objects
    ├── constants.py       # Lock ids, default bot names, thresholds
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, sessions, upsert + async helper
    │   └── models.py      # ORM models (queue, ledger, balances, chat lines)
    ├── engine/
    │   ├── events.py      # ChatJobPayload (pydantic) + validation
    │   ├── retry.py       # Transient-error classification + backoff
    │   ├── reward.py      # Award outcomes + pure policy helpers
    │   ├── anti_gaming.py # Bot-message heuristics
    │   └── analytics.py   # Engagement classification of chat lines
    ├── services/
    │   ├── job_store.py       # enqueue / claim / complete / fail
    │   ├── session_resolver.py # Live or recently-ended session lookup
    │   ├── reward_service.py  # CoinAwarder: transactional awards
    │   ├── message_service.py # User + chat line upserts
    │   └── log_throttle.py    # Once-per-window error logging
    ├── worker/
    │   ├── processor.py   # One job, end to end
    │   ├── pool.py        # Poll / dispatch / drain loop
    │   ├── lock.py        # Advisory-lock singleton
    │   └── __main__.py    # python -m kickback.worker
    └── api/
        ├── main.py        # FastAPI app (read-only)
        └── routes/        # Balances, ledger, queue stats
"""

__version__ = "0.1.0"
