"""
fortune_batch -- Batch job orchestration for the daily fortune service.

Runs two recurring jobs under an asyncio cron scheduler: forward-looking
calendar (day pillar) generation and per-user daily fortune regeneration.
Every execution leaves a persistent run record; per-item failures are
recorded and never abort a run.

Architecture:
    fortune_batch/ sits on top of fortune_kernel/ (ORM base, engine, clock,
    exceptions, logging).  Nothing in fortune_kernel imports from here,
    except ``create_tables()`` which loads the model registry.

Invariants:
    - Clock injection (no datetime.now() calls in services)
    - Cron evaluation is pure
    - Run status moves forward only; terminal states are absorbing
    - At most one calendar entry per date
    - At most ``max_concurrent`` fortune calls in flight
"""
