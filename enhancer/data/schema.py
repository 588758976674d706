# Profiles, images & billing bookkeeping (SQLite + Postgres)
# Tables:
#   profiles(
#     user_id TEXT PRIMARY KEY,          -- identity-provider subject
#     tier TEXT NOT NULL,                -- free | weekly | ... | premier_yearly
#     credits INT NOT NULL,              -- basic enhancements; 999999 = unlimited
#     ai_credits INT NOT NULL,
#     billing_customer_id TEXT,
#     billing_subscription_id TEXT,
#     cancel_at_period_end INT NOT NULL, -- mirror of the billing platform flag
#     created_at TEXT, updated_at TEXT
#   )
#   images(id, user_id, original_url, enhanced_url, prompt_label, mode, likes, created_at)
#   billing_grants(grant_key PK, user_id, kind, ai_credits, created_at)
#   webhook_events(event_id PK, event_type, received_at)
import datetime as dt
import threading

from sqlalchemy import text
from sqlalchemy.engine import Engine

_INIT_LOCK = threading.Lock()


def utc_now_iso(now: dt.datetime | None = None) -> str:
    """UTC timestamp, second precision, with trailing 'Z'."""
    d = now or dt.datetime.now(dt.timezone.utc)
    if d.tzinfo is not None:
        d = d.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return d.replace(microsecond=0).isoformat() + "Z"


def init_db(engine: Engine) -> None:
    with _INIT_LOCK:
        with engine.begin() as conn:
            conn.execute(
                text(
                    """
                CREATE TABLE IF NOT EXISTS profiles(
                    user_id TEXT PRIMARY KEY,
                    tier TEXT NOT NULL DEFAULT 'free',
                    credits INT NOT NULL DEFAULT 0,
                    ai_credits INT NOT NULL DEFAULT 0,
                    billing_customer_id TEXT,
                    billing_subscription_id TEXT,
                    cancel_at_period_end INT NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_profiles_customer ON profiles(billing_customer_id)"
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_profiles_subscription ON profiles(billing_subscription_id)"
                )
            )
            conn.execute(
                text(
                    """
                CREATE TABLE IF NOT EXISTS images(
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    original_url TEXT NOT NULL,
                    enhanced_url TEXT NOT NULL,
                    prompt_label TEXT,
                    mode TEXT NOT NULL DEFAULT 'basic',
                    likes INT NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_images_user_created ON images(user_id, created_at)"
                )
            )
            conn.execute(
                text("CREATE INDEX IF NOT EXISTS idx_images_created ON images(created_at)")
            )
            # One row per applied grant; the primary key makes grants replay-safe
            conn.execute(
                text(
                    """
                CREATE TABLE IF NOT EXISTS billing_grants(
                    grant_key TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    ai_credits INT NOT NULL DEFAULT 0,
                    created_at TEXT
                )
                """
                )
            )
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_grants_user_kind ON billing_grants(user_id, kind)"
                )
            )
            conn.execute(
                text(
                    """
                CREATE TABLE IF NOT EXISTS webhook_events(
                    event_id TEXT PRIMARY KEY,
                    event_type TEXT,
                    received_at TEXT
                )
                """
                )
            )
