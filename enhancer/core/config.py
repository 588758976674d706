# enhancer/core/config.py
import os
import json
from dataclasses import dataclass, field
from typing import Dict, List
from dotenv import load_dotenv

# Load .env into process environment early
load_dotenv()

GFPGAN_VERSION = "9283608cc6b7be6b65a8e44983db012355fde4132009bf99d976b2f0896856a3"


def _get(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def _get_list(name: str, default_list: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default_list)
    s = raw.strip()
    # Try JSON first
    if s.startswith("[") and s.endswith("]"):
        try:
            parsed = json.loads(s)
            if isinstance(parsed, list):
                return [str(x) for x in parsed]
        except Exception:
            pass
    # Fallback to CSV
    return [x.strip() for x in s.split(",") if x.strip()]


def _get_int(name: str, default: int) -> int:
    try:
        return int(float(_get(name, str(default)) or default))
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(_get(name, str(default)) or default)
    except Exception:
        return default


def _get_bool(name: str, default: bool = False) -> bool:
    raw = _get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _get_pairs(name: str) -> Dict[str, str]:
    """Parse `key:value` entries (JSON list or CSV) into a dict."""
    out: Dict[str, str] = {}
    for item in _get_list(name, []):
        key, sep, value = item.partition(":")
        if sep and key.strip() and value.strip():
            out[key.strip()] = value.strip()
    return out


@dataclass(frozen=True)
class Settings:
    DATABASE_URL: str = "sqlite:///data/enhancer.db"
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE_S: int = 300
    CORS_ORIGINS: List[str] = field(default_factory=lambda: ["*"])
    # HTTP surface toggles
    ENABLE_SWAGGER: bool = False
    ENABLE_HSTS: bool = False
    HEALTH_TOKEN: str | None = None
    # Canonical free quota: profile seed, guest cap and free AI trial
    FREE_CREDITS: int = 5
    AI_CREDITS_PREMIER_WEEKLY: int = 100
    AI_CREDITS_PREMIER_MONTHLY: int = 200
    AI_CREDITS_PREMIER_YEARLY: int = 800
    CREDIT_PACK_AI_CREDITS: int = 50
    PAY_PER_IMAGE_AI_CREDITS: int = 5
    # Stripe (server-side)
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_PORTAL_CONFIGURATION_ID: str | None = None
    STRIPE_CREDIT_PACK_PRICE_ID: str | None = None
    STRIPE_PAY_PER_IMAGE_PRICE_ID: str | None = None
    STRIPE_EXTRA_PRICE_TIERS: Dict[str, str] = field(default_factory=dict)
    PUBLIC_BASE_URL: str | None = None
    # Identity provider (Supabase-style JWTs)
    AUTH_JWKS_URL: str | None = None
    AUTH_JWT_SECRET: str | None = None
    AUTH_ISSUER: str | None = None
    # Inference (Replicate)
    REPLICATE_API_TOKEN: str | None = None
    INFERENCE_MODEL_VERSION: str = GFPGAN_VERSION
    INFERENCE_POLL_INTERVAL_S: float = 1.0
    INFERENCE_MAX_ATTEMPTS: int = 120
    # Object storage (Supabase Storage)
    SUPABASE_URL: str | None = None
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    STORAGE_BUCKET: str = "image"
    MAX_UPLOAD_MB: int = 50
    # Retention + storage alerts
    RETENTION_HOURS: int = 24
    STORAGE_LIMIT_BYTES: int = 1073741824
    STORAGE_ALERT_THRESHOLD: float = 0.9
    ESTIMATED_BYTES_PER_IMAGE: int = 512 * 1024
    CLEANUP_API_TOKEN: str | None = None
    # SMTP (storage alerts)
    SMTP_HOST: str | None = None
    SMTP_PORT: int | None = None
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM: str | None = None
    ALERT_EMAIL_TO: str | None = None
    # Shared counters / guest staging
    REDIS_URL: str | None = None
    GUEST_RESUME_TTL_S: int = 600
    GUEST_COUNTER_TTL_S: int = 7 * 24 * 3600
    USER_RL_PER_MIN: int = 20
    IP_RL_PER_MIN: int = 60


def get_settings() -> Settings:
    free_credits = _get_int("FREE_CREDITS", 5)
    if free_credits <= 0:
        free_credits = 5

    return Settings(
        DATABASE_URL=(_get("DATABASE_URL", "sqlite:///data/enhancer.db") or "").strip(),
        DB_ECHO=_get_bool("DB_ECHO"),
        DB_POOL_SIZE=_get_int("DB_POOL_SIZE", 5),
        DB_MAX_OVERFLOW=_get_int("DB_MAX_OVERFLOW", 10),
        DB_POOL_RECYCLE_S=_get_int("DB_POOL_RECYCLE_S", 300),
        CORS_ORIGINS=_get_list("CORS_ORIGINS", ["*"]),
        ENABLE_SWAGGER=_get_bool("ENABLE_SWAGGER"),
        ENABLE_HSTS=_get_bool("ENABLE_HSTS"),
        HEALTH_TOKEN=_get("HEALTH_TOKEN"),
        FREE_CREDITS=free_credits,
        AI_CREDITS_PREMIER_WEEKLY=_get_int("AI_CREDITS_PREMIER_WEEKLY", 100),
        AI_CREDITS_PREMIER_MONTHLY=_get_int("AI_CREDITS_PREMIER_MONTHLY", 200),
        AI_CREDITS_PREMIER_YEARLY=_get_int("AI_CREDITS_PREMIER_YEARLY", 800),
        CREDIT_PACK_AI_CREDITS=_get_int("CREDIT_PACK_AI_CREDITS", 50),
        PAY_PER_IMAGE_AI_CREDITS=_get_int("PAY_PER_IMAGE_AI_CREDITS", 5),
        STRIPE_SECRET_KEY=_get("STRIPE_SECRET_KEY"),
        STRIPE_WEBHOOK_SECRET=_get("STRIPE_WEBHOOK_SECRET"),
        STRIPE_PORTAL_CONFIGURATION_ID=_get("STRIPE_PORTAL_CONFIGURATION_ID"),
        STRIPE_CREDIT_PACK_PRICE_ID=_get("STRIPE_CREDIT_PACK_PRICE_ID"),
        STRIPE_PAY_PER_IMAGE_PRICE_ID=_get("STRIPE_PAY_PER_IMAGE_PRICE_ID"),
        STRIPE_EXTRA_PRICE_TIERS=_get_pairs("STRIPE_EXTRA_PRICE_TIERS"),
        PUBLIC_BASE_URL=_get("PUBLIC_BASE_URL"),
        AUTH_JWKS_URL=_get("AUTH_JWKS_URL"),
        AUTH_JWT_SECRET=_get("AUTH_JWT_SECRET"),
        AUTH_ISSUER=_get("AUTH_ISSUER"),
        REPLICATE_API_TOKEN=_get("REPLICATE_API_TOKEN"),
        INFERENCE_MODEL_VERSION=(
            _get("INFERENCE_MODEL_VERSION", GFPGAN_VERSION) or GFPGAN_VERSION
        ).strip(),
        INFERENCE_POLL_INTERVAL_S=_get_float("INFERENCE_POLL_INTERVAL_S", 1.0),
        INFERENCE_MAX_ATTEMPTS=_get_int("INFERENCE_MAX_ATTEMPTS", 120),
        SUPABASE_URL=_get("SUPABASE_URL"),
        SUPABASE_SERVICE_ROLE_KEY=_get("SUPABASE_SERVICE_ROLE_KEY"),
        STORAGE_BUCKET=(_get("STORAGE_BUCKET", "image") or "image").strip(),
        MAX_UPLOAD_MB=_get_int("MAX_UPLOAD_MB", 50),
        RETENTION_HOURS=_get_int("RETENTION_HOURS", 24),
        STORAGE_LIMIT_BYTES=_get_int("STORAGE_LIMIT_BYTES", 1073741824),
        STORAGE_ALERT_THRESHOLD=_get_float("STORAGE_ALERT_THRESHOLD", 0.9),
        ESTIMATED_BYTES_PER_IMAGE=_get_int("ESTIMATED_BYTES_PER_IMAGE", 512 * 1024),
        CLEANUP_API_TOKEN=_get("CLEANUP_API_TOKEN"),
        SMTP_HOST=_get("SMTP_HOST"),
        SMTP_PORT=(_get_int("SMTP_PORT", 0) if _get("SMTP_PORT") else None),
        SMTP_USER=_get("SMTP_USER"),
        SMTP_PASSWORD=_get("SMTP_PASSWORD"),
        SMTP_FROM=_get("SMTP_FROM") or _get("SMTP_USER"),
        ALERT_EMAIL_TO=_get("ALERT_EMAIL_TO"),
        REDIS_URL=_get("REDIS_URL"),
        GUEST_RESUME_TTL_S=_get_int("GUEST_RESUME_TTL_S", 600),
        GUEST_COUNTER_TTL_S=_get_int("GUEST_COUNTER_TTL_S", 7 * 24 * 3600),
        USER_RL_PER_MIN=_get_int("USER_RL_PER_MIN", 20),
        IP_RL_PER_MIN=_get_int("IP_RL_PER_MIN", 60),
    )
