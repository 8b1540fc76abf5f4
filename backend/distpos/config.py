# backend/distpos/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/distpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///distpos.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Order editing leases
    LOCK_TTL_SECONDS = int(os.environ.get("LOCK_TTL_SECONDS", "600"))
    LOCK_SWEEP_INTERVAL_SECONDS = int(os.environ.get("LOCK_SWEEP_INTERVAL_SECONDS", "30"))
    LOCK_HEARTBEAT_SECONDS = int(os.environ.get("LOCK_HEARTBEAT_SECONDS", "300"))
    LOCK_SWEEPER_ENABLED = _env_bool("LOCK_SWEEPER_ENABLED", True)

    # Warehouse allocation
    PRIMARY_WAREHOUSE_CODE = os.environ.get("PRIMARY_WAREHOUSE_CODE", "BODEGA")

    WALK_IN_CLIENT_NAME = os.environ.get("WALK_IN_CLIENT_NAME", "Walk-in Customer")

    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
