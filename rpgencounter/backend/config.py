"""Configuration helpers for the encounter backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineSettings:
    database_url: str | None
    state_path: str | None
    oracle_url: str
    oracle_api_key: str | None
    oracle_model: str
    oracle_timeout: float
    history_depth: int
    host: str
    port: int
    log_level: str


def load_settings() -> EngineSettings:
    port_raw = os.getenv("RPGENCOUNTER_PORT", "8000")
    timeout_raw = os.getenv("RPGENCOUNTER_ORACLE_TIMEOUT", "60")
    depth_raw = os.getenv("RPGENCOUNTER_HISTORY_DEPTH", "8")
    return EngineSettings(
        database_url=os.getenv("RPGENCOUNTER_DATABASE_URL"),
        state_path=os.getenv("RPGENCOUNTER_STATE_PATH"),
        oracle_url=os.getenv("RPGENCOUNTER_ORACLE_URL", "http://127.0.0.1:11434/v1"),
        oracle_api_key=os.getenv("RPGENCOUNTER_ORACLE_API_KEY"),
        oracle_model=os.getenv("RPGENCOUNTER_ORACLE_MODEL", "llama3"),
        oracle_timeout=float(timeout_raw),
        history_depth=max(0, int(depth_raw)),
        host=os.getenv("RPGENCOUNTER_HOST", "127.0.0.1"),
        port=int(port_raw),
        log_level=os.getenv("RPGENCOUNTER_LOG_LEVEL", "INFO").upper(),
    )
