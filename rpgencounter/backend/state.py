"""State builders for encounter sessions."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any

from rpgencounter.backend.models import EncounterSession, EncounterSettings, SessionStatus


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_initial_session(settings: EncounterSettings | None = None) -> EncounterSession:
    """Return an idle session with empty rosters, log and queues."""
    return EncounterSession(
        status=SessionStatus.IDLE,
        settings=settings if settings is not None else EncounterSettings(),
    )


def clone_session(session: EncounterSession) -> EncounterSession:
    return copy.deepcopy(session)


def combatant_snapshot(session: EncounterSession) -> dict[str, Any]:
    """Capture the reconcilable part of a session before an action is applied."""
    return {
        "revision": session.revision,
        "environment": session.environment,
        "party": [member.to_dict() for member in session.party],
        "opposition": [member.to_dict() for member in session.opposition],
    }
