"""Backend package for the encounter engine."""

from .config import EngineSettings, load_settings
from .engine import ConclusionReason, EncounterEngine, EngineEvent
from .profiles import DEFAULT_COMBAT_PROFILE, PRESET_PROFILES, ProfileLibrary, SafeProfile, resolve
from .reconcile import TurnType, reconcile
from .state import build_initial_session
from .store import FileSessionStore, InMemorySessionStore, PostgresSessionStore, SessionStore, create_store

__all__ = [
    "build_initial_session",
    "ConclusionReason",
    "create_store",
    "DEFAULT_COMBAT_PROFILE",
    "EncounterEngine",
    "EngineEvent",
    "EngineSettings",
    "FileSessionStore",
    "InMemorySessionStore",
    "load_settings",
    "PostgresSessionStore",
    "PRESET_PROFILES",
    "ProfileLibrary",
    "reconcile",
    "resolve",
    "SafeProfile",
    "SessionStore",
    "TurnType",
]
