"""Error taxonomy raised and handled by the encounter engine."""

from __future__ import annotations


class EncounterError(Exception):
    """Base class for every error the engine raises on purpose."""


class OracleTransportError(EncounterError):
    """The oracle could not be reached or did not answer in time."""


class OracleParseError(EncounterError):
    """The oracle answered, but the reply is unusable for the turn."""


class ValidationError(EncounterError):
    """A profile, update or user patch failed its checks."""


class PersistenceError(EncounterError):
    """A session snapshot could not be written or read."""


class InvalidTransitionError(EncounterError):
    """The command is not allowed in the current session status."""


class EncounterBusyError(InvalidTransitionError):
    """An oracle request is in flight."""


class EntityNotFoundError(EncounterError, LookupError):
    """No combatant, pending entity or log entry matches the given key."""
