"""Encounter state machine.

``EncounterEngine`` owns the single active ``EncounterSession`` and is the
only writer of it. Oracle round trips (init, action, regeneration, summary)
are asynchronous; while one is in flight the engine is busy and rejects new
oracle-bound commands, but user edits and swipe navigation stay available.

Every outgoing action request is tagged with the session revision it was
built from. User edits bump the revision, so a reply that arrives after an
edit targets a superseded state and is discarded instead of overwriting the
edit.

Oracle failures never leave the session half-applied: reconciliation works
on a copy, and the copy only replaces the session once it is accepted. A
failed turn rolls the status back to the last stable state and appends an
``error`` log entry; ``retry`` re-issues the failed request.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Callable, Iterator, Mapping

from rpgencounter.backend.errors import (
    EncounterBusyError,
    EncounterError,
    EntityNotFoundError,
    InvalidTransitionError,
    OracleParseError,
    OracleTransportError,
    PersistenceError,
    ValidationError,
)
from rpgencounter.backend.log import LogEntry, LogKind, LogManager
from rpgencounter.backend.models import (
    MAX_NAME_LENGTH,
    MAX_TEXT_LENGTH,
    BUSY_STATUSES,
    Combatant,
    EncounterSession,
    EncounterSettings,
    NarrativeStyle,
    PendingEntity,
    SessionStatus,
    Side,
    SUMMARY_STYLE_DEFAULTS,
    as_int,
    clamp,
    clean_text,
    coerce_attack,
    coerce_bar,
    coerce_items,
    coerce_status,
    name_key,
    new_combatant,
)
from rpgencounter.backend.oracle import Oracle, extract_prose
from rpgencounter.backend.profiles import DEFAULT_COMBAT_PROFILE, ProfileLibrary, SafeProfile, resolve
from rpgencounter.backend.prompts import PromptAssembler
from rpgencounter.backend.reconcile import ReconcileResult, TurnType, reconcile
from rpgencounter.backend.state import build_initial_session, clone_session, combatant_snapshot
from rpgencounter.backend.store import SessionRecord, SessionStore, is_resumable

logger = logging.getLogger(__name__)

SESSION_UPDATED = "sessionUpdated"
ENTRY_ADDED = "entryAdded"
PENDING_ENTITIES_CHANGED = "pendingEntitiesChanged"
CONCLUDED = "concluded"
ERROR = "error"


class ConclusionReason(str, Enum):
    VICTORY = "victory"
    DEFEAT = "defeat"
    FLED = "fled"
    INTERRUPTED = "interrupted"

    @classmethod
    def parse(cls, value: Any) -> "ConclusionReason":
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"unknown conclusion reason: {value!r}") from exc


@dataclass(frozen=True)
class EngineEvent:
    name: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class FailedRequest:
    turn: TurnType
    action: str | None = None
    reason: ConclusionReason | None = None


Listener = Callable[[EngineEvent], None]

_EDITABLE_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.AWAITING_RESOLUTION})


class EncounterEngine:
    def __init__(
        self,
        oracle: Oracle,
        prompts: PromptAssembler,
        store: SessionStore,
        *,
        profiles: ProfileLibrary | None = None,
        oracle_timeout: float = 60.0,
        history_depth: int = 8,
    ) -> None:
        self._oracle = oracle
        self._prompts = prompts
        self._store = store
        self.profiles = profiles if profiles is not None else ProfileLibrary()
        self._oracle_timeout = oracle_timeout
        self._history_depth = history_depth
        self._listeners: list[Listener] = []
        self._busy = False
        self._saved: SessionRecord | None = None
        self._last_failed: FailedRequest | None = None
        self._profile = SafeProfile(profile=DEFAULT_COMBAT_PROFILE)
        self._set_session(build_initial_session(EncounterSettings(history_depth=history_depth)))

    # -- read side ---------------------------------------------------------

    @property
    def session(self) -> EncounterSession:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def profile(self) -> SafeProfile:
        return self._profile

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def has_saved_session(self) -> bool:
        return self._saved is not None

    @property
    def last_failed(self) -> FailedRequest | None:
        return self._last_failed

    def archive(self) -> list[dict[str, Any]]:
        return self._store.list_archive()

    def snapshot(self) -> dict[str, Any]:
        payload = self._session.to_dict()
        payload["profile"] = self._profile.profile.to_dict()
        payload["busy"] = self._busy
        payload["hasSavedSession"] = self.has_saved_session
        payload["canRetry"] = self._last_failed is not None
        return payload

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> bool:
        """Idle -> Configuring. Returns whether a saved session can be resumed."""
        self._require(SessionStatus.IDLE)
        try:
            record = self._store.load()
        except PersistenceError as exc:
            logger.warning("Ignoring unreadable saved session: %s", exc)
            self._emit(ERROR, {"message": str(exc), "kind": type(exc).__name__})
            record = None
        self._saved = record if is_resumable(record) else None
        self._transition(SessionStatus.CONFIGURING)
        self._emit_session()
        return self._saved is not None

    def resume(self) -> None:
        self._require(SessionStatus.CONFIGURING)
        if self._saved is None:
            raise InvalidTransitionError("there is no saved session to resume")
        record, self._saved = self._saved, None
        session = record.session
        # A snapshot taken mid-request resumes at the last stable point.
        session.status = SessionStatus.ACTIVE
        self._set_session(session)
        self._profile = resolve(record.profile) if record.profile is not None else self.profiles.resolve_id(
            session.active_profile_id
        )
        logger.info("Resumed saved encounter at revision %s", session.revision)
        self._emit_session()

    def discard_saved(self) -> None:
        self._require(SessionStatus.CONFIGURING)
        self._saved = None
        try:
            self._store.clear()
        except PersistenceError as exc:
            self._report_persistence_failure(exc)
        self._emit_session()

    def configure(
        self,
        *,
        profile_id: str | None = None,
        profile: Mapping[str, Any] | None = None,
        avatar_name: str | None = None,
        scene_context: str = "",
        special_instructions: str = "",
        history_depth: int | None = None,
        narrative: Mapping[str, Any] | None = None,
        summary_narrative: Mapping[str, Any] | None = None,
    ) -> SafeProfile:
        self._require(SessionStatus.CONFIGURING)
        safe = resolve(profile) if profile is not None else self.profiles.resolve_id(profile_id)
        depth = as_int(history_depth) if history_depth is not None else self._history_depth
        self._profile = safe
        self._session.active_profile_id = safe.id
        self._session.settings = EncounterSettings(
            avatar_name=clean_text(avatar_name, MAX_NAME_LENGTH) or None,
            scene_context=clean_text(scene_context, 4000) or "",
            special_instructions=clean_text(special_instructions, MAX_TEXT_LENGTH) or "",
            history_depth=max(0, depth) if depth is not None else self._history_depth,
            narrative=NarrativeStyle.from_dict(narrative),
            summary_narrative=NarrativeStyle.from_dict(summary_narrative, **SUMMARY_STYLE_DEFAULTS),
        )
        self._emit_session()
        return safe

    async def initialize(self) -> bool:
        """Configuring -> Initializing -> Active, or back to Configuring."""
        self._require(SessionStatus.CONFIGURING)
        with self._exclusive():
            return await self._initialize()

    async def _initialize(self) -> bool:
        self._last_failed = None
        request = FailedRequest(turn=TurnType.INIT)
        self._transition(SessionStatus.INITIALIZING)
        self._emit_session()
        messages = self._prompts.build(self._session, self._profile, TurnType.INIT)
        try:
            raw = await self._ask(messages)
        except OracleTransportError as exc:
            self._fail(exc, SessionStatus.CONFIGURING, request)
            return False

        result = reconcile(self._session, raw, TurnType.INIT, avatar_name=self._session.settings.avatar_name)
        if not result.accepted:
            self._fail(OracleParseError(result.error or "unusable reply"), SessionStatus.CONFIGURING, request)
            return False

        session = result.session
        session.status = SessionStatus.ACTIVE
        session.action_history.append({"role": "assistant", "content": raw})
        self._set_session(session)
        opening = f"The encounter begins. {session.environment}".strip()
        entry = self._log.append_entry(LogKind.SYSTEM, opening)
        logger.info(
            "Encounter initialized with %d party members and %d opponents",
            len(session.party),
            len(session.opposition),
        )
        self._emit(ENTRY_ADDED, {"entry": entry.to_dict()})
        self._emit_session()
        self._persist()
        return True

    def reset(self) -> None:
        """Return to Idle, dropping the current (concluded or unstarted) session."""
        self._require(SessionStatus.CONCLUDED, SessionStatus.CONFIGURING)
        if self._busy:
            raise EncounterBusyError("an oracle request is in flight")
        self._saved = None
        self._last_failed = None
        self._set_session(build_initial_session(EncounterSettings(history_depth=self._history_depth)))
        self._profile = SafeProfile(profile=DEFAULT_COMBAT_PROFILE)
        self._emit_session()

    # -- action loop -------------------------------------------------------

    async def submit_action(self, action: str) -> bool:
        if self._busy or self._session.status in BUSY_STATUSES:
            raise EncounterBusyError("an oracle request is in flight")
        self._require(SessionStatus.ACTIVE)
        text = clean_text(action, MAX_TEXT_LENGTH)
        if not text:
            raise ValidationError("an action needs some text")
        with self._exclusive():
            accepted, reason = await self._resolve_action(text)
        if reason is not None:
            await self.conclude(reason)
        return accepted

    async def _resolve_action(self, action: str) -> tuple[bool, ConclusionReason | None]:
        self._last_failed = None
        request = FailedRequest(turn=TurnType.ACTION, action=action)
        revision = self._session.revision
        before = combatant_snapshot(self._session)
        self._transition(SessionStatus.AWAITING_RESOLUTION)
        self._emit_session()
        messages = self._prompts.build(self._session, self._profile, TurnType.ACTION, action=action)
        try:
            raw = await self._ask(messages)
        except OracleTransportError as exc:
            self._fail(exc, SessionStatus.ACTIVE, request)
            return False, None

        if self._session.revision != revision:
            logger.warning(
                "Discarding oracle reply for revision %s; session is at %s", revision, self._session.revision
            )
            self._session.status = SessionStatus.ACTIVE
            self._last_failed = request
            entry = self._log.append_entry(
                LogKind.SYSTEM,
                "The combatants were edited while the referee was answering, so that answer was discarded. "
                "Retry the action to resolve it against the current state.",
            )
            self._emit(ENTRY_ADDED, {"entry": entry.to_dict()})
            self._emit_session()
            self._persist()
            return False, None

        result = reconcile(self._session, raw, TurnType.ACTION, avatar_name=self._session.settings.avatar_name)
        if not result.accepted:
            self._fail(OracleParseError(result.error or "unusable reply"), SessionStatus.ACTIVE, request)
            return False, None

        session = result.session
        session.status = SessionStatus.ACTIVE
        session.action_history.append({"role": "user", "content": action})
        session.action_history.append({"role": "assistant", "content": raw})
        self._set_session(session)
        entry = self._log.append_entry(
            LogKind.NARRATIVE,
            _entry_text(result),
            origin={
                "action": action,
                "before": before,
                "statsSwipeIndex": 0,
                "appliedRevision": session.revision,
            },
        )
        self._emit(ENTRY_ADDED, {"entry": entry.to_dict()})
        if result.new_party_candidates or result.new_opposition_candidates:
            self._emit_pending()
        self._emit_session()
        self._persist()
        return True, self._auto_conclusion(result)

    def _auto_conclusion(self, result: ReconcileResult) -> ConclusionReason | None:
        if result.combat_end:
            try:
                return ConclusionReason.parse(result.outcome)
            except ValidationError:
                return ConclusionReason.INTERRUPTED
        avatar = self._avatar()
        if avatar is not None and avatar.hp == 0:
            return ConclusionReason.DEFEAT
        if not self._session.opposition and not self._session.pending_opposition:
            return ConclusionReason.VICTORY
        return None

    async def retry(self) -> bool:
        """Re-issue the most recent failed init, action or conclusion request."""
        request = self._last_failed
        if request is None:
            raise InvalidTransitionError("there is no failed request to retry")
        if request.turn is TurnType.INIT:
            return await self.initialize()
        if request.turn is TurnType.ACTION:
            return await self.submit_action(request.action or "")
        return await self.conclude(request.reason or ConclusionReason.INTERRUPTED)

    # -- swipes ------------------------------------------------------------

    def set_active_swipe(self, entry_id: int, index: int) -> LogEntry:
        entry = self._log.set_active_swipe(entry_id, index)
        self._emit_session()
        self._persist()
        return entry

    async def regenerate_entry(self, entry_id: int, *, apply_state: bool = False) -> LogEntry:
        """Append an alternative narrative to a narrative entry.

        The request is rebuilt from the entry's original action and the
        combatant state from before that action. Only the narrative changes
        unless ``apply_state`` is set, which is limited to the latest
        narrative entry and replaces the current stats with the regenerated
        outcome.
        """
        if self._busy or self._session.status in BUSY_STATUSES:
            raise EncounterBusyError("an oracle request is in flight")
        self._require(SessionStatus.ACTIVE)
        entry = self._log.get(entry_id)
        origin = entry.origin or {}
        if entry.kind is not LogKind.NARRATIVE or "action" not in origin or "before" not in origin:
            raise ValidationError(f"log entry {entry_id} cannot be regenerated")
        if apply_state:
            latest = self._log.recent(1, kind=LogKind.NARRATIVE)
            if not latest or latest[0].id != entry_id:
                raise ValidationError("stats can only be regenerated for the latest narrative entry")
            if origin.get("appliedRevision") != self._session.revision:
                raise ValidationError(
                    "combatants were edited after this turn was resolved; regenerate the narrative only"
                )

        with self._exclusive():
            return await self._regenerate(entry, origin, apply_state)

    async def _regenerate(self, entry: LogEntry, origin: dict[str, Any], apply_state: bool) -> LogEntry:
        revision = self._session.revision
        base = self._session_before(entry, origin["before"])
        messages = self._prompts.build(base, self._profile, TurnType.ACTION, action=origin["action"])
        try:
            raw = await self._ask(messages)
        except OracleTransportError as exc:
            self._fail(exc, SessionStatus.ACTIVE, None)
            return entry
        result = reconcile(base, raw, TurnType.ACTION, avatar_name=self._session.settings.avatar_name)
        if not result.accepted:
            self._fail(OracleParseError(result.error or "unusable reply"), SessionStatus.ACTIVE, None)
            return entry

        entry = self._log.add_swipe(entry.id, _entry_text(result))
        if apply_state and self._session.revision == revision:
            session = clone_session(self._session)
            session.party = result.session.party
            session.opposition = result.session.opposition
            session.environment = result.session.environment
            session.pending_party = result.session.pending_party
            session.pending_opposition = result.session.pending_opposition
            session.revision += 1
            self._set_session(session)
            entry = self._log.get(entry.id)
            entry.origin = {
                **origin,
                "statsSwipeIndex": entry.active_swipe_index,
                "appliedRevision": session.revision,
            }
            self._emit_pending()
        elif apply_state:
            logger.warning("Combatants changed during regeneration of entry %s; stats kept", entry.id)
        self._emit_session()
        self._persist()
        return entry

    def _session_before(self, entry: LogEntry, before: Mapping[str, Any]) -> EncounterSession:
        base = clone_session(self._session)
        base.party = [Combatant.from_dict(item, Side.PARTY) for item in before.get("party", [])]
        base.opposition = [Combatant.from_dict(item, Side.OPPOSITION) for item in before.get("opposition", [])]
        base.environment = str(before.get("environment") or "")
        base.log = [item for item in base.log if item.id < entry.id]
        return base

    # -- conclusion --------------------------------------------------------

    async def conclude(self, reason: ConclusionReason | str) -> bool:
        if self._busy or self._session.status in BUSY_STATUSES:
            raise EncounterBusyError("an oracle request is in flight")
        self._require(SessionStatus.ACTIVE)
        parsed = reason if isinstance(reason, ConclusionReason) else ConclusionReason.parse(reason)
        with self._exclusive():
            return await self._conclude(parsed)

    async def _conclude(self, reason: ConclusionReason) -> bool:
        self._last_failed = None
        request = FailedRequest(turn=TurnType.SUMMARY, reason=reason)
        self._transition(SessionStatus.CONCLUDING)
        self._emit_session()
        messages = self._prompts.build(self._session, self._profile, TurnType.SUMMARY, result=reason.value)
        try:
            summary = extract_prose(await self._ask(messages))
            if not summary:
                raise OracleParseError("summary reply is empty")
        except (OracleTransportError, OracleParseError) as exc:
            self._fail(exc, SessionStatus.ACTIVE, request)
            return False

        self._session.result = reason.value
        self._session.summary = summary
        self._transition(SessionStatus.CONCLUDED)
        try:
            self._store.archive(self._session)
            self._store.clear()
        except PersistenceError as exc:
            self._report_persistence_failure(exc)
        logger.info("Encounter concluded: %s", reason.value)
        self._emit(CONCLUDED, {"result": reason.value, "summary": summary})
        self._emit_session()
        return True

    # -- manual entity management ------------------------------------------

    def approve_entity(self, pending_id: str) -> Combatant:
        self._require(*_EDITABLE_STATUSES)
        pending = self._take_pending(pending_id, keep=True)
        if self._session.find(pending.combatant.name) is not None:
            raise ValidationError(f"a combatant named {pending.combatant.name!r} already exists")
        self._take_pending(pending_id)
        combatant = pending.combatant
        self._session.roster(pending.side).append(combatant)
        self._touch()
        self._emit_pending()
        return combatant

    def reject_entity(self, pending_id: str) -> None:
        self._require(*_EDITABLE_STATUSES)
        self._take_pending(pending_id)
        self._emit_pending()
        self._emit_session()
        self._persist()

    def add_combatant(self, side: Side | str, data: Mapping[str, Any] | None = None) -> Combatant:
        self._require(*_EDITABLE_STATUSES)
        combatant = new_combatant(Side(side), data)
        if self._session.find(combatant.name) is not None:
            raise ValidationError(f"a combatant named {combatant.name!r} already exists")
        self._session.roster(Side(side)).append(combatant)
        self._touch()
        return combatant

    async def remove_combatant(self, name: str) -> Combatant:
        """Remove a combatant; clearing the last opponent concludes the encounter as a victory."""
        self._require(*_EDITABLE_STATUSES)
        side, combatant = self._find(name)
        if combatant is self._avatar():
            raise ValidationError("the player's own combatant cannot be removed")
        self._session.roster(side).remove(combatant)
        self._touch()
        if (
            side is Side.OPPOSITION
            and not self._session.opposition
            and not self._session.pending_opposition
            and self._session.status is SessionStatus.ACTIVE
            and not self._busy
        ):
            await self.conclude(ConclusionReason.VICTORY)
        return combatant

    def edit_combatant(self, name: str, patch: Mapping[str, Any]) -> Combatant:
        """Apply a user edit directly, outside reconciliation."""
        self._require(*_EDITABLE_STATUSES)
        side, combatant = self._find(name)
        if not isinstance(patch, Mapping):
            raise ValidationError("patch must be a mapping")

        if "name" in patch:
            new_name = clean_text(patch["name"], MAX_NAME_LENGTH)
            if not new_name:
                raise ValidationError("name cannot be empty")
            existing = self._session.find(new_name)
            if existing is not None and existing[1] is not combatant:
                raise ValidationError(f"a combatant named {new_name!r} already exists")
            if combatant is self._avatar() and self._session.settings.avatar_name:
                self._session.settings.avatar_name = new_name
            combatant.name = new_name
        if "maxHp" in patch:
            max_hp = as_int(patch["maxHp"])
            if max_hp is None or max_hp < 1:
                raise ValidationError("maxHp must be a positive number")
            combatant.max_hp = max_hp
        if "hp" in patch:
            hp = as_int(patch["hp"])
            if hp is None:
                raise ValidationError("hp must be a number")
            combatant.hp = hp
        combatant.hp = clamp(combatant.hp, 0, combatant.max_hp)
        if combatant.hp > 0:
            combatant.downed_turns = 0

        if "attacks" in patch:
            combatant.attacks = _coerce_list(patch["attacks"], coerce_attack, "attacks")
        if "statuses" in patch:
            combatant.statuses = _coerce_list(patch["statuses"], coerce_status, "statuses")
        if "customBars" in patch:
            combatant.custom_bars = _coerce_list(patch["customBars"], coerce_bar, "customBars")
        if "items" in patch and side is Side.PARTY:
            combatant.items = coerce_items(patch["items"])
        if "sprite" in patch and side is Side.OPPOSITION:
            combatant.sprite = clean_text(patch["sprite"], 16) or combatant.sprite
        if "description" in patch and side is Side.OPPOSITION:
            combatant.description = clean_text(patch["description"]) or ""
        if "isProtected" in patch:
            combatant.is_protected = patch["isProtected"] is True or combatant is self._avatar()
        self._touch()
        return combatant

    def set_environment(self, environment: str) -> None:
        self._require(*_EDITABLE_STATUSES)
        self._session.environment = clean_text(environment, MAX_TEXT_LENGTH) or ""
        self._touch()

    # -- internals ---------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if self._busy:
            raise EncounterBusyError("an oracle request is in flight")
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    async def _ask(self, messages: list[dict[str, str]]) -> str:
        try:
            return await asyncio.wait_for(self._oracle.send(messages), timeout=self._oracle_timeout)
        except asyncio.TimeoutError as exc:
            raise OracleTransportError(f"oracle did not answer within {self._oracle_timeout:g}s") from exc

    def _fail(self, exc: EncounterError, stable: SessionStatus, request: FailedRequest | None) -> None:
        logger.warning("%s during %s: %s", type(exc).__name__, self._session.status.value, exc)
        self._session.status = stable
        self._last_failed = request
        hint = " Regenerate or retry to try again." if request is not None else " Try regenerating again."
        entry = self._log.append_entry(LogKind.ERROR, f"{exc}.{hint}")
        self._emit(ERROR, {"message": str(exc), "kind": type(exc).__name__})
        self._emit(ENTRY_ADDED, {"entry": entry.to_dict()})
        self._emit_session()
        self._persist()

    def _persist(self) -> None:
        if self._session.status is not SessionStatus.ACTIVE:
            return
        try:
            self._store.save(self._session, self._profile.profile)
        except PersistenceError as exc:
            self._report_persistence_failure(exc)

    def _report_persistence_failure(self, exc: PersistenceError) -> None:
        logger.warning("Session snapshot failed, continuing in memory: %s", exc)
        entry = self._log.append_entry(LogKind.ERROR, f"Could not save the encounter: {exc}")
        self._emit(ERROR, {"message": str(exc), "kind": type(exc).__name__})
        self._emit(ENTRY_ADDED, {"entry": entry.to_dict()})

    def _touch(self) -> None:
        self._session.revision += 1
        self._emit_session()
        self._persist()

    def _set_session(self, session: EncounterSession) -> None:
        self._session = session
        self._log = LogManager(session.log)

    def _transition(self, status: SessionStatus) -> None:
        logger.debug("Session %s -> %s", self._session.status.value, status.value)
        self._session.status = status

    def _require(self, *allowed: SessionStatus) -> None:
        if self._session.status not in allowed:
            expected = ", ".join(status.value for status in allowed)
            raise InvalidTransitionError(f"session is {self._session.status.value}; expected {expected}")

    def _avatar(self) -> Combatant | None:
        avatar_name = self._session.settings.avatar_name
        if avatar_name:
            key = name_key(avatar_name)
            for member in self._session.party:
                if member.key == key:
                    return member
        return self._session.protected_combatant()

    def _find(self, name: str) -> tuple[Side, Combatant]:
        found = self._session.find(name) if isinstance(name, str) else None
        if found is None:
            raise EntityNotFoundError(f"no combatant named {name!r}")
        return found

    def _take_pending(self, pending_id: str, keep: bool = False) -> PendingEntity:
        for side in Side:
            queue = self._session.pending(side)
            for index, pending in enumerate(queue):
                if pending.id == pending_id:
                    if not keep:
                        del queue[index]
                    return pending
        raise EntityNotFoundError(f"no pending entity with id {pending_id!r}")

    def _emit(self, name: str, payload: dict[str, Any]) -> None:
        event = EngineEvent(name=name, payload=payload)
        for listener in list(self._listeners):
            listener(event)

    def _emit_session(self) -> None:
        self._emit(SESSION_UPDATED, {"status": self._session.status.value, "revision": self._session.revision})

    def _emit_pending(self) -> None:
        self._emit(
            PENDING_ENTITIES_CHANGED,
            {
                "party": [pending.to_dict() for pending in self._session.pending_party],
                "opposition": [pending.to_dict() for pending in self._session.pending_opposition],
            },
        )


def _entry_text(result: ReconcileResult) -> str:
    if not result.action_lines:
        return result.narrative
    return result.narrative + "\n\n" + "\n".join(result.action_lines)


def _coerce_list(raw: Any, coerce: Callable[[Any], Any], field_name: str) -> list[Any]:
    if not isinstance(raw, list):
        raise ValidationError(f"{field_name} must be a list")
    return [value for value in (coerce(item) for item in raw) if value is not None]
