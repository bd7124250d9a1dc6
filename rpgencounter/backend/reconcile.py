"""Reconciliation of oracle replies against the authoritative session.

The oracle is an unreliable peer returning semi-structured text. Each reply is
parsed into a tagged ``ParsedReply`` (valid, parse failure, schema failure)
and only a valid reply is merged. Merging is a pure function: ``reconcile``
deep-copies the local session, applies field-level ownership rules to the
copy and returns it; on any failure the caller gets its own session back
untouched.

Ownership for combatants matched by case-insensitive name:

* the oracle may write ``hp``, ``maxHp``, ``statuses`` and ``customBars``;
* everything else (``name``, ``attacks``, ``items``, ``sprite``,
  ``description``, ``isProtected``) belongs to the user.

Unknown names never enter the rosters directly. They are queued as pending
entities until the user approves them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import re
from typing import Any, Mapping
import uuid

from rpgencounter.backend.errors import OracleParseError
from rpgencounter.backend.models import (
    MAX_TEXT_LENGTH,
    Combatant,
    CustomBar,
    EncounterSession,
    PendingEntity,
    Side,
    Status,
    as_int,
    clamp,
    clean_text,
    coerce_combatant,
    coerce_status,
    name_key,
)
from rpgencounter.backend.state import clone_session

logger = logging.getLogger(__name__)

# Opposition members at hp 0 for this many resolved turns leave the roster.
PRUNE_AFTER_DOWNED_TURNS = 2

_FENCE_OPEN = re.compile(r"```json\s*", re.IGNORECASE)
_FENCE = re.compile(r"```\s*")
_STATUS_DURATION_KEYS = ("remainingTurns", "duration", "turns")


class TurnType(str, Enum):
    INIT = "init"
    ACTION = "action"
    SUMMARY = "summary"


class ReplyKind(str, Enum):
    VALID = "valid"
    PARSE_FAILURE = "parse_failure"
    SCHEMA_FAILURE = "schema_failure"


@dataclass(frozen=True)
class ParsedReply:
    kind: ReplyKind
    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind is ReplyKind.VALID


@dataclass
class ReconcileResult:
    session: EncounterSession
    reply: ParsedReply
    new_party_candidates: list[PendingEntity] = field(default_factory=list)
    new_opposition_candidates: list[PendingEntity] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    narrative: str = ""
    action_lines: list[str] = field(default_factory=list)
    combat_end: bool = False
    outcome: str | None = None

    @property
    def accepted(self) -> bool:
        return self.reply.ok

    @property
    def error(self) -> str | None:
        return self.reply.error


def extract_json(raw: str) -> dict[str, Any]:
    """Locate and parse the JSON object embedded in an oracle reply."""
    if not isinstance(raw, str):
        raise OracleParseError("oracle reply is not text")
    cleaned = _FENCE.sub("", _FENCE_OPEN.sub("", raw.strip()))
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first : last + 1]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise OracleParseError(f"oracle reply is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise OracleParseError("oracle reply JSON is not an object")
    return data


def _stats_block(data: Mapping[str, Any]) -> Mapping[str, Any]:
    nested = data.get("combatStats")
    return nested if isinstance(nested, Mapping) else data


def _opposition_list(block: Mapping[str, Any]) -> Any:
    if "opposition" in block:
        return block["opposition"]
    return block.get("enemies")


def parse_reply(raw: str | Mapping[str, Any], turn: TurnType) -> ParsedReply:
    if isinstance(raw, Mapping):
        data = dict(raw)
    else:
        try:
            data = extract_json(raw)
        except OracleParseError as exc:
            return ParsedReply(kind=ReplyKind.PARSE_FAILURE, error=str(exc))

    if turn is TurnType.ACTION:
        narrative = data.get("narrative")
        if not isinstance(narrative, str) or not narrative.strip():
            return ParsedReply(kind=ReplyKind.SCHEMA_FAILURE, data=data, error="reply has no narrative")
    elif turn is TurnType.INIT:
        block = _stats_block(data)
        if not isinstance(block.get("party"), list) or not isinstance(_opposition_list(block), list):
            return ParsedReply(
                kind=ReplyKind.SCHEMA_FAILURE,
                data=data,
                error="initialization reply needs party and opposition lists",
            )
    return ParsedReply(kind=ReplyKind.VALID, data=data)


def _new_pending_id() -> str:
    return f"pending-{uuid.uuid4().hex[:10]}"


def decay_statuses(combatant: Combatant) -> None:
    remaining = []
    for status in combatant.statuses:
        turns = status.remaining_turns - 1
        if turns > 0:
            remaining.append(Status(marker=status.marker, name=status.name, remaining_turns=turns))
    combatant.statuses = remaining


def _merge_statuses(existing: list[Status], proposed: list[Any]) -> list[Status]:
    merged = {name_key(status.name): status for status in existing}
    for raw in proposed:
        status = coerce_status(raw)
        if status is None:
            continue
        key = name_key(status.name)
        has_duration = any(as_int(raw.get(name)) is not None for name in _STATUS_DURATION_KEYS)
        if key in merged:
            previous = merged[key]
            status = Status(
                marker=status.marker or previous.marker,
                name=status.name,
                remaining_turns=status.remaining_turns if has_duration else previous.remaining_turns,
            )
        merged[key] = status
    return list(merged.values())


def _merge_bars(existing: list[CustomBar], proposed: list[Any]) -> list[CustomBar]:
    merged = {name_key(bar.name): bar for bar in existing}
    for raw in proposed:
        if not isinstance(raw, Mapping):
            continue
        name = clean_text(raw.get("name"), 100)
        if not name:
            continue
        key = name_key(name)
        current_bar = merged.get(key)
        maximum = as_int(raw.get("max"))
        if maximum is None or maximum < 1:
            if current_bar is None:
                continue
            maximum = current_bar.max
        current = as_int(raw.get("current"))
        if current is None:
            if current_bar is None:
                continue
            current = current_bar.current
        color = clean_text(raw.get("color", raw.get("colorHint")), 32)
        if color is None:
            color = current_bar.color_hint if current_bar is not None else ""
        merged[key] = CustomBar(
            name=current_bar.name if current_bar is not None else name,
            current=clamp(current, 0, maximum),
            max=maximum,
            color_hint=color,
        )
    return list(merged.values())


def merge_combatant(combatant: Combatant, proposed: Mapping[str, Any]) -> None:
    """Apply the oracle-writable fields of ``proposed`` to ``combatant``."""
    max_hp = as_int(proposed.get("maxHp"))
    if max_hp is not None and max_hp >= 1:
        combatant.max_hp = max_hp
    hp = as_int(proposed.get("hp"))
    if hp is not None:
        combatant.hp = hp
    combatant.hp = clamp(combatant.hp, 0, combatant.max_hp)

    statuses = proposed.get("statuses")
    if isinstance(statuses, list):
        combatant.statuses = _merge_statuses(combatant.statuses, statuses)
    bars = proposed.get("customBars")
    if isinstance(bars, list):
        combatant.custom_bars = _merge_bars(combatant.custom_bars, bars)


def _queue_candidates(session: EncounterSession, side: Side, proposed: Any) -> list[PendingEntity]:
    if not isinstance(proposed, list):
        return []
    roster_keys = {member.key for member in session.roster(side)}
    pending = session.pending(side)
    queued_keys = {entity.combatant.key for entity in pending}
    candidates: list[PendingEntity] = []
    for raw in proposed:
        if not isinstance(raw, Mapping):
            continue
        name = clean_text(raw.get("name"), 100)
        if not name or name_key(name) in roster_keys or name_key(name) in queued_keys:
            continue
        combatant = coerce_combatant(raw, side)
        if combatant is None:
            continue
        if side is Side.OPPOSITION and combatant.hp == 0:
            continue
        entity = PendingEntity(id=_new_pending_id(), side=side, combatant=combatant)
        pending.append(entity)
        queued_keys.add(combatant.key)
        candidates.append(entity)
    return candidates


def _merge_side(session: EncounterSession, side: Side, proposed: Any) -> None:
    if not isinstance(proposed, list):
        return
    by_key = {member.key: member for member in session.roster(side)}
    for raw in proposed:
        if not isinstance(raw, Mapping) or not isinstance(raw.get("name"), str):
            continue
        member = by_key.get(name_key(raw["name"]))
        if member is not None:
            merge_combatant(member, raw)


def _prune(session: EncounterSession) -> list[str]:
    for member in (*session.party, *session.opposition):
        member.downed_turns = member.downed_turns + 1 if member.hp == 0 else 0
    pruned = [
        member.name
        for member in session.opposition
        if member.downed_turns >= PRUNE_AFTER_DOWNED_TURNS and not member.is_protected
    ]
    if pruned:
        session.opposition = [member for member in session.opposition if member.name not in pruned]
    return pruned


def _action_lines(data: Mapping[str, Any]) -> list[str]:
    lines: list[str] = []
    for key, actor_key in (("partyActions", "memberName"), ("enemyActions", "enemyName")):
        actions = data.get(key)
        if not isinstance(actions, list):
            continue
        for item in actions:
            if not isinstance(item, Mapping):
                continue
            actor = clean_text(item.get(actor_key, item.get("name")), 100)
            action = clean_text(item.get("action"))
            if actor and action:
                lines.append(f"{actor}: {action}")
    return lines


def _set_environment(session: EncounterSession, block: Mapping[str, Any]) -> None:
    environment = clean_text(block.get("environment"), MAX_TEXT_LENGTH)
    if environment:
        session.environment = environment


def _reconcile_action(session: EncounterSession, data: Mapping[str, Any], result: ReconcileResult) -> None:
    block = _stats_block(data)
    for member in (*session.party, *session.opposition):
        decay_statuses(member)

    result.new_party_candidates = _queue_candidates(session, Side.PARTY, block.get("party"))
    result.new_opposition_candidates = _queue_candidates(session, Side.OPPOSITION, _opposition_list(block))
    _merge_side(session, Side.PARTY, block.get("party"))
    _merge_side(session, Side.OPPOSITION, _opposition_list(block))
    _set_environment(session, block)
    result.pruned = _prune(session)

    result.narrative = data["narrative"].strip()
    result.action_lines = _action_lines(data)
    result.combat_end = data.get("combatEnd") is True
    outcome = data.get("result")
    result.outcome = outcome.strip().lower() if isinstance(outcome, str) and outcome.strip() else None


def _coerce_roster(raw: list[Any], side: Side) -> list[Combatant]:
    roster: list[Combatant] = []
    seen: set[str] = set()
    for item in raw:
        combatant = coerce_combatant(item, side)
        if combatant is None or combatant.key in seen:
            continue
        seen.add(combatant.key)
        if side is Side.PARTY and isinstance(item, Mapping):
            combatant.is_protected = item.get("isPlayer") is True or item.get("isProtected") is True
        roster.append(combatant)
    return roster


def _mark_avatar(party: list[Combatant], avatar_name: str | None) -> None:
    avatar_key = name_key(avatar_name) if avatar_name else None
    if avatar_key and any(member.key == avatar_key for member in party):
        for member in party:
            member.is_protected = member.key == avatar_key
        return
    flagged = next((member for member in party if member.is_protected), None)
    for member in party:
        member.is_protected = member is flagged


def _reconcile_init(
    session: EncounterSession,
    data: Mapping[str, Any],
    avatar_name: str | None,
) -> str | None:
    block = _stats_block(data)
    party = _coerce_roster(block["party"], Side.PARTY)
    if not party:
        return "initialization reply has no usable party member"
    _mark_avatar(party, avatar_name)
    session.party = party
    session.opposition = _coerce_roster(_opposition_list(block), Side.OPPOSITION)
    session.pending_party = []
    session.pending_opposition = []
    _set_environment(session, block)
    return None


def reconcile(
    local: EncounterSession,
    proposed: str | Mapping[str, Any],
    turn: TurnType = TurnType.ACTION,
    avatar_name: str | None = None,
) -> ReconcileResult:
    """Merge an oracle reply into a copy of ``local``.

    ``local`` is never mutated. When the reply is rejected the returned
    result carries ``local`` itself and ``accepted`` is false.
    """
    reply = parse_reply(proposed, turn)
    if not reply.ok:
        logger.warning("Oracle reply rejected for %s turn: %s", turn.value, reply.error)
        return ReconcileResult(session=local, reply=reply)

    session = clone_session(local)
    result = ReconcileResult(session=session, reply=reply)
    if turn is TurnType.INIT:
        error = _reconcile_init(session, reply.data, avatar_name)
        if error is not None:
            logger.warning("Oracle reply rejected for init turn: %s", error)
            return ReconcileResult(
                session=local,
                reply=ParsedReply(kind=ReplyKind.SCHEMA_FAILURE, data=reply.data, error=error),
            )
    elif turn is TurnType.ACTION:
        _reconcile_action(session, reply.data, result)
    session.revision += 1
    return result
