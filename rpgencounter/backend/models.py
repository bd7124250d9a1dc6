"""Typed entity model for encounter sessions.

The ``coerce_*`` helpers turn loosely typed JSON (oracle replies, user
patches, persisted snapshots) into model objects. They never coerce text into
numbers: a value that is not already numeric is treated as absent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import math
from typing import Any, Mapping

from rpgencounter.backend.errors import ValidationError
from rpgencounter.backend.log import LogEntry

MAX_NAME_LENGTH = 100
MAX_TEXT_LENGTH = 500
DEFAULT_MAX_HP = 100
DEFAULT_SPRITE = "\U0001f479"


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    AWAITING_RESOLUTION = "awaiting_resolution"
    CONCLUDING = "concluding"
    CONCLUDED = "concluded"


BUSY_STATUSES = frozenset(
    {SessionStatus.INITIALIZING, SessionStatus.AWAITING_RESOLUTION, SessionStatus.CONCLUDING}
)


class Side(str, Enum):
    PARTY = "party"
    OPPOSITION = "opposition"


class Targeting(str, Enum):
    SINGLE_TARGET = "single-target"
    AREA_OF_EFFECT = "AoE"
    EITHER = "both"

    @classmethod
    def parse(cls, value: Any) -> "Targeting":
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"aoe", "area", "area-of-effect", "areaofeffect"}:
                return cls.AREA_OF_EFFECT
            if lowered in {"both", "either"}:
                return cls.EITHER
        return cls.SINGLE_TARGET


@dataclass(frozen=True)
class Attack:
    name: str
    targeting: Targeting = Targeting.SINGLE_TARGET

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.targeting.value}


@dataclass(frozen=True)
class Status:
    marker: str
    name: str
    remaining_turns: int

    def to_dict(self) -> dict[str, Any]:
        return {"emoji": self.marker, "name": self.name, "remainingTurns": self.remaining_turns}


@dataclass(frozen=True)
class CustomBar:
    name: str
    current: int
    max: int
    color_hint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "current": self.current, "max": self.max, "color": self.color_hint}


@dataclass
class Combatant:
    name: str
    hp: int
    max_hp: int
    attacks: list[Attack] = field(default_factory=list)
    statuses: list[Status] = field(default_factory=list)
    custom_bars: list[CustomBar] = field(default_factory=list)
    is_protected: bool = False
    items: list[str] = field(default_factory=list)
    sprite: str | None = None
    description: str | None = None
    # Consecutive resolved turns spent at hp 0; engine-owned.
    downed_turns: int = 0

    @property
    def key(self) -> str:
        return name_key(self.name)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "hp": self.hp,
            "maxHp": self.max_hp,
            "attacks": [attack.to_dict() for attack in self.attacks],
            "statuses": [status.to_dict() for status in self.statuses],
            "customBars": [bar.to_dict() for bar in self.custom_bars],
            "isProtected": self.is_protected,
            "downedTurns": self.downed_turns,
        }
        if self.sprite is not None or self.description is not None:
            payload["sprite"] = self.sprite
            payload["description"] = self.description
        else:
            payload["items"] = list(self.items)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], side: "Side") -> "Combatant":
        combatant = coerce_combatant(payload, side)
        if combatant is None:
            raise ValidationError(f"invalid combatant record: {payload!r}")
        combatant.is_protected = payload.get("isProtected") is True
        downed = as_int(payload.get("downedTurns"))
        combatant.downed_turns = max(0, downed) if downed is not None else 0
        return combatant


@dataclass(frozen=True)
class PendingEntity:
    id: str
    side: Side
    combatant: Combatant

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "side": self.side.value, "combatant": self.combatant.to_dict()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PendingEntity":
        side = Side(payload["side"])
        return cls(id=str(payload["id"]), side=side, combatant=Combatant.from_dict(payload["combatant"], side))


@dataclass(frozen=True)
class NarrativeStyle:
    tense: str = "present"
    person: str = "third"
    narration: str = "omniscient"
    pov: str = "narrator"

    def to_dict(self) -> dict[str, str]:
        return {"tense": self.tense, "person": self.person, "narration": self.narration, "pov": self.pov}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None, **defaults: str) -> "NarrativeStyle":
        base = cls(**defaults)
        if not isinstance(payload, Mapping):
            return base
        values = base.to_dict()
        for key in values:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                values[key] = value.strip()[:40]
        return cls(**values)


SUMMARY_STYLE_DEFAULTS = {"tense": "past"}


@dataclass
class EncounterSettings:
    """Choices made while configuring an encounter."""

    avatar_name: str | None = None
    scene_context: str = ""
    special_instructions: str = ""
    history_depth: int = 8
    narrative: NarrativeStyle = field(default_factory=NarrativeStyle)
    summary_narrative: NarrativeStyle = field(default_factory=lambda: NarrativeStyle(**SUMMARY_STYLE_DEFAULTS))

    def to_dict(self) -> dict[str, Any]:
        return {
            "avatarName": self.avatar_name,
            "sceneContext": self.scene_context,
            "specialInstructions": self.special_instructions,
            "historyDepth": self.history_depth,
            "narrative": self.narrative.to_dict(),
            "summaryNarrative": self.summary_narrative.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "EncounterSettings":
        if not isinstance(payload, Mapping):
            return cls()
        avatar = payload.get("avatarName")
        depth = as_int(payload.get("historyDepth"))
        return cls(
            avatar_name=avatar if isinstance(avatar, str) and avatar.strip() else None,
            scene_context=str(payload.get("sceneContext") or ""),
            special_instructions=str(payload.get("specialInstructions") or ""),
            history_depth=depth if depth is not None and depth >= 0 else 8,
            narrative=NarrativeStyle.from_dict(payload.get("narrative")),
            summary_narrative=NarrativeStyle.from_dict(payload.get("summaryNarrative"), **SUMMARY_STYLE_DEFAULTS),
        )


@dataclass
class EncounterSession:
    status: SessionStatus = SessionStatus.IDLE
    party: list[Combatant] = field(default_factory=list)
    opposition: list[Combatant] = field(default_factory=list)
    action_history: list[dict[str, str]] = field(default_factory=list)
    log: list[LogEntry] = field(default_factory=list)
    pending_party: list[PendingEntity] = field(default_factory=list)
    pending_opposition: list[PendingEntity] = field(default_factory=list)
    active_profile_id: str | None = None
    revision: int = 0
    environment: str = ""
    settings: EncounterSettings = field(default_factory=EncounterSettings)
    result: str | None = None
    summary: str | None = None

    def roster(self, side: Side) -> list[Combatant]:
        return self.party if side is Side.PARTY else self.opposition

    def pending(self, side: Side) -> list[PendingEntity]:
        return self.pending_party if side is Side.PARTY else self.pending_opposition

    def find(self, name: str) -> tuple[Side, Combatant] | None:
        key = name_key(name)
        for side in Side:
            for combatant in self.roster(side):
                if combatant.key == key:
                    return side, combatant
        return None

    def protected_combatant(self) -> Combatant | None:
        return next((member for member in self.party if member.is_protected), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "revision": self.revision,
            "activeProfileId": self.active_profile_id,
            "environment": self.environment,
            "combatants": {
                "party": [member.to_dict() for member in self.party],
                "opposition": [member.to_dict() for member in self.opposition],
            },
            "pendingParty": [pending.to_dict() for pending in self.pending_party],
            "pendingOpposition": [pending.to_dict() for pending in self.pending_opposition],
            "actionHistory": [dict(message) for message in self.action_history],
            "log": [entry.to_dict() for entry in self.log],
            "settings": self.settings.to_dict(),
            "result": self.result,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EncounterSession":
        combatants = payload.get("combatants") or {}
        return cls(
            status=SessionStatus(payload.get("status", SessionStatus.IDLE.value)),
            party=[Combatant.from_dict(item, Side.PARTY) for item in combatants.get("party", [])],
            opposition=[Combatant.from_dict(item, Side.OPPOSITION) for item in combatants.get("opposition", [])],
            action_history=[
                {"role": str(message["role"]), "content": str(message["content"])}
                for message in payload.get("actionHistory", [])
            ],
            log=[LogEntry.from_dict(entry) for entry in payload.get("log", [])],
            pending_party=[PendingEntity.from_dict(item) for item in payload.get("pendingParty", [])],
            pending_opposition=[PendingEntity.from_dict(item) for item in payload.get("pendingOpposition", [])],
            active_profile_id=payload.get("activeProfileId"),
            revision=int(payload.get("revision", 0)),
            environment=str(payload.get("environment") or ""),
            settings=EncounterSettings.from_dict(payload.get("settings")),
            result=payload.get("result"),
            summary=payload.get("summary"),
        )


def name_key(name: str) -> str:
    return name.strip().casefold()


def as_int(value: Any) -> int | None:
    """Return ``value`` as an int when it already is a finite number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(round(value))
    return None


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def clean_text(value: Any, limit: int = MAX_TEXT_LENGTH) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip()[:limit]


def coerce_attack(raw: Any) -> Attack | None:
    if isinstance(raw, str):
        name = clean_text(raw, MAX_NAME_LENGTH)
        return Attack(name=name) if name else None
    if not isinstance(raw, Mapping):
        return None
    name = clean_text(raw.get("name"), MAX_NAME_LENGTH)
    if not name:
        return None
    return Attack(name=name, targeting=Targeting.parse(raw.get("type", raw.get("targeting"))))


def coerce_status(raw: Any, default_turns: int = 1) -> Status | None:
    if not isinstance(raw, Mapping):
        return None
    name = clean_text(raw.get("name"), MAX_NAME_LENGTH) or ""
    marker = clean_text(raw.get("emoji", raw.get("marker")), 16) or ""
    if not name and not marker:
        return None
    turns = None
    for key in ("remainingTurns", "duration", "turns"):
        turns = as_int(raw.get(key))
        if turns is not None:
            break
    if turns is None:
        turns = default_turns
    return Status(marker=marker, name=name or marker, remaining_turns=max(0, turns))


def coerce_bar(raw: Any) -> CustomBar | None:
    if not isinstance(raw, Mapping):
        return None
    name = clean_text(raw.get("name"), MAX_NAME_LENGTH)
    maximum = as_int(raw.get("max"))
    current = as_int(raw.get("current"))
    if not name or maximum is None or maximum < 1 or current is None:
        return None
    color = clean_text(raw.get("color", raw.get("colorHint")), 32) or ""
    return CustomBar(name=name, current=clamp(current, 0, maximum), max=maximum, color_hint=color)


def coerce_items(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    items: list[str] = []
    for item in raw:
        if isinstance(item, Mapping):
            item = item.get("name")
        text = clean_text(item, MAX_NAME_LENGTH)
        if text:
            items.append(text)
    return items


def _collect(raw: Any, coerce: Any) -> list[Any]:
    if not isinstance(raw, list):
        return []
    return [value for value in (coerce(item) for item in raw) if value is not None]


def coerce_combatant(raw: Any, side: Side) -> Combatant | None:
    """Build a fresh combatant from an untrusted mapping, or ``None``."""
    if not isinstance(raw, Mapping):
        return None
    name = clean_text(raw.get("name"), MAX_NAME_LENGTH)
    if not name:
        return None

    max_hp = as_int(raw.get("maxHp"))
    hp = as_int(raw.get("hp"))
    if max_hp is None or max_hp < 1:
        max_hp = hp if hp is not None and hp >= 1 else DEFAULT_MAX_HP
    if hp is None:
        hp = max_hp

    combatant = Combatant(
        name=name,
        hp=clamp(hp, 0, max_hp),
        max_hp=max_hp,
        attacks=_collect(raw.get("attacks"), coerce_attack),
        statuses=_collect(raw.get("statuses"), coerce_status),
        custom_bars=_collect(raw.get("customBars"), coerce_bar),
    )
    if side is Side.PARTY:
        combatant.items = coerce_items(raw.get("items"))
    else:
        combatant.sprite = clean_text(raw.get("sprite"), 16) or DEFAULT_SPRITE
        combatant.description = clean_text(raw.get("description")) or ""
    return combatant


def new_combatant(side: Side, data: Mapping[str, Any] | None = None) -> Combatant:
    """Manual creation with the defaults a freshly added entity starts from."""
    payload: dict[str, Any] = {
        "name": "New Ally" if side is Side.PARTY else "New Enemy",
        "hp": DEFAULT_MAX_HP,
        "maxHp": DEFAULT_MAX_HP,
        "attacks": [{"name": "Attack", "type": Targeting.SINGLE_TARGET.value}],
    }
    payload.update(data or {})
    combatant = coerce_combatant(payload, side)
    if combatant is None:
        raise ValidationError("a combatant needs a non-empty name")
    return combatant
