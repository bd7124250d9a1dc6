"""Encounter profiles: semantic reinterpretation of the shared mechanics.

A profile is user-authored free text that ends up inside prompts sent to the
oracle, which makes it the one user-controlled trust boundary of the engine.
Every value is sanitized before use:

* structural characters (``{ } [ ] " :``) are removed,
* instruction-override phrases from ``DENYLIST`` are removed,
* whitespace (newlines included) collapses to single spaces,
* values are truncated to ``MAX_FIELD_LENGTH`` characters.

The three passes repeat until the value stops changing, because removing one
fragment can splice its neighbours into a new forbidden phrase.

``resolve`` is best-effort and never blocks play: a raw profile that is
missing a field or sanitizes down to nothing is replaced by the default
combat profile. ``ProfileLibrary.save`` is the strict path used when a user
edits profiles and raises ``ValidationError`` instead.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
import re
from typing import Any, Iterable, Mapping
import uuid

from rpgencounter.backend.errors import EntityNotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 200

# wire key -> (attribute, prompt placeholder)
PROFILE_FIELDS: dict[str, tuple[str, str]] = {
    "genre": ("genre", "ENCOUNTER_TYPE"),
    "goal": ("goal", "ENCOUNTER_GOAL"),
    "stakes": ("stakes", "ENCOUNTER_STAKES"),
    "resourceMeaning": ("resource_meaning", "RESOURCE_INTERPRETATION"),
    "actionMeaning": ("action_meaning", "ACTION_INTERPRETATION"),
    "statusMeaning": ("status_meaning", "STATUS_INTERPRETATION"),
    "summaryFraming": ("summary_framing", "SUMMARY_FRAMING"),
}

DENYLIST = (
    "ignore previous",
    "return only",
    "output only",
    "disregard",
    "instead of",
    "however",
    "but actually",
    "forget",
    "override",
    "system:",
    "assistant:",
    "user:",
    "<|",
    "|>",
    "json",
)

_STRUCTURAL = re.compile(r'[{}\[\]":]')
_DENYLIST = re.compile("|".join(re.escape(phrase) for phrase in DENYLIST), re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_PLACEHOLDER = re.compile(r"\{([A-Z_]+)\}")


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    genre: str
    goal: str
    stakes: str
    resource_meaning: str
    action_meaning: str
    status_meaning: str
    summary_framing: str
    description: str = ""
    is_preset: bool = False

    def placeholder_values(self) -> dict[str, str]:
        return {placeholder: getattr(self, attribute) for attribute, placeholder in PROFILE_FIELDS.values()}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "name": self.name}
        for key, (attribute, _) in PROFILE_FIELDS.items():
            payload[key] = getattr(self, attribute)
        payload["description"] = self.description
        payload["isPreset"] = self.is_preset
        return payload


@dataclass(frozen=True)
class SafeProfile:
    """A validated profile ready for prompt substitution."""

    profile: Profile
    fell_back: bool = False
    issues: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.profile.id

    def substitute(self, template: str) -> str:
        """Replace known ``{PLACEHOLDER}`` names; unknown ones stay untouched."""
        values = self.profile.placeholder_values()
        return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


DEFAULT_COMBAT_PROFILE = Profile(
    id="default-combat",
    name="Combat",
    genre="Combat",
    goal="defeat opposing forces",
    stakes="medium",
    resource_meaning="physical health and endurance",
    action_meaning="attacks, skills, and combat maneuvers",
    status_meaning="physical or magical conditions",
    summary_framing="a complete battle recap",
    description="Traditional combat encounter with HP representing physical health",
    is_preset=True,
)

PRESET_PROFILES: tuple[Profile, ...] = (
    DEFAULT_COMBAT_PROFILE,
    Profile(
        id="preset-social",
        name="Social Confrontation",
        genre="Social",
        goal="persuade or manipulate the opposition",
        stakes="high",
        resource_meaning="composure, leverage, and social standing",
        action_meaning="arguments, appeals, and social maneuvers",
        status_meaning="emotional states and social conditions",
        summary_framing="a diplomatic exchange recap",
        description="HP is composure and attacks are rhetorical arguments",
        is_preset=True,
    ),
    Profile(
        id="preset-stealth",
        name="Stealth Infiltration",
        genre="Stealth",
        goal="reach the objective undetected",
        stakes="high",
        resource_meaning="alertness level of guards and exposure margin",
        action_meaning="distraction attempts, stealth maneuvers, and evasion tactics",
        status_meaning="detection states and environmental conditions",
        summary_framing="an infiltration attempt recap",
        description="HP is alertness and attacks are distractions",
        is_preset=True,
    ),
    Profile(
        id="preset-investigation",
        name="Investigation",
        genre="Investigation",
        goal="solve the mystery before time runs out",
        stakes="medium",
        resource_meaning="remaining leads, time pressure, and certainty level",
        action_meaning="deduction attempts, evidence gathering, and interrogation",
        status_meaning="mental states and investigative progress",
        summary_framing="a detective work recap",
        description="HP is remaining leads and attacks are deductions",
        is_preset=True,
    ),
    Profile(
        id="preset-chase",
        name="Chase Sequence",
        genre="Chase",
        goal="escape pursuers or catch the target",
        stakes="high",
        resource_meaning="distance advantage and stamina remaining",
        action_meaning="sprint bursts, obstacles thrown, and evasive maneuvers",
        status_meaning="physical conditions and tactical advantages",
        summary_framing="a pursuit sequence recap",
        description="HP is distance and stamina and attacks are evasive actions",
        is_preset=True,
    ),
    Profile(
        id="preset-negotiation",
        name="Negotiation",
        genre="Negotiation",
        goal="reach a favorable agreement",
        stakes="medium",
        resource_meaning="bargaining power and credibility",
        action_meaning="offers, concessions, and leverage plays",
        status_meaning="negotiation positions and emotional states",
        summary_framing="a deal-making session recap",
        description="HP is bargaining power and attacks are offers",
        is_preset=True,
    ),
    Profile(
        id="preset-survival",
        name="Survival Ordeal",
        genre="Survival",
        goal="endure until rescue or escape",
        stakes="high",
        resource_meaning="supplies, morale, and physical condition",
        action_meaning="resource management, shelter building, and foraging",
        status_meaning="environmental hazards and survival conditions",
        summary_framing="a survival ordeal recap",
        description="HP is supplies and morale and attacks are survival actions",
        is_preset=True,
    ),
)

_PRESETS_BY_ID = {profile.id: profile for profile in PRESET_PROFILES}


def sanitize_value(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    previous = None
    text = value
    while text != previous:
        previous = text
        text = _STRUCTURAL.sub("", text)
        text = _DENYLIST.sub("", text)
        text = _WHITESPACE.sub(" ", text)
    return text[:MAX_FIELD_LENGTH].strip()


def _raw_field(raw: Mapping[str, Any], key: str) -> Any:
    # Older exports use the placeholder names as keys.
    if key in raw:
        return raw[key]
    return raw.get(PROFILE_FIELDS[key][1])


def _sanitize_fields(raw: Any) -> tuple[dict[str, str], list[str]]:
    if not isinstance(raw, Mapping):
        return {}, ["profile must be a mapping"]
    values: dict[str, str] = {}
    issues: list[str] = []
    for key, (attribute, _) in PROFILE_FIELDS.items():
        value = _raw_field(raw, key)
        if value is None:
            issues.append(f"missing required field: {key}")
            continue
        if not isinstance(value, str):
            issues.append(f"field {key} must be a string")
            continue
        cleaned = sanitize_value(value)
        if not cleaned:
            issues.append(f"field {key} is empty after sanitization")
            continue
        values[attribute] = cleaned
    if "stakes" in values:
        values["stakes"] = values["stakes"].lower()
    return values, issues


def _new_profile_id() -> str:
    return f"custom-{uuid.uuid4().hex[:12]}"


def _build_profile(raw: Mapping[str, Any], values: dict[str, str], profile_id: str) -> Profile:
    return Profile(
        id=profile_id,
        name=sanitize_value(raw.get("name")) or "Custom Profile",
        description=sanitize_value(raw.get("description")),
        is_preset=False,
        **values,
    )


def resolve(raw: Any) -> SafeProfile:
    """Sanitize a raw profile, falling back to the default combat profile."""
    if isinstance(raw, Profile):
        raw = raw.to_dict()
    values, issues = _sanitize_fields(raw)
    if issues:
        logger.warning("Encounter profile rejected, using default combat profile: %s", "; ".join(issues))
        return SafeProfile(profile=DEFAULT_COMBAT_PROFILE, fell_back=True, issues=tuple(issues))
    raw_id = raw.get("id")
    profile_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else _new_profile_id()
    preset = _PRESETS_BY_ID.get(profile_id)
    if preset is not None:
        if all(getattr(preset, attribute) == value for attribute, value in values.items()):
            return SafeProfile(profile=preset)
        # edited preset fields become a custom profile; presets stay read-only
        profile_id = _new_profile_id()
    return SafeProfile(profile=_build_profile(raw, values, profile_id))


class ProfileLibrary:
    """Preset profiles plus user-saved custom profiles."""

    def __init__(self, custom: Iterable[Mapping[str, Any]] = ()) -> None:
        self._custom: dict[str, Profile] = {}
        for raw in custom:
            try:
                self.save(raw)
            except ValidationError as exc:
                logger.warning("Skipping stored profile %r: %s", raw.get("id"), exc)

    def get(self, profile_id: str) -> Profile | None:
        return _PRESETS_BY_ID.get(profile_id) or self._custom.get(profile_id)

    def all(self) -> list[Profile]:
        return [*PRESET_PROFILES, *self._custom.values()]

    def save(self, raw: Mapping[str, Any] | Profile) -> Profile:
        if isinstance(raw, Profile):
            raw = raw.to_dict()
        values, issues = _sanitize_fields(raw)
        if issues:
            raise ValidationError("; ".join(issues))
        raw_id = raw.get("id")
        profile_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else _new_profile_id()
        if profile_id in _PRESETS_BY_ID:
            profile_id = _new_profile_id()
        profile = _build_profile(raw, values, profile_id)
        self._custom[profile.id] = profile
        return profile

    def delete(self, profile_id: str) -> bool:
        if profile_id in _PRESETS_BY_ID:
            return False
        return self._custom.pop(profile_id, None) is not None

    def duplicate(self, profile_id: str) -> Profile:
        original = self.get(profile_id)
        if original is None:
            raise EntityNotFoundError(f"no profile with id {profile_id!r}")
        copy = replace(original, id=_new_profile_id(), name=f"{original.name} (Copy)", is_preset=False)
        self._custom[copy.id] = copy
        return copy

    def export_profile(self, profile_id: str) -> str:
        profile = self.get(profile_id)
        if profile is None:
            raise EntityNotFoundError(f"no profile with id {profile_id!r}")
        payload = profile.to_dict()
        payload.pop("id")
        payload.pop("isPreset")
        return json.dumps(payload, indent=2)

    def import_profile(self, text: str) -> Profile:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"profile import is not valid JSON: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise ValidationError("profile import must be a JSON object")
        data.pop("id", None)
        data.setdefault("name", "Imported Profile")
        return self.save(data)

    def resolve_id(self, profile_id: str | None) -> SafeProfile:
        if not profile_id:
            return SafeProfile(profile=DEFAULT_COMBAT_PROFILE)
        profile = self.get(profile_id)
        if profile is None:
            logger.warning("Profile %r not found, using default combat profile", profile_id)
            return SafeProfile(
                profile=DEFAULT_COMBAT_PROFILE,
                fell_back=True,
                issues=(f"unknown profile id: {profile_id}",),
            )
        if profile.is_preset:
            return SafeProfile(profile=profile)
        return resolve(profile)
