"""Default prompt assembly for init, action and summary turns.

Templates carry profile placeholders (``{ENCOUNTER_TYPE}`` and friends) plus
``{userName}``. The engine hands over structured context only; all wording
lives here so hosts can swap the assembler without touching the engine.
"""

from __future__ import annotations

from typing import Protocol

from rpgencounter.backend.log import LogKind
from rpgencounter.backend.models import Combatant, EncounterSession, NarrativeStyle
from rpgencounter.backend.profiles import SafeProfile
from rpgencounter.backend.reconcile import TurnType

INIT_SYSTEM_TEMPLATE = (
    "You are the referee of a turn-based {ENCOUNTER_TYPE} encounter involving {userName}. "
    "The goal is to {ENCOUNTER_GOAL} and the stakes are {ENCOUNTER_STAKES}. "
    "HP represents {RESOURCE_INTERPRETATION}; attacks represent {ACTION_INTERPRETATION}; "
    "statuses represent {STATUS_INTERPRETATION}."
)

INIT_INSTRUCTIONS_TEMPLATE = (
    "Set up the encounter. Reply with a single JSON object and nothing else, shaped as\n"
    '{"environment": "short location description",\n'
    ' "party": [{"name": "", "hp": 0, "maxHp": 0, "isPlayer": false,\n'
    '            "attacks": [{"name": "", "type": "single-target|AoE|both"}],\n'
    '            "items": [], "statuses": [], "customBars": []}],\n'
    ' "opposition": [{"name": "", "hp": 0, "maxHp": 0, "sprite": "", "description": "",\n'
    '                 "attacks": [], "statuses": [], "customBars": []}]}\n'
    "{userName} must be in the party with isPlayer set to true. "
    "Statuses look like {emoji, name, duration}; custom bars look like {name, current, max, color}."
)

ACTION_SYSTEM_TEMPLATE = (
    "You are the referee of an ongoing {ENCOUNTER_TYPE} encounter. "
    "The goal is to {ENCOUNTER_GOAL}. Resolve {userName}'s action fairly, then let the other "
    "combatants act. HP represents {RESOURCE_INTERPRETATION}; actions are {ACTION_INTERPRETATION}; "
    "statuses are {STATUS_INTERPRETATION}."
)

ACTION_INSTRUCTIONS_TEMPLATE = (
    "Reply with a single JSON object and nothing else, shaped as\n"
    '{"narrative": "what happens",\n'
    ' "combatStats": {"environment": "", "party": [{"name": "", "hp": 0, "maxHp": 0, "statuses": [], "customBars": []}],\n'
    '                 "opposition": [{"name": "", "hp": 0, "maxHp": 0, "statuses": [], "customBars": []}]},\n'
    ' "partyActions": [{"memberName": "", "action": ""}],\n'
    ' "enemyActions": [{"enemyName": "", "action": ""}],\n'
    ' "combatEnd": false, "result": "victory|defeat|fled|null"}\n'
    "Keep every combatant's name exactly as listed. Do not play for {userName}."
)

SUMMARY_SYSTEM_TEMPLATE = (
    "You are a narrator closing a {ENCOUNTER_TYPE} encounter. Write {SUMMARY_FRAMING} "
    "for the story so far."
)

SUMMARY_INSTRUCTIONS_TEMPLATE = (
    "Write the recap as plain prose, no JSON. Start with the tag [FIGHT CONCLUDED]. "
    "Cover how the encounter went for {userName} and its consequences."
)

DEFAULT_USER_NAME = "User"


class PromptAssembler(Protocol):
    def build(
        self,
        session: EncounterSession,
        profile: SafeProfile,
        turn: TurnType,
        *,
        action: str | None = None,
        result: str | None = None,
    ) -> list[dict[str, str]]:
        ...


def _describe(member: Combatant) -> list[str]:
    label = member.name
    if member.is_protected:
        label += " (Player)"
    if member.sprite:
        label += f" ({member.sprite})"
    lines = [f"- {label}: {member.hp}/{member.max_hp} HP"]
    if member.description:
        lines.append(f"  {member.description}")
    for bar in member.custom_bars:
        lines.append(f"  {bar.name}: {bar.current}/{bar.max}")
    if member.attacks:
        lines.append("  Attacks: " + ", ".join(f"{attack.name} ({attack.targeting.value})" for attack in member.attacks))
    if member.items:
        lines.append("  Items: " + ", ".join(member.items))
    if member.statuses:
        statuses = ", ".join(
            f"{status.marker} {status.name} ({status.remaining_turns})".strip() for status in member.statuses
        )
        lines.append(f"  Status Effects: {statuses}")
    return lines


def _style_line(style: NarrativeStyle) -> str:
    return (
        f"Write with intent in {style.tense} tense {style.person}-person {style.narration} "
        f"from {style.pov}'s point of view."
    )


class DefaultPromptAssembler:
    def build(
        self,
        session: EncounterSession,
        profile: SafeProfile,
        turn: TurnType,
        *,
        action: str | None = None,
        result: str | None = None,
    ) -> list[dict[str, str]]:
        user_name = session.settings.avatar_name or DEFAULT_USER_NAME
        if turn is TurnType.INIT:
            system, instructions = INIT_SYSTEM_TEMPLATE, INIT_INSTRUCTIONS_TEMPLATE
            body = self._init_context(session)
            style = session.settings.narrative
        elif turn is TurnType.ACTION:
            system, instructions = ACTION_SYSTEM_TEMPLATE, ACTION_INSTRUCTIONS_TEMPLATE
            body = self._action_context(session, action or "", user_name)
            style = session.settings.narrative
        else:
            system, instructions = SUMMARY_SYSTEM_TEMPLATE, SUMMARY_INSTRUCTIONS_TEMPLATE
            body = self._summary_context(session, result or "interrupted")
            style = session.settings.summary_narrative

        user_parts = [body, self._render(profile, instructions, user_name), _style_line(style)]
        if session.settings.special_instructions.strip():
            user_parts.append(f"ADDITIONAL INSTRUCTIONS: {session.settings.special_instructions.strip()}")
        return [
            {"role": "system", "content": self._render(profile, system, user_name)},
            {"role": "user", "content": "\n\n".join(part for part in user_parts if part)},
        ]

    def _render(self, profile: SafeProfile, template: str, user_name: str) -> str:
        return profile.substitute(template).replace("{userName}", user_name)

    def _scene(self, session: EncounterSession) -> str:
        scene = session.settings.scene_context.strip() or "No scene information available."
        return f"<setting>\n{scene}\n</setting>"

    def _history(self, session: EncounterSession) -> str:
        depth = session.settings.history_depth
        narrative = [entry for entry in session.log if entry.kind is LogKind.NARRATIVE]
        recent = narrative[-depth:] if depth > 0 else []
        if not recent:
            return ""
        return "Previous Actions:\n" + "\n".join(f"- {entry.text}" for entry in recent)

    def _init_context(self, session: EncounterSession) -> str:
        return "\n\n".join([self._scene(session), "The encounter starts now."])

    def _action_context(self, session: EncounterSession, action: str, user_name: str) -> str:
        lines = ["Current Combat State:", f"Environment: {session.environment or 'Unknown location'}", "", "Party Members:"]
        for member in session.party:
            lines.extend(_describe(member))
        lines.extend(["", "Opposition:"])
        for member in session.opposition:
            lines.extend(_describe(member))
        parts = [self._scene(session), self._history(session), "\n".join(lines), f"{user_name}'s Action: {action}"]
        return "\n\n".join(part for part in parts if part)

    def _summary_context(self, session: EncounterSession, result: str) -> str:
        rounds = [
            f"Round {index}:\n{entry.text}"
            for index, entry in enumerate(
                (entry for entry in session.log if entry.kind is LogKind.NARRATIVE), start=1
            )
        ]
        parts = [self._scene(session), f"The encounter has ended with result: {result}"]
        if rounds:
            parts.append("Full Encounter Log:\n" + "\n\n".join(rounds))
        return "\n\n".join(parts)
