import json

import pytest

from rpgencounter.backend.errors import OracleParseError
from rpgencounter.backend.models import SessionStatus, Side, Status, new_combatant
from rpgencounter.backend.reconcile import (
    ReplyKind,
    TurnType,
    extract_json,
    parse_reply,
    reconcile,
)
from rpgencounter.backend.state import build_initial_session


def _session():
    session = build_initial_session()
    session.status = SessionStatus.ACTIVE
    alice = new_combatant(Side.PARTY, {"name": "Alice", "items": ["Rope"]})
    alice.is_protected = True
    session.party.append(alice)
    session.opposition.append(
        new_combatant(
            Side.OPPOSITION,
            {"name": "Goblin", "hp": 50, "maxHp": 50, "sprite": "G", "description": "Small and angry"},
        )
    )
    return session


def _action_reply(party=None, opposition=None, **extra) -> str:
    reply = {
        "narrative": "Blades clash.",
        "combatStats": {"party": party or [], "opposition": opposition or []},
    }
    reply.update(extra)
    return json.dumps(reply)


def test_init_reply_builds_exactly_the_listed_combatants() -> None:
    session = build_initial_session()
    session.status = SessionStatus.INITIALIZING
    raw = (
        '{"party":[{"name":"Alice","hp":100,"maxHp":100}],'
        '"opposition":[{"name":"Goblin","hp":50,"maxHp":50}]}'
    )

    result = reconcile(session, raw, TurnType.INIT)

    assert result.accepted is True
    assert [member.name for member in result.session.party] == ["Alice"]
    assert [member.name for member in result.session.opposition] == ["Goblin"]
    assert result.session.opposition[0].hp == 50
    assert result.session.revision == session.revision + 1


def test_init_reply_accepts_enemies_alias_and_nested_stats() -> None:
    raw = json.dumps(
        {
            "combatStats": {
                "environment": "A misty bridge",
                "party": [{"name": "Bob", "hp": 30, "maxHp": 30}, {"name": "Alice", "isPlayer": True}],
                "enemies": [{"name": "Troll"}, {"name": "troll"}],
            }
        }
    )

    result = reconcile(build_initial_session(), raw, TurnType.INIT)

    assert result.accepted is True
    assert result.session.environment == "A misty bridge"
    assert [member.name for member in result.session.opposition] == ["Troll"]
    assert [member.is_protected for member in result.session.party] == [False, True]


def test_init_reply_marks_configured_avatar_as_protected() -> None:
    raw = json.dumps(
        {"party": [{"name": "Bob", "isPlayer": True}, {"name": "Alice"}], "opposition": []}
    )

    result = reconcile(build_initial_session(), raw, TurnType.INIT, avatar_name="alice")

    assert [member.is_protected for member in result.session.party] == [False, True]


def test_init_reply_without_party_is_a_schema_failure() -> None:
    session = build_initial_session()

    missing = reconcile(session, '{"opposition": []}', TurnType.INIT)
    empty = reconcile(session, '{"party": [{"hp": 3}], "opposition": []}', TurnType.INIT)

    assert missing.reply.kind is ReplyKind.SCHEMA_FAILURE
    assert empty.reply.kind is ReplyKind.SCHEMA_FAILURE
    assert missing.session is session
    assert empty.session is session


def test_action_reply_matches_names_case_insensitively() -> None:
    session = _session()

    result = reconcile(session, _action_reply(party=[{"name": "ALICE", "hp": 85}]))

    assert [member.name for member in result.session.party] == ["Alice"]
    assert result.session.party[0].hp == 85
    assert result.new_party_candidates == []


def test_unknown_opposition_is_queued_not_added() -> None:
    session = _session()

    result = reconcile(session, _action_reply(opposition=[{"name": "Bandit", "hp": 40, "maxHp": 40}]))

    assert [member.name for member in result.session.opposition] == ["Goblin"]
    assert [pending.combatant.name for pending in result.session.pending_opposition] == ["Bandit"]
    assert result.new_opposition_candidates[0].id.startswith("pending-")


def test_known_pending_candidate_is_not_queued_twice() -> None:
    first = reconcile(_session(), _action_reply(opposition=[{"name": "Bandit"}]))

    second = reconcile(first.session, _action_reply(opposition=[{"name": "BANDIT"}]))

    assert len(second.session.pending_opposition) == 1
    assert second.new_opposition_candidates == []


def test_opposition_candidate_arriving_defeated_is_ignored() -> None:
    result = reconcile(_session(), _action_reply(opposition=[{"name": "Corpse", "hp": 0, "maxHp": 10}]))

    assert result.session.pending_opposition == []


def test_unparsable_reply_returns_input_session_untouched() -> None:
    session = _session()
    before = session.to_dict()

    result = reconcile(session, "The goblin swings wildly! (no json here)")

    assert result.accepted is False
    assert result.reply.kind is ReplyKind.PARSE_FAILURE
    assert result.session is session
    assert session.to_dict() == before


def test_action_reply_without_narrative_is_a_schema_failure() -> None:
    result = reconcile(_session(), '{"combatStats": {"party": []}}')

    assert result.reply.kind is ReplyKind.SCHEMA_FAILURE
    assert "narrative" in result.error


def test_accepted_reply_never_mutates_input_session() -> None:
    session = _session()
    before = session.to_dict()

    reconcile(session, _action_reply(party=[{"name": "Alice", "hp": 1}], opposition=[{"name": "Goblin", "hp": 2}]))

    assert session.to_dict() == before


def test_defeated_opposition_is_pruned_on_the_following_pass() -> None:
    session = _session()

    downed = reconcile(session, _action_reply(opposition=[{"name": "Goblin", "hp": 0}]))
    later = reconcile(downed.session, _action_reply())

    assert [member.name for member in downed.session.opposition] == ["Goblin"]
    assert downed.pruned == []
    assert later.session.opposition == []
    assert later.pruned == ["Goblin"]


def test_revived_opposition_resets_downed_counter() -> None:
    downed = reconcile(_session(), _action_reply(opposition=[{"name": "Goblin", "hp": 0}]))

    revived = reconcile(downed.session, _action_reply(opposition=[{"name": "Goblin", "hp": 5}]))
    again = reconcile(revived.session, _action_reply(opposition=[{"name": "Goblin", "hp": 0}]))

    assert [member.name for member in again.session.opposition] == ["Goblin"]


def test_protected_and_party_combatants_are_never_pruned() -> None:
    session = _session()
    session.opposition[0].is_protected = True
    reply = _action_reply(party=[{"name": "Alice", "hp": 0}], opposition=[{"name": "Goblin", "hp": 0}])

    first = reconcile(session, reply)
    second = reconcile(first.session, reply)
    third = reconcile(second.session, reply)

    assert [member.name for member in third.session.party] == ["Alice"]
    assert [member.name for member in third.session.opposition] == ["Goblin"]


@pytest.mark.parametrize(
    "proposed",
    [
        {"name": "Alice", "hp": -40},
        {"name": "Alice", "hp": 10_000},
        {"name": "Alice", "hp": "85", "maxHp": "ninety"},
        {"name": "Alice", "hp": None, "maxHp": -5},
        {"name": "Alice", "hp": 50, "maxHp": 0},
        {"name": "Alice", "hp": float("inf")},
        {"name": "Alice", "hp": True},
        {"name": "Alice", "maxHp": 20},
    ],
)
def test_hp_stays_within_bounds_for_adversarial_values(proposed: dict) -> None:
    result = reconcile(_session(), {"narrative": "x", "combatStats": {"party": [proposed]}})

    alice = result.session.party[0]
    assert alice.max_hp >= 1
    assert 0 <= alice.hp <= alice.max_hp


def test_string_numbers_are_treated_as_absent() -> None:
    result = reconcile(_session(), {"narrative": "x", "combatStats": {"party": [{"name": "Alice", "hp": "5"}]}})

    assert result.session.party[0].hp == 100


def test_reconcile_never_touches_user_owned_fields() -> None:
    session = _session()
    hostile = {
        "name": "goblin",
        "hp": 10,
        "attacks": [{"name": "Nuke", "type": "AoE"}],
        "items": ["Crown"],
        "sprite": "X",
        "description": "Rewritten",
        "isProtected": True,
    }

    result = reconcile(session, {"narrative": "x", "combatStats": {"opposition": [hostile]}})

    goblin = result.session.opposition[0]
    assert goblin.name == "Goblin"
    assert goblin.attacks == session.opposition[0].attacks
    assert goblin.sprite == "G"
    assert goblin.description == "Small and angry"
    assert goblin.is_protected is False
    assert goblin.hp == 10


def test_same_reply_twice_yields_same_values() -> None:
    session = _session()
    reply = _action_reply(
        party=[{"name": "Alice", "hp": 70, "customBars": [{"name": "Mana", "current": 30, "max": 40}]}],
        opposition=[{"name": "Goblin", "hp": 12}],
    )

    first = reconcile(session, reply)
    second = reconcile(session, reply)

    for left, right in zip(
        (*first.session.party, *first.session.opposition),
        (*second.session.party, *second.session.opposition),
    ):
        assert left.hp == right.hp
        assert left.custom_bars == right.custom_bars


def test_statuses_decay_and_merge_by_name() -> None:
    session = _session()
    session.party[0].statuses = [
        Status(marker="🔥", name="Burning", remaining_turns=1),
        Status(marker="🛡", name="Shielded", remaining_turns=3),
    ]

    result = reconcile(
        session,
        {
            "narrative": "x",
            "combatStats": {"party": [{"name": "Alice", "statuses": [{"name": "shielded"}, {"name": "Poisoned", "duration": 2}]}]},
        },
    )

    statuses = {status.name: status.remaining_turns for status in result.session.party[0].statuses}
    assert statuses == {"shielded": 2, "Poisoned": 2}


def test_custom_bars_merge_and_clamp() -> None:
    session = _session()

    first = reconcile(
        session,
        {"narrative": "x", "combatStats": {"party": [{"name": "Alice", "customBars": [{"name": "Mana", "current": 90, "max": 40}]}]}},
    )
    second = reconcile(
        first.session,
        {"narrative": "x", "combatStats": {"party": [{"name": "Alice", "customBars": [{"name": "MANA", "current": -3}]}]}},
    )

    assert [(bar.name, bar.current, bar.max) for bar in first.session.party[0].custom_bars] == [("Mana", 40, 40)]
    assert [(bar.name, bar.current, bar.max) for bar in second.session.party[0].custom_bars] == [("Mana", 0, 40)]


def test_action_reply_reports_lines_outcome_and_environment() -> None:
    result = reconcile(
        _session(),
        _action_reply(
            partyActions=[{"memberName": "Alice", "action": "slashes"}],
            enemyActions=[{"enemyName": "Goblin", "action": "flees"}, {"action": "no actor"}],
            combatEnd=True,
            result=" Fled ",
            combatStats={"environment": "E" * 900},
        ),
    )

    assert result.narrative == "Blades clash."
    assert result.action_lines == ["Alice: slashes", "Goblin: flees"]
    assert result.combat_end is True
    assert result.outcome == "fled"
    assert len(result.session.environment) == 500


def test_extract_json_strips_fences_and_prose() -> None:
    raw = 'Sure! Here you go:\n```json\n{"narrative": "ok"}\n```\nHope that helps.'

    assert extract_json(raw) == {"narrative": "ok"}


def test_extract_json_rejects_non_objects() -> None:
    with pytest.raises(OracleParseError):
        extract_json("[1, 2, 3]")
    with pytest.raises(OracleParseError):
        extract_json("no braces at all")


def test_parse_reply_accepts_prepared_mappings() -> None:
    assert parse_reply({"narrative": "ok"}, TurnType.ACTION).ok is True
    assert parse_reply({}, TurnType.SUMMARY).ok is True
