"""Persistence interfaces and implementations for encounter sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import os
from pathlib import Path
import tempfile
from typing import Any, Mapping, Protocol
import uuid

from rpgencounter.backend.errors import PersistenceError, ValidationError
from rpgencounter.backend.models import EncounterSession, SessionStatus
from rpgencounter.backend.profiles import Profile, resolve
from rpgencounter.backend.state import utc_now_iso

SCHEMA_VERSION = 1


@dataclass(frozen=True)
class SessionRecord:
    session: EncounterSession
    profile: Profile | None


def build_record(session: EncounterSession, profile: Profile | None) -> dict[str, Any]:
    return {
        "schemaVersion": SCHEMA_VERSION,
        "session": session.to_dict(),
        "profile": profile.to_dict() if profile is not None else None,
    }


def parse_record(payload: Any) -> SessionRecord | None:
    """Decode a persisted record; unknown or missing versions count as absent."""
    if not isinstance(payload, Mapping) or payload.get("schemaVersion") != SCHEMA_VERSION:
        return None
    try:
        session = EncounterSession.from_dict(payload["session"])
    except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as exc:
        raise PersistenceError(f"saved session is corrupt: {exc}") from exc
    raw_profile = payload.get("profile")
    profile = resolve(raw_profile).profile if isinstance(raw_profile, Mapping) else None
    return SessionRecord(session=session, profile=profile)


def build_archive_entry(session: EncounterSession) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "result": session.result,
        "summary": session.summary,
        "log": [entry.to_dict() for entry in session.log],
        "concludedAt": utc_now_iso(),
    }


class SessionStore(Protocol):
    def load(self) -> SessionRecord | None:
        """Return the saved session, or ``None`` when nothing usable is stored."""

    def save(self, session: EncounterSession, profile: Profile | None) -> None:
        """Overwrite the saved session with a snapshot of ``session``."""

    def clear(self) -> None:
        """Forget the saved session."""

    def archive(self, session: EncounterSession) -> dict[str, Any]:
        """Append a concluded encounter to the archive and return the entry."""

    def list_archive(self) -> list[dict[str, Any]]:
        """Return archived encounters, oldest first."""


class InMemorySessionStore:
    def __init__(self) -> None:
        self._record: dict[str, Any] | None = None
        self._archive: list[dict[str, Any]] = []

    def load(self) -> SessionRecord | None:
        if self._record is None:
            return None
        return parse_record(json.loads(json.dumps(self._record)))

    def save(self, session: EncounterSession, profile: Profile | None) -> None:
        self._record = build_record(session, profile)

    def clear(self) -> None:
        self._record = None

    def archive(self, session: EncounterSession) -> dict[str, Any]:
        entry = build_archive_entry(session)
        self._archive.append(entry)
        return entry

    def list_archive(self) -> list[dict[str, Any]]:
        return list(self._archive)


@dataclass
class FileSessionStore:
    """JSON file store; writes go through a temp file and ``os.replace``."""

    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    @property
    def archive_path(self) -> Path:
        return self.path.with_name(f"{self.path.stem}.archive.jsonl")

    def load(self) -> SessionRecord | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"cannot read {self.path}: {exc}") from exc
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"{self.path} is not valid JSON: {exc.msg}") from exc
        return parse_record(payload)

    def save(self, session: EncounterSession, profile: Profile | None) -> None:
        data = json.dumps(build_record(session, profile), ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(data)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"cannot write {self.path}: {exc}") from exc

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot remove {self.path}: {exc}") from exc

    def archive(self, session: EncounterSession) -> dict[str, Any]:
        entry = build_archive_entry(session)
        try:
            self.archive_path.parent.mkdir(parents=True, exist_ok=True)
            with self.archive_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise PersistenceError(f"cannot append to {self.archive_path}: {exc}") from exc
        return entry

    def list_archive(self) -> list[dict[str, Any]]:
        try:
            lines = self.archive_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise PersistenceError(f"cannot read {self.archive_path}: {exc}") from exc
        entries = []
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise PersistenceError(f"{self.archive_path} has a corrupt line: {exc.msg}") from exc
        return entries


@dataclass
class PostgresSessionStore:
    database_url: str
    slot: str = "default"

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def load(self) -> SessionRecord | None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT record_json
                        FROM encounter_sessions
                        WHERE slot = %s
                        """,
                        (self.slot,),
                    )
                    row = cur.fetchone()
        except Exception as exc:
            raise PersistenceError(f"cannot load session {self.slot!r}: {exc}") from exc

        if row is None:
            return None
        (record_json,) = row
        try:
            payload = record_json if isinstance(record_json, dict) else json.loads(record_json)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"session {self.slot!r} holds unreadable JSON: {exc}") from exc
        return parse_record(payload)

    def save(self, session: EncounterSession, profile: Profile | None) -> None:
        record = build_record(session, profile)
        now = datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO encounter_sessions (slot, schema_version, revision, status, updated_at, record_json)
                        VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                        ON CONFLICT (slot) DO UPDATE
                        SET schema_version = EXCLUDED.schema_version,
                            revision = EXCLUDED.revision,
                            status = EXCLUDED.status,
                            updated_at = EXCLUDED.updated_at,
                            record_json = EXCLUDED.record_json
                        """,
                        (self.slot, SCHEMA_VERSION, session.revision, session.status.value, now, json.dumps(record)),
                    )
                    cur.execute(
                        """
                        INSERT INTO encounter_session_snapshots (id, slot, revision, created_at, record_json)
                        VALUES (%s, %s, %s, %s, %s::jsonb)
                        """,
                        (str(uuid.uuid4()), self.slot, session.revision, now, json.dumps(record)),
                    )
                conn.commit()
        except Exception as exc:
            raise PersistenceError(f"cannot save session {self.slot!r}: {exc}") from exc

    def clear(self) -> None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM encounter_sessions WHERE slot = %s", (self.slot,))
                conn.commit()
        except Exception as exc:
            raise PersistenceError(f"cannot clear session {self.slot!r}: {exc}") from exc

    def archive(self, session: EncounterSession) -> dict[str, Any]:
        entry = build_archive_entry(session)
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO encounter_archive (id, slot, result, concluded_at, archive_json)
                        VALUES (%s, %s, %s, %s, %s::jsonb)
                        """,
                        (
                            entry["id"],
                            self.slot,
                            entry["result"],
                            datetime.now(timezone.utc),
                            json.dumps(entry),
                        ),
                    )
                conn.commit()
        except Exception as exc:
            raise PersistenceError(f"cannot archive session {self.slot!r}: {exc}") from exc
        return entry

    def list_archive(self) -> list[dict[str, Any]]:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT archive_json
                        FROM encounter_archive
                        WHERE slot = %s
                        ORDER BY concluded_at
                        """,
                        (self.slot,),
                    )
                    rows = cur.fetchall()
        except Exception as exc:
            raise PersistenceError(f"cannot list archive for {self.slot!r}: {exc}") from exc
        try:
            return [value if isinstance(value, dict) else json.loads(value) for (value,) in rows]
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"archive for {self.slot!r} holds unreadable JSON: {exc}") from exc


def create_store(database_url: str | None, state_path: str | None = None) -> SessionStore:
    if database_url:
        return PostgresSessionStore(database_url=database_url)
    if state_path:
        return FileSessionStore(path=Path(state_path))
    return InMemorySessionStore()


def is_resumable(record: SessionRecord | None) -> bool:
    return record is not None and record.session.status is not SessionStatus.CONCLUDED
