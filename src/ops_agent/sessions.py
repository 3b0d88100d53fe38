"""Resumable workflow state keyed by prefixed session ids.

Each workflow family owns one ``SessionStore`` with its own prefix (``plt``,
``qry``, ``dvl``). Expiry is lazy: a session older than the TTL is dropped the
next time somebody reads it.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, TypeVar

from pydantic import BaseModel, ValidationError

from ops_agent.errors import SessionVersionConflict

logger = logging.getLogger(__name__)

DataT = TypeVar("DataT")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel, Generic[DataT]):
    session_id: str
    created_at: datetime
    last_activity_at: datetime
    version: int = 1
    data: DataT


SessionRecord = Session[dict[str, Any]]


def session_prefix(session_id: str) -> str:
    """The workflow prefix of an id (``"plt-1700000000000-ab12cd34"`` -> ``"plt"``)."""
    return session_id.split("-", 1)[0] if "-" in session_id else ""


class _MemoryBackend:
    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}

    def load(self, session_id: str) -> SessionRecord | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def save(self, session: SessionRecord) -> None:
        self._sessions[session.session_id] = session.model_copy(deep=True)

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def ids(self) -> list[str]:
        return list(self._sessions)


class _FileBackend:
    """One JSON file per session under ``<directory>/<prefix>-sessions``."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def load(self, session_id: str) -> SessionRecord | None:
        path = self._path(session_id)
        if not path.is_file():
            return None
        try:
            return SessionRecord.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning("Unreadable session file %s: %s", path, e)
            return None

    def save(self, session: SessionRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(session.session_id).write_text(session.model_dump_json(indent=2))

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class SessionStore:
    def __init__(
        self,
        prefix: str,
        ttl_seconds: float = 86400,
        directory: str | Path | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        if not prefix or "-" in prefix:
            raise ValueError(f"Invalid session prefix: {prefix!r}")
        self.prefix = prefix
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        if directory:
            self._backend: _MemoryBackend | _FileBackend = _FileBackend(
                Path(directory) / f"{prefix}-sessions"
            )
        else:
            self._backend = _MemoryBackend()

    def _new_id(self) -> str:
        ms = int(self._clock().timestamp() * 1000)
        while True:
            session_id = f"{self.prefix}-{ms}-{uuid.uuid4().hex[:8]}"
            if self._backend.load(session_id) is None:
                return session_id

    def _is_expired(self, session: SessionRecord) -> bool:
        return self._clock() - session.last_activity_at > self.ttl

    def owns(self, session_id: str) -> bool:
        return session_prefix(session_id) == self.prefix

    def create_session(self, data: dict[str, Any] | BaseModel) -> SessionRecord:
        now = self._clock()
        session = SessionRecord(
            session_id=self._new_id(),
            created_at=now,
            last_activity_at=now,
            data=_as_dict(data),
        )
        self._backend.save(session)
        logger.info("Created session %s", session.session_id)
        return session

    def get_session(self, session_id: str) -> SessionRecord | None:
        """The stored session, or None when it is unknown or expired."""
        if not self.owns(session_id):
            return None
        session = self._backend.load(session_id)
        if session is None:
            return None
        if self._is_expired(session):
            logger.warning("Session %s expired, removing", session_id)
            self._backend.delete(session_id)
            return None
        return session

    def update_session(
        self,
        session_id: str,
        partial: dict[str, Any] | BaseModel,
        expected_version: int | None = None,
    ) -> SessionRecord | None:
        """Shallow-merge ``partial`` into the session data.

        Last write wins unless ``expected_version`` is given, in which case a
        mismatch raises SessionVersionConflict.
        """
        session = self.get_session(session_id)
        if session is None:
            return None
        if expected_version is not None and session.version != expected_version:
            raise SessionVersionConflict(session_id, expected_version, session.version)
        session.data = {**session.data, **_as_dict(partial)}
        return self._touch(session)

    def replace_session(
        self,
        session_id: str,
        data: dict[str, Any] | BaseModel,
        expected_version: int | None = None,
    ) -> SessionRecord | None:
        session = self.get_session(session_id)
        if session is None:
            return None
        if expected_version is not None and session.version != expected_version:
            raise SessionVersionConflict(session_id, expected_version, session.version)
        session.data = _as_dict(data)
        return self._touch(session)

    def _touch(self, session: SessionRecord) -> SessionRecord:
        session.last_activity_at = self._clock()
        session.version += 1
        self._backend.save(session)
        return session

    def delete_session(self, session_id: str) -> bool:
        deleted = self._backend.delete(session_id)
        if deleted:
            logger.info("Deleted session %s", session_id)
        return deleted

    def list_sessions(self) -> list[str]:
        """Ids of live sessions; expired ones are dropped on the way."""
        return [sid for sid in self._backend.ids() if self.get_session(sid) is not None]

    def clear_all(self) -> int:
        ids = self._backend.ids()
        for session_id in ids:
            self._backend.delete(session_id)
        return len(ids)


def find_session(
    session_id: str, stores: Iterable[SessionStore]
) -> tuple[SessionStore, SessionRecord] | None:
    """Route a bare id to the store that owns its prefix."""
    for store in stores:
        if store.owns(session_id):
            session = store.get_session(session_id)
            return (store, session) if session is not None else None
    return None


def _as_dict(data: dict[str, Any] | BaseModel) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    return json.loads(json.dumps(data, default=str))
