"""
Saved chat sessions — one JSON file per session, named by UUID.

A bad file only costs its own entry: listing skips anything that fails to
parse. Writes go to a temp file first and are swapped in with os.replace, so a
crash mid-write never leaves a truncated record behind.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from PySide6.QtCore import QObject, Signal

from engine.errors import PersistenceFailure

logger = logging.getLogger(__name__)

TITLE_LIMIT = 30
DEFAULT_TITLE = "New Chat"
USER_PREFIX = "User: "


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_title(messages: list[str]) -> str:
    first_user = next((m for m in messages if m.startswith("User:")), None)
    if first_user is None:
        return DEFAULT_TITLE
    title = first_user.replace(USER_PREFIX, "")
    if len(title) > TITLE_LIMIT:
        title = title[:TITLE_LIMIT] + "..."
    return title or DEFAULT_TITLE


def _parse_ts(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class ChatSession:
    id: uuid.UUID
    title: str
    messages: list[str]
    model_filename: str
    created_at: datetime = field(default_factory=_now)
    last_chat_at: datetime = field(default_factory=_now)

    @classmethod
    def create(cls, messages: list[str], model_filename: str, session_id: uuid.UUID | None = None) -> "ChatSession":
        now = _now()
        return cls(
            id=session_id or uuid.uuid4(),
            title=generate_title(messages),
            messages=list(messages),
            model_filename=model_filename,
            created_at=now,
            last_chat_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "title": self.title,
            "messages": list(self.messages),
            "model_filename": self.model_filename,
            "created_at": self.created_at.isoformat(),
            "last_chat_at": self.last_chat_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatSession":
        messages = data["messages"]
        if not isinstance(messages, list) or not all(isinstance(m, str) for m in messages):
            raise ValueError("messages must be a list of strings")
        return cls(
            id=uuid.UUID(str(data["id"])),
            title=str(data.get("title") or generate_title(messages)),
            messages=messages,
            model_filename=str(data.get("model_filename", "")),
            created_at=_parse_ts(data["created_at"]),
            last_chat_at=_parse_ts(data["last_chat_at"]),
        )


def format_size(num_bytes: int) -> str:
    if num_bytes < 1000:
        return f"{num_bytes} bytes"
    if num_bytes < 1000 * 1000:
        return f"{num_bytes / 1000:.1f} KB"
    return f"{num_bytes / (1000 * 1000):.1f} MB"


class SessionStore(QObject):
    sig_sessions_changed = Signal(list)

    def __init__(self, directory: str | Path):
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, session_id: uuid.UUID | str) -> Path:
        return self.directory / f"{uuid.UUID(str(session_id))}.json"

    def _read(self, path: Path) -> ChatSession:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError("session record is not an object")
        return ChatSession.from_dict(data)

    def save(self, session: ChatSession) -> ChatSession:
        """Insert or overwrite by id. An existing record keeps its created_at."""
        path = self._path_for(session.id)
        if path.exists():
            try:
                session = replace(session, created_at=self._read(path).created_at)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("overwriting unreadable session %s: %s", path.name, exc)

        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(session.to_dict(), handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.error("failed to save chat session %s: %s", session.id, exc)
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise PersistenceFailure(f"could not save session {session.id}: {exc}") from exc

        self.sig_sessions_changed.emit(self.list())
        return session

    def get(self, session_id: uuid.UUID | str) -> ChatSession | None:
        try:
            path = self._path_for(session_id)
        except ValueError:
            return None
        try:
            return self._read(path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("skipping unreadable session %s: %s", path.name, exc)
            return None

    def list(self) -> list[ChatSession]:
        """All readable sessions, newest last_chat_at first."""
        sessions: list[ChatSession] = []
        try:
            paths = [p for p in self.directory.iterdir() if p.is_file() and p.suffix == ".json"]
        except OSError as exc:
            logger.error("failed to list chat sessions: %s", exc)
            return []
        for path in paths:
            try:
                sessions.append(self._read(path))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("skipping unreadable session %s: %s", path.name, exc)
        sessions.sort(key=lambda s: s.last_chat_at, reverse=True)
        return sessions

    def delete(self, session_id: uuid.UUID | str) -> None:
        try:
            path = self._path_for(session_id)
        except ValueError:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("failed to delete chat session %s: %s", session_id, exc)
            raise PersistenceFailure(f"could not delete session {session_id}: {exc}") from exc
        self.sig_sessions_changed.emit(self.list())

    def size_of(self, session_id: uuid.UUID | str) -> int:
        try:
            return self._path_for(session_id).stat().st_size
        except (OSError, ValueError):
            return 0
