"""Conversation sessions and session stores."""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

from loguru import logger
from pydantic import BaseModel, Field

from .items import ConversationItem, normalize_input, to_dict

SESSION_FILE_SUFFIX = ".json"


def _now() -> datetime:
    return datetime.now(UTC)


class Session(BaseModel):
    """A persisted conversation."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def add_message(
        self,
        role: str,
        content: str | None,
        *,
        tool_call_id: str | None = None,
        tool_calls: list[dict[str, Any]] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        message: dict[str, Any] = {"role": role, "content": content}
        if tool_call_id is not None:
            message["tool_call_id"] = tool_call_id
        if tool_calls:
            message["tool_calls"] = tool_calls
        if metadata:
            message["metadata"] = dict(metadata)
        self.messages.append(message)
        self.updated_at = _now()
        return message

    def add_items(self, items: Iterable[ConversationItem]) -> None:
        records = [to_dict(item) for item in items]
        if records:
            self.messages.extend(records)
            self.updated_at = _now()

    def items(self) -> list[ConversationItem]:
        """Stored messages as conversation items, in order."""
        return normalize_input([{k: v for k, v in message.items() if k != "metadata"} for message in self.messages])

    def clear_messages(self) -> None:
        self.messages.clear()
        self.updated_at = _now()

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Session:
        return cls.model_validate(dict(data))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> Session:
        return cls.model_validate_json(raw)


class SessionStore(Protocol):
    def store(self, session: Session) -> None: ...

    def retrieve(self, session_id: str) -> Session | None: ...

    def delete(self, session_id: str) -> Session | None: ...

    def exists(self, session_id: str) -> bool: ...

    def list(self) -> list[str]: ...

    def clear(self) -> None: ...


class InMemorySessionStore:
    """Thread-safe in-process session store."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def store(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)

    def retrieve(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session is not None else None

    def delete(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def list(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)


class FileSessionStore:
    """Session store keeping one JSON document per session in a directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory.expanduser()
        self._directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, session_id: str) -> Path:
        return self._directory / f"{quote(session_id, safe='')}{SESSION_FILE_SUFFIX}"

    def _read(self, path: Path) -> Session | None:
        try:
            return Session.from_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning("session.file.invalid path={}", path)
            return None

    def store(self, session: Session) -> None:
        path = self._path(session.id)
        tmp_path = path.with_suffix(f"{SESSION_FILE_SUFFIX}.tmp")
        with self._lock:
            tmp_path.write_text(json.dumps(session.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(path)

    def retrieve(self, session_id: str) -> Session | None:
        with self._lock:
            return self._read(self._path(session_id))

    def delete(self, session_id: str) -> Session | None:
        path = self._path(session_id)
        with self._lock:
            session = self._read(path)
            if path.exists():
                path.unlink()
            return session

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return self._path(session_id).exists()

    def list(self) -> list[str]:
        with self._lock:
            return sorted(
                unquote(path.name.removesuffix(SESSION_FILE_SUFFIX))
                for path in self._directory.glob(f"*{SESSION_FILE_SUFFIX}")
            )

    def clear(self) -> None:
        with self._lock:
            for path in self._directory.glob(f"*{SESSION_FILE_SUFFIX}"):
                path.unlink()

    def count(self) -> int:
        return len(self.list())
