"""
Conversation controller — the one object a front end talks to.

It owns the visible transcript and the ConversationState, drives the
InferenceSupervisor for each turn and writes sessions through SessionStore.
The native-template history and the engine handle never leave this layer.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from PySide6.QtCore import QObject, Signal

from engine.errors import (
    ModelLoadFailure,
    PersistenceFailure,
    RecoveryExhausted,
    TurnInFlight,
)
from engine.llm import resolve_model_path
from engine.sessions import ChatSession, SessionStore
from engine.supervisor import InferenceSupervisor, TurnResult
from engine.templates import AnswerStyle, ModelFamily, classify_family, system_prompt

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "User"
    ASSISTANT = "AI"
    SYSTEM = "System"


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str

    @property
    def display(self) -> str:
        return f"{self.role.value}: {self.text}"

    @classmethod
    def from_display(cls, line: str) -> "Turn":
        for role in Role:
            prefix = f"{role.value}: "
            if line.startswith(prefix):
                return cls(role, line[len(prefix):])
        return cls(Role.SYSTEM, line)


@dataclass
class ConversationState:
    history: str
    engine_active: bool
    model_family: ModelFamily
    model_identifier: str
    answer_style: AnswerStyle

    @classmethod
    def fresh(cls, model_identifier: str, answer_style: AnswerStyle | str) -> "ConversationState":
        family = classify_family(model_identifier)
        style = AnswerStyle.parse(answer_style)
        return cls(
            history=system_prompt(family, style),
            engine_active=False,
            model_family=family,
            model_identifier=model_identifier,
            answer_style=style,
        )


class ConversationController(QObject):
    sig_transcript = Signal(list)
    sig_busy = Signal(bool)
    sig_error = Signal(str)
    sig_trace = Signal(str)

    def __init__(
        self,
        supervisor: InferenceSupervisor,
        store: SessionStore,
        answer_style: AnswerStyle | str = AnswerStyle.SIMPLE,
        auto_save: bool = False,
    ):
        super().__init__()
        self.supervisor = supervisor
        self.store = store
        self.supervisor.trace = self._trace
        self._answer_style = AnswerStyle.parse(answer_style)
        self._auto_save = bool(auto_save)
        self._state = ConversationState.fresh("", self._answer_style)
        self._transcript: list[Turn] = [Turn(Role.SYSTEM, "Select a model from Library first.")]
        self._busy = False
        self._error: str | None = None
        self.current_session_id: uuid.UUID | None = None

    # ------------------------------------------------------------------
    # Presentation surface
    # ------------------------------------------------------------------

    @property
    def transcript(self) -> list[Turn]:
        return list(self._transcript)

    @property
    def messages(self) -> list[str]:
        return [turn.display for turn in self._transcript]

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def auto_save(self) -> bool:
        return self._auto_save

    @property
    def answer_style(self) -> AnswerStyle:
        return self._answer_style

    @property
    def model_filename(self) -> str:
        return self._state.model_identifier

    def set_auto_save(self, enabled: bool) -> None:
        self._auto_save = bool(enabled)

    def set_answer_style(self, style: AnswerStyle | str) -> None:
        """Takes effect on the next model load, clear or session load."""
        self._answer_style = AnswerStyle.parse(style)

    def _trace(self, msg: str) -> None:
        logger.debug(msg)
        self.sig_trace.emit(msg)

    def _set_busy(self, busy: bool) -> None:
        self._busy = busy
        self.sig_busy.emit(busy)

    def _set_error(self, msg: str) -> None:
        self._error = msg
        self.sig_error.emit(msg)

    def _append(self, role: Role, text: str) -> None:
        self._transcript.append(Turn(role, text))
        self.sig_transcript.emit(self.messages)

    def _replace_transcript(self, turns: list[Turn]) -> None:
        self._transcript = list(turns)
        self.sig_transcript.emit(self.messages)

    def _reject_if_busy(self) -> bool:
        if self._busy:
            self._set_error("Busy. Wait for completion.")
            return True
        return False

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    async def load_model(self, path: str | Path) -> bool:
        if self._reject_if_busy():
            return False
        name = Path(path).name
        self._append(Role.SYSTEM, f"Loading {name}...")
        self._set_busy(True)
        try:
            await self.supervisor.load_model(str(path))
        except (ModelLoadFailure, TurnInFlight) as exc:
            self._trace(f"ERROR: {exc}")
            self._append(Role.SYSTEM, "Failed to load model. File might be corrupt.")
            self._set_error(str(exc))
            return False
        finally:
            self._set_busy(False)
        self._state = ConversationState.fresh(name, self._answer_style)
        self._append(Role.SYSTEM, "Ready! Chat with me.")
        return True

    async def switch_model(self, path: str | Path) -> bool:
        if self._reject_if_busy():
            return False
        if Path(path).name == self._state.model_identifier and self.supervisor.has_handle:
            return True
        self._replace_transcript([])
        return await self.load_model(path)

    async def auto_load(self, models_dir: str | Path | None, filename: str | None = None) -> bool:
        if self._reject_if_busy():
            return False
        self._trace(f"→ scanning for models in {models_dir}")
        model_path = resolve_model_path(models_dir, filename)
        if model_path is None:
            self._append(Role.SYSTEM, "No models found. Please download one in the Library tab.")
            return False
        return await self.load_model(model_path)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit_turn(self, text: str) -> TurnResult | None:
        if not text or not text.strip():
            return None
        if self._reject_if_busy():
            return None

        self._error = None
        self._append(Role.USER, text)
        self._set_busy(True)
        try:
            result = await self.supervisor.submit_turn(self._state, text)
        except RecoveryExhausted as exc:
            self._trace(f"ERROR: recovery exhausted: {exc}")
            self._append(Role.SYSTEM, "Critical Error. Please restart app.")
            self._set_error(str(exc))
            return None
        except (ModelLoadFailure, TurnInFlight) as exc:
            self._set_error(str(exc))
            return None
        finally:
            self._set_busy(False)

        if result.notice:
            self._append(Role.SYSTEM, result.notice)
        self._append(Role.ASSISTANT, result.text)

        if self._auto_save:
            self._perform_auto_save()
        return result

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def save(self) -> ChatSession | None:
        """Explicit save: a new record every time."""
        session = ChatSession.create(self.messages, self.model_filename)
        try:
            return self.store.save(session)
        except PersistenceFailure as exc:
            self._set_error(str(exc))
            return None

    def _perform_auto_save(self) -> None:
        if self.current_session_id is None:
            self.current_session_id = uuid.uuid4()
        session = ChatSession.create(self.messages, self.model_filename, session_id=self.current_session_id)
        try:
            self.store.save(session)
        except PersistenceFailure as exc:
            self._set_error(str(exc))

    async def load_session(self, session: ChatSession) -> None:
        if self._reject_if_busy():
            return
        # Only the system prompt is primed; the saved turns are display-only
        # and the engine starts with no memory of them.
        self._replace_transcript([Turn.from_display(m) for m in session.messages])
        self.current_session_id = session.id
        await self._reset_state()

    async def clear(self) -> None:
        if self._reject_if_busy():
            return
        self._replace_transcript([Turn(Role.SYSTEM, "Memory cleared.")])
        self._auto_save = False
        self.current_session_id = None
        await self._reset_state()

    async def _reset_state(self) -> None:
        self._state = ConversationState.fresh(self._state.model_identifier, self._answer_style)
        try:
            await self.supervisor.prime(self._state)
        except (ModelLoadFailure, TurnInFlight) as exc:
            self._set_error(str(exc))
