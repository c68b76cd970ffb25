"""
Inference call supervisor.

Owns the engine handle and runs one turn at a time against a
ConversationState:

    IDLE ──load──▶ LOADED ──turn ok──▶ ACTIVE
                     ▲                    │
                     └──── RESETTING ◀────┘  (over budget / timeout / blank)

Failure recovery is "goldfish": the handle is reloaded and the turn is retried
once with only the system prompt and the pending user fragment as context.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

from engine.budget import ContextBudget
from engine.errors import (
    EngineCallFailure,
    InferenceError,
    InferenceTimeout,
    ModelLoadFailure,
    RecoveryExhausted,
    SilentContextOverflow,
    TurnInFlight,
)
from engine.llm import CompletionHandle, EngineBackend
from engine.sanitizer import clean_response
from engine.templates import assistant_close, system_prompt, user_fragment

if TYPE_CHECKING:
    from engine.conversation import ConversationState

DEFAULT_TIMEOUT_S = 60.0

FORGOTTEN_NOTICE = "Context limit reached. Older messages forgotten to free up memory."


class SupervisorState(str, Enum):
    IDLE = "IDLE"
    LOADED = "LOADED"
    ACTIVE = "ACTIVE"
    RESETTING = "RESETTING"


@dataclass
class TurnResult:
    raw: str
    text: str
    notice: str | None = None
    recovered: bool = False
    failure: str | None = None   # reason of the first-attempt failure, if any


def _noop_trace(_msg: str) -> None:
    return None


class InferenceSupervisor:
    def __init__(
        self,
        backend: EngineBackend,
        budget: ContextBudget | None = None,
        timeout: float = DEFAULT_TIMEOUT_S,
        trace: Callable[[str], None] | None = None,
    ):
        self.backend = backend
        self.budget = budget or ContextBudget()
        self.timeout = float(timeout)
        self.trace = trace or _noop_trace
        self.model_path: str | None = None
        self._handle: CompletionHandle | None = None
        self._state = SupervisorState.IDLE
        self._in_flight = False

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def has_handle(self) -> bool:
        return self._handle is not None

    # ------------------------------------------------------------------
    # Handle lifecycle
    # ------------------------------------------------------------------

    async def load_model(self, path: str) -> None:
        if self._in_flight:
            raise TurnInFlight("cannot load a model while a turn is in flight")
        self._discard_handle()
        self._state = SupervisorState.IDLE
        self.model_path = None
        self._handle = await self._load(path)
        self.model_path = path
        self._state = SupervisorState.LOADED
        self.trace(f"→ model loaded: {path}")

    async def _load(self, path: str) -> CompletionHandle:
        try:
            handle = await asyncio.to_thread(self.backend.load, path)
        except ModelLoadFailure:
            raise
        except Exception as exc:
            raise ModelLoadFailure(f"Load Failed: {exc}") from exc
        if handle is None:
            raise ModelLoadFailure(f"backend rejected model: {path}")
        return handle

    async def _reload(self) -> CompletionHandle | None:
        """Discard and reload from the same path; None when no handle is obtainable."""
        self._discard_handle()
        if not self.model_path:
            return None
        try:
            self._handle = await self._load(self.model_path)
        except ModelLoadFailure as exc:
            self.trace(f"[SUPERVISOR] reload failed: {exc}")
            return None
        return self._handle

    def _discard_handle(self) -> None:
        handle, self._handle = self._handle, None
        close = getattr(handle, "close", None)
        if callable(close):
            try:
                close()
            except Exception as exc:
                self.trace(f"[SUPERVISOR] handle close failed: {exc}")

    async def prime(self, state: "ConversationState") -> None:
        """Fresh context: system prompt only, handle reloaded when a model is set."""
        if self._in_flight:
            raise TurnInFlight("cannot reset while a turn is in flight")
        state.history = system_prompt(state.model_family, state.answer_style)
        state.engine_active = False
        if not self.model_path:
            return
        self._state = SupervisorState.RESETTING
        if await self._reload() is None:
            self._state = SupervisorState.IDLE
            raise ModelLoadFailure(f"could not reload model: {self.model_path}")
        self._state = SupervisorState.LOADED

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def submit_turn(self, state: "ConversationState", message: str) -> TurnResult:
        if self._in_flight:
            raise TurnInFlight("a turn is already in flight")
        self._in_flight = True
        try:
            return await self._run_turn(state, message)
        finally:
            self._in_flight = False

    async def _run_turn(self, state: "ConversationState", message: str) -> TurnResult:
        family = state.model_family
        fragment = user_fragment(family, message)

        if self._handle is None:
            if not self.model_path:
                raise ModelLoadFailure("no model loaded")
            self.trace("[SUPERVISOR] handle missing, reloading before turn")
            self._handle = await self._load(self.model_path)
            state.history = system_prompt(family, state.answer_style)
            state.engine_active = False
            self._state = SupervisorState.LOADED

        notice = None
        if self.budget.is_over_budget(state.history, state.model_identifier):
            self.trace(f"[SUPERVISOR] context full ({len(state.history)} chars), resetting")
            self._state = SupervisorState.RESETTING
            if await self._reload() is None:
                self._state = SupervisorState.IDLE
                raise RecoveryExhausted("model could not be reloaded after context reset")
            state.history = self.budget.reset_history(family, state.answer_style)
            state.engine_active = False
            self._state = SupervisorState.LOADED
            notice = FORGOTTEN_NOTICE

        prompt = fragment if state.engine_active else state.history + fragment
        state.history += fragment

        failure = None
        try:
            raw = await self._race(self._handle, prompt)
        except InferenceError as exc:
            self.trace(f"[SUPERVISOR] LLM error ({exc.reason}): {exc}. Performing emergency reset.")
            failure = exc.reason
            raw = await self._recover(state, fragment, exc)

        text = clean_response(raw)
        state.history += text + assistant_close(family)
        state.engine_active = True
        self._state = SupervisorState.ACTIVE
        return TurnResult(raw=raw, text=text, notice=notice, recovered=failure is not None, failure=failure)

    async def _race(self, handle: CompletionHandle, prompt: str) -> str:
        call = asyncio.create_task(asyncio.to_thread(handle.complete, prompt))
        timer = asyncio.create_task(asyncio.sleep(self.timeout))
        done, pending = await asyncio.wait({call, timer}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        # loser must be settled before the turn moves on
        await asyncio.gather(*pending, return_exceptions=True)

        if call not in done:
            # The worker thread is still inside complete(). Drop the handle
            # without closing it; it is freed once that call returns.
            if self._handle is handle:
                self._handle = None
            raise InferenceTimeout(f"no response within {self.timeout:g}s")
        try:
            response = call.result()
        except Exception as exc:
            raise EngineCallFailure(str(exc) or exc.__class__.__name__) from exc
        if not isinstance(response, str) or not response.strip():
            raise SilentContextOverflow("engine returned an empty response")
        return response

    async def _recover(self, state: "ConversationState", fragment: str, cause: InferenceError) -> str:
        self._state = SupervisorState.RESETTING
        handle = await self._reload()
        if handle is None:
            self._state = SupervisorState.IDLE
            raise RecoveryExhausted("model could not be reloaded", cause=cause)

        recovery_prompt = system_prompt(state.model_family, state.answer_style) + fragment
        state.history = recovery_prompt
        state.engine_active = True
        self._state = SupervisorState.LOADED

        try:
            response = await asyncio.to_thread(handle.complete, recovery_prompt)
        except Exception as exc:
            raise RecoveryExhausted(f"retry failed: {exc}", cause=exc) from exc
        if not isinstance(response, str) or not response.strip():
            raise RecoveryExhausted("retry returned an empty response", cause=cause)
        self.trace("[SUPERVISOR] recovery retry succeeded")
        return response
