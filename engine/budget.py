"""
Context budget — character-length proxy for the model's token window.

Roughly 4 characters per token: a 2k-token model is full around 8k chars, so
small models reset at 6000 and everything else at 24000. Resetting forgets
everything but the system prompt; there is no partial truncation.
"""

from __future__ import annotations

from dataclasses import dataclass

from engine.templates import AnswerStyle, ModelFamily, system_prompt

SMALL_CONTEXT_THRESHOLD = 6000
LARGE_CONTEXT_THRESHOLD = 24000

SMALL_CONTEXT_MARKERS = ("tinyllama", "270m", "0.5b", "-4k")


def is_small_context_model(model_identifier: str | None) -> bool:
    name = (model_identifier or "").lower()
    return any(marker in name for marker in SMALL_CONTEXT_MARKERS)


@dataclass(frozen=True)
class ContextBudget:
    small_threshold: int = SMALL_CONTEXT_THRESHOLD
    large_threshold: int = LARGE_CONTEXT_THRESHOLD
    small_context: bool | None = None   # config override; None = detect

    def threshold_for(self, model_identifier: str | None) -> int:
        small = self.small_context
        if small is None:
            small = is_small_context_model(model_identifier)
        return self.small_threshold if small else self.large_threshold

    def is_over_budget(self, history: str, model_identifier: str | None = None) -> bool:
        return len(history) > self.threshold_for(model_identifier)

    def reset_history(self, family: ModelFamily, style: AnswerStyle | str) -> str:
        return system_prompt(family, style)
