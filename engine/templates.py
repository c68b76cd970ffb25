"""
Prompt templates per model family.

Every family frames turns with its own control tokens. The engine is sensitive
to these byte-for-byte, so the fragments below must not be reformatted.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable


class ModelFamily(str, Enum):
    LLAMA3 = "llama3"
    QWEN = "qwen"
    GEMMA = "gemma"
    PHI3 = "phi3"
    GENERIC = "generic"


class AnswerStyle(str, Enum):
    SIMPLE = "simple"
    DETAILED = "detailed"

    @classmethod
    def parse(cls, value) -> "AnswerStyle":
        if isinstance(value, AnswerStyle):
            return value
        if isinstance(value, str) and value.strip().lower() == cls.DETAILED.value:
            return cls.DETAILED
        return cls.SIMPLE


# ---------------------------------------------------------------------------
# Family detection — first matching predicate wins
# ---------------------------------------------------------------------------

FAMILY_RULES: list[tuple[Callable[[str], bool], ModelFamily]] = [
    (lambda name: "llama-3" in name or "llama3" in name, ModelFamily.LLAMA3),
    (lambda name: "qwen" in name, ModelFamily.QWEN),
    (lambda name: "gemma" in name, ModelFamily.GEMMA),
    (lambda name: "phi-3" in name or "phi3" in name, ModelFamily.PHI3),
]


def classify_family(model_identifier: str | None) -> ModelFamily:
    name = (model_identifier or "").lower()
    for predicate, family in FAMILY_RULES:
        if predicate(name):
            return family
    return ModelFamily.GENERIC


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------

INSTRUCTIONS = {
    AnswerStyle.DETAILED: "Provide comprehensive, structured answers.",
    AnswerStyle.SIMPLE: "Provide simple, concise answers.",
}
CONSTRAINT = " Use plain text only. Avoid markdown code blocks."

_SYSTEM_TEMPLATES = {
    ModelFamily.LLAMA3: "<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n\nYou are a helpful AI assistant. {instruction} {constraint}<|eot_id|>",
    ModelFamily.QWEN: "<|im_start|>system\nYou are a helpful AI assistant. {instruction} {constraint}<|im_end|>\n",
    ModelFamily.GEMMA: "<start_of_turn>user\n{instruction} {constraint}<end_of_turn>\n<start_of_turn>model\nOkay.<end_of_turn>\n",
    ModelFamily.PHI3: "<|system|>\nYou are a helpful AI assistant. {instruction} {constraint}<|end|>\n",
    ModelFamily.GENERIC: "<|system|>\nYou are a helpful AI assistant. {instruction} {constraint}</s>",
}

_USER_TEMPLATES = {
    ModelFamily.LLAMA3: "<|start_header_id|>user<|end_header_id|>\n\n{message}<|eot_id|><|start_header_id|>assistant<|end_header_id|>\n\n",
    ModelFamily.QWEN: "<|im_start|>user\n{message}<|im_end|>\n<|im_start|>assistant\n",
    ModelFamily.GEMMA: "<start_of_turn>user\n{message}<end_of_turn>\n<start_of_turn>model\n",
    ModelFamily.PHI3: "\n<|user|>\n{message}<|end|>\n<|assistant|>\n",
    ModelFamily.GENERIC: "\n<|user|>\n{message}</s>\n<|assistant|>\n",
}

_ASSISTANT_CLOSE = {
    ModelFamily.LLAMA3: "<|eot_id|>",
    ModelFamily.QWEN: "<|im_end|>\n",
    ModelFamily.GEMMA: "<end_of_turn>\n",
    ModelFamily.PHI3: "<|end|>",
    ModelFamily.GENERIC: "</s>",
}

# Tokens that end the assistant turn or open the next one.
_STOP_MARKERS = {
    ModelFamily.LLAMA3: ("<|eot_id|>", "<|start_header_id|>"),
    ModelFamily.QWEN: ("<|im_end|>", "<|im_start|>"),
    ModelFamily.GEMMA: ("<end_of_turn>", "<start_of_turn>"),
    ModelFamily.PHI3: ("<|end|>", "<|user|>"),
    ModelFamily.GENERIC: ("</s>", "<|user|>"),
}

ALL_STOP_MARKERS: tuple[str, ...] = tuple(
    dict.fromkeys(marker for markers in _STOP_MARKERS.values() for marker in markers)
)


def system_prompt(family: ModelFamily, style: AnswerStyle | str = AnswerStyle.SIMPLE) -> str:
    return _SYSTEM_TEMPLATES[family].format(
        instruction=INSTRUCTIONS[AnswerStyle.parse(style)],
        constraint=CONSTRAINT,
    )


def user_fragment(family: ModelFamily, message: str) -> str:
    return _USER_TEMPLATES[family].format(message=message)


def assistant_close(family: ModelFamily) -> str:
    return _ASSISTANT_CLOSE[family]


def stop_markers(family: ModelFamily) -> list[str]:
    return list(_STOP_MARKERS[family])
