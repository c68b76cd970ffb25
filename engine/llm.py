"""
llama.cpp boundary.

The rest of the engine only sees ``backend.load(path) -> handle`` and
``handle.complete(prompt) -> str``; both are blocking and may raise.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Protocol

from engine.errors import ModelLoadFailure
from engine.templates import classify_family, stop_markers


class CompletionHandle(Protocol):
    def complete(self, prompt: str) -> str: ...


class EngineBackend(Protocol):
    def load(self, path: str) -> CompletionHandle: ...


def _noop_trace(_msg: str) -> None:
    return None


class LlamaHandle:
    def __init__(self, llm, stop: list[str], max_tokens: int, temp: float, top_p: float):
        self.llm = llm
        self.stop = list(stop)
        self.max_tokens = max_tokens
        self.temp = temp
        self.top_p = top_p

    def complete(self, prompt: str) -> str:
        response = self.llm(
            prompt,
            max_tokens=self.max_tokens,
            temperature=self.temp,
            top_p=self.top_p,
            stop=self.stop,
            echo=False,
        )
        choices = response.get("choices", []) if isinstance(response, dict) else []
        if not choices:
            return ""
        text = choices[0].get("text")
        return text if isinstance(text, str) else ""

    def close(self) -> None:
        if hasattr(self.llm, "close"):
            self.llm.close()
        self.llm = None


class LlamaBackend:
    # Minimum context size before giving up on fallback retries
    _MIN_CTX = 512

    def __init__(
        self,
        n_ctx: int = 2048,
        n_gpu_layers: int = -1,
        max_tokens: int = 512,
        temp: float = 0.7,
        top_p: float = 0.9,
        trace: Callable[[str], None] | None = None,
    ):
        self.n_ctx = n_ctx
        self.n_gpu_layers = n_gpu_layers
        self.max_tokens = max_tokens
        self.temp = temp
        self.top_p = top_p
        self.trace = trace or _noop_trace

    @classmethod
    def from_config(cls, config: dict, trace: Callable[[str], None] | None = None) -> "LlamaBackend":
        return cls(
            n_ctx=int(config.get("n_ctx", 2048)),
            n_gpu_layers=int(config.get("n_gpu_layers", -1)),
            max_tokens=int(config.get("max_tokens", 512)),
            temp=float(config.get("temp", 0.7)),
            top_p=float(config.get("top_p", 0.9)),
            trace=trace,
        )

    def load(self, path: str) -> LlamaHandle:
        if not path or not os.path.isfile(path):
            raise ModelLoadFailure(f"model file not found: {path}")

        try:
            from llama_cpp import Llama
        except ImportError as exc:
            raise ModelLoadFailure(
                "llama-cpp-python is not installed. Install it to use the local LLM engine."
            ) from exc

        n_ctx = self.n_ctx
        llm_instance = None
        while n_ctx >= self._MIN_CTX:
            self.trace(f"→ init backend: {path} (n_ctx={n_ctx})")
            try:
                llm_instance = Llama(
                    model_path=path,
                    n_ctx=n_ctx,
                    n_gpu_layers=self.n_gpu_layers,
                    verbose=False,
                )
                break
            except Exception as ctx_err:
                err_lower = str(ctx_err).lower()
                # Only retry on context-allocation failures
                if "llama_context" in err_lower or "kv cache" in err_lower or "memory" in err_lower:
                    prev = n_ctx
                    n_ctx = max(n_ctx // 2, self._MIN_CTX) if n_ctx > self._MIN_CTX else 0
                    if n_ctx > 0:
                        self.trace(f"→ ctx alloc failed at n_ctx={prev}, retrying with n_ctx={n_ctx}")
                        continue
                raise ModelLoadFailure(f"Load Failed: {ctx_err}") from ctx_err

        if llm_instance is None:
            raise ModelLoadFailure(
                f"Failed to create llama_context: n_ctx={self.n_ctx} is too large. "
                f"Tried down to {self._MIN_CTX}."
            )

        family = classify_family(Path(path).name)
        return LlamaHandle(llm_instance, stop_markers(family), self.max_tokens, self.temp, self.top_p)


def resolve_model_path(models_dir: str | Path | None, filename: str | None = None) -> Path | None:
    """Configured file if present, otherwise the first GGUF in the directory."""
    if not models_dir:
        return None
    root = Path(models_dir)
    if filename:
        candidate = root / filename
        return candidate if candidate.is_file() else None
    if not root.is_dir():
        return None
    ggufs = sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() == ".gguf")
    return ggufs[0] if ggufs else None
