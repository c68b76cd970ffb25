"""Scripted stand-ins for the llama.cpp backend."""

import threading
import time

from engine.errors import ModelLoadFailure

HANG = object()


class FakeHandle:
    def __init__(self, backend):
        self.backend = backend
        self.closed = False
        self.running = 0

    def complete(self, prompt):
        with self.backend.lock:
            self.running += 1
            self.backend.prompts.append(prompt)
            resp = self.backend.responses.pop(0) if self.backend.responses else "ok"
        try:
            if resp is HANG:
                time.sleep(self.backend.hang_seconds)
                return "late answer"
            if isinstance(resp, BaseException):
                raise resp
            if callable(resp):
                return resp(prompt)
            return resp
        finally:
            with self.backend.lock:
                self.running -= 1

    def close(self):
        with self.backend.lock:
            self.closed = True
            if self.running:
                self.backend.closed_while_running.append(self)


class FakeBackend:
    """Responses are consumed in order across every handle the backend hands out.

    ``load_results`` scripts successive loads: True = ok, False = ModelLoadFailure,
    None = backend returns no handle. Loads past the end of the list succeed.
    ``closed_while_running`` collects handles closed mid-``complete``.
    """

    def __init__(self, responses=None, load_results=None, hang_seconds=0.3):
        self.responses = list(responses or [])
        self.load_results = list(load_results or [])
        self.hang_seconds = hang_seconds
        self.prompts = []
        self.loads = []
        self.handles = []
        self.closed_while_running = []
        self.lock = threading.Lock()

    def load(self, path):
        self.loads.append(path)
        outcome = self.load_results.pop(0) if self.load_results else True
        if outcome is None:
            return None
        if outcome is False:
            raise ModelLoadFailure(f"rejected: {path}")
        handle = FakeHandle(self)
        self.handles.append(handle)
        return handle
