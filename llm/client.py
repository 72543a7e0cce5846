"""Upstream completion service client.

Handlers never build a client inline: they receive a factory through
``get_client_factory`` so tests (or another provider) can swap it out.
"""
import logging
import os
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from ollama import Client

logger = logging.getLogger(__name__)

# ---- Config (env overridable) ----
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "https://ollama.com")
API_KEY_ENV = "OLLAMA_API_KEY"

# fixed for the reply path, not user-configurable
CHAT_MODEL = "gpt-oss:20b"
STREAM = True

PromptMessages = List[Dict[str, str]]


class UpstreamError(Exception):
    """The completion service failed (open, mid-stream or non-streaming call)."""


class MissingCredentialError(UpstreamError):
    pass


class StreamHandle:
    """One open streaming completion, exposed as an iterator of text fragments.

    Iteration ends when the upstream signals end of stream; a failure while
    pulling raises ``UpstreamError``. A handle is not restartable: open a new
    one to retry. ``close()`` releases the connection and may be called more
    than once.
    """

    def __init__(self, chunks: Iterator[str]):
        self._chunks = chunks
        self._primed: Optional[str] = None
        self._has_primed = False
        self._exhausted = False
        self.closed = False

    def open(self) -> "StreamHandle":
        """Pull the first fragment so connect/auth failures surface before any relay."""
        try:
            self._primed = next(self._chunks)
            self._has_primed = True
        except StopIteration:
            self._exhausted = True
        except Exception as e:
            self.close()
            raise UpstreamError(str(e)) from e
        return self

    def __iter__(self) -> "StreamHandle":
        return self

    def __next__(self) -> str:
        if self.closed or self._exhausted:
            raise StopIteration
        if self._has_primed:
            self._has_primed = False
            return self._primed
        try:
            return next(self._chunks)
        except StopIteration:
            self._exhausted = True
            raise
        except Exception as e:
            raise UpstreamError(str(e)) from e

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "StreamHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class CompletionClient(Protocol):
    def stream(self, messages: PromptMessages) -> StreamHandle: ...

    def complete(self, messages: PromptMessages) -> str: ...


def _fragments(parts) -> Iterator[str]:
    # closing this generator closes the underlying ollama stream (and its HTTP response)
    try:
        for part in parts:
            yield (part.get("message") or {}).get("content") or ""
    finally:
        close = getattr(parts, "close", None)
        if close is not None:
            close()


class OllamaCompletionClient:
    """Chat completions against an Ollama-compatible endpoint."""

    def __init__(self, api_key: str, host: str = OLLAMA_HOST):
        # no timeout: long generations must not be cut off
        self._client = Client(
            host=host,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=None,
        )

    def stream(self, messages: PromptMessages) -> StreamHandle:
        logger.debug("opening stream model=%s messages=%d", CHAT_MODEL, len(messages))
        try:
            parts = self._client.chat(model=CHAT_MODEL, messages=messages, stream=STREAM)
        except Exception as e:
            raise UpstreamError(str(e)) from e
        return StreamHandle(_fragments(parts))

    def complete(self, messages: PromptMessages) -> str:
        try:
            resp = self._client.chat(model=CHAT_MODEL, messages=messages, stream=False)
        except Exception as e:
            raise UpstreamError(str(e)) from e
        return (resp.get("message") or {}).get("content") or ""


def make_completion_client() -> CompletionClient:
    api_key = os.getenv(API_KEY_ENV)
    if not api_key:
        raise MissingCredentialError(f"missing {API_KEY_ENV} in env")
    return OllamaCompletionClient(api_key)


def get_client_factory() -> Callable[[], CompletionClient]:
    return make_completion_client
