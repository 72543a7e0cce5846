"""Streaming reply relay: upstream fragments in, SSE events out."""
import enum
import logging
from typing import Callable, Dict, Iterable, Iterator, List

from db.models import Message
from llm.client import PromptMessages, StreamHandle, UpstreamError

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


def build_context(history: Iterable[Message], content: str) -> PromptMessages:
    """Chronological history followed by the new user message."""
    ctx: List[Dict[str, str]] = [{"role": m.role, "content": m.content} for m in history]
    ctx.append({"role": "user", "content": content})
    return ctx


class RelayState(enum.Enum):
    OPEN = "open"
    STREAMING = "streaming"
    DONE = "done"
    ABORTED = "aborted"


class StreamSession:
    """Per-request relay state. Never shared between requests."""

    def __init__(self, chat_id: str, handle: StreamHandle):
        self.chat_id = chat_id
        self.handle = handle
        self.buffer = ""
        self.state = RelayState.OPEN


def _save_reply(session: StreamSession, persist: Callable[[str], None]) -> None:
    try:
        persist(session.buffer)
    except Exception:
        logger.exception("assistant message not saved chat_id=%s content_len=%d",
                         session.chat_id, len(session.buffer))
    session.state = RelayState.DONE


def _drain(session: StreamSession, persist: Callable[[str], None]) -> None:
    """Read the rest of the stream without forwarding it, then save the reply."""
    try:
        for fragment in session.handle:
            session.buffer += fragment
    except UpstreamError as e:
        session.state = RelayState.ABORTED
        logger.warning("upstream stream failed after client left chat_id=%s: %s",
                       session.chat_id, e)
        return
    _save_reply(session, persist)


def relay_events(session: StreamSession, persist: Callable[[str], None]) -> Iterator[dict]:
    """Forward fragments as ``message`` events, then persist and emit ``done``.

    An upstream error yields a single ``error`` event and ends the relay
    without persisting anything. ``persist`` failures are logged only: the
    client already has every token and still gets ``done``. If the client
    goes away mid-stream (the generator is closed), the remaining fragments
    are still read and the full reply is saved. The upstream handle is
    closed on every exit.
    """
    try:
        session.state = RelayState.STREAMING
        try:
            for fragment in session.handle:
                if not fragment:
                    continue
                session.buffer += fragment
                yield {"event": "message", "data": fragment}
        except UpstreamError as e:
            session.state = RelayState.ABORTED
            logger.warning("upstream stream failed chat_id=%s after %d chars: %s",
                           session.chat_id, len(session.buffer), e)
            yield {"event": "error", "data": str(e)}
            return
        except GeneratorExit:
            logger.info("client disconnected chat_id=%s, finishing reply upstream", session.chat_id)
            _drain(session, persist)
            return

        _save_reply(session, persist)
        yield {"event": "done", "data": DONE_MARKER}
    finally:
        session.handle.close()
