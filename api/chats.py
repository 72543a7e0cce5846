import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sse_starlette.sse import EventSourceResponse

from api.relay import StreamSession, build_context, relay_events
from api.security import current_user_id
from db.chat_store import (
    HISTORY_LIMIT, chat_belongs_to, get_owned_chat, insert_message, list_messages as fetch_messages,
    load_recent_messages,
)
from db.models import Chat
from db.session import get_db, get_session_factory
from llm.client import CompletionClient, MissingCredentialError, UpstreamError, get_client_factory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"], dependencies=[Depends(current_user_id)])

DEFAULT_TITLE = "New Chat"

# --- Schemas
class ChatOut(BaseModel):
    id: str
    title: str
    created_at: datetime
    class Config:
        from_attributes = True

class ChatCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=120)

class ChatRename(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)

class ChatCreated(BaseModel):
    chat: ChatOut

class ChatList(BaseModel):
    chats: List[ChatOut]

class MessageIn(BaseModel):
    content: str = Field(..., min_length=1)

class MessageOut(BaseModel):
    id: int
    chat_id: str
    role: str             # "user" | "assistant"
    content: str
    created_at: datetime
    class Config:
        from_attributes = True

class MessagePair(BaseModel):
    user_message: MessageOut
    assistant_message: MessageOut


def _db_error(e: Exception, what: str = "db error") -> HTTPException:
    logger.error("%s: %s", what, e)
    return HTTPException(500, {"error": what, "details": str(e)})


@router.get("", response_model=ChatList)
def list_chats(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        chats = db.query(Chat).filter(Chat.user_id == user_id).order_by(Chat.created_at.desc()).all()
    except SQLAlchemyError as e:
        raise _db_error(e)
    return {"chats": chats}

@router.post("", response_model=ChatCreated, status_code=201)
def create_chat(
    body: Optional[ChatCreate] = None,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    title = (body.title if body else None) or DEFAULT_TITLE
    chat = Chat(id=str(uuid.uuid4()), user_id=user_id, title=title)
    db.add(chat)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _db_error(e)
    db.refresh(chat)
    return {"chat": chat}

@router.get("/{chat_id}", response_model=ChatOut)
def get_chat(chat_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    chat = get_owned_chat(db, chat_id, user_id)
    if not chat: raise HTTPException(404, "chat not found")
    return chat

@router.patch("/{chat_id}", response_model=ChatOut)
def rename_chat(chat_id: str, body: ChatRename, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    chat = get_owned_chat(db, chat_id, user_id)
    if not chat: raise HTTPException(404, "chat not found")
    chat.title = body.title
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _db_error(e)
    db.refresh(chat)
    return chat

@router.delete("/{chat_id}")
def delete_chat(chat_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    chat = get_owned_chat(db, chat_id, user_id)
    if not chat: raise HTTPException(404, "chat not found")
    db.delete(chat)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise _db_error(e)
    return {"message": "Chat deleted"}

@router.get("/{chat_id}/messages", response_model=List[MessageOut])
def list_messages(chat_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        if not chat_belongs_to(db, chat_id, user_id):
            raise HTTPException(404, "chat not found")
        return fetch_messages(db, chat_id)
    except SQLAlchemyError as e:
        raise _db_error(e)


# --- Sending a message
#
# Two response contracts exist for POST /chats/{chat_id}/messages: an SSE
# stream and a plain JSON pair. ``send_router`` binds exactly one of them.

def _prepare_reply(db: Session, chat_id: str, user_id: str, content: str,
                   client_factory: Callable[[], CompletionClient]):
    """Ownership check, history, context and client; nothing is written yet."""
    try:
        if not chat_belongs_to(db, chat_id, user_id):
            raise HTTPException(404, "chat not found")
        history = load_recent_messages(db, chat_id, HISTORY_LIMIT)
    except SQLAlchemyError as e:
        raise _db_error(e, "failed to load chat history")
    history.reverse()
    context = build_context(history, content)

    try:
        client = client_factory()
    except MissingCredentialError as e:
        logger.error("%s", e)
        raise HTTPException(500, str(e))
    return context, client


def _save_user_message(db: Session, chat_id: str, content: str):
    try:
        return insert_message(db, chat_id, "user", content)
    except SQLAlchemyError as e:
        raise _db_error(e, "failed to save user message")


def send_message_stream(
    chat_id: str,
    body: MessageIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
    client_factory: Callable[[], CompletionClient] = Depends(get_client_factory),
):
    context, client = _prepare_reply(db, chat_id, user_id, body.content, client_factory)
    _save_user_message(db, chat_id, body.content)

    try:
        handle = client.stream(context).open()
    except UpstreamError as e:
        logger.error("model error chat_id=%s: %s", chat_id, e)
        raise HTTPException(500, {"error": "model error", "details": str(e)})

    def persist(text: str) -> None:
        with session_factory() as s:
            insert_message(s, chat_id, "assistant", text)

    session = StreamSession(chat_id, handle)
    return EventSourceResponse(relay_events(session, persist))


def send_message_sync(
    chat_id: str,
    body: MessageIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    client_factory: Callable[[], CompletionClient] = Depends(get_client_factory),
):
    context, client = _prepare_reply(db, chat_id, user_id, body.content, client_factory)
    user_msg = _save_user_message(db, chat_id, body.content)

    try:
        reply = client.complete(context)
    except UpstreamError as e:
        logger.error("model error chat_id=%s: %s", chat_id, e)
        raise HTTPException(500, {"error": "model error", "details": str(e)})

    try:
        assistant_msg = insert_message(db, chat_id, "assistant", reply)
    except SQLAlchemyError as e:
        raise _db_error(e, "failed to save assistant message")
    return {"user_message": user_msg, "assistant_message": assistant_msg}


def send_router(mode: str = "stream") -> APIRouter:
    """Router carrying the send-message route for the given reply mode."""
    r = APIRouter(prefix="/chats", tags=["chats"], dependencies=[Depends(current_user_id)])
    if mode == "sync":
        r.add_api_route("/{chat_id}/messages", send_message_sync, methods=["POST"],
                        response_model=MessagePair)
    elif mode == "stream":
        r.add_api_route("/{chat_id}/messages", send_message_stream, methods=["POST"])
    else:
        raise ValueError(f"unknown reply mode: {mode!r}")
    return r
