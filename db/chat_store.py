"""Queries shared by the chat routes and the reply relay.

Every function takes an open ``Session`` and lets SQLAlchemy errors
propagate; callers decide how a storage failure is reported.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from db.models import Chat, Message

HISTORY_LIMIT = 20


def chat_belongs_to(db: Session, chat_id: str, user_id: str) -> bool:
    """True when the chat exists and is owned by ``user_id``."""
    q = db.query(Chat.id).filter(Chat.id == chat_id, Chat.user_id == user_id)
    return bool(db.query(q.exists()).scalar())


def get_owned_chat(db: Session, chat_id: str, user_id: str) -> Optional[Chat]:
    return db.query(Chat).filter(Chat.id == chat_id, Chat.user_id == user_id).first()


def load_recent_messages(db: Session, chat_id: str, limit: int = HISTORY_LIMIT) -> List[Message]:
    """Newest ``limit`` messages of a chat, newest first.

    Callers reverse the result to get chronological order.
    """
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )


def list_messages(db: Session, chat_id: str) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def insert_message(
    db: Session,
    chat_id: str,
    role: str,
    content: str,
    created_at: Optional[datetime] = None,
) -> Message:
    """Insert one message and return it with its generated id and timestamp."""
    msg = Message(
        chat_id=chat_id,
        role=role,
        content=content,
        created_at=created_at or datetime.utcnow(),
    )
    db.add(msg)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(msg)
    return msg
