"""REST API for conversation history management."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from healthchat.core.database import get_session
from healthchat.models.conversation import ChatMessage, Conversation
from healthchat.services.chat.store import ConversationStore

router = APIRouter()
logger = logging.getLogger(__name__)


class RenameRequest(BaseModel):
    title: str


def _owned_conversation(session: Session, conversation_id: str, user_id: str) -> Conversation:
    conv = session.get(Conversation, conversation_id)
    if not conv or conv.user_id != user_id:
        logger.debug(f"Conversation {conversation_id} not found for user {user_id}")
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


def _summary(c: Conversation) -> dict:
    return {
        "id": c.id,
        "title": c.title,
        "patient_id": c.patient_id,
        "created_at": c.created_at.isoformat(),
        "updated_at": c.updated_at.isoformat(),
    }


@router.get("/")
async def list_conversations(user_id: str, patient_id: str | None = None, session: Session = Depends(get_session)):
    query = select(Conversation).where(Conversation.user_id == user_id)
    if patient_id is not None:
        query = query.where(Conversation.patient_id == patient_id)
    conversations = session.exec(
        query.order_by(Conversation.updated_at.desc())  # type: ignore
    ).all()
    return [_summary(c) for c in conversations]


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: str, session: Session = Depends(get_session)):
    conv = _owned_conversation(session, conversation_id, user_id)

    messages = session.exec(
        select(ChatMessage)
        .where(ChatMessage.conversation_id == conversation_id)
        .order_by(ChatMessage.created_at)  # type: ignore
    ).all()

    return {
        **_summary(conv),
        "messages": [
            {
                "id": m.id,
                "type": m.type,
                "content": m.content,
                "image_url": m.image_url,
                "products": m.products,
                "created_at": m.created_at.isoformat(),
            }
            for m in messages
        ],
    }


@router.patch("/{conversation_id}")
async def rename_conversation(
    conversation_id: str, user_id: str, body: RenameRequest, session: Session = Depends(get_session)
):
    title = body.title.strip()
    if not title:
        raise HTTPException(status_code=422, detail="Title must not be empty")

    conv = _owned_conversation(session, conversation_id, user_id)
    conv.title = title
    conv.updated_at = datetime.now(timezone.utc)
    session.add(conv)
    session.commit()
    session.refresh(conv)
    return _summary(conv)


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, user_id: str, session: Session = Depends(get_session)):
    if not ConversationStore(session.get_bind()).delete_conversation(conversation_id, user_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    logger.debug(f"Deleted conversation {conversation_id}")
    return {"status": "deleted"}
