"""Conversation and message persistence for the chat coordinator."""

import logging
from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from healthchat.models.conversation import PLACEHOLDER_TITLE, ChatMessage, Conversation

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, engine: Engine):
        self._engine = engine

    def create_conversation(self, user_id: str, patient_id: str, title: str) -> Conversation:
        with Session(self._engine) as session:
            conv = Conversation(user_id=user_id, patient_id=patient_id, title=title)
            session.add(conv)
            session.commit()
            session.refresh(conv)
            logger.debug(f"Created conversation {conv.id} for patient {patient_id}")
            return conv

    def get_conversation(self, conversation_id: str, user_id: str) -> Conversation | None:
        with Session(self._engine) as session:
            conv = session.get(Conversation, conversation_id)
            if conv is None or conv.user_id != user_id:
                return None
            return conv

    def list_conversations(self, user_id: str, patient_id: str | None = None) -> list[Conversation]:
        with Session(self._engine) as session:
            query = select(Conversation).where(Conversation.user_id == user_id)
            if patient_id is not None:
                query = query.where(Conversation.patient_id == patient_id)
            return list(session.exec(query.order_by(Conversation.updated_at.desc())).all())  # type: ignore

    def save_message(
        self,
        conversation_id: str,
        type: str,
        content: str,
        image_url: str | None = None,
        products: list[dict] | None = None,
    ) -> ChatMessage:
        with Session(self._engine) as session:
            msg = ChatMessage(
                conversation_id=conversation_id,
                type=type,
                content=content,
                image_url=image_url,
                products=products,
            )
            session.add(msg)
            conv = session.get(Conversation, conversation_id)
            if conv:
                conv.updated_at = datetime.now(timezone.utc)
                session.add(conv)
            session.commit()
            session.refresh(msg)
            return msg

    def load_messages(self, conversation_id: str) -> list[ChatMessage]:
        with Session(self._engine) as session:
            return list(session.exec(
                select(ChatMessage)
                .where(ChatMessage.conversation_id == conversation_id)
                .order_by(ChatMessage.created_at)  # type: ignore
            ).all())

    def recent_messages(self, conversation_id: str, limit: int = 10) -> list[ChatMessage]:
        """The last `limit` messages of a conversation, oldest first."""
        with Session(self._engine) as session:
            newest = session.exec(
                select(ChatMessage)
                .where(ChatMessage.conversation_id == conversation_id)
                .order_by(ChatMessage.created_at.desc())  # type: ignore
                .limit(limit)
            ).all()
            return list(reversed(newest))

    def rename(self, conversation_id: str, title: str, only_if_placeholder: bool = False) -> bool:
        with Session(self._engine) as session:
            conv = session.get(Conversation, conversation_id)
            if not conv:
                return False
            if only_if_placeholder and conv.title and conv.title != PLACEHOLDER_TITLE:
                return False
            conv.title = title
            conv.updated_at = datetime.now(timezone.utc)
            session.add(conv)
            session.commit()
            return True

    def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        with Session(self._engine) as session:
            conv = session.get(Conversation, conversation_id)
            if not conv or conv.user_id != user_id:
                return False

            # Delete messages first
            messages = session.exec(
                select(ChatMessage).where(ChatMessage.conversation_id == conversation_id)
            ).all()
            for msg in messages:
                session.delete(msg)

            session.delete(conv)
            session.commit()
            logger.debug(f"Deleted conversation {conversation_id}")
            return True
