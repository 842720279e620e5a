"""Conversation request coordination for one chat session.

A session can switch subject or conversation while a chat request is still in
flight. Every request captures a RequestEpoch, the pair (sequence counter,
conversation id), when it is dispatched. Switching subject, switching or
creating a conversation and resetting all bump the counter, so a response is
applied only if its epoch still equals the coordinator's current epoch.
Anything else is dropped without touching the transcript and without an error.
The network call itself is never cancelled.

After an assistant reply is persisted and appended, the diagnosis, solution
and memory analyses are dispatched in the background (see analysis.py).
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from healthchat.core.config import settings
from healthchat.models.conversation import ChatMessage
from healthchat.services.chat.analysis import AnalysisTracker
from healthchat.services.chat.errors import ChatFailure, classify_chat_failure
from healthchat.services.chat.store import ConversationStore
from healthchat.services.chat.throttle import RequestThrottle, ThrottleDecision, TokenCooldown
from healthchat.services.functions.base import AnalysisRequest, BaseFunctionsClient, ChatReply, ChatRequest

logger = logging.getLogger(__name__)

IMAGE_ONLY_PROMPT = "I've uploaded an image for you to analyze."
FALLBACK_REPLY = "I apologize, but I am unable to process your request at the moment."
CREATE_CONVERSATION_ERROR = "Failed to create conversation."
LOAD_CONVERSATION_ERROR = "Failed to load conversation. Please try again."
DELETE_CONVERSATION_ERROR = "Failed to delete conversation. Please try again."
CONVERSATION_NOT_FOUND = "Conversation not found."

_EMBEDDED_JSON_RE = re.compile(r'\{[\s\S]*?"(?:diagnosis|suggested_forms)"[\s\S]*?\}', re.IGNORECASE)
_BRACKETED_RE = re.compile(r"\[[\s\S]*?\]")


def clean_reply_text(raw: str) -> str:
    """Strip structured blobs the model sometimes inlines into its reply."""
    text = _EMBEDDED_JSON_RE.sub("", raw or "")
    text = _BRACKETED_RE.sub("", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"\s+,", ",", text)
    text = re.sub(r",\s+\.", ".", text)
    return text.strip()


def conversation_title(text: str, max_length: int = 50) -> str:
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def _local_id() -> str:
    return f"local-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class RequestEpoch:
    seq: int
    conversation_id: str | None


@dataclass
class Message:
    id: str
    type: str  # "user" | "assistant"
    content: str
    image_url: str | None = None
    products: list[dict[str, Any]] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_record(cls, record: ChatMessage) -> "Message":
        return cls(
            id=record.id,
            type=record.type,
            content=record.content,
            image_url=record.image_url,
            products=record.products,
            created_at=record.created_at,
        )

    def to_history_item(self) -> dict[str, Any]:
        """Shape expected by the remote chat and analysis functions."""
        item: dict[str, Any] = {
            "type": "user" if self.type == "user" else "ai",
            "content": self.content,
            "timestamp": self.created_at.isoformat(),
        }
        if self.image_url:
            item["image_url"] = self.image_url
        return item

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "image_url": self.image_url,
            "products": self.products,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SendResult:
    status: str  # "ignored" | "blocked" | "applied" | "discarded" | "failed"
    message: Message | None = None
    failure: ChatFailure | None = None
    reason: str | None = None


class ConversationRequestCoordinator:
    """Owns the transcript, the active conversation and the single in-flight chat request."""

    def __init__(
        self,
        *,
        account_id: str,
        functions: BaseFunctionsClient,
        store: ConversationStore,
        notify: Callable[[dict], None] | None = None,
        subject_id: str | None = None,
        throttle: RequestThrottle | None = None,
        cooldown: TokenCooldown | None = None,
        analysis: AnalysisTracker | None = None,
        run_migration: bool = False,
        history_limit: int = 10,
        title_max_length: int = 50,
    ):
        self.account_id = account_id
        self.functions = functions
        self.store = store
        self._notify = notify or (lambda event: None)
        self.throttle = throttle or RequestThrottle()
        self.cooldown = cooldown or TokenCooldown()
        self.analysis = analysis or AnalysisTracker(functions, notify=self._notify)
        self.run_migration = run_migration
        self.history_limit = history_limit
        self.title_max_length = title_max_length

        self.subject_id = subject_id
        self.conversation_id: str | None = None
        self.messages: list[Message] = []
        self.is_sending = False
        self._seq = 0
        self._migration_done = False

    @classmethod
    def from_settings(
        cls,
        account_id: str,
        *,
        functions: BaseFunctionsClient,
        engine: Engine,
        notify: Callable[[dict], None] | None = None,
        run_migration: bool | None = None,
    ) -> "ConversationRequestCoordinator":
        notify = notify or (lambda event: None)
        return cls(
            account_id=account_id,
            functions=functions,
            store=ConversationStore(engine),
            notify=notify,
            throttle=RequestThrottle(
                cooldown=settings.send_cooldown_seconds,
                max_concurrent=settings.max_concurrent_requests,
                failure_threshold=settings.failure_threshold,
                failure_window=settings.failure_window_seconds,
                block_duration=settings.block_duration_seconds,
            ),
            cooldown=TokenCooldown(default_timeout=settings.token_limit_timeout_seconds),
            analysis=AnalysisTracker(
                functions,
                retention_seconds=settings.analysis_retention_seconds,
                notify=notify,
            ),
            run_migration=settings.run_conversation_migration if run_migration is None else run_migration,
            history_limit=settings.analysis_history_limit,
            title_max_length=settings.title_max_length,
        )

    # --- Epoch guard ---

    @property
    def epoch(self) -> RequestEpoch:
        return RequestEpoch(self._seq, self.conversation_id)

    def is_current(self, epoch: RequestEpoch) -> bool:
        return epoch == self.epoch

    def _reset(self, conversation_id: str | None) -> None:
        # Order matters: state is cleared before the epoch moves on.
        self.messages = []
        self.analysis.clear()
        self._seq += 1
        self.conversation_id = conversation_id
        self.is_sending = False
        self.throttle.release_all()

    def switch_subject(self, subject_id: str | None) -> None:
        logger.info(f"Switching subject {self.subject_id} -> {subject_id}")
        self._reset(None)
        self.subject_id = subject_id
        self._notify({"type": "reset", "subject_id": subject_id, "conversation_id": None})

    def switch_conversation(self, conversation_id: str) -> None:
        logger.debug(f"Switching conversation {self.conversation_id} -> {conversation_id}")
        self._reset(conversation_id)
        self._notify({"type": "reset", "subject_id": self.subject_id, "conversation_id": conversation_id})

    def start_new_conversation(self) -> None:
        self._reset(None)
        self._notify({"type": "reset", "subject_id": self.subject_id, "conversation_id": None})

    # --- Conversations ---

    def open_conversation(self, conversation_id: str) -> bool:
        """Switch to a stored conversation and load its transcript."""
        self.switch_conversation(conversation_id)
        epoch = self.epoch
        try:
            conv = self.store.get_conversation(conversation_id, self.account_id)
            records = self.store.load_messages(conversation_id) if conv else []
        except SQLAlchemyError as e:
            logger.error(f"Failed to load conversation {conversation_id}: {e}")
            self._notify({"type": "error", "kind": "generic", "message": LOAD_CONVERSATION_ERROR})
            return False

        if not self.is_current(epoch):
            return False
        if conv is None or (self.subject_id is not None and conv.patient_id != self.subject_id):
            logger.warning(f"Conversation {conversation_id} does not belong to the current subject")
            self.start_new_conversation()
            self._notify({"type": "error", "kind": "generic", "message": CONVERSATION_NOT_FOUND})
            return False

        self.messages = [Message.from_record(r) for r in records]
        self._notify({
            "type": "conversation",
            "conversation_id": conversation_id,
            "title": conv.title,
            "messages": [m.to_dict() for m in self.messages],
        })
        return True

    def delete_conversation(self, conversation_id: str) -> bool:
        try:
            deleted = self.store.delete_conversation(conversation_id, self.account_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete conversation {conversation_id}: {e}")
            self._notify({"type": "error", "kind": "generic", "message": DELETE_CONVERSATION_ERROR})
            return False
        if not deleted:
            self._notify({"type": "error", "kind": "generic", "message": CONVERSATION_NOT_FOUND})
            return False

        if conversation_id == self.conversation_id:
            self.start_new_conversation()
        self._notify({"type": "deleted", "conversation_id": conversation_id})
        return True

    async def run_startup_migration(self) -> int:
        """One-shot migration of orphaned conversations, if this coordinator was asked to run it."""
        if not self.run_migration or self._migration_done:
            return 0
        self._migration_done = True
        try:
            migrated = await self.functions.migrate_conversations()
        except Exception as e:
            # Background housekeeping; never surfaced to the user
            logger.warning(f"Conversation migration failed: {e}")
            return 0
        if migrated > 0:
            logger.info(f"Migrated {migrated} conversations to episodes")
            self._notify({
                "type": "notice",
                "title": "Chat History Updated",
                "message": (
                    f"We've organized {migrated} of your previous conversations "
                    "into health episodes for better tracking."
                ),
            })
        return migrated

    # --- Sending ---

    def send_status(self) -> ThrottleDecision:
        if self.cooldown.active():
            return ThrottleDecision(
                False, "Token limit reached. Chat will resume shortly.", self.cooldown.remaining_seconds()
            )
        return self.throttle.check()

    def _set_sending(self, value: bool) -> None:
        self.is_sending = value
        self._notify({"type": "typing", "value": value})

    async def send_message(self, text: str | None, image_url: str | None = None) -> SendResult:
        text = (text or "").strip()
        if not text and not image_url:
            return SendResult("ignored", reason="empty")
        if self.subject_id is None:
            return SendResult("ignored", reason="no_subject")

        decision = self.send_status()
        if not decision.allowed:
            self._notify({"type": "blocked", "reason": decision.reason, "wait_seconds": decision.wait_seconds})
            return SendResult("blocked", reason=decision.reason)

        content = text or IMAGE_ONLY_PROMPT
        subject_id = self.subject_id
        history = [m.to_history_item() for m in self.messages]
        user_message = Message(id=_local_id(), type="user", content=content, image_url=image_url)
        self.messages.append(user_message)
        self._notify({"type": "message", "message": user_message.to_dict()})

        title = conversation_title(content, self.title_max_length)
        conversation_id = self.conversation_id
        if conversation_id is None:
            try:
                conversation_id = self.store.create_conversation(self.account_id, subject_id, title).id
            except SQLAlchemyError as e:
                logger.error(f"Failed to create conversation: {e}")
                self._notify({"type": "error", "kind": "generic", "message": CREATE_CONVERSATION_ERROR})
                return SendResult("failed", reason="create_conversation")
            # Adopting the new conversation moves the epoch like any other switch
            self._seq += 1
            self.conversation_id = conversation_id
            self._notify({"type": "conversation", "conversation_id": conversation_id, "title": title, "created": True})

        try:
            self.store.save_message(conversation_id, "user", content, image_url=image_url)
            self.store.rename(conversation_id, title, only_if_placeholder=True)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save user message in {conversation_id}: {e}")

        self._seq += 1
        epoch = self.epoch
        request_id = uuid.uuid4().hex
        self.throttle.start(request_id)
        self._set_sending(True)

        request = ChatRequest(
            message=content,
            conversation_history=history,
            subject_id=subject_id,
            account_id=self.account_id,
            conversation_id=conversation_id,
            image_url=image_url,
        )
        try:
            reply = await self.functions.chat(request)
        except Exception as e:
            if not self.is_current(epoch):
                self.throttle.abandon(request_id)
                logger.debug(f"Dropping failure of stale request {epoch}: {e}")
                return SendResult("discarded")
            self.throttle.complete(request_id, success=False)
            self._set_sending(False)
            return self._fail(e)

        if not self.is_current(epoch):
            self.throttle.abandon(request_id)
            logger.debug(f"Dropping stale response for {epoch}, current is {self.epoch}")
            return SendResult("discarded")
        self.throttle.complete(request_id, success=True)
        self._set_sending(False)
        return self._apply_reply(conversation_id, subject_id, reply)

    def _fail(self, error: Exception) -> SendResult:
        failure = classify_chat_failure(error, default_timeout=self.cooldown.default_timeout)
        if failure.kind == "rate_limited":
            resume_at = self.cooldown.activate(failure.resume_at)
            logger.info(f"Chat rate limited until {resume_at.isoformat()}")
            self._notify({
                "type": "cooldown",
                "message": failure.message,
                "resume_at": resume_at.isoformat(),
                "wait_seconds": self.cooldown.remaining_seconds(),
            })
        else:
            logger.error(f"Chat request failed ({failure.kind}): {error}")
            self._notify({"type": "error", "kind": failure.kind, "message": failure.message})
        return SendResult("failed", failure=failure)

    def _apply_reply(self, conversation_id: str, subject_id: str, reply: ChatReply) -> SendResult:
        text = clean_reply_text(reply.text) or FALLBACK_REPLY
        try:
            record = self.store.save_message(conversation_id, "assistant", text, products=reply.products)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save assistant message in {conversation_id}: {e}")
            message = Message(id=_local_id(), type="assistant", content=text, products=reply.products)
            self.messages.append(message)
            self._notify({"type": "message", "message": message.to_dict()})
            return SendResult("applied", message=message)

        message = Message.from_record(record)
        self.messages.append(message)
        self._notify({"type": "message", "message": message.to_dict()})
        self._dispatch_analysis(message.id, conversation_id, subject_id)
        return SendResult("applied", message=message)

    def _dispatch_analysis(self, message_id: str, conversation_id: str, subject_id: str) -> None:
        try:
            recent = [Message.from_record(r) for r in self.store.recent_messages(conversation_id, self.history_limit)]
        except SQLAlchemyError as e:
            logger.warning(f"Falling back to in-memory history for analysis: {e}")
            recent = self.messages[-self.history_limit:]
        self.analysis.dispatch(
            message_id,
            AnalysisRequest(
                conversation_id=conversation_id,
                subject_id=subject_id,
                recent_messages=[m.to_history_item() for m in recent],
            ),
        )

    async def aclose(self) -> None:
        await self.analysis.aclose()
