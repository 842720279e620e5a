from healthchat.models.conversation import PLACEHOLDER_TITLE, ChatMessage, Conversation

__all__ = ["PLACEHOLDER_TITLE", "ChatMessage", "Conversation"]
