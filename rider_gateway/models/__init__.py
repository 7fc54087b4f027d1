from rider_gateway.models.chat import ChatMessage, ChatSession

__all__ = ["ChatMessage", "ChatSession"]
