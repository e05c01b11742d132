"""Streaming chat with a single app."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Protocol

from .exceptions import CompletionProtocolError
from .models import AppConfig, GenerateChunk, GenerateRequest, Message
from .repository import WorkflowRepository

logger = logging.getLogger(__name__)


class StreamingBackend(Protocol):
    def generate_stream(self, request: GenerateRequest) -> AsyncIterator[GenerateChunk]: ...


class ChatService:
    """
    Chat session bound to one app; history lives in the repository.

    Usage:
        chat = ChatService(app, client, repository)
        async for fragment in chat.stream_reply("Explain asyncio.timeout"):
            print(fragment, end="")
        reply = chat.last_reply
    """

    def __init__(self, app: AppConfig, client: StreamingBackend, repository: WorkflowRepository):
        self.app = app
        self._client = client
        self._repository = repository
        self.last_reply: str | None = None

    @property
    def history(self) -> list[Message]:
        return self._repository.get_chat_history(self.app.app_name)

    async def stream_reply(self, message: str) -> AsyncIterator[str]:
        """
        Send a user message and yield reply fragments as they arrive.

        When the stream restarts, the fragments of the aborted attempt are
        discarded from the recorded reply; the first fragment of the new
        attempt is yielded after an empty-string reset marker. The assistant
        message is recorded only once the stream completes.

        Raises:
            RetriesExhaustedError: Stream failed on every attempt
            CompletionProtocolError: Backend reported an error in a chunk
        """
        self._repository.add_message(self.app.app_name, Message(role="user", content=message))
        self.last_reply = None

        parts: list[str] = []
        current_attempt = 1
        async for chunk in self._client.generate_stream(self.app.to_generate_request(message)):
            if chunk.error:
                raise CompletionProtocolError(f"Backend error during chat: {chunk.error}")

            if chunk.attempt != current_attempt:
                logger.warning(
                    f"Chat stream for '{self.app.app_name}' restarted (attempt {chunk.attempt}); "
                    f"discarding {len(parts)} fragments"
                )
                current_attempt = chunk.attempt
                parts.clear()
                yield ""

            if chunk.response:
                parts.append(chunk.response)
                yield chunk.response

        reply = "".join(parts)
        self._repository.add_message(
            self.app.app_name, Message(role="assistant", content=reply)
        )
        self.last_reply = reply

    async def reply(self, message: str) -> str:
        """Send a user message and return the complete reply."""
        async for _fragment in self.stream_reply(message):
            pass
        return self.last_reply or ""

    def clear_history(self) -> None:
        self._repository.clear_chat_history(self.app.app_name)
        logger.info(f"Cleared chat history for '{self.app.app_name}'")


__all__ = ["ChatService", "StreamingBackend"]
