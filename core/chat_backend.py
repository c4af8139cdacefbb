"""Attune — Chat Backend

Language-model collaborator: send a message into a conversation, get the
assistant's text back. OllamaChatBackend keeps per-conversation history
and posts it to Ollama's /api/chat.
"""

from __future__ import annotations
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Protocol

import aiohttp

from models.models import AttuneError

logger = logging.getLogger("attune.chat_backend")

MAX_HISTORY_MESSAGES = 50


class ChatBackendError(AttuneError):
    """The model endpoint failed or returned an unusable response."""


class ChatBackend(Protocol):
    async def send(self, model: str, chat_id: str, role: str, content: str) -> str: ...


class OllamaChatBackend:
    def __init__(self, base_url: str, timeout: float = 120.0,
                 max_history: int = MAX_HISTORY_MESSAGES):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_history = max_history
        self._histories: Dict[str, List[Dict[str, str]]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def history(self, chat_id: str) -> List[Dict[str, str]]:
        return list(self._histories.get(chat_id, []))

    async def send(self, model: str, chat_id: str, role: str, content: str) -> str:
        """Append a message to the conversation and return the reply.

        System messages are recorded without a round trip; the model sees
        them with the next user message.
        """
        async with self._locks[chat_id]:
            history = self._histories[chat_id]
            history.append({"role": role, "content": content})
            history[:] = self._trimmed(history)
            if role == "system":
                return ""

            body = {"model": model, "messages": list(history), "stream": False}
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.post(
                        f"{self.base_url}/api/chat",
                        json=body,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as resp:
                        if resp.status != 200:
                            raise ChatBackendError(f"Ollama returned status {resp.status}")
                        result = await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                history.pop()
                raise ChatBackendError(f"Chat request failed: {type(e).__name__}: {e}") from e
            except ChatBackendError:
                history.pop()
                raise

            reply = _reply_text(result)
            if reply is None:
                history.pop()
                raise ChatBackendError("Ollama response has no message content")
            history.append({"role": "assistant", "content": reply})
            history[:] = self._trimmed(history)
            return reply

    def _trimmed(self, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        if len(history) <= self.max_history:
            return list(history)
        # The system preamble always stays at the head of the window
        head = [m for m in history[:1] if m["role"] == "system"]
        return head + history[-(self.max_history - len(head)):]


def _reply_text(result) -> Optional[str]:
    if not isinstance(result, dict):
        return None
    message = result.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None
