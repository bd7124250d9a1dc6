"""Oracle transport: sends prompt messages to a chat-completions endpoint."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx

from rpgencounter.backend.errors import OracleTransportError

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```[a-zA-Z]*\s*")
_CONCLUDED_TAG = re.compile(r"^\s*\[FIGHT CONCLUDED\]\s*", re.IGNORECASE)


class Oracle(Protocol):
    async def send(self, messages: list[dict[str, str]]) -> str:
        ...


class ChatCompletionsOracle:
    """OpenAI-compatible ``/chat/completions`` client.

    Also accepts the Ollama ``{"message": {"content": ...}}`` reply shape so
    the same client works against a local model server.
    """

    def __init__(
        self,
        base_url: str,
        *,
        model: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._model = model
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    async def send(self, messages: list[dict[str, str]]) -> str:
        payload = {"model": self._model, "messages": messages, "stream": False}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Oracle request to %s failed: %s", self._url, exc)
            raise OracleTransportError(f"oracle request failed: {exc}") from exc
        except ValueError as exc:
            raise OracleTransportError("oracle answered with a non-JSON body") from exc
        return _reply_text(data)


def _reply_text(data: Any) -> str:
    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                return content
        message = data.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
    raise OracleTransportError("oracle reply has no message content")


def extract_prose(raw: str) -> str:
    """Best-effort cleanup of a prose (summary) reply."""
    text = _FENCE.sub("", raw or "").strip()
    return _CONCLUDED_TAG.sub("", text).strip()
