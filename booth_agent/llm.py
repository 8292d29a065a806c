"""Thin async wrapper over an OpenAI-compatible chat endpoint."""

from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI


def build_messages(system: str, user_text: str, image_url: Optional[str] = None) -> List[Dict[str, Any]]:
    """System + user messages; the image, if any, rides along as a multimodal content part."""
    if image_url:
        user: Dict[str, Any] = {
            "role": "user",
            "content": [
                {"type": "text", "text": user_text},
                {"type": "image_url", "image_url": {"url": image_url}},
            ],
        }
    else:
        user = {"role": "user", "content": user_text}
    return [{"role": "system", "content": system}, user]


class ChatModel:
    """One model name on one client, called either whole or as a token stream."""

    def __init__(self, client: AsyncOpenAI, model: str, temperature: float = 0.2) -> None:
        self._client = client
        self.model = model
        self.temperature = temperature

    async def complete(self, system: str, user_text: str, image_url: Optional[str] = None) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=build_messages(system, user_text, image_url),
            temperature=self.temperature,
        )
        return response.choices[0].message.content or ""

    async def stream(
        self, system: str, user_text: str, image_url: Optional[str] = None
    ) -> AsyncIterator[str]:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=build_messages(system, user_text, image_url),
            temperature=self.temperature,
            stream=True,
        )
        async for chunk in response:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content
