"""Image generation for creative tasks."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class ImageGenerator(Protocol):
    async def generate(self, prompt: str) -> Optional[str]:
        """Return the URL of an image rendered from ``prompt``."""


class OpenAIImageGenerator:
    """Render images with the OpenAI images API."""

    def __init__(
        self,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        quality: str = "standard",
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.size = size
        self.quality = quality
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def generate(self, prompt: str) -> Optional[str]:
        response = await self.client.images.generate(
            model=self.model,
            prompt=prompt,
            n=1,
            size=self.size,
            quality=self.quality,
        )
        if not response.data:
            return None
        return response.data[0].url
