"""
Reasoning oracle - the LLM behind TIP/SKIP decisions.

OpenRouter speaks the OpenAI API, so the stock AsyncOpenAI client is used
with a different base_url. One model, no tier routing, no fallback chain:
the decision engine treats any failure here as SKIP.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from openai import AsyncOpenAI

logger = logging.getLogger("blinktip.reasoning")


class ReasoningOracle(ABC):

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Return the raw text of the model's reply."""


class OpenAIReasoningOracle(ReasoningOracle):

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "anthropic/claude-3.5-sonnet",
        temperature: float = 0.7,
        max_tokens: int = 300,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,  # default is 600s = too long for a run budget
        )

    async def complete(self, prompt: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        content = response.choices[0].message.content or ""
        logger.debug(f"Oracle reply ({self.model}): {content[:120]}")
        return content

    async def close(self):
        await self._client.close()
