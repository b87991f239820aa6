"""OpenAI-compatible chat completions client for diagram generation."""

from dataclasses import dataclass

from openai import AsyncOpenAI

from flowchart_ai.domain.errors import MalformedResponseError
from flowchart_ai.services.analysis import GenerationClient


@dataclass
class OpenAIGenerationClient(GenerationClient):
    """Generation client backed by a chat completions endpoint.

    DeepSeek exposes the OpenAI wire format, so the official SDK is pointed
    at its base URL.
    """

    client: AsyncOpenAI

    @classmethod
    def create(
        cls, api_key: str, base_url: str, timeout: float = 45.0
    ) -> "OpenAIGenerationClient":
        """Create a client with SDK-level retries disabled."""
        return cls(
            client=AsyncOpenAI(
                api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
            )
        )

    async def complete(
        self, prompt: str, *, model: str, temperature: float, max_tokens: int
    ) -> str:
        """Send the prompt as a single user message and return the reply."""
        response = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
            top_p=0.9,
            stream=False,
        )
        if not response.choices:
            raise MalformedResponseError("Generation response has no choices")
        content = response.choices[0].message.content
        if not content:
            raise MalformedResponseError("Generation response is empty")
        return content

    async def close(self) -> None:
        await self.client.close()
