"""Kroki HTTP rendering service client."""

from dataclasses import dataclass

import httpx

from flowchart_ai.domain.rendering import RenderOptions
from flowchart_ai.services.rendering import Renderer


@dataclass
class HttpxKrokiRenderer(Renderer):
    """Renders Mermaid source to svg, png or pdf through a Kroki server."""

    base_url: str
    http_client: httpx.AsyncClient
    timeout: float = 10.0

    @classmethod
    def create(cls, base_url: str, timeout: float = 10.0) -> "HttpxKrokiRenderer":
        """Create a renderer with a managed httpx session."""
        return cls(
            base_url=base_url.rstrip("/"),
            http_client=httpx.AsyncClient(),
            timeout=timeout,
        )

    async def render(
        self, source: str, *, diagram_type: str, options: RenderOptions
    ) -> bytes:
        """POST the source as plain text and return the rendered bytes."""
        url = f"{self.base_url}/mermaid/{options.format}"
        response = await self.http_client.post(
            url,
            content=_with_theme(source, options.theme).encode("utf-8"),
            headers={"Content-Type": "text/plain"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.content

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()


def _with_theme(source: str, theme: str) -> str:
    if theme == "default" or source.lstrip().startswith("%%{"):
        return source
    return f"%%{{init: {{'theme': '{theme}'}}}}%%\n{source}"
