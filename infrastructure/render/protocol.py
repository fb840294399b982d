"""PageRenderer protocol: the workflow depends on this, not on Playwright."""

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class RenderedPage:
    final_url: str
    title: str
    text: str
    screenshot_sha256: Optional[str] = None


class PageRenderer(Protocol):
    async def render(self, url: str, timeout_seconds: float) -> RenderedPage: ...

    async def aclose(self) -> None: ...
