from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from app.services.object_providers.base import DownloadItem, RenderItem


@dataclass
class AggregatedResult:
    """Artifacts accumulated across the provider attempts of one request."""

    downloads: list[DownloadItem] = field(default_factory=list)
    fallback_renders: list[RenderItem] = field(default_factory=list)
    render_provider: str | None = None
    _urls: set[str] = field(default_factory=set, repr=False)

    @property
    def has_downloads(self) -> bool:
        return bool(self.downloads)

    @property
    def has_renders(self) -> bool:
        return bool(self.fallback_renders)

    def merge_downloads(self, items: Iterable[DownloadItem]) -> int:
        """Add items whose URL is new; return how many were added."""

        added = 0
        for item in items:
            if item.url in self._urls:
                continue
            self._urls.add(item.url)
            self.downloads.append(item)
            added += 1
        return added

    def offer_renders(self, renders: list[RenderItem], provider: str) -> bool:
        """Keep *renders* as the fallback set if none has been captured yet."""

        if self.fallback_renders or not renders:
            return False
        self.fallback_renders = list(renders)
        self.render_provider = provider
        return True
