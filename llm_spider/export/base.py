from __future__ import annotations

from typing import Protocol

from ..engines.base import CrawlReport


class Composer(Protocol):
    def compose(self, report: CrawlReport) -> str:
        ...
