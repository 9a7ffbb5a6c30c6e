from typing import Dict, List, Optional

from pydantic import BaseModel, Field

LINK_CATEGORIES = ("internal", "external", "inaccessible")


def _empty_counts() -> Dict[str, int]:
    return {category: 0 for category in LINK_CATEGORIES}


class LinkInfo(BaseModel):
    href: str
    absolute_url: str
    is_internal: bool
    anchor_text: str = ""
    status_code: Optional[int] = None


class LinkAnalysis(BaseModel):
    counts: Dict[str, int] = Field(default_factory=_empty_counts)
    links: List[LinkInfo] = Field(default_factory=list)

    def count(self, category: str) -> int:
        return self.counts.get(category, 0)


class PageMetadata(BaseModel):
    html_version: str
    title: str
    headings: Dict[str, int]
    links: LinkAnalysis
    has_login_form: bool

    def heading_count(self, level: int) -> int:
        return self.headings.get(f"h{level}", 0)
