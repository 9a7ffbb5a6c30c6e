from .document import (
    analyze_document,
    analyze_links,
    count_headings,
    extract_html_version,
    extract_title,
    has_login_form,
)
from .prober import LinkProber
from .schemas import LinkAnalysis, LinkInfo, PageMetadata

__all__ = [
    "LinkAnalysis",
    "LinkInfo",
    "LinkProber",
    "PageMetadata",
    "analyze_document",
    "analyze_links",
    "count_headings",
    "extract_html_version",
    "extract_title",
    "has_login_form",
]
