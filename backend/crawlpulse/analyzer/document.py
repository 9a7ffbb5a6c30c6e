"""
Structural metadata extraction for a single HTML page.

All walks go through BeautifulSoup's ``find_all``/``descendants`` iterators,
which traverse the tree in document order without recursion, so deep
documents cannot blow the stack.
"""
import asyncio
import logging
from collections import Counter
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Comment, Doctype, NavigableString, Tag

from crawlpulse.core.config import settings
from crawlpulse.utils import sanitize_text

from .prober import LinkProber
from .schemas import LinkAnalysis, LinkInfo, PageMetadata

logger = logging.getLogger(__name__)

HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
NON_NETWORK_PREFIXES = ("javascript:", "mailto:", "tel:")
DEFAULT_HTML_VERSION = "HTML5"

ProgressCallback = Callable[[int, int], Awaitable[None]]


def extract_html_version(soup: BeautifulSoup) -> str:
    """Classify the document by its DOCTYPE, defaulting to HTML5."""
    doctype = next((node for node in soup.contents if isinstance(node, Doctype)), None)
    if doctype is None:
        return DEFAULT_HTML_VERSION

    declaration = " ".join(str(doctype).lower().split())
    if declaration.startswith("doctype "):
        declaration = declaration[len("doctype "):]
    if "html5" in declaration:
        return "HTML5"

    name, _, public_id = declaration.partition(" ")
    if name == "html" and not public_id:
        return "HTML5"
    if name == "html":
        if "xhtml" in public_id:
            return "XHTML"
        if "html 4" in public_id:
            return "HTML 4.01"
    return DEFAULT_HTML_VERSION


def extract_title(soup: BeautifulSoup) -> str:
    for title in soup.find_all("title"):
        first = next(iter(title.contents), None)
        if isinstance(first, NavigableString) and not isinstance(first, Comment):
            return first.strip()
    return ""


def count_headings(soup: BeautifulSoup) -> Dict[str, int]:
    return dict(Counter(tag.name for tag in soup.find_all(HEADING_TAGS)))


def has_login_form(soup: BeautifulSoup) -> bool:
    for form in soup.find_all("form"):
        if form.find("input", attrs={"type": "password"}) is not None:
            return True
    return False


def _anchor_text(anchor: Tag) -> str:
    parts = [
        str(node)
        for node in anchor.descendants
        if isinstance(node, NavigableString) and not isinstance(node, Comment)
    ]
    return "".join(parts).strip()


def resolve_href(page_url: str, href: str) -> Optional[str]:
    try:
        return urljoin(page_url, href)
    except ValueError:
        return None


def discover_links(soup: BeautifulSoup, page_url: str) -> List[Tuple[str, Optional[str], str]]:
    """
    Collect network-addressable anchors as (href, absolute_url, anchor_text).

    Empty hrefs, bare fragments and javascript:/mailto:/tel: links are dropped.
    Hrefs that cannot be resolved against the page keep ``absolute_url=None``.
    """
    found = []
    for anchor in soup.find_all("a"):
        href = anchor.get("href")
        if not href:
            continue
        candidate = href.strip()
        if candidate.startswith("#") or candidate.lower().startswith(NON_NETWORK_PREFIXES):
            continue
        found.append((href, resolve_href(page_url, candidate), _anchor_text(anchor)))
    return found


def classify_link(status_code: Optional[int], is_internal: bool) -> str:
    if status_code is None or status_code >= 400:
        return "inaccessible"
    return "internal" if is_internal else "external"


async def analyze_links(
    soup: BeautifulSoup,
    page_url: str,
    prober: LinkProber,
    concurrency: int = settings.LINK_PROBE_CONCURRENCY,
    on_progress: Optional[ProgressCallback] = None,
) -> LinkAnalysis:
    """Probe every discovered anchor and bucket it as internal, external or inaccessible."""
    candidates = discover_links(soup, page_url)
    page_host = urlparse(page_url).netloc.lower()
    semaphore = asyncio.Semaphore(max(1, concurrency))
    total = len(candidates)
    completed = 0

    async def probe(absolute_url: Optional[str]) -> Optional[int]:
        nonlocal completed
        status_code = None
        if absolute_url is not None:
            async with semaphore:
                status_code = await prober.probe(absolute_url)
        completed += 1
        if on_progress is not None:
            await on_progress(completed, total)
        return status_code

    status_codes = await asyncio.gather(*(probe(absolute) for _, absolute, _ in candidates))

    analysis = LinkAnalysis()
    for (href, absolute_url, anchor_text), status_code in zip(candidates, status_codes):
        if absolute_url is None:
            logger.debug(f"Unresolvable href {href!r} on {page_url}")
            # 无法解析的链接按站内不可达处理
            is_internal = True
            absolute_url = ""
        else:
            is_internal = urlparse(absolute_url).netloc.lower() == page_host
        analysis.counts[classify_link(status_code, is_internal)] += 1
        analysis.links.append(
            LinkInfo(
                href=href,
                absolute_url=absolute_url,
                is_internal=is_internal,
                anchor_text=anchor_text,
                status_code=status_code,
            )
        )
    return analysis


async def analyze_document(
    soup: BeautifulSoup,
    page_url: str,
    prober: LinkProber,
    heartbeat: Optional[Callable[[str], None]] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> PageMetadata:
    """Run every extractor over an already parsed page."""

    def beat(details: str) -> None:
        if heartbeat is not None:
            heartbeat(details)

    beat("Extracting metadata")
    html_version = extract_html_version(soup)
    title = sanitize_text(extract_title(soup), settings.CRAWL_TITLE_MAX_LENGTH)
    headings = count_headings(soup)
    logger.info(f"Extracted metadata for {page_url}: version={html_version}, headings={headings}")

    beat("Analyzing links")
    links = await analyze_links(soup, page_url, prober, on_progress=on_progress)
    logger.info(
        f"Link analysis for {page_url}: internal={links.count('internal')} "
        f"external={links.count('external')} inaccessible={links.count('inaccessible')} "
        f"total={len(links.links)}"
    )

    beat("Checking login form")
    return PageMetadata(
        html_version=html_version,
        title=title,
        headings=headings,
        links=links,
        has_login_form=has_login_form(soup),
    )
