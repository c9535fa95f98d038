"""List-page connectors: news listings and generic link lists on a single host."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from regintel.ontology.policy import PolicyProfile
from regintel.ontology.terms import domain_of
from regintel.pipeline.models import CandidateDocument

from .fetcher import FetchError, Fetcher

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 4000
DEFAULT_MAX_LINKS = 30

ARTICLE_TEXT_SELECTORS = ["article p"]
GENERIC_TEXT_SELECTORS = ["article p", "main p", "section p", "p"]


def _meta(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return None


def page_title(soup: BeautifulSoup) -> str:
    title = _meta(soup, property="og:title") or _meta(soup, name="title")
    if title:
        return title
    h1 = soup.find("h1")
    if h1 and h1.get_text(strip=True):
        return h1.get_text(" ", strip=True)
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    return ""


def page_published_date(soup: BeautifulSoup) -> Optional[str]:
    time_tag = soup.find("time", attrs={"datetime": True})
    value = time_tag["datetime"] if time_tag else _meta(soup, property="article:published_time")
    return value[:10] if value else None


def main_text(soup: BeautifulSoup, selectors: List[str], fallback: str = "") -> str:
    """Paragraph text from the first selector that yields any."""
    for selector in selectors:
        paragraphs = [p.get_text(" ", strip=True) for p in soup.select(selector)]
        paragraphs = [p for p in paragraphs if p]
        if paragraphs:
            return "\n".join(paragraphs)
    return fallback


def parse_article(html: str, url: str, selectors: List[str]) -> Optional[CandidateDocument]:
    soup = BeautifulSoup(html, "lxml")
    title = page_title(soup)
    if not title:
        return None
    first_p = soup.find("p")
    description = (
        _meta(soup, property="og:description")
        or _meta(soup, name="description")
        or (first_p.get_text(" ", strip=True) if first_p else "")
    )
    content = main_text(soup, selectors, description)
    return CandidateDocument(
        url=url,
        title=title,
        content=content[:MAX_CONTENT_CHARS],
        published_date=page_published_date(soup),
    )


class ListConnector:
    """
    Collect same-host links from a list page and parse each linked page.

    Subclasses decide which links qualify and where page text lives.
    """

    text_selectors = GENERIC_TEXT_SELECTORS

    def __init__(self, fetcher: Fetcher, max_workers: int = 4):
        self.fetcher = fetcher
        self.max_workers = max(1, max_workers)

    def accepts(self, profile: PolicyProfile, path: str) -> bool:
        raise NotImplementedError

    def discover(self, profile: PolicyProfile, limit: int) -> List[str]:
        list_url, html = self.fetcher.fetch_html(profile.list_url())
        soup = BeautifulSoup(html, "lxml")
        list_host = domain_of(list_url)

        links: List[str] = []
        seen = {list_url}
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if not href or href.startswith(("#", "mailto:", "javascript:")):
                continue
            absolute = self.fetcher.target(urljoin(list_url, href)).canonical_url
            if absolute in seen or domain_of(absolute) != list_host:
                continue
            if not self.accepts(profile, urlsplit(absolute).path):
                continue
            seen.add(absolute)
            links.append(absolute)
            if len(links) >= limit:
                break
        logger.info(f"{profile.id}: {len(links)} links on {list_url}")
        return links

    def _fetch_one(self, url: str, cancel_event: Optional[threading.Event]) -> Optional[CandidateDocument]:
        if cancel_event is not None and cancel_event.is_set():
            return None
        try:
            canonical_url, html = self.fetcher.fetch_html(url)
        except FetchError as e:
            logger.warning(f"Skipping {url}: {e}")
            return None
        return parse_article(html, canonical_url, self.text_selectors)

    def collect(
        self,
        profile: PolicyProfile,
        max_results: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[CandidateDocument]:
        limit = int(profile.options.get("max_links", max(max_results * 3, DEFAULT_MAX_LINKS)))
        links = self.discover(profile, limit)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            docs = list(pool.map(lambda u: self._fetch_one(u, cancel_event), links))
        results = []
        for doc in docs:
            if doc is None:
                continue
            doc.profile_id = profile.id
            results.append(doc)
        return results


class NewsListConnector(ListConnector):
    """News listings: links under the profile's ``article_path``; text from ``article p``."""

    text_selectors = ARTICLE_TEXT_SELECTORS

    def accepts(self, profile: PolicyProfile, path: str) -> bool:
        article_path = profile.options.get("article_path") or profile.path.rstrip("/") + "/"
        return path.startswith(article_path) and path.rstrip("/") != article_path.rstrip("/")


class GenericListConnector(ListConnector):
    """Any same-host link, optionally limited to the profile's ``allowed_paths``."""

    def accepts(self, profile: PolicyProfile, path: str) -> bool:
        if not profile.allowed_paths:
            return True
        return any(path.startswith(p) for p in profile.allowed_paths)
