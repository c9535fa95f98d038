"""
Multi-stage connector for document-register sites.

Each document moves through:

    DISCOVERED -> FETCH_DETAIL -> RESOLVE_FILES -> DOWNLOAD -> EXTRACT_TEXT -> DONE

and may drop to FAILED from any stage. Index pages are paged by a query parameter.
Detail pages are parsed by label matching, so metadata is found whether it sits in a
definition list, a table or inline "Label: value" text. Only the best file per document
is downloaded; canonical-host copies win over mirrors, then docx/doc > pdf > pptx/ppt >
xlsx/xls.

Cancellation is checked between stages. A stage already running finishes, but no
further stage starts once the run's cancel event is set.
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit, parse_qsl

from bs4 import BeautifulSoup, NavigableString

from regintel.ontology.normalize import parse_loose_date
from regintel.ontology.policy import PolicyProfile
from regintel.ontology.terms import domain_of, host_matches
from regintel.pipeline.models import CandidateDocument, FileLink, StoredFileRef
from regintel.storage.download_index import DownloadIndex, DownloadRecord, STATUS_CACHED
from regintel.storage.object_store import ObjectStore

from .fetcher import FetchError, Fetcher
from .text_extract import extract_text

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 4000
DEFAULT_MAX_PAGES = 3
DEFAULT_MAX_DETAILS = 50

# Lower rank is preferred
EXTENSION_RANK = {
    "docx": 0,
    "doc": 0,
    "pdf": 1,
    "pptx": 2,
    "ppt": 2,
    "xlsx": 3,
    "xls": 3,
}

DETAIL_LABELS = {
    "reference_number": "Reference Number",
    "submitted_by": "Submitted By",
    "meeting_sessions": "Meeting Session(s)",
    "document_date": "Document Date",
    "relevant_to": "Relevant To",
    "document_type": "Document Type",
}

ProgressFn = Callable[[str, str, Optional[Dict[str, Any]]], None]


class DocState(str, Enum):
    DISCOVERED = "discovered"
    FETCH_DETAIL = "fetch_detail"
    RESOLVE_FILES = "resolve_files"
    DOWNLOAD = "download"
    EXTRACT_TEXT = "extract_text"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DetailPage:
    url: str
    title: str
    published_date: Optional[str] = None
    metadata: Dict[str, Optional[str]] = field(default_factory=dict)
    files: List[FileLink] = field(default_factory=list)
    body_text: str = ""


@dataclass
class DocumentJob:
    """Per-document state carried through the stages."""
    url: str
    state: DocState = DocState.DISCOVERED
    history: List[DocState] = field(default_factory=lambda: [DocState.DISCOVERED])
    detail: Optional[DetailPage] = None
    selected: Optional[FileLink] = None
    stored: List[StoredFileRef] = field(default_factory=list)
    file_bytes: Optional[bytes] = None
    content: str = ""
    error: Optional[str] = None

    def advance(self, state: DocState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: str) -> None:
        self.error = error
        self.advance(DocState.FAILED)


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def file_extension(url: str) -> Optional[str]:
    path = urlsplit(url).path.lower()
    if "." not in path.rsplit("/", 1)[-1]:
        return None
    ext = path.rsplit(".", 1)[-1]
    return ext if ext in EXTENSION_RANK else None


def date_sort_key(value: Optional[str]) -> Tuple[int, float]:
    """Sort key: dated documents newest first, then undated/unparsable ones."""
    parsed = parse_loose_date(value)
    if parsed is None:
        return (1, 0.0)
    return (0, -parsed.timestamp())


def parse_label_value(soup: BeautifulSoup, label: str) -> Optional[str]:
    """
    Find the value shown next to a label.

    Handles <dt>/<dd>, <th>/<td>, label/value sibling elements, and
    "<strong>Label:</strong> value" or plain "Label: value" text.
    """
    exact = re.compile(rf"^\s*{re.escape(label)}\s*:?\s*$", re.IGNORECASE)
    for node in soup.find_all(string=exact):
        element = node.parent
        following = element.next_sibling
        if isinstance(following, NavigableString):
            value = _clean(str(following)).lstrip(": ").strip()
            if value:
                return value
        sibling = element.find_next_sibling()
        if sibling is not None:
            value = _clean(sibling.get_text(" "))
            if value:
                return value
        parent = element.parent
        if parent is not None:
            text = _clean(parent.get_text(" "))
            label_text = _clean(node)
            if text.lower().startswith(label_text.lower()):
                value = text[len(label_text):].lstrip(" :").strip()
                if value:
                    return value

    inline = re.compile(rf"^\s*{re.escape(label)}\s*:\s*(\S.*)$", re.IGNORECASE | re.DOTALL)
    for node in soup.find_all(string=inline):
        match = inline.match(str(node))
        if match:
            return _clean(match.group(1))
    return None


def parse_detail_page(html: str, url: str, canonical_domains: Optional[List[str]] = None) -> Optional[DetailPage]:
    """Parse a register detail page; returns None when no title can be found."""
    soup = BeautifulSoup(html, "lxml")

    og_title = soup.find("meta", attrs={"property": "og:title"})
    h1 = soup.find("h1")
    title = ""
    if og_title and og_title.get("content"):
        title = og_title["content"].strip()
    elif h1 and h1.get_text(strip=True):
        title = _clean(h1.get_text(" "))
    elif soup.title and soup.title.string:
        title = soup.title.string.strip()
    if not title:
        return None

    metadata = {key: parse_label_value(soup, label) for key, label in DETAIL_LABELS.items()}

    published = None
    time_tag = soup.find("time", attrs={"datetime": True})
    published_meta = soup.find("meta", attrs={"property": "article:published_time"})
    if time_tag:
        published = time_tag["datetime"][:10]
    elif published_meta and published_meta.get("content"):
        published = published_meta["content"][:10]

    canonical_domains = canonical_domains or []
    files: List[FileLink] = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "mailto:", "javascript:")):
            continue
        absolute = urljoin(url, href)
        ext = file_extension(absolute)
        if ext is None or absolute in seen:
            continue
        seen.add(absolute)
        host = domain_of(absolute)
        files.append(
            FileLink(
                url=absolute,
                ext=ext,
                label=_clean(anchor.get_text(" ")),
                canonical=any(host_matches(host, d) for d in canonical_domains),
            )
        )

    paragraphs = [_clean(p.get_text(" ")) for p in soup.find_all("p")]
    body_text = "\n".join([p for p in paragraphs if p][:10])

    return DetailPage(
        url=url,
        title=title,
        published_date=published,
        metadata=metadata,
        files=files,
        body_text=body_text,
    )


def select_file(files: List[FileLink]) -> Tuple[Optional[FileLink], List[StoredFileRef]]:
    """
    Choose the one file to download.

    Returns:
        (selected file or None, skip records for every other file)
    """
    if not files:
        return None, []
    ranked = sorted(
        enumerate(files),
        key=lambda pair: (0 if pair[1].canonical else 1, EXTENSION_RANK.get(pair[1].ext, 99), pair[0]),
    )
    best = ranked[0][1]
    skipped = []
    for _, candidate in ranked[1:]:
        if best.canonical and not candidate.canonical:
            reason = f"mirror skipped: canonical copy at {domain_of(best.url)}"
        else:
            reason = f"lower-ranked format ({candidate.ext}) than selected ({best.ext})"
        skipped.append(StoredFileRef(source_url=candidate.url, ext=candidate.ext, skipped_reason=reason))
    return best, skipped


def download_url_for(stored_id: str) -> str:
    return f"/api/files/{stored_id}"


class DocumentRegisterConnector:
    """Index pages -> detail pages -> one file per document -> text."""

    def __init__(
        self,
        fetcher: Fetcher,
        object_store: ObjectStore,
        download_index: DownloadIndex,
        cooldown_seconds: float,
        max_workers: int = 4,
        on_progress: Optional[ProgressFn] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.fetcher = fetcher
        self.object_store = object_store
        self.download_index = download_index
        self.cooldown_seconds = cooldown_seconds
        self.max_workers = max(1, max_workers)
        self._on_progress = on_progress
        self._now = now

    def _log(self, stage: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        logger.info(message)
        if self._on_progress is None:
            return
        try:
            self._on_progress(stage, message, meta)
        except Exception:
            logger.debug("Progress callback failed", exc_info=True)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    @staticmethod
    def page_url(list_url: str, page_param: str, page: int) -> str:
        if page <= 1:
            return list_url
        parts = urlsplit(list_url)
        params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != page_param]
        params.append((page_param, str(page)))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), ""))

    def discover(self, profile: PolicyProfile) -> List[str]:
        """Collect detail-page URLs across the profile's index pages."""
        options = profile.options
        detail_path = options.get("detail_path") or profile.path.rstrip("/") + "/"
        page_param = options.get("page_param", "page")
        max_pages = int(options.get("max_pages", DEFAULT_MAX_PAGES))
        list_url = profile.list_url()

        found: List[str] = []
        seen = set()
        for page in range(1, max_pages + 1):
            url = self.page_url(list_url, page_param, page)
            _, html = self.fetcher.fetch_html(url)
            soup = BeautifulSoup(html, "lxml")
            new_links = 0
            for anchor in soup.find_all("a", href=True):
                href = anchor["href"].strip()
                if not href or href.startswith(("#", "mailto:", "javascript:")):
                    continue
                absolute = self.fetcher.target(urljoin(url, href)).canonical_url
                parts = urlsplit(absolute)
                if domain_of(absolute) != profile.domain:
                    continue
                if not parts.path.startswith(detail_path) or parts.path.rstrip("/") == detail_path.rstrip("/"):
                    continue
                if file_extension(absolute):
                    continue
                if absolute in seen:
                    continue
                seen.add(absolute)
                found.append(absolute)
                new_links += 1
            self._log("search", f"Index page {page}: {new_links} new detail links", {"url": url})
            if new_links == 0:
                break
        return found

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _fetch_detail(self, job: DocumentJob, canonical_domains: List[str]) -> None:
        job.advance(DocState.FETCH_DETAIL)
        _, html = self.fetcher.fetch_html(job.url)
        detail = parse_detail_page(html, job.url, canonical_domains)
        if detail is None:
            job.fail("No title found on detail page")
            return
        job.detail = detail

    def _resolve_files(self, job: DocumentJob) -> None:
        job.advance(DocState.RESOLVE_FILES)
        selected, skipped = select_file(job.detail.files)
        job.selected = selected
        job.stored.extend(skipped)
        for ref in skipped:
            logger.debug(f"{job.url}: {ref.source_url} {ref.skipped_reason}")

    def _download(self, job: DocumentJob) -> None:
        job.advance(DocState.DOWNLOAD)
        selected = job.selected
        if selected is None:
            return
        file_url = self.fetcher.target(selected.url).canonical_url

        record = self.download_index.get(file_url)
        if record and record.status == STATUS_CACHED and record.stored_id:
            if self.object_store.exists(record.stored_id):
                record.last_seen = self._now().isoformat()
                self.download_index.set(file_url, record)
                job.file_bytes = self.object_store.get(record.stored_id)
                job.stored.append(
                    StoredFileRef(
                        source_url=file_url,
                        stored_id=record.stored_id,
                        sha256=record.sha256,
                        size=record.size,
                        ext=record.ext,
                        cached=True,
                        download_url=download_url_for(record.stored_id),
                    )
                )
                return

        if self.download_index.is_cooling_down(file_url, self.cooldown_seconds, now=self._now()):
            self._log("download", f"Cooldown skip for {file_url}", {"url": file_url})
            job.stored.append(StoredFileRef(source_url=file_url, ext=selected.ext, skipped_reason="cooldown"))
            return

        try:
            _, body, _ = self.fetcher.fetch_bytes(file_url)
        except FetchError as e:
            self.download_index.set(file_url, DownloadRecord.failed(e.message, now=self._now()))
            self._log("download", f"Download failed for {file_url}: {e.message}", {"url": file_url})
            job.stored.append(StoredFileRef(source_url=file_url, ext=selected.ext, error=e.message))
            return

        stored = self.object_store.put(file_url, body, selected.ext)
        download_url = download_url_for(stored.id)
        self.download_index.set(file_url, DownloadRecord.cached(stored, download_url, now=self._now()))
        job.file_bytes = body if not stored.cached else self.object_store.get(stored.id)
        job.stored.append(
            StoredFileRef(
                source_url=file_url,
                stored_id=stored.id,
                sha256=stored.sha256,
                size=stored.size,
                ext=stored.ext,
                cached=stored.cached,
                download_url=download_url,
            )
        )

    def _extract(self, job: DocumentJob) -> None:
        job.advance(DocState.EXTRACT_TEXT)
        text = ""
        if job.file_bytes is not None and job.selected is not None:
            text = extract_text(job.file_bytes, job.selected.ext)
        if not text:
            text = job.detail.body_text
        job.content = text[:MAX_CONTENT_CHARS]
        job.file_bytes = None

    def _run_stages(self, job: DocumentJob, stages: List[Callable[[DocumentJob], None]],
                    cancel_event: Optional[threading.Event]) -> DocumentJob:
        for stage in stages:
            if job.state == DocState.FAILED:
                break
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                stage(job)
            except FetchError as e:
                job.fail(str(e))
            except Exception as e:
                logger.exception(f"Unexpected error processing {job.url}")
                job.fail(str(e))
        return job

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def collect(
        self,
        profile: PolicyProfile,
        max_results: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[CandidateDocument]:
        """
        Run all stages for one register profile.

        Args:
            profile: Policy profile with connector ``document_register``
            max_results: Maximum number of documents returned (after date ordering)
            cancel_event: Set to stop scheduling further stages

        Returns:
            Completed documents, newest first
        """
        canonical_domains = list(profile.options.get("canonical_file_domains", []) or [])
        max_details = int(profile.options.get("max_details", DEFAULT_MAX_DETAILS))

        urls = self.discover(profile)[:max_details]
        jobs = [DocumentJob(url=u) for u in urls]
        self._log("search", f"{profile.id}: {len(jobs)} documents discovered")

        detail_stage = [lambda job: self._fetch_detail(job, canonical_domains)]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            jobs = list(pool.map(lambda job: self._run_stages(job, detail_stage, cancel_event), jobs))

        parsed = [j for j in jobs if j.detail is not None and j.state != DocState.FAILED]
        for job in jobs:
            if job.state == DocState.FAILED:
                self._log("error", f"Detail fetch failed for {job.url}: {job.error}", {"url": job.url})

        parsed.sort(key=lambda j: date_sort_key(j.detail.published_date or j.detail.metadata.get("document_date")))
        selected = parsed[:max_results]

        file_stages = [self._resolve_files, self._download, self._extract]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            selected = list(pool.map(lambda job: self._run_stages(job, file_stages, cancel_event), selected))

        results = []
        for job in selected:
            if job.state == DocState.EXTRACT_TEXT:
                job.advance(DocState.DONE)
            if job.state != DocState.DONE:
                continue
            detail = job.detail
            stored_ok = [s for s in job.stored if s.stored_id]
            results.append(
                CandidateDocument(
                    url=job.url,
                    title=detail.title,
                    content=job.content,
                    published_date=detail.published_date or detail.metadata.get("document_date"),
                    profile_id=profile.id,
                    raw_file_uri=stored_ok[0].source_url if stored_ok else (job.selected.url if job.selected else None),
                    files=detail.files,
                    stored_files=job.stored,
                    metadata=detail.metadata,
                )
            )

        if cancel_event is not None and cancel_event.is_set():
            self._log("cancel", f"{profile.id}: cancelled, {len(results)} documents completed")
        return results
