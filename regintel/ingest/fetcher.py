"""
Policy-governed HTTP retrieval.

Every request goes through the same steps:
    canonicalize URL -> robots.txt check -> per-host rate limit -> GET with retries
    -> anti-bot signature check

Rate-limiter and robots state belong to the Fetcher instance, so separate instances
(and tests) never share them.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from regintel.ontology.policy import PolicyStore, TrustPolicy
from regintel.ontology.terms import domain_of

from .rate_limit import HostRateLimiter
from .robots import RobotsCache

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 2.0
DEFAULT_TIMEOUT_SECONDS = 45.0
ROBOTS_TIMEOUT_SECONDS = 10.0


class FetchError(Exception):
    """Exception raised when a fetch fails."""
    def __init__(self, url: str, message: str, original_error: Optional[Exception] = None):
        self.url = url
        self.message = message
        self.original_error = original_error
        super().__init__(f"{url}: {message}")


class RobotsDenied(FetchError):
    def __init__(self, url: str):
        super().__init__(url, "Blocked by robots.txt")


class CaptchaDetected(FetchError):
    def __init__(self, url: str, signature: str):
        self.signature = signature
        super().__init__(url, f"Captcha or anti-bot page detected ({signature!r})")


class FetchTimeout(FetchError):
    pass


class HttpError(FetchError):
    def __init__(self, url: str, status: int):
        self.status = status
        super().__init__(url, f"Fetch failed ({status})")


# Compliance failures are final for the URL
NON_RETRYABLE = (RobotsDenied, CaptchaDetected)


@dataclass(frozen=True)
class FetchTarget:
    """A requested URL and its canonical form."""
    url: str
    canonical_url: str

    @property
    def host(self) -> str:
        return domain_of(self.canonical_url)


@dataclass
class FetchResult:
    url: str
    status: int
    content: bytes
    content_type: str = ""
    encoding: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower()


def build_session() -> requests.Session:
    """Session with connection pooling; status retries are handled by the Fetcher."""
    retry = Retry(total=1, connect=1, read=0, status=0, allowed_methods=["GET"], backoff_factor=0.5)
    session = requests.Session()
    session.mount("https://", HTTPAdapter(max_retries=retry, pool_maxsize=16))
    session.mount("http://", HTTPAdapter(max_retries=retry, pool_maxsize=16))
    return session


class Fetcher:
    """Rate-limited, robots-aware fetcher with bounded linear-backoff retries."""

    def __init__(
        self,
        policy: Union[PolicyStore, TrustPolicy],
        session: Optional[requests.Session] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        rate_limiter: Optional[HostRateLimiter] = None,
    ):
        self._policy = policy
        self.session = session or build_session()
        self.max_retries = max(1, int(max_retries))
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self.rate_limiter = rate_limiter or HostRateLimiter()
        self.robots = RobotsCache(self._fetch_robots_text)

    @property
    def policy(self) -> TrustPolicy:
        if isinstance(self._policy, PolicyStore):
            return self._policy.get()
        return self._policy

    def target(self, url: str) -> FetchTarget:
        return FetchTarget(url=url, canonical_url=self.policy.canonicalize(url))

    def _fetch_robots_text(self, robots_url: str) -> Optional[str]:
        crawler = self.policy.crawler
        self._wait_for_slot(domain_of(robots_url))
        response = self.session.get(
            robots_url,
            headers={"User-Agent": crawler.user_agent},
            timeout=ROBOTS_TIMEOUT_SECONDS,
        )
        if not 200 <= response.status_code < 300:
            return None
        return response.text

    def build_headers(self, host: str, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Default user agent, then host identity headers from policy/env, then call headers."""
        crawler = self.policy.crawler
        merged = {"User-Agent": crawler.user_agent}
        merged.update(crawler.headers_for(host))
        if headers:
            merged.update(headers)
        return merged

    def _wait_for_slot(self, host: str) -> None:
        self.rate_limiter.acquire(host, self.policy.crawler.min_interval_for(host))

    def _check_captcha(self, url: str, body: str) -> None:
        crawler = self.policy.crawler
        if not crawler.deny_on_captcha_or_anti_bot:
            return
        lower = body.lower()
        for signature in crawler.captcha_signatures:
            if signature in lower:
                raise CaptchaDetected(url, signature)

    def _request_once(self, target: FetchTarget, headers: Dict[str, str], timeout: float) -> FetchResult:
        self._wait_for_slot(target.host)
        try:
            response = self.session.get(target.canonical_url, headers=headers, timeout=timeout)
        except requests.Timeout as e:
            raise FetchTimeout(target.canonical_url, f"Timed out after {timeout}s", e)
        except requests.RequestException as e:
            raise FetchError(target.canonical_url, f"Request failed: {e}", e)

        if not 200 <= response.status_code < 300:
            raise HttpError(target.canonical_url, response.status_code)

        return FetchResult(
            url=target.canonical_url,
            status=response.status_code,
            content=response.content,
            content_type=response.headers.get("Content-Type", ""),
            encoding=response.encoding,
        )

    def fetch(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        expect_html: bool = True,
    ) -> FetchResult:
        """
        Fetch a URL under the crawler policy.

        Args:
            url: URL to fetch (canonicalized before any network call)
            headers: Extra request headers, applied last
            timeout: Per-request timeout in seconds
            expect_html: Treat the body as a page and apply the anti-bot check.
                Binary fetches are only checked when the server labels them HTML.

        Returns:
            FetchResult for the canonical URL

        Raises:
            RobotsDenied, CaptchaDetected: immediately, without retry
            FetchTimeout, HttpError, FetchError: after the final attempt
        """
        target = self.target(url)
        crawler = self.policy.crawler
        timeout = timeout or self.timeout_seconds

        if crawler.robots_txt_enforced and not self.robots.is_allowed(
            target.canonical_url, crawler.user_agent
        ):
            logger.warning(f"robots.txt disallows {target.canonical_url}")
            raise RobotsDenied(target.canonical_url)

        request_headers = self.build_headers(target.host, headers)
        last_error: Optional[FetchError] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = self._request_once(target, request_headers, timeout)
                if expect_html or result.is_html:
                    self._check_captcha(target.canonical_url, result.text)
                return result
            except NON_RETRYABLE:
                raise
            except FetchError as e:
                last_error = e
                if attempt < self.max_retries:
                    wait = self.backoff_seconds * attempt
                    logger.warning(
                        f"Retry {attempt}/{self.max_retries} for {target.canonical_url} in {wait}s: {e.message}"
                    )
                    self._sleep(wait)
                else:
                    logger.error(
                        f"Failed after {self.max_retries} attempts for {target.canonical_url}: {e.message}"
                    )

        raise last_error

    def fetch_html(self, url: str, **kwargs) -> Tuple[str, str]:
        """Returns (canonical_url, html)."""
        result = self.fetch(url, expect_html=True, **kwargs)
        return result.url, result.text

    def fetch_bytes(self, url: str, **kwargs) -> Tuple[str, bytes, str]:
        """Returns (canonical_url, body, content_type)."""
        result = self.fetch(url, expect_html=False, **kwargs)
        return result.url, result.content, result.content_type
