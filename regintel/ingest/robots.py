"""Per-host robots.txt cache."""

import logging
import threading
from typing import Callable, Dict, Optional
from urllib import robotparser
from urllib.parse import urlsplit

from regintel.ontology.terms import domain_of

logger = logging.getLogger(__name__)


class RobotsCache:
    """
    Thread-safe cache of parsed robots.txt policies, one per host.

    robots.txt is fetched lazily on first use of a host. A failed fetch or a non-2xx
    response caches an empty policy, which allows every path. Lookups for different
    hosts never wait on each other: each host has its own lock for the initial fetch.
    """

    def __init__(self, fetch_text: Callable[[str], Optional[str]]):
        """
        Args:
            fetch_text: Callable returning the robots.txt body for a URL, or None when
                unavailable. Must not go through robots enforcement itself.
        """
        self._fetch_text = fetch_text
        self._parsers: Dict[str, robotparser.RobotFileParser] = {}
        self._lock = threading.Lock()
        self._host_locks: Dict[str, threading.Lock] = {}

    def _host_lock(self, host: str) -> threading.Lock:
        with self._lock:
            lock = self._host_locks.get(host)
            if lock is None:
                lock = threading.Lock()
                self._host_locks[host] = lock
            return lock

    def _load(self, url: str) -> robotparser.RobotFileParser:
        parts = urlsplit(url)
        robots_url = f"{parts.scheme}://{parts.netloc}/robots.txt"
        try:
            body = self._fetch_text(robots_url) or ""
        except Exception as e:
            logger.warning(f"robots.txt unavailable for {parts.netloc}: {e}")
            body = ""
        parser = robotparser.RobotFileParser(robots_url)
        parser.parse(body.splitlines())
        return parser

    def parser_for(self, url: str) -> robotparser.RobotFileParser:
        host = domain_of(url)
        parser = self._parsers.get(host)
        if parser is not None:
            return parser
        with self._host_lock(host):
            parser = self._parsers.get(host)
            if parser is None:
                parser = self._load(url)
                self._parsers[host] = parser
            return parser

    def is_allowed(self, url: str, user_agent: str) -> bool:
        return self.parser_for(url).can_fetch(user_agent, url)

    def clear(self) -> None:
        with self._lock:
            self._parsers.clear()
