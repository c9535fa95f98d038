"""
Declarative source trust policy.

Loads config/trust_policy.yaml and classifies URLs into a trust tier, a monitoring
stage and a route (direct write to the main table vs. the review queue).

Matching order:
    1. Profiles, in document order, by (domain, path prefix, required query params).
       First match wins.
    2. The domain table of each tier, in document order.
    3. Nothing matched: lowest tier, routed to review.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import yaml

from regintel.config.secrets import header_secret

from .terms import MonitoringStage, TrustTier, domain_of, host_matches

logger = logging.getLogger(__name__)

ROUTE_MAIN = "main"
ROUTE_REVIEW = "review_queue"


class PolicyError(Exception):
    """Raised when the policy document is missing or malformed."""
    pass


@dataclass
class CrawlerConfig:
    user_agent: str = "RegIntelBot/1.0"
    robots_txt_enforced: bool = True
    deny_on_captcha_or_anti_bot: bool = True
    captcha_signatures: List[str] = field(
        default_factory=lambda: ["captcha", "access denied", "bot detection"]
    )
    strip_utm_params: bool = True
    strip_params: List[str] = field(default_factory=list)
    normalize_trailing_slash: bool = True
    per_domain_rps: float = 1.0
    min_interval_seconds: Dict[str, float] = field(default_factory=dict)
    host_headers: Dict[str, Dict[str, str]] = field(default_factory=dict)
    env_headers: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlerConfig":
        canonicalize = data.get("canonicalize", {}) or {}
        rate_limit = data.get("rate_limit", {}) or {}
        config = cls(
            user_agent=data.get("user_agent", cls.user_agent),
            robots_txt_enforced=bool(data.get("robots_txt_enforced", True)),
            deny_on_captcha_or_anti_bot=bool(data.get("deny_on_captcha_or_anti_bot", True)),
            strip_utm_params=bool(canonicalize.get("strip_utm_params", True)),
            strip_params=[p.lower() for p in canonicalize.get("strip_params", []) or []],
            normalize_trailing_slash=bool(canonicalize.get("normalize_trailing_slash", True)),
            per_domain_rps=float(rate_limit.get("per_domain_rps", 1.0) or 1.0),
            min_interval_seconds={
                k: float(v) for k, v in (rate_limit.get("min_interval_seconds", {}) or {}).items()
            },
            host_headers=data.get("host_headers", {}) or {},
            env_headers=data.get("env_headers", {}) or {},
        )
        if data.get("captcha_signatures"):
            config.captcha_signatures = [s.lower() for s in data["captcha_signatures"]]
        return config

    def min_interval_for(self, host: str) -> float:
        """Seconds between requests to host: the default rate, slowed by any per-host floor."""
        interval = 1.0 / self.per_domain_rps if self.per_domain_rps > 0 else 0.0
        for domain, floor in self.min_interval_seconds.items():
            if host_matches(host, domain):
                interval = max(interval, floor)
        return interval

    def headers_for(self, host: str) -> Dict[str, str]:
        """Identity headers configured for host (static values, then environment values)."""
        headers: Dict[str, str] = {}
        for domain, values in self.host_headers.items():
            if host_matches(host, domain):
                headers.update(values)
        for domain, env_names in self.env_headers.items():
            if not host_matches(host, domain):
                continue
            for header, env_name in env_names.items():
                value = header_secret(env_name)
                if value:
                    headers[header] = value
        return headers


@dataclass
class TierConfig:
    tier: TrustTier
    description: str = ""
    allow_auto_extract: Optional[bool] = None
    allow_write_main: Optional[bool] = None
    domains: List[str] = field(default_factory=list)

    @property
    def writes_main(self) -> bool:
        if self.allow_write_main is None:
            return self.tier == TrustTier.top()
        return self.allow_write_main

    @property
    def auto_extract(self) -> bool:
        return True if self.allow_auto_extract is None else self.allow_auto_extract


@dataclass
class PolicyProfile:
    id: str
    connector: str
    domain: str
    path: str
    tier: TrustTier
    stage: MonitoringStage
    requires_review: bool = False
    required_query_params: Dict[str, List[str]] = field(default_factory=dict)
    allowed_paths: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyProfile":
        tier = TrustTier.parse(data.get("tier"))
        if tier is None:
            raise PolicyError(f"Profile {data.get('id')!r} has unknown tier {data.get('tier')!r}")
        try:
            stage = MonitoringStage(data.get("stage"))
        except ValueError:
            raise PolicyError(f"Profile {data.get('id')!r} has unknown stage {data.get('stage')!r}")
        domain = str(data.get("domain", "")).lower()
        if domain.startswith("www."):
            domain = domain[4:]
        return cls(
            id=data["id"],
            connector=data.get("connector", "generic_list"),
            domain=domain,
            path=data.get("path", "/"),
            tier=tier,
            stage=stage,
            requires_review=bool(data.get("requires_review", False)),
            required_query_params={
                k: [str(v) for v in values]
                for k, values in (data.get("required_query_params", {}) or {}).items()
            },
            allowed_paths=list(data.get("allowed_paths", []) or []),
            options=data.get("options", {}) or {},
        )

    def matches(self, url: str) -> bool:
        parts = urlsplit(url)
        if domain_of(url) != self.domain:
            return False
        if not (parts.path or "/").startswith(self.path):
            return False
        if self.required_query_params:
            params = dict(parse_qsl(parts.query, keep_blank_values=True))
            for key, allowed in self.required_query_params.items():
                value = params.get(key)
                if not value or value not in allowed:
                    return False
        return True

    def list_url(self) -> str:
        """Index-page URL for this profile (first allowed value of each required param)."""
        query = urlencode({k: v[0] for k, v in self.required_query_params.items() if v})
        return urlunsplit(("https", self.domain, self.path, query, ""))


@dataclass
class SourceEvaluation:
    """Trust decision for one URL. Derived per call, never persisted on its own."""
    tier: TrustTier
    stage: MonitoringStage
    route: str
    requires_review: bool
    canonical_url: str
    profile_id: Optional[str] = None
    allow_auto_extract: bool = True
    allow_write_main: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "stage": self.stage.value,
            "route": self.route,
            "requires_review": self.requires_review,
            "canonical_url": self.canonical_url,
            "profile_id": self.profile_id,
            "allow_auto_extract": self.allow_auto_extract,
            "allow_write_main": self.allow_write_main,
            "reason": self.reason,
        }


def canonicalize_url(url: str, crawler: Optional[CrawlerConfig] = None) -> str:
    """
    Strip tracking parameters and normalise the trailing slash.

    Scheme and host are lowercased and the fragment is dropped. Unparsable input is
    returned unchanged.
    """
    crawler = crawler or CrawlerConfig()
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url

    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        kept = []
        for key, value in pairs:
            lowered = key.lower()
            if crawler.strip_utm_params and lowered.startswith("utm_"):
                continue
            if lowered in crawler.strip_params:
                continue
            kept.append((key, value))
        if len(kept) != len(pairs):
            query = urlencode(kept)

    path = parts.path or "/"
    if crawler.normalize_trailing_slash and path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ""))


class TrustPolicy:
    """Parsed policy document."""

    def __init__(self, data: Dict[str, Any]):
        if not isinstance(data, dict):
            raise PolicyError("Policy document must be a mapping")
        self.version = str(data.get("version", "1"))
        self.crawler = CrawlerConfig.from_dict(data.get("crawler", {}) or {})

        self.tiers: Dict[TrustTier, TierConfig] = {}
        for name, cfg in (data.get("tiers", {}) or {}).items():
            tier = TrustTier.parse(name)
            if tier is None:
                raise PolicyError(f"Unknown tier in policy: {name!r}")
            cfg = cfg or {}
            self.tiers[tier] = TierConfig(
                tier=tier,
                description=cfg.get("description", ""),
                allow_auto_extract=cfg.get("allow_auto_extract"),
                allow_write_main=cfg.get("allow_write_main"),
                domains=list(cfg.get("domains", []) or []),
            )

        self.profiles: List[PolicyProfile] = [
            PolicyProfile.from_dict(p) for p in (data.get("profiles", []) or [])
        ]
        self._profiles_by_id = {p.id: p for p in self.profiles}

    def tier_config(self, tier: TrustTier) -> TierConfig:
        return self.tiers.get(tier) or TierConfig(tier=tier)

    def get_profile(self, profile_id: Optional[str]) -> Optional[PolicyProfile]:
        if not profile_id:
            return None
        return self._profiles_by_id.get(profile_id)

    def canonicalize(self, url: str) -> str:
        return canonicalize_url(url, self.crawler)

    def match_profile(self, url: str) -> Optional[PolicyProfile]:
        for profile in self.profiles:
            if profile.matches(url):
                return profile
        return None

    def tier_for_domain(self, host: str) -> Optional[TrustTier]:
        for tier, cfg in self.tiers.items():
            if any(host_matches(host, d) for d in cfg.domains):
                return tier
        return None

    def evaluate_profile(self, profile: PolicyProfile, canonical_url: str) -> SourceEvaluation:
        tier_cfg = self.tier_config(profile.tier)
        writes_main = tier_cfg.writes_main
        route = ROUTE_REVIEW if profile.requires_review or not writes_main else ROUTE_MAIN
        return SourceEvaluation(
            tier=profile.tier,
            stage=profile.stage,
            route=route,
            requires_review=profile.requires_review,
            canonical_url=canonical_url,
            profile_id=profile.id,
            allow_auto_extract=tier_cfg.auto_extract,
            allow_write_main=writes_main,
            reason="profile_match",
        )

    def evaluate(self, url: str) -> SourceEvaluation:
        """Classify a URL. Unknown sources are never trusted."""
        canonical_url = self.canonicalize(url)

        profile = self.match_profile(canonical_url)
        if profile:
            return self.evaluate_profile(profile, canonical_url)

        tier = self.tier_for_domain(domain_of(canonical_url))
        if tier is not None:
            tier_cfg = self.tier_config(tier)
            writes_main = tier_cfg.writes_main
            return SourceEvaluation(
                tier=tier,
                stage=MonitoringStage.OFFICIAL,
                route=ROUTE_MAIN if writes_main else ROUTE_REVIEW,
                requires_review=tier != TrustTier.top(),
                canonical_url=canonical_url,
                allow_auto_extract=tier_cfg.auto_extract,
                allow_write_main=writes_main,
                reason="domain_tier_match",
            )

        return SourceEvaluation(
            tier=TrustTier.D_QUARANTINE,
            stage=MonitoringStage.DRAFTING,
            route=ROUTE_REVIEW,
            requires_review=True,
            canonical_url=canonical_url,
            allow_auto_extract=True,
            allow_write_main=False,
            reason="unrecognized_domain",
        )


def load_policy(path: str) -> TrustPolicy:
    """Read and parse a policy document."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise PolicyError(f"Failed to load trust policy from {path}: {e}") from e
    return TrustPolicy(data or {})


class PolicyStore:
    """
    Hot-reloading holder for the trust policy.

    ``get()`` re-reads the document whenever its modification time changes. A reload
    that fails keeps serving the last good policy and logs the error.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._policy: Optional[TrustPolicy] = None
        self._mtime: Optional[float] = None

    def get(self) -> TrustPolicy:
        try:
            mtime = os.path.getmtime(self.path)
        except OSError as e:
            if self._policy is not None:
                logger.error(f"Trust policy {self.path} unavailable, keeping last version: {e}")
                return self._policy
            raise PolicyError(f"Trust policy not found at {self.path}") from e

        with self._lock:
            if self._policy is None or mtime != self._mtime:
                try:
                    self._policy = load_policy(self.path)
                    self._mtime = mtime
                    logger.info(f"Loaded trust policy {self._policy.version} from {self.path}")
                except PolicyError:
                    if self._policy is None:
                        raise
                    logger.exception("Trust policy reload failed, keeping last version")
            return self._policy

    def evaluate(self, url: str) -> SourceEvaluation:
        return self.get().evaluate(url)
