"""
Tests for the source trust policy.

Covers URL canonicalization, profile matching, the domain-tier fallback, default deny,
crawler header/rate settings and hot reload through PolicyStore.
"""

import os

import pytest

from regintel.ontology.policy import (
    ROUTE_MAIN,
    ROUTE_REVIEW,
    CrawlerConfig,
    PolicyError,
    PolicyStore,
    TrustPolicy,
    canonicalize_url,
    load_policy,
)
from regintel.ontology.terms import MonitoringStage, TrustTier

from fakes import policy_data, write_policy


@pytest.fixture
def policy():
    return TrustPolicy(policy_data())


class TestCanonicalizeUrl:
    """Tests for canonicalize_url."""

    def test_strips_utm_and_configured_params(self):
        crawler = CrawlerConfig(strip_params=["fbclid"])
        url = "https://EUR-Lex.europa.eu/doc?id=7&utm_source=x&fbclid=abc&utm_medium=y"
        assert canonicalize_url(url, crawler) == "https://eur-lex.europa.eu/doc?id=7"

    def test_keeps_query_untouched_when_nothing_removed(self):
        url = "https://eur-lex.europa.eu/legal-content/EN/TXT/?uri=CELEX:32019R2144"
        assert canonicalize_url(url) == "https://eur-lex.europa.eu/legal-content/EN/TXT?uri=CELEX:32019R2144"

    def test_removes_trailing_slash_and_fragment(self):
        assert canonicalize_url("https://unece.org/transport/#top") == "https://unece.org/transport"

    def test_root_path_kept(self):
        assert canonicalize_url("https://unece.org") == "https://unece.org/"
        assert canonicalize_url("https://unece.org/") == "https://unece.org/"

    def test_trailing_slash_kept_when_disabled(self):
        crawler = CrawlerConfig(normalize_trailing_slash=False)
        assert canonicalize_url("https://unece.org/news/", crawler) == "https://unece.org/news/"

    def test_unparsable_input_returned_unchanged(self):
        assert canonicalize_url("not a url") == "not a url"


class TestEvaluate:
    """Tests for TrustPolicy.evaluate."""

    def test_profile_match(self, policy):
        evaluation = policy.evaluate("https://www.globalautoregs.com/documents/1234?utm_source=feed")
        assert evaluation.profile_id == "gar-docs"
        assert evaluation.tier == TrustTier.A_BINDING
        assert evaluation.stage == MonitoringStage.OFFICIAL
        assert evaluation.route == ROUTE_MAIN
        assert evaluation.reason == "profile_match"
        assert evaluation.canonical_url == "https://www.globalautoregs.com/documents/1234"

    def test_profile_on_review_tier_routes_to_review(self, policy):
        evaluation = policy.evaluate("https://commission.europa.eu/news/ai-act-guidelines")
        assert evaluation.profile_id == "ec-news"
        assert evaluation.tier == TrustTier.B_OFFICIAL_SIGNAL
        assert evaluation.route == ROUTE_REVIEW

    def test_profile_outranks_domain_table(self):
        data = policy_data()
        data["tiers"]["TIER_C_SOFT_REQ"]["domains"].append("globalautoregs.com")
        evaluation = TrustPolicy(data).evaluate("https://globalautoregs.com/documents/55")
        assert evaluation.tier == TrustTier.A_BINDING
        assert evaluation.profile_id == "gar-docs"

    def test_profile_requires_review_forces_review_route(self):
        data = policy_data()
        data["profiles"][0]["requires_review"] = True
        evaluation = TrustPolicy(data).evaluate("https://globalautoregs.com/documents/55")
        assert evaluation.tier == TrustTier.A_BINDING
        assert evaluation.requires_review is True
        assert evaluation.route == ROUTE_REVIEW

    def test_required_query_params(self):
        data = policy_data()
        data["profiles"][0]["required_query_params"] = {"type": ["regulation", "amendment"]}
        policy = TrustPolicy(data)
        assert policy.evaluate("https://globalautoregs.com/documents?type=regulation").profile_id == "gar-docs"
        assert policy.evaluate("https://globalautoregs.com/documents?type=minutes").profile_id is None
        assert policy.evaluate("https://globalautoregs.com/documents").profile_id is None

    def test_domain_fallback(self, policy):
        evaluation = policy.evaluate("https://eur-lex.europa.eu/eli/reg/2019/2144/oj")
        assert evaluation.profile_id is None
        assert evaluation.tier == TrustTier.A_BINDING
        assert evaluation.stage == MonitoringStage.OFFICIAL
        assert evaluation.route == ROUTE_MAIN
        assert evaluation.requires_review is False
        assert evaluation.reason == "domain_tier_match"

    def test_domain_fallback_matches_subdomains_not_substrings(self, policy):
        assert policy.evaluate("https://press.vda.de/news").tier == TrustTier.C_SOFT_REQ
        assert policy.evaluate("https://notvda.de/news").tier == TrustTier.D_QUARANTINE

    def test_domain_fallback_below_top_tier_requires_review(self, policy):
        evaluation = policy.evaluate("https://unece.org/transport/documents/2024/01")
        assert evaluation.tier == TrustTier.B_OFFICIAL_SIGNAL
        assert evaluation.requires_review is True
        assert evaluation.route == ROUTE_REVIEW

    def test_default_deny(self, policy):
        evaluation = policy.evaluate("https://example.com/regulation.pdf")
        assert evaluation.tier == TrustTier.D_QUARANTINE
        assert evaluation.stage == MonitoringStage.DRAFTING
        assert evaluation.route == ROUTE_REVIEW
        assert evaluation.allow_write_main is False
        assert evaluation.reason == "unrecognized_domain"

    def test_to_dict_serializes_enums(self, policy):
        data = policy.evaluate("https://eur-lex.europa.eu/x").to_dict()
        assert data["tier"] == "TIER_A_BINDING"
        assert data["stage"] == "Official"


class TestCrawlerConfig:
    """Tests for crawler-level settings."""

    def test_min_interval_uses_slower_of_rate_and_floor(self, policy):
        crawler = policy.crawler
        assert crawler.min_interval_for("commission.europa.eu") == pytest.approx(0.5)
        assert crawler.min_interval_for("globalautoregs.com") == pytest.approx(1.0)
        assert crawler.min_interval_for("files.globalautoregs.com") == pytest.approx(1.0)

    def test_headers_for_host(self, policy, monkeypatch):
        monkeypatch.setenv("TEST_GAR_COOKIE", "session=abc")
        headers = policy.crawler.headers_for("globalautoregs.com")
        assert headers == {"Referer": "https://globalautoregs.com/", "Cookie": "session=abc"}

    def test_empty_env_header_is_omitted(self, policy, monkeypatch):
        monkeypatch.delenv("TEST_GAR_COOKIE", raising=False)
        assert "Cookie" not in policy.crawler.headers_for("globalautoregs.com")
        assert policy.crawler.headers_for("unece.org") == {}


class TestLoadPolicy:
    """Tests for policy loading and validation."""

    def test_unknown_tier_rejected(self):
        data = policy_data()
        data["profiles"][0]["tier"] = "TIER_Z"
        with pytest.raises(PolicyError):
            TrustPolicy(data)

    def test_unknown_stage_rejected(self):
        data = policy_data()
        data["profiles"][0]["stage"] = "Someday"
        with pytest.raises(PolicyError):
            TrustPolicy(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(PolicyError):
            load_policy(str(tmp_path / "missing.yaml"))

    def test_shipped_policy_loads(self):
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        policy = load_policy(os.path.join(root, "config", "trust_policy.yaml"))
        assert policy.profiles
        assert policy.evaluate("https://example.org/").route == ROUTE_REVIEW


class TestPolicyStore:
    """Tests for hot reload."""

    def _touch_later(self, path, seconds=5):
        stat = os.stat(path)
        os.utime(path, (stat.st_atime + seconds, stat.st_mtime + seconds))

    def test_reload_on_change(self, tmp_path):
        path = write_policy(tmp_path / "policy.yaml")
        store = PolicyStore(path)
        assert store.evaluate("https://example.com/x").tier == TrustTier.D_QUARANTINE

        data = policy_data()
        data["tiers"]["TIER_C_SOFT_REQ"]["domains"].append("example.com")
        write_policy(path, data)
        self._touch_later(path)

        assert store.evaluate("https://example.com/x").tier == TrustTier.C_SOFT_REQ

    def test_same_object_when_unchanged(self, tmp_path):
        store = PolicyStore(write_policy(tmp_path / "policy.yaml"))
        assert store.get() is store.get()

    def test_broken_reload_keeps_last_good_policy(self, tmp_path):
        path = write_policy(tmp_path / "policy.yaml")
        store = PolicyStore(path)
        first = store.get()

        with open(path, "w") as f:
            f.write("profiles: [ {id: broken, tier: NOPE, stage: Official} ]\n")
        self._touch_later(path)

        assert store.get() is first

    def test_missing_file_raises_without_prior_policy(self, tmp_path):
        with pytest.raises(PolicyError):
            PolicyStore(str(tmp_path / "missing.yaml")).get()
