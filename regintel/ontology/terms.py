"""
Closed vocabularies for regulation items, requirements and governance state.
"""

from enum import Enum
from typing import List, Optional
from urllib.parse import urlsplit


ALLOWED_DOMAINS = [
    "unece.org",
    "globalautoregs.com",
    "futurium.ec.europa.eu",
    "commission.europa.eu",
    "digital-strategy.ec.europa.eu",
    "ec.europa.eu",
    "eur-lex.europa.eu",
    "op.europa.eu",
    "gesetze-im-internet.de",
    "legifrance.gouv.fr",
    "legislation.gov.uk",
    "rdw.nl",
    "vca.gov.uk",
    "edpb.europa.eu",
    "bfdi.bund.de",
    "bsi.bund.de",
    "cnil.fr",
    "enisa.europa.eu",
    "gov.uk",
    "kba.de",
    "utac.com",
    "idiada.com",
    "vda.de",
]

JURISDICTIONS = ["EU", "DE", "FR", "UK", "UN_ECE", "GLOBAL", "ES", "IT", "CZ", "PL"]

SOURCE_TYPES = [
    "regulation",
    "draft",
    "guidance",
    "position_paper",
    "minutes",
    "technical_notice",
]

ITEM_STATUSES = ["proposed", "adopted", "in_force", "repealed", "unknown"]

TOPICS = [
    "AI_ACT",
    "GDPR",
    "DATA_ACT",
    "DCAS_R171",
    "GSR",
    "EU_NCAP_2026",
    "CYBER_SECURITY",
    "SOFTWARE_UPDATE",
    "AUTOMATED_DRIVING",
    "TYPE_APPROVAL",
    "ADAS",
    "UNECE_WP29",
    "VEHICLE_DYNAMICS",
    "DRIVABILITY",
    "POWERTRAIN",
    "CHARGING",
    "BATTERY",
    "EMISSIONS",
    "RANGE",
    "INTERIOR",
    "EXTERIOR",
    "MATERIALS",
]

IMPACTED_AREAS = [
    "ODD",
    "Perception",
    "DMS",
    "HMI",
    "Validation",
    "Homologation",
    "Data_Governance",
    "Cybersecurity",
    "OTA",
    "Vehicle_Dynamics",
    "Drivability",
    "Powertrain",
    "Charging",
    "Battery",
    "Emissions",
    "Range",
    "Interior",
    "Exterior",
    "Materials",
]

PRIORITIES = ["P0", "P1", "P2"]

EVIDENCE_STATUSES = ["complete", "partial", "missing"]
REVIEW_STATUSES = ["pending", "approved", "rejected"]
RUN_STATUSES = ["queued", "running", "completed", "failed"]


class TrustTier(str, Enum):
    """Ordinal trust rank of a source; A is highest."""
    A_BINDING = "TIER_A_BINDING"
    B_OFFICIAL_SIGNAL = "TIER_B_OFFICIAL_SIGNAL"
    C_SOFT_REQ = "TIER_C_SOFT_REQ"
    D_QUARANTINE = "TIER_D_QUARANTINE"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def top(cls) -> "TrustTier":
        return cls.A_BINDING

    @classmethod
    def parse(cls, value) -> Optional["TrustTier"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


_TIER_RANK = {
    TrustTier.A_BINDING: 4,
    TrustTier.B_OFFICIAL_SIGNAL: 3,
    TrustTier.C_SOFT_REQ: 2,
    TrustTier.D_QUARANTINE: 1,
}

TRUST_TIERS = [t.value for t in TrustTier]


class MonitoringStage(str, Enum):
    """Lifecycle phase of a regulatory instrument, in order."""
    DRAFTING = "Drafting"
    OFFICIAL = "Official"
    COMITOLOGY = "Comitology"
    INTERPRETING = "Interpreting"
    USE_AND_REGISTRATION = "Use&Registration"

    @property
    def position(self) -> int:
        return MONITORING_STAGES.index(self.value)


MONITORING_STAGES = [s.value for s in MonitoringStage]


def domain_of(url: str) -> str:
    """Lowercased host with a leading ``www.`` removed; empty string if unparsable."""
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def host_matches(host: str, domain: str) -> bool:
    """True when host equals domain or is a subdomain of it."""
    domain = domain.lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return host == domain or host.endswith("." + domain)


def is_allowed_domain(url: str, allowed: Optional[List[str]] = None) -> bool:
    """Check the URL's host against the permitted source domains."""
    host = domain_of(url)
    if not host:
        return False
    domains = allowed if allowed else ALLOWED_DOMAINS
    return any(host_matches(host, d) for d in domains)


SOURCE_ORGS = [
    ("wiki.unece.org", "UNECE Wiki"),
    ("unece.org", "UNECE"),
    ("eur-lex.europa.eu", "EUR-Lex"),
    ("op.europa.eu", "Publications Office"),
    ("publications.europa.eu", "Publications Office"),
    ("globalautoregs.com", "GlobalAutoRegs"),
    ("digital-strategy.ec.europa.eu", "EU Digital Strategy"),
    ("futurium.ec.europa.eu", "EU AI Alliance"),
    ("commission.europa.eu", "European Commission"),
    ("ec.europa.eu", "European Commission"),
    ("rdw.nl", "RDW"),
    ("vca.gov.uk", "VCA"),
    ("edpb.europa.eu", "EDPB"),
    ("bfdi.bund.de", "BfDI"),
    ("bsi.bund.de", "BSI"),
    ("cnil.fr", "CNIL"),
    ("enisa.europa.eu", "ENISA"),
    ("gov.uk", "UK Government"),
    ("kba.de", "KBA"),
    ("utac.com", "UTAC"),
    ("idiada.com", "IDIADA"),
    ("vda.de", "VDA"),
]


def source_org_for(url: str) -> str:
    """Issuing organisation for a URL, most specific domain first."""
    host = domain_of(url)
    for domain, org in SOURCE_ORGS:
        if host_matches(host, domain):
            return org
    return "Unknown"
