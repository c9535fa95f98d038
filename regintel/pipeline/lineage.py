"""
Lineage graph over runs, source documents, items, requirements and evidence.

The graph is rebuilt from the repository on every call. Entities are deduplicated by a
canonical key per type:

    SourceDocument / RegulationItem   normalized URL, else title|jurisdiction|date
    Requirement                       requirement family
    Evidence                          normalized citation URL, else citation title

Node ids are ``<prefix>:<sha1(type|key)>`` so the same entity always gets the same id.
Edges are keyed by (source, relation, target). Besides stored links, two edge kinds are
derived from item fields: ``extracted_from`` (document -> item) and ``supported_by``
(item -> evidence, one per citation). Output is sorted by id, so rebuilding without new
data yields identical output.
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from regintel.storage.repository import Repository

from .models import LineageEdge, LineageNode

logger = logging.getLogger(__name__)

TYPE_PREFIX = {
    "Run": "run",
    "SourceDocument": "doc",
    "RegulationItem": "item",
    "Requirement": "req",
    "Evidence": "evidence",
    "ReviewQueueItem": "review",
}

DEFAULT_LIMIT = 200
RUN_LIMIT = 50


def normalize_url(url: str) -> str:
    """Lowercased URL without fragment, utm_* parameters or trailing slash."""
    text = (url or "").strip()
    try:
        parts = urlsplit(text)
    except ValueError:
        return text.rstrip("/").lower()
    if not parts.scheme or not parts.netloc:
        return text.rstrip("/").lower()
    query = urlencode(
        [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not k.lower().startswith("utm_")]
    )
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, query, "")).lower()


def prefix_for(entity_type: str) -> str:
    return TYPE_PREFIX.get(entity_type, entity_type.lower())


def node_id(prefix: str, value: str) -> str:
    return f"{prefix}:{value}"


def item_key(record: Dict[str, Any]) -> str:
    if record.get("url"):
        return normalize_url(record["url"])
    title = record.get("title") or record.get("summary_1line") or ""
    return f"{title}|{record.get('jurisdiction') or ''}|{record.get('published_date') or ''}"


class LineageGraph:
    """Accumulates deduplicated nodes and edges."""

    def __init__(self):
        self.nodes: Dict[str, LineageNode] = {}
        self.edges: Dict[str, LineageEdge] = {}
        self._key_to_id: Dict[str, str] = {}

    def upsert_node(self, entity_type: str, canonical_key: str, label: str,
                    meta: Optional[Dict[str, Any]] = None) -> str:
        key = f"{entity_type}|{canonical_key}"
        existing_id = self._key_to_id.get(key)
        incoming = {k: v for k, v in (meta or {}).items() if v not in (None, "")}

        if existing_id:
            node = self.nodes[existing_id]
            for name, value in incoming.items():
                if node.meta.get(name) in (None, ""):
                    node.meta[name] = value
            current = (node.label or "").strip()
            if label and (current == "" or current == entity_type):
                node.label = label
            return existing_id

        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        new_id = node_id(prefix_for(entity_type), digest)
        self._key_to_id[key] = new_id
        self.nodes[new_id] = LineageNode(id=new_id, type=entity_type, label=label, meta=incoming)
        return new_id

    def ensure_placeholder(self, node: str, entity_type: str) -> None:
        if node not in self.nodes:
            self.nodes[node] = LineageNode(id=node, type=entity_type, label=entity_type)

    def add_edge(self, source: str, relation: str, target: str) -> None:
        edge_id = f"{source}__{relation}__{target}"
        self.edges[edge_id] = LineageEdge(id=edge_id, source=source, target=target, relation=relation)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "nodes": [self.nodes[k].to_dict() for k in sorted(self.nodes)],
            "edges": [self.edges[k].to_dict() for k in sorted(self.edges)],
        }


def build_lineage_graph(repository: Repository, limit: int = DEFAULT_LIMIT) -> Dict[str, List[Dict[str, Any]]]:
    """
    Assemble the lineage graph from the current repository state.

    Returns:
        ``{"nodes": [...], "edges": [...]}`` with nodes and edges sorted by id
    """
    graph = LineageGraph()
    id_maps: Dict[str, Dict[str, str]] = {
        "Run": {},
        "SourceDocument": {},
        "RegulationItem": {},
        "Requirement": {},
    }

    for run in repository.list_runs()[:RUN_LIMIT]:
        nid = node_id("run", run.id)
        graph.nodes[nid] = LineageNode(
            id=nid,
            type="Run",
            label=f"{run.run_type.upper()} - {run.started_at[:10]}",
            meta={"status": run.status},
        )
        id_maps["Run"][run.id] = nid

    documents = sorted(repository.list_source_documents(), key=lambda d: (d.retrieved_at, d.id), reverse=True)
    for doc in documents[:limit]:
        if doc.url:
            key = normalize_url(doc.url)
        else:
            key = f"{doc.domain or ''}|{doc.title or ''}|{(doc.retrieved_at or '')[:10]}"
        id_maps["SourceDocument"][doc.id] = graph.upsert_node(
            "SourceDocument", key, doc.title or doc.domain or "SourceDocument",
            {"url": doc.url, "domain": doc.domain},
        )

    items = sorted(
        repository.list_regulation_items(),
        key=lambda i: (i.get("retrieved_at") or "", i["id"]),
        reverse=True,
    )[:limit]
    for item in items:
        id_maps["RegulationItem"][item["id"]] = graph.upsert_node(
            "RegulationItem", item_key(item), item.get("title") or item.get("summary_1line") or "RegulationItem",
            {
                "jurisdiction": item.get("jurisdiction"),
                "priority": item.get("priority"),
                "trust_tier": item.get("trust_tier"),
                "status": item.get("status"),
            },
        )

    for entry in repository.list_review_queue()[:limit]:
        payload = entry.payload or {}
        if entry.entity_type != "RegulationItem" or not payload.get("id"):
            continue
        id_maps["RegulationItem"][payload["id"]] = graph.upsert_node(
            "RegulationItem", item_key(payload),
            payload.get("title") or payload.get("summary_1line") or "RegulationItem",
            {
                "jurisdiction": payload.get("jurisdiction"),
                "priority": payload.get("priority"),
                "trust_tier": payload.get("trust_tier"),
                "status": payload.get("status"),
                "review_status": entry.status,
            },
        )

    requirements = sorted(repository.list_requirements(), key=lambda r: r["id"])
    for req in requirements[:limit]:
        family = req.get("requirementFamily") or req.get("requirement_family")
        id_maps["Requirement"][req["id"]] = graph.upsert_node(
            "Requirement", family or req["id"], family or "Requirement", {"priority": req.get("priority")}
        )

    def resolve(entity_type: str, raw_id: str) -> str:
        mapped = id_maps.get(entity_type, {}).get(raw_id)
        return mapped or node_id(prefix_for(entity_type), raw_id)

    for link in repository.list_links():
        source = resolve(link.from_type, link.from_id)
        target = resolve(link.to_type, link.to_id)
        graph.ensure_placeholder(source, link.from_type)
        graph.ensure_placeholder(target, link.to_type)
        graph.add_edge(source, link.relation, target)

    for item in items:
        item_node = resolve("RegulationItem", item["id"])
        if item.get("source_document_id"):
            doc_node = resolve("SourceDocument", item["source_document_id"])
            graph.ensure_placeholder(doc_node, "SourceDocument")
            graph.add_edge(doc_node, "extracted_from", item_node)

        citations = (item.get("evidence") or {}).get("citations") or []
        for index, citation in enumerate(citations):
            url = citation.get("url")
            key = normalize_url(url) if url else (citation.get("title") or f"{item['id']}-{index}")
            evidence_node = graph.upsert_node(
                "Evidence", key, citation.get("title") or url or "Evidence", {"url": url}
            )
            graph.add_edge(item_node, "supported_by", evidence_node)

    result = graph.to_dict()
    logger.debug(f"Lineage graph: {len(result['nodes'])} nodes, {len(result['edges'])} edges")
    return result
