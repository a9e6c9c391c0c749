"""
Evidence model: retrieved memories, assets and document fragments.

An EvidenceSet only ever grows. ``merge_evidence`` is the single point where
seed retrieval, every ``search_evidence`` call, direct asset reads and
document node reads funnel into one de-duplicated pool; re-merging results
that are already present is a no-op.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DIRECT_ASSETS_KEY = "__direct_assets__"

DIGEST_MEMORY_LIMIT = 12
DIGEST_DOCUMENT_LIMIT = 12
FALLBACK_MEMORY_LIMIT = 8


def excerpt(text: Optional[str], max_chars: int) -> str:
    """Trim and cap text, marking truncation with '...'."""
    t = (text or "").strip()
    if len(t) <= max_chars:
        return t
    return f"{t[:max_chars].rstrip()}..."


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def null_to_default(cls, v, info):
        # Services send null for absent fields; fall back to the field default.
        if v is None:
            field = cls.model_fields[info.field_name]
            if not field.is_required() and field.default is not None:
                return field.get_default(call_default_factory=True)
        return v


class RetrievedMemory(_Wire):
    id: str
    project_id: str = ""
    category: str = ""
    title: str = ""
    content_excerpt: str = ""
    tags: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    updated_at: str = ""

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return max(0.0, min(1.0, v))


class RetrievedAsset(_Wire):
    id: str
    project_id: str = ""
    status: str = ""
    content_type: str = ""
    byte_size: int = 0
    original_name: Optional[str] = None
    created_at: str = ""


class RetrievedDocument(_Wire):
    kind: str = "pageindex"
    artifact_id: str
    project_id: str = ""
    node_id: str
    title: str = ""
    path: List[str] = Field(default_factory=list)
    excerpt: str = ""
    score: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.artifact_id}#{self.node_id}"


class EvidenceSet(BaseModel):
    memories: List[RetrievedMemory] = Field(default_factory=list)
    assets_index: Dict[str, List[RetrievedAsset]] = Field(default_factory=dict)
    documents: List[RetrievedDocument] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "EvidenceSet":
        """Build an EvidenceSet from a service ``retrieved`` object, skipping unusable entries."""
        if not isinstance(payload, dict):
            return cls()
        out = cls()
        for raw in payload.get("memories") or []:
            mem = _parse(RetrievedMemory, raw)
            if mem is not None and mem.id:
                out.memories.append(mem)
        index = payload.get("assets_index") or {}
        if isinstance(index, dict):
            for key, assets in index.items():
                parsed = [a for a in (_parse(RetrievedAsset, raw) for raw in assets or []) if a is not None and a.id]
                if parsed:
                    out.assets_index[str(key)] = parsed
        for raw in payload.get("documents") or []:
            doc = _parse(RetrievedDocument, raw)
            if doc is not None and doc.artifact_id and doc.node_id:
                out.documents.append(doc)
        return out

    def asset_count(self) -> int:
        return sum(len(v) for v in self.assets_index.values())


def _parse(model, raw):
    if isinstance(raw, model):
        return raw
    if not isinstance(raw, dict):
        return None
    try:
        return model.model_validate(raw)
    except ValueError:
        return None


def merge_evidence(into: EvidenceSet, other: EvidenceSet) -> EvidenceSet:
    """Append-only, duplicate-free union of *other* into *into*.

    Existing entries keep their order and values; new items are appended in
    *other*'s order. Returns *into*.
    """
    seen_memories = {m.id for m in into.memories}
    for mem in other.memories:
        if not mem.id or mem.id in seen_memories:
            continue
        into.memories.append(mem)
        seen_memories.add(mem.id)

    for key, assets in other.assets_index.items():
        if not assets:
            continue
        existing = into.assets_index.setdefault(key, [])
        seen_assets = {a.id for a in existing}
        for asset in assets:
            if not asset.id or asset.id in seen_assets:
                continue
            existing.append(asset)
            seen_assets.add(asset.id)

    seen_docs = {d.key for d in into.documents}
    for doc in other.documents:
        if not doc.artifact_id or not doc.node_id or doc.key in seen_docs:
            continue
        into.documents.append(doc)
        seen_docs.add(doc.key)

    return into


def format_evidence_digest(evidence: EvidenceSet) -> str:
    """Render evidence as the plain-text digest embedded in the first user turn."""
    lines: List[str] = ["EVIDENCE MEMORIES:"]
    for m in evidence.memories[:DIGEST_MEMORY_LIMIT]:
        lines.append(f"- [mem:{m.id}] category={m.category} confidence={m.confidence:.2f} updated_at={m.updated_at}")
        lines.append(f"  title: {m.title}")
        lines.append(f"  content: {m.content_excerpt}")
        if m.tags:
            lines.append(f"  tags: {', '.join(m.tags[:24])}")
        assets = evidence.assets_index.get(m.id) or []
        if assets:
            lines.append("  assets:")
            for a in assets[:8]:
                lines.append(
                    f"    - [asset:{a.id}] {a.original_name or 'asset'} "
                    f"({a.content_type}, {a.byte_size} bytes, status={a.status})"
                )
    if not evidence.memories:
        lines.append("- (none matched)")

    if evidence.documents:
        lines.append("")
        lines.append("DOCUMENT INDEX MATCHES:")
        for d in evidence.documents[:DIGEST_DOCUMENT_LIMIT]:
            lines.append(f"- [doc:{d.artifact_id}#{d.node_id}] score={d.score:.0f} title={d.title}")
            if d.path:
                lines.append(f"  path: {' > '.join(d.path[-5:])}")
            if d.excerpt:
                lines.append(f"  excerpt: {excerpt(d.excerpt, 900)}")
    return "\n".join(lines)


def build_fallback_answer(evidence: EvidenceSet) -> str:
    """Deterministic answer used when no synthesis happened."""
    top = evidence.memories[:FALLBACK_MEMORY_LIMIT]
    lines = [
        "No synthesis answer available.",
        "",
        "Top evidence memories:" if top else "No memories matched this query.",
        *[f"- [mem:{m.id}] {m.title} ({m.category})" for m in top],
        "",
        "Next: record a memory for this topic, and attach logs/screenshots as assets so the agent has evidence to cite.",
    ]
    return "\n".join(lines)
