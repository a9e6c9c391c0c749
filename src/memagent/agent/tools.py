"""
Tool implementations for the agent runner.

Each tool handler signature: handler(ctx, args) -> dict

Rules:
- Tools talk to the knowledge service only through ctx.knowledge.
- Reads go through the per-run cache; writes (record_memory,
  attach_asset_to_memory) never do.
- Anything the model may cite is merged into ctx.evidence.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from memagent.agent.registry import ToolName, register_tool
from memagent.config import clamp_int
from memagent.errors import ToolInputError, ToolRejectedError
from memagent.evidence import (
    DIRECT_ASSETS_KEY,
    EvidenceSet,
    RetrievedAsset,
    RetrievedDocument,
    excerpt,
    merge_evidence,
)

SEARCH_MEMORY_CAP = 12
SEARCH_DOCUMENT_CAP = 8
LISTING_CAP = 50
TEXT_PREVIEW_CHARS = 12_000
DOCUMENT_EXCERPT_CHARS = 900

TEXT_LIKE_MARKERS = ("json", "xml", "yaml", "yml", "toml", "javascript", "typescript", "csv")


def is_text_like(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    ct = content_type.lower()
    return ct.startswith("text/") or any(marker in ct for marker in TEXT_LIKE_MARKERS)


class ToolInput(BaseModel):
    # validate_default so a missing required field hits its "<name> is required" check
    model_config = ConfigDict(extra="ignore", validate_default=True)


def _required(v: Any, name: str) -> str:
    s = v.strip() if isinstance(v, str) else ""
    if not s:
        raise ValueError(f"{name} is required")
    return s


def _optional(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


# ---------------------------------------------------------------------------
# search_evidence
# ---------------------------------------------------------------------------
class SearchEvidenceInput(ToolInput):
    query: str = ""
    project_id: Optional[str] = None
    limit: Optional[int] = None
    include_assets: Optional[bool] = None
    include_documents: Optional[bool] = None
    document_limit: Optional[int] = None
    retrieval_mode: Optional[str] = None
    memory_mode: Optional[str] = None

    @field_validator("query", mode="before")
    @classmethod
    def query_required(cls, v):
        return _required(v, "query")

    @field_validator("limit", "document_limit", mode="before")
    @classmethod
    def loose_int(cls, v):
        # Bounds are applied with the run defaults in RunContext.search_params
        return clamp_int(v, None, -(10 ** 9), 10 ** 9)

    @field_validator("project_id", "retrieval_mode", "memory_mode", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        return _optional(v)


def _search_evidence(ctx, args: SearchEvidenceInput) -> dict:
    """Search project memory and merge the hits into the run's evidence."""
    retrieved = ctx.retrieve(
        args.query,
        project_id=args.project_id,
        limit=args.limit,
        include_assets=args.include_assets,
        include_documents=args.include_documents,
        document_limit=args.document_limit,
        retrieval_mode=args.retrieval_mode,
        memory_mode=args.memory_mode,
    )
    return {
        "query": args.query,
        "memory_count": len(retrieved.memories),
        "document_count": len(retrieved.documents),
        "memories": [
            {
                "id": m.id,
                "category": m.category,
                "title": m.title,
                "updated_at": m.updated_at,
                "excerpt": m.content_excerpt,
            }
            for m in retrieved.memories[:SEARCH_MEMORY_CAP]
        ],
        "documents": [
            {
                "kind": d.kind,
                "artifact_id": d.artifact_id,
                "node_id": d.node_id,
                "title": d.title,
                "score": d.score,
                "path": d.path,
                "excerpt": d.excerpt,
            }
            for d in retrieved.documents[:SEARCH_DOCUMENT_CAP]
        ],
    }


register_tool(
    name=ToolName.SEARCH_EVIDENCE,
    description=(
        "Search project memory for relevant evidence (and linked asset metadata). "
        "Use this when the initial evidence is insufficient or you need a narrower query."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query to run against project memories."},
            "project_id": {"type": "string", "description": "Optional project id override (defaults to the current session project)."},
            "limit": {"type": "integer", "minimum": 1, "maximum": 50},
            "include_assets": {"type": "boolean", "description": "Whether to include linked asset metadata in results."},
            "include_documents": {"type": "boolean", "description": "Whether to include document index matches (page-indexed artifacts)."},
            "document_limit": {"type": "integer", "minimum": 0, "maximum": 50, "description": "Max document evidence items to return (0 disables)."},
            "retrieval_mode": {
                "type": "string",
                "enum": ["auto", "memories", "documents", "hybrid"],
                "description": "Retrieval mode hint. Use documents/hybrid when searching manuals/specs/PDF sections.",
            },
            "memory_mode": {
                "type": "string",
                "enum": ["fast", "balanced", "deep"],
                "description": "Memory retrieval profile. deep is slower but searches more broadly.",
            },
        },
        "required": ["query"],
        "additionalProperties": False,
    },
    input_model=SearchEvidenceInput,
    handler=_search_evidence,
)


# ---------------------------------------------------------------------------
# read_asset_text
# ---------------------------------------------------------------------------
class ReadAssetTextInput(ToolInput):
    asset_id: str = ""
    byte_start: int = 0
    max_bytes: int = 40_000

    @field_validator("asset_id", mode="before")
    @classmethod
    def asset_id_required(cls, v):
        return _required(v, "asset_id")

    @field_validator("byte_start", mode="before")
    @classmethod
    def non_negative_start(cls, v):
        n = clamp_int(v, 0, -(10 ** 12), 10 ** 12)
        if n < 0:
            raise ValueError("byte_start must be >= 0")
        return n

    @field_validator("max_bytes", mode="before")
    @classmethod
    def bounded_max_bytes(cls, v):
        return clamp_int(v, 40_000, 256, 120_000)


def _read_asset_text(ctx, args: ReadAssetTextInput) -> dict:
    """Read a byte range of a text-like asset and record it as direct evidence."""
    asset_id = args.asset_id
    meta = ctx.cache.get_or_fetch(
        "asset_meta",
        {"asset_id": asset_id},
        lambda: ctx.knowledge.get_asset(asset_id),
    )
    if not isinstance(meta, dict):
        meta = {}

    status = str(meta.get("status") or "")
    content_type = meta.get("content_type") or None
    if status != "ready":
        raise ToolRejectedError(f"Asset is not ready (status={status or 'unknown'})")
    if not is_text_like(content_type):
        raise ToolRejectedError(f"Asset content_type is not text-like ({content_type or 'unknown'})")
    known_size = clamp_int(meta.get("byte_size"), 0, 0, 2 ** 63)
    if known_size and args.byte_start >= known_size:
        raise ToolInputError(f"byte_start {args.byte_start} is past the end of the asset ({known_size} bytes)")

    byte_end = args.byte_start + args.max_bytes - 1
    chunk = ctx.cache.get_or_fetch(
        "asset_bytes",
        {"asset_id": asset_id, "byte_start": args.byte_start, "byte_end": byte_end},
        lambda: ctx.knowledge.read_asset_bytes(asset_id, args.byte_start, byte_end),
    )
    data = chunk.content
    text = data.decode("utf-8", errors="replace")
    preview = excerpt(text, TEXT_PREVIEW_CHARS)

    byte_size = clamp_int(meta.get("byte_size"), len(data), 0, 2 ** 63)
    asset = RetrievedAsset(
        id=asset_id,
        project_id=str(meta.get("project_id") or ctx.project_id),
        status=status,
        content_type=content_type,
        byte_size=byte_size,
        original_name=meta.get("original_name") or None,
        created_at=str(meta.get("created_at") or ""),
    )
    merge_evidence(ctx.evidence, EvidenceSet(assets_index={DIRECT_ASSETS_KEY: [asset]}))

    return {
        "asset_id": asset_id,
        "original_name": asset.original_name,
        "content_type": content_type,
        "byte_size": byte_size,
        "byte_start": args.byte_start,
        "byte_end": args.byte_start + len(data) - 1,
        "text": preview,
        "truncated": len(text.strip()) > TEXT_PREVIEW_CHARS,
    }


register_tool(
    name=ToolName.READ_ASSET_TEXT,
    description=(
        "Read a text chunk from an asset (logs, JSON, YAML, config). Use small ranges. "
        "If the file is large, read a small chunk first and then read further ranges as needed."
    ),
    parameters={
        "type": "object",
        "properties": {
            "asset_id": {"type": "string"},
            "byte_start": {"type": "integer", "minimum": 0},
            "max_bytes": {"type": "integer", "minimum": 256, "maximum": 120000},
        },
        "required": ["asset_id"],
        "additionalProperties": False,
    },
    input_model=ReadAssetTextInput,
    handler=_read_asset_text,
)


# ---------------------------------------------------------------------------
# list_assets
# ---------------------------------------------------------------------------
class ListAssetsInput(ToolInput):
    project_id: Optional[str] = None
    q: Optional[str] = None
    status: Optional[str] = None
    limit: int = 50
    include_memory_links: bool = False

    @field_validator("project_id", "q", "status", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        return _optional(v)

    @field_validator("limit", mode="before")
    @classmethod
    def bounded_limit(cls, v):
        return clamp_int(v, 50, 1, 200)


ASSET_FIELDS = ("id", "project_id", "status", "content_type", "byte_size", "original_name", "created_at", "memory_links")


def _list_assets(ctx, args: ListAssetsInput) -> dict:
    """List assets in the project, optionally filtered by name or status."""
    params = {
        "project_id": args.project_id or ctx.project_id,
        "q": args.q,
        "status": args.status,
        "limit": args.limit,
        "include_memory_links": args.include_memory_links,
    }
    data = ctx.cache.get_or_fetch("list_assets", params, lambda: ctx.knowledge.list_assets(**params))
    assets = data.get("assets") if isinstance(data, dict) else None
    assets = [a for a in assets or [] if isinstance(a, dict)]
    return {
        "count": len(assets),
        "assets": [{k: a.get(k) for k in ASSET_FIELDS if k in a} for a in assets[:LISTING_CAP]],
        "truncated": len(assets) > LISTING_CAP,
    }


register_tool(
    name=ToolName.LIST_ASSETS,
    description="List uploaded assets (logs, configs, screenshots) for the project. Filter by filename substring or status.",
    parameters={
        "type": "object",
        "properties": {
            "project_id": {"type": "string", "description": "Optional project id override."},
            "q": {"type": "string", "description": "Filename substring to match."},
            "status": {"type": "string", "description": "Asset status filter, e.g. ready or uploading."},
            "limit": {"type": "integer", "minimum": 1, "maximum": 200},
            "include_memory_links": {"type": "boolean", "description": "Include the ids of memories each asset is linked to."},
        },
        "required": [],
        "additionalProperties": False,
    },
    input_model=ListAssetsInput,
    handler=_list_assets,
)


# ---------------------------------------------------------------------------
# record_memory
# ---------------------------------------------------------------------------
class RecordMemoryInput(ToolInput):
    project_id: Optional[str] = None
    category: str = "note"
    title: str = ""
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    confidence: float = 0.5

    @field_validator("project_id", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        return _optional(v)

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v):
        return _optional(v) or "note"

    @field_validator("title", mode="before")
    @classmethod
    def title_required(cls, v):
        return _required(v, "title")

    @field_validator("content", mode="before")
    @classmethod
    def content_required(cls, v):
        return _required(v, "content")

    @field_validator("tags", mode="before")
    @classmethod
    def clean_tags(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("tags must be a list of strings")
        tags = [str(t).strip() for t in v if t is not None and str(t).strip()]
        return list(dict.fromkeys(tags))[:32]

    @field_validator("confidence", mode="before")
    @classmethod
    def bounded_confidence(cls, v):
        try:
            f = float(v) if v is not None else 0.5
        except (TypeError, ValueError):
            return 0.5
        return max(0.0, min(1.0, f))


def _record_memory(ctx, args: RecordMemoryInput) -> dict:
    """Create a durable memory in the project."""
    project_id = args.project_id or ctx.project_id
    data = ctx.knowledge.create_memory(
        project_id=project_id,
        category=args.category,
        title=args.title,
        content=args.content,
        tags=args.tags,
        confidence=args.confidence,
    )
    return {
        "memory_id": data.get("id") if isinstance(data, dict) else None,
        "created_at": data.get("created_at") if isinstance(data, dict) else None,
        "project_id": project_id,
        "category": args.category,
        "title": args.title,
    }


register_tool(
    name=ToolName.RECORD_MEMORY,
    description=(
        "Record a new durable project memory. Only use when the user explicitly asks "
        "to save, record or remember something."
    ),
    parameters={
        "type": "object",
        "properties": {
            "project_id": {"type": "string", "description": "Optional project id override."},
            "category": {"type": "string", "description": "Memory category, e.g. bug, decision, note."},
            "title": {"type": "string"},
            "content": {"type": "string"},
            "tags": {"type": "array", "items": {"type": "string"}, "maxItems": 32},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        },
        "required": ["title", "content"],
        "additionalProperties": False,
    },
    input_model=RecordMemoryInput,
    handler=_record_memory,
)


# ---------------------------------------------------------------------------
# attach_asset_to_memory
# ---------------------------------------------------------------------------
class AttachAssetInput(ToolInput):
    memory_id: str = ""
    asset_id: str = ""
    relation: str = "attachment"

    @field_validator("memory_id", mode="before")
    @classmethod
    def memory_id_required(cls, v):
        return _required(v, "memory_id")

    @field_validator("asset_id", mode="before")
    @classmethod
    def asset_id_required(cls, v):
        return _required(v, "asset_id")

    @field_validator("relation", mode="before")
    @classmethod
    def default_relation(cls, v):
        return _optional(v) or "attachment"


def _attach_asset_to_memory(ctx, args: AttachAssetInput) -> dict:
    """Link an existing asset to a memory."""
    data = ctx.knowledge.link_asset(asset_id=args.asset_id, memory_id=args.memory_id, relation=args.relation)
    return {
        "asset_id": args.asset_id,
        "memory_id": args.memory_id,
        "relation": args.relation,
        "created_at": data.get("created_at") if isinstance(data, dict) else None,
    }


register_tool(
    name=ToolName.ATTACH_ASSET_TO_MEMORY,
    description=(
        "Attach an existing asset to a memory as supporting evidence. Only use when the "
        "user explicitly asks to link or attach."
    ),
    parameters={
        "type": "object",
        "properties": {
            "memory_id": {"type": "string"},
            "asset_id": {"type": "string"},
            "relation": {"type": "string", "description": "Link relation (default attachment)."},
        },
        "required": ["memory_id", "asset_id"],
        "additionalProperties": False,
    },
    input_model=AttachAssetInput,
    handler=_attach_asset_to_memory,
)


# ---------------------------------------------------------------------------
# list_artifacts
# ---------------------------------------------------------------------------
class ListArtifactsInput(ToolInput):
    project_id: Optional[str] = None
    type: Optional[str] = None
    limit: int = 50

    @field_validator("project_id", "type", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        return _optional(v)

    @field_validator("limit", mode="before")
    @classmethod
    def bounded_limit(cls, v):
        return clamp_int(v, 50, 1, 200)


def _artifact_summary(a: Dict[str, Any]) -> Dict[str, Any]:
    metadata = a.get("metadata") if isinstance(a.get("metadata"), dict) else {}
    return {
        "id": a.get("id"),
        "type": a.get("type"),
        "project_id": a.get("project_id"),
        "content_type": a.get("content_type"),
        "byte_size": a.get("byte_size"),
        "created_at": a.get("created_at"),
        "has_pageindex": bool(metadata.get("pageindex")),
    }


def _list_artifacts(ctx, args: ListArtifactsInput) -> dict:
    """List stored artifacts (documents, transcripts, exports) in the project."""
    params = {"project_id": args.project_id or ctx.project_id, "type": args.type, "limit": args.limit}
    data = ctx.cache.get_or_fetch("list_artifacts", params, lambda: ctx.knowledge.list_artifacts(**params))
    artifacts = data.get("artifacts") if isinstance(data, dict) else None
    artifacts = [a for a in artifacts or [] if isinstance(a, dict)]
    return {
        "count": len(artifacts),
        "artifacts": [_artifact_summary(a) for a in artifacts[:LISTING_CAP]],
        "truncated": len(artifacts) > LISTING_CAP,
    }


register_tool(
    name=ToolName.LIST_ARTIFACTS,
    description="List project artifacts (long documents, exports). has_pageindex tells whether read_document_node can be used.",
    parameters={
        "type": "object",
        "properties": {
            "project_id": {"type": "string", "description": "Optional project id override."},
            "type": {"type": "string", "description": "Artifact type filter."},
            "limit": {"type": "integer", "minimum": 1, "maximum": 200},
        },
        "required": [],
        "additionalProperties": False,
    },
    input_model=ListArtifactsInput,
    handler=_list_artifacts,
)


# ---------------------------------------------------------------------------
# index_artifact_pageindex
# ---------------------------------------------------------------------------
PAGEINDEX_KINDS = ("auto", "markdown", "chunks", "pdf")


class IndexArtifactInput(ToolInput):
    artifact_id: str = ""
    kind: str = "auto"

    @field_validator("artifact_id", mode="before")
    @classmethod
    def artifact_id_required(cls, v):
        return _required(v, "artifact_id")

    @field_validator("kind", mode="before")
    @classmethod
    def known_kind(cls, v):
        s = (_optional(v) or "auto").lower()
        return s if s in PAGEINDEX_KINDS else "auto"


def _count_nodes(nodes: Any) -> int:
    if not isinstance(nodes, list):
        return 0
    return sum(1 + _count_nodes(n.get("nodes")) for n in nodes if isinstance(n, dict))


def _index_artifact_pageindex(ctx, args: IndexArtifactInput) -> dict:
    """Build (or rebuild) the hierarchical page index of an artifact."""
    params = {"artifact_id": args.artifact_id, "kind": args.kind}
    data = ctx.cache.get_or_fetch(
        "pageindex_build",
        params,
        lambda: ctx.knowledge.build_pageindex(args.artifact_id, args.kind),
    )
    if not isinstance(data, dict):
        data = {}
    pageindex = data.get("pageindex") if isinstance(data.get("pageindex"), dict) else data
    roots = pageindex.get("roots") if isinstance(pageindex.get("roots"), list) else []
    node_count = data.get("node_count")
    if not isinstance(node_count, int):
        node_count = _count_nodes(roots)
    return {
        "artifact_id": args.artifact_id,
        "kind": data.get("kind") or args.kind,
        "node_count": node_count,
        "roots": [
            {"node_id": r.get("node_id"), "title": r.get("title")}
            for r in roots[:20] if isinstance(r, dict)
        ],
    }


register_tool(
    name=ToolName.INDEX_ARTIFACT_PAGEINDEX,
    description=(
        "Build or rebuild the page index (section tree) of an artifact so its sections can be "
        "searched and read with read_document_node."
    ),
    parameters={
        "type": "object",
        "properties": {
            "artifact_id": {"type": "string"},
            "kind": {"type": "string", "enum": list(PAGEINDEX_KINDS), "description": "Indexing strategy (default auto)."},
        },
        "required": ["artifact_id"],
        "additionalProperties": False,
    },
    input_model=IndexArtifactInput,
    handler=_index_artifact_pageindex,
)


# ---------------------------------------------------------------------------
# read_document_node
# ---------------------------------------------------------------------------
class ReadDocumentNodeInput(ToolInput):
    artifact_id: str = ""
    node_id: str = ""

    @field_validator("artifact_id", mode="before")
    @classmethod
    def artifact_id_required(cls, v):
        return _required(v, "artifact_id")

    @field_validator("node_id", mode="before")
    @classmethod
    def node_id_required(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            v = str(v)
        return _required(v, "node_id")


def _text(v: Any) -> str:
    return v if isinstance(v, str) else ""


def _path_label(entry) -> str:
    # Ancestors arrive as {node_id, title} objects; older payloads send bare titles.
    if isinstance(entry, dict):
        return _text(entry.get("title")) or _text(entry.get("node_id"))
    return _text(entry)


def _read_document_node(ctx, args: ReadDocumentNodeInput) -> dict:
    """Read one page-index node and make it citable as document evidence."""
    params = {"artifact_id": args.artifact_id, "node_id": args.node_id}
    data = ctx.cache.get_or_fetch(
        "document_node",
        params,
        lambda: ctx.knowledge.read_pageindex_node(args.artifact_id, args.node_id),
    )
    if not isinstance(data, dict):
        data = {}
    node = data.get("node") if isinstance(data.get("node"), dict) else data

    path = data.get("path") if isinstance(data.get("path"), list) else node.get("path")
    path = [_path_label(p) for p in path] if isinstance(path, list) else []
    path = [p for p in path if p]
    title = _text(node.get("title")) or (path[-1] if path else "")
    if not path and title:
        path = [title]
    summary = _text(node.get("summary")) or _text(node.get("prefix_summary"))
    body = _text(node.get("text"))
    snippet = _text(node.get("excerpt")) or summary or body

    doc = RetrievedDocument(
        artifact_id=args.artifact_id,
        project_id=str(data.get("project_id") or ctx.project_id),
        node_id=args.node_id,
        title=title,
        path=path,
        excerpt=excerpt(snippet, DOCUMENT_EXCERPT_CHARS),
        score=0.0,
    )
    merge_evidence(ctx.evidence, EvidenceSet(documents=[doc]))

    full = body or snippet
    children = data.get("children")
    if not isinstance(children, list):
        children = node.get("nodes") if isinstance(node.get("nodes"), list) else []
    return {
        "artifact_id": args.artifact_id,
        "node_id": args.node_id,
        "title": title,
        "path": path,
        "summary": summary,
        "text": excerpt(full, TEXT_PREVIEW_CHARS),
        "truncated": len(full.strip()) > TEXT_PREVIEW_CHARS,
        "children": [
            {"node_id": c.get("node_id"), "title": c.get("title")}
            for c in children[:20] if isinstance(c, dict)
        ],
    }


register_tool(
    name=ToolName.READ_DOCUMENT_NODE,
    description=(
        "Read one section of a page-indexed document. Cite it afterwards as "
        "[doc:<artifact_id>#<node_id>]."
    ),
    parameters={
        "type": "object",
        "properties": {
            "artifact_id": {"type": "string"},
            "node_id": {"type": "string"},
        },
        "required": ["artifact_id", "node_id"],
        "additionalProperties": False,
    },
    input_model=ReadDocumentNodeInput,
    handler=_read_document_node,
)
