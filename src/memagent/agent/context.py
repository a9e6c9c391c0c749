"""
Per-run state shared by the conversation loop and the tool handlers.

A RunContext is created once per run and passed explicitly; nothing here is
module-global, so two runs in one process never see each other's evidence or
cache entries.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from memagent.cache import RunCache
from memagent.config import MEMORY_MODES, clamp_int
from memagent.evidence import EvidenceSet, merge_evidence
from memagent.knowledge import KnowledgeClient
from memagent.progress import ProgressSink

RETRIEVAL_MODES = ("auto", "memories", "documents", "hybrid")
DEFAULT_DOCUMENT_LIMIT = 8


@dataclass
class RunContext:
    knowledge: KnowledgeClient
    project_id: str
    session_id: str = ""
    evidence_limit: int = 12
    include_assets: bool = False
    memory_mode: str = "balanced"
    progress: ProgressSink = field(default_factory=ProgressSink.null)
    cache: RunCache = field(default_factory=RunCache)
    evidence: EvidenceSet = field(default_factory=EvidenceSet)

    def search_params(
        self,
        query: str,
        *,
        project_id: Optional[str] = None,
        limit: Optional[int] = None,
        include_assets: Optional[bool] = None,
        include_documents: Optional[bool] = None,
        document_limit: Optional[int] = None,
        retrieval_mode: Optional[str] = None,
        memory_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fill run defaults so equal requests produce equal cache keys."""
        mode = (retrieval_mode or "").strip().lower()
        mem_mode = (memory_mode or "").strip().lower()
        return {
            "query": query.strip(),
            "project_id": (project_id or "").strip() or self.project_id,
            "limit": clamp_int(limit, self.evidence_limit, 1, 50),
            "include_assets": self.include_assets if include_assets is None else bool(include_assets),
            "include_documents": True if include_documents is None else bool(include_documents),
            "document_limit": clamp_int(document_limit, DEFAULT_DOCUMENT_LIMIT, 0, 50),
            "retrieval_mode": mode if mode in RETRIEVAL_MODES else "auto",
            "memory_mode": mem_mode if mem_mode in MEMORY_MODES else self.memory_mode,
        }

    def retrieve(self, query: str, **overrides: Any) -> EvidenceSet:
        """
        Run one retrieval against the knowledge service and merge it into the run's evidence.

        Identical normalized requests are served from the run cache; the merge
        runs either way since it is idempotent.

        Returns:
            The evidence returned by this retrieval alone.
        """
        params = self.search_params(query, **overrides)
        response = self.cache.get_or_fetch(
            "search_evidence",
            params,
            lambda: self.knowledge.ask(**params),
        )
        retrieved = EvidenceSet.from_payload(response.get("retrieved") if isinstance(response, dict) else None)
        merge_evidence(self.evidence, retrieved)
        return retrieved
