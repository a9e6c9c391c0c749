"""
Client for the knowledge service HTTP API.

Pure transport: builds URLs, forwards the caller's Authorization header and
returns decoded payloads. No caching or evidence bookkeeping happens here.
"""
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from memagent.logging import logger
from memagent.transport import (
    ASSET_BYTES_TIMEOUT_MS,
    DEFAULT_TIMEOUT_MS,
    BytesResponse,
    request_bytes,
    request_json,
)


def normalize_base_url(url: str) -> str:
    return (url or "").strip().rstrip("/")


def _segment(value: str) -> str:
    return quote(str(value), safe="")


def _drop_none(params: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in params.items():
        if v is None or v == "":
            continue
        out[k] = ("true" if v else "false") if isinstance(v, bool) else v
    return out


class KnowledgeClient:
    """
    Knowledge service API bound to one base URL and forwarded credential.

    The authorization value is never logged.
    """

    def __init__(
        self,
        base_url: str,
        authorization: str = "",
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        http: Optional[httpx.Client] = None,
    ):
        if not normalize_base_url(base_url):
            raise ValueError("base_url cannot be empty")
        self.base_url = normalize_base_url(base_url)
        self.timeout_ms = timeout_ms
        self._authorization = (authorization or "").strip()
        self._http = http
        logger.debug(f"Knowledge client initialized for {self.base_url}")

    def __enter__(self):
        if self._http is None:
            self._http = httpx.Client()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path if path.startswith('/') else '/' + path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._authorization:
            headers["Authorization"] = self._authorization
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return request_json(
            self._url(path),
            headers=self._headers(),
            params=_drop_none(params or {}),
            timeout_ms=self.timeout_ms,
            client=self._http,
        )

    def _post(self, path: str, body: Dict[str, Any]) -> Any:
        # httpx sets Content-Type: application/json for json= bodies
        return request_json(
            self._url(path),
            method="POST",
            headers=self._headers(),
            json=body,
            timeout_ms=self.timeout_ms,
            client=self._http,
        )

    # ------------------------------------------------------------------
    # retrieval
    # ------------------------------------------------------------------
    def ask(
        self,
        *,
        query: str,
        project_id: Optional[str],
        limit: int,
        include_assets: bool,
        include_documents: bool = True,
        document_limit: Optional[int] = None,
        retrieval_mode: Optional[str] = None,
        memory_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Retrieval-only search (``dry_run=true``); synthesis happens in this process."""
        body: Dict[str, Any] = {
            "query": query,
            "project_id": project_id,
            "include_assets": include_assets,
            "include_documents": include_documents,
            "dry_run": True,
            "limit": limit,
        }
        if document_limit is not None:
            body["document_limit"] = document_limit
        if retrieval_mode:
            body["retrieval_mode"] = retrieval_mode
        if memory_mode:
            body["memory_mode"] = memory_mode
        return self._post("/api/agent/ask", body) or {}

    # ------------------------------------------------------------------
    # assets
    # ------------------------------------------------------------------
    def get_asset(self, asset_id: str) -> Dict[str, Any]:
        data = self._get(f"/api/assets/{_segment(asset_id)}") or {}
        # Some deployments wrap the record as {"asset": {...}}
        if isinstance(data, dict) and isinstance(data.get("asset"), dict):
            return data["asset"]
        return data

    def read_asset_bytes(self, asset_id: str, byte_start: int, byte_end: int) -> BytesResponse:
        return request_bytes(
            self._url(f"/api/assets/{_segment(asset_id)}/object"),
            headers=self._headers(),
            params={"byte_start": byte_start, "byte_end": byte_end},
            timeout_ms=ASSET_BYTES_TIMEOUT_MS,
            client=self._http,
        )

    def list_assets(
        self,
        *,
        project_id: Optional[str],
        q: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        include_memory_links: bool = False,
    ) -> Dict[str, Any]:
        return self._get(
            "/api/assets",
            {
                "project_id": project_id,
                "q": q,
                "status": status,
                "limit": limit,
                "include_memory_links": include_memory_links or None,
            },
        ) or {}

    def link_asset(self, *, asset_id: str, memory_id: str, relation: str) -> Dict[str, Any]:
        return self._post(
            f"/api/assets/{_segment(asset_id)}/link",
            {"memory_id": memory_id, "relation": relation},
        ) or {}

    # ------------------------------------------------------------------
    # memories
    # ------------------------------------------------------------------
    def create_memory(
        self,
        *,
        project_id: str,
        category: str,
        title: str,
        content: str,
        tags: list,
        confidence: float,
    ) -> Dict[str, Any]:
        return self._post(
            "/api/memories",
            {
                "project_id": project_id,
                "category": category,
                "title": title,
                "content": content,
                "tags": tags,
                "confidence": confidence,
            },
        ) or {}

    # ------------------------------------------------------------------
    # artifacts & page index
    # ------------------------------------------------------------------
    def list_artifacts(self, *, project_id: Optional[str], type: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        return self._get("/api/artifacts", {"project_id": project_id, "type": type, "limit": limit}) or {}

    def build_pageindex(self, artifact_id: str, kind: str = "auto") -> Dict[str, Any]:
        return self._post(f"/api/artifacts/{_segment(artifact_id)}/pageindex", {"kind": kind}) or {}

    def read_pageindex_node(self, artifact_id: str, node_id: str) -> Dict[str, Any]:
        return self._get(f"/api/artifacts/{_segment(artifact_id)}/pageindex/node/{_segment(node_id)}") or {}
