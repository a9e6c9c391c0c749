"""
Per-run memoization of knowledge-service reads.

One table per cacheable operation, keyed by the canonical JSON of the
normalized arguments. Failures are never stored, so a failed call is retried
the next time the model asks for it. A RunCache lives exactly as long as its
RunContext.
"""
import json
from typing import Any, Callable, Dict, Mapping, TypeVar

T = TypeVar("T")

CACHE_TABLES = (
    "search_evidence",
    "asset_meta",
    "asset_bytes",
    "list_assets",
    "list_artifacts",
    "pageindex_build",
    "document_node",
)


def canonical_key(args: Mapping[str, Any]) -> str:
    return json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)


class RunCache:
    def __init__(self):
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in CACHE_TABLES}
        self.hits = 0
        self.misses = 0

    def get_or_fetch(self, table: str, args: Mapping[str, Any], fetch: Callable[[], T]) -> T:
        """Return the cached value for *args*, calling *fetch* once on a miss."""
        entries = self._tables[table]
        key = canonical_key(args)
        if key in entries:
            self.hits += 1
            return entries[key]
        self.misses += 1
        value = fetch()
        entries[key] = value
        return value

    def size(self, table: str) -> int:
        return len(self._tables[table])

    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses}
