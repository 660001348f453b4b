"""HTTP client for the hosted knowledge-base vector store, with retry logic,
timeout handling and an in-memory LRU cache of search results.

The documentation sync job uploads the help-centre articles into an OpenAI
vector store tagged with ``metadata.key = <VECTOR_STORE_KEY>``.  This client
finds that store once, then runs semantic searches against it.

API docs: https://platform.openai.com/docs/api-reference/vector-stores
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from triage_agent.config import OPENAI_API_KEY, OPENAI_BASE_URL, VECTOR_STORE_KEY
from triage_agent.services.cache import LRUCache

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 20.0

_CK_SEARCH = "search:"


class VectorStoreAPIError(Exception):
    """Raised when a vector store call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _hit_text(hit: dict[str, Any]) -> str:
    parts = [
        part.get("text", "")
        for part in hit.get("content") or []
        if part.get("type") == "text"
    ]
    return "\n".join(p for p in parts if p)


class VectorStoreClient:
    """Thin wrapper around the vector store search endpoint.

    Search results are cached per ``(limit, query)`` for the cache TTL; the
    store id never changes for the life of the process once found.
    """

    def __init__(
        self,
        api_key: str | None = None,
        vector_store_key: str | None = None,
        base_url: str | None = None,
        *,
        cache: LRUCache | None = None,
    ):
        self._api_key = api_key or OPENAI_API_KEY
        self._vector_store_key = vector_store_key or VECTOR_STORE_KEY
        self._client = httpx.Client(
            base_url=base_url or OPENAI_BASE_URL,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "OpenAI-Beta": "assistants=v2",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._vector_store_id: str | None = None
        self._cache = cache or LRUCache()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(method, path, params=params, json=json_body)
                if response.status_code == 429 or response.status_code >= 500:
                    raise VectorStoreAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise VectorStoreAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Vector store attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except VectorStoreAPIError as exc:
                if exc.status_code and (exc.status_code == 429 or exc.status_code >= 500):
                    last_error = exc
                    logger.warning(
                        "Vector store error %s on attempt %d/%d. Retrying…",
                        exc.status_code, attempt, MAX_RETRIES,
                    )
                else:
                    raise

            time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise VectorStoreAPIError(
            f"Vector store request failed after {MAX_RETRIES} retries: {last_error}"
        )

    def get_vector_store_id(self) -> str:
        """Return the id of the store tagged with our key (looked up once)."""
        if self._vector_store_id is None:
            data = self._request("GET", "/vector_stores", params={"limit": 100})
            for store in data.get("data", []):
                if (store.get("metadata") or {}).get("key") == self._vector_store_key:
                    self._vector_store_id = store["id"]
                    logger.info(
                        "Using vector store %s for key %s",
                        self._vector_store_id, self._vector_store_key,
                    )
                    break
            else:
                raise VectorStoreAPIError(
                    f"No vector store found with metadata key {self._vector_store_key!r}"
                )
        return self._vector_store_id

    def search(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        """Semantic search; returns ``[{filename, score, text}]`` best first."""
        cache_key = f"{_CK_SEARCH}{limit}:{query.strip().lower()}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        store_id = self.get_vector_store_id()
        data = self._request(
            "POST",
            f"/vector_stores/{store_id}/search",
            json_body={"query": query, "max_num_results": limit},
        )
        results = [
            {
                "filename": hit.get("filename") or hit.get("file_id") or "unknown",
                "score": round(float(hit.get("score") or 0.0), 3),
                "text": _hit_text(hit),
            }
            for hit in data.get("data", [])
        ]
        results.sort(key=lambda r: r["score"], reverse=True)
        self._cache.put(cache_key, results)
        return results

    def clear_cache(self) -> None:
        removed = self._cache.invalidate_prefix(_CK_SEARCH)
        logger.debug("Cache: cleared %d search entries", removed)

    def close(self) -> None:
        self._client.close()
