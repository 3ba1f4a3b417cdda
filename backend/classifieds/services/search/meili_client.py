from __future__ import annotations

import os
import time
from typing import Any
from urllib.parse import quote

import requests

from classifieds.services.search import (
    LISTINGS_FILTERABLE_ATTRIBUTES,
    LISTINGS_SEARCHABLE_ATTRIBUTES,
    LISTINGS_SORTABLE_ATTRIBUTES,
)


class SearchUnavailable(RuntimeError):
    """Raised when the search index cannot be reached."""


class SearchNotInitialized(SearchUnavailable):
    """Raised when a requested Meilisearch index has not been created yet."""

    def __init__(self, index_name: str):
        safe_name = str(index_name or "").strip() or "unknown"
        self.index_name = safe_name
        super().__init__(f"Search index '{safe_name}' is not initialized. Run `flask search-init`.")


class MeiliApiError(SearchUnavailable):
    """Raised for non-5xx Meilisearch API errors with parsed metadata."""

    def __init__(self, status_code: int, detail: dict[str, Any] | None = None):
        safe_detail = detail if isinstance(detail, dict) else {}
        self.status_code = int(status_code)
        self.detail = safe_detail
        self.error_code = str(safe_detail.get("code") or "").strip().lower()
        message = str(safe_detail.get("message") or "").strip() or "Meilisearch request failed"
        super().__init__(f"Meilisearch error {self.status_code}: {message}")

    @property
    def is_index_not_found(self) -> bool:
        return self.status_code == 404 and self.error_code == "index_not_found"

    @property
    def is_index_already_exists(self) -> bool:
        return self.status_code == 409 and self.error_code == "index_already_exists"

    @property
    def is_document_not_found(self) -> bool:
        return self.status_code == 404 and self.error_code == "document_not_found"


def _timeout_seconds() -> float:
    raw = (os.getenv("SEARCH_TIMEOUT_MS") or "1500").strip()
    try:
        timeout_ms = int(raw)
    except ValueError:
        timeout_ms = 1500
    return float(max(100, timeout_ms)) / 1000.0


def _max_total_hits() -> int:
    raw = (os.getenv("SEARCH_MAX_TOTAL_HITS") or "10000").strip()
    try:
        return max(1000, int(raw))
    except ValueError:
        return 10000


class MeiliClient:
    def __init__(self, *, host: str | None = None, api_key: str | None = None, timeout: float | None = None):
        resolved_host = str(host or os.getenv("MEILI_HOST") or "").strip()
        if not resolved_host:
            raise SearchUnavailable("MEILI_HOST is not configured")
        self.host = resolved_host.rstrip("/")
        self.api_key = str(api_key if api_key is not None else (os.getenv("MEILI_API_KEY") or "")).strip()
        self.timeout = float(timeout if timeout is not None else _timeout_seconds())
        self.session = requests.Session()
        if self.api_key:
            self.session.headers.update({"Authorization": f"Bearer {self.api_key}"})
        self.session.headers.update({"Content-Type": "application/json"})

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | list | None = None,
        params: dict | None = None,
        ok_codes: tuple[int, ...] = (200, 201, 202, 204),
    ) -> Any:
        url = f"{self.host}{path}"
        try:
            response = self.session.request(method=method, url=url, json=json_body, params=params, timeout=self.timeout)
        except requests.Timeout as exc:
            raise SearchUnavailable("Meilisearch request timed out") from exc
        except requests.RequestException as exc:
            raise SearchUnavailable(f"Meilisearch request failed: {exc}") from exc

        if response.status_code not in ok_codes:
            if response.status_code in (500, 502, 503, 504):
                raise SearchUnavailable(f"Meilisearch unavailable ({response.status_code})")
            try:
                detail = response.json()
            except ValueError:
                detail = {"message": response.text[:300]}
            raise MeiliApiError(response.status_code, detail)

        if response.status_code == 204:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    @staticmethod
    def _index_path(index_name: str) -> str:
        safe_name = str(index_name or "").strip()
        if not safe_name:
            raise SearchUnavailable("Index name is required")
        return f"/indexes/{quote(safe_name, safe='')}"

    def get_health(self) -> dict[str, Any]:
        return self._request("GET", "/health", ok_codes=(200,))

    def index_exists(self, index_name: str) -> bool:
        try:
            self._request("GET", self._index_path(index_name), ok_codes=(200,))
            return True
        except MeiliApiError as exc:
            if exc.is_index_not_found:
                return False
            raise

    def get_index_stats(self, index_name: str) -> dict[str, Any]:
        try:
            return self._request("GET", f"{self._index_path(index_name)}/stats", ok_codes=(200,))
        except MeiliApiError as exc:
            if exc.is_index_not_found:
                raise SearchNotInitialized(index_name) from exc
            raise

    def ensure_index(self, index_name: str, primary_key: str = "id") -> dict[str, Any]:
        path = self._index_path(index_name)
        try:
            return self._request("GET", path, ok_codes=(200,))
        except MeiliApiError as exc:
            if not exc.is_index_not_found:
                raise

        payload = {"uid": str(index_name).strip(), "primaryKey": str(primary_key or "id")}
        try:
            self._request("POST", "/indexes", json_body=payload, ok_codes=(200, 201, 202))
        except MeiliApiError as exc:
            # Concurrent callers can race to create the same index.
            if not exc.is_index_already_exists:
                raise

        # Index creation is an async task; poll briefly until it is queryable.
        for _ in range(10):
            try:
                return self._request("GET", path, ok_codes=(200,))
            except MeiliApiError as exc:
                if not exc.is_index_not_found:
                    raise
                time.sleep(0.1)
        raise SearchUnavailable(f"Meilisearch index '{index_name}' is not ready yet")

    def configure_listings_index(self, index_name: str) -> dict[str, Any]:
        self.ensure_index(index_name, primary_key="id")
        payload = {
            "filterableAttributes": list(LISTINGS_FILTERABLE_ATTRIBUTES),
            "sortableAttributes": list(LISTINGS_SORTABLE_ATTRIBUTES),
            "searchableAttributes": list(LISTINGS_SEARCHABLE_ATTRIBUTES),
            "pagination": {"maxTotalHits": _max_total_hits()},
        }
        return self._request("PATCH", f"{self._index_path(index_name)}/settings", json_body=payload, ok_codes=(200, 202))

    def ensure_listings_index(self, index_name: str) -> bool:
        """Create and configure the listings index if missing; True when created."""
        if self.index_exists(index_name):
            return False
        self.configure_listings_index(index_name)
        return True

    def upsert_documents(self, index_name: str, docs: list[dict[str, Any]]) -> dict[str, Any]:
        if not docs:
            return {}
        return self._request(
            "POST",
            f"{self._index_path(index_name)}/documents",
            json_body=docs,
            params={"primaryKey": "id"},
            ok_codes=(200, 202),
        )

    def delete_document(self, index_name: str, doc_id: str) -> dict[str, Any]:
        try:
            return self._request(
                "DELETE",
                f"{self._index_path(index_name)}/documents/{quote(str(doc_id), safe='')}",
                ok_codes=(200, 202, 204),
            )
        except MeiliApiError as exc:
            if exc.is_index_not_found or exc.is_document_not_found:
                return {}
            raise

    def delete_documents(self, index_name: str, doc_ids: list[str]) -> dict[str, Any]:
        if not doc_ids:
            return {}
        try:
            return self._request(
                "POST",
                f"{self._index_path(index_name)}/documents/delete-batch",
                json_body=[str(i) for i in doc_ids],
                ok_codes=(200, 202),
            )
        except MeiliApiError as exc:
            if exc.is_index_not_found:
                return {}
            raise

    def list_document_ids(self, index_name: str, *, limit: int, offset: int) -> tuple[list[str], int]:
        try:
            payload = self._request(
                "GET",
                f"{self._index_path(index_name)}/documents",
                params={"fields": "id", "limit": int(limit), "offset": int(offset)},
                ok_codes=(200,),
            )
        except MeiliApiError as exc:
            if exc.is_index_not_found:
                raise SearchNotInitialized(index_name) from exc
            raise
        results = payload.get("results") or []
        return [str(row.get("id")) for row in results if row.get("id") is not None], int(payload.get("total") or 0)

    def wait_for_task(self, task_uid: int, *, timeout: float = 5.0, interval: float = 0.05) -> dict[str, Any]:
        deadline = time.monotonic() + max(0.0, float(timeout))
        while True:
            task = self._request("GET", f"/tasks/{int(task_uid)}", ok_codes=(200,))
            if str(task.get("status") or "") in ("succeeded", "failed", "canceled"):
                return task
            if time.monotonic() >= deadline:
                return task
            time.sleep(interval)

    def search(
        self,
        index_name: str,
        q: str,
        filters: list[str] | None,
        sort: list[str] | None,
        *,
        page: int,
        hits_per_page: int,
    ) -> dict[str, Any]:
        # page/hitsPerPage makes Meilisearch count totalHits exhaustively.
        payload: dict[str, Any] = {
            "q": str(q or ""),
            "page": int(max(1, page)),
            "hitsPerPage": int(max(1, hits_per_page)),
        }
        if filters:
            payload["filter"] = list(filters)
        if sort:
            payload["sort"] = list(sort)
        try:
            return self._request("POST", f"{self._index_path(index_name)}/search", json_body=payload, ok_codes=(200,))
        except MeiliApiError as exc:
            if exc.is_index_not_found:
                raise SearchNotInitialized(index_name) from exc
            raise


def get_meili_client() -> MeiliClient:
    return MeiliClient()
