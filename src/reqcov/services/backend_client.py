"""Async client for the test-management backend REST API.

The client is the single collaborator the report service talks to. It:
- authenticates with a personal access token (basic auth, empty user name)
- caps the number of in-flight requests with a semaphore
- applies the configured timeout to each request
- caches read-only GET lookups for a short, fixed time
- normalizes payloads into the typed entities of `reqcov.core.models`

Example:
    config = BackendConfig.from_settings(get_settings().backend)
    async with BackendClient(config) as client:
        suites = await client.fetch_suite_tree("Project", 12)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from reqcov.core.models import (
    STEPS_FIELD,
    ActionResult,
    SharedStepDefinition,
    TestCaseDefinition,
    TestPoint,
    WorkItem,
    WorkItemFields,
    unique_ints,
)
from reqcov.services.cache import TTLCache

if TYPE_CHECKING:
    from reqcov.core.config import BackendSettings

logger = logging.getLogger(__name__)

API_VERSION = "7.1"
DEFAULT_TIMEOUT = 30.0

# Error bodies are appended to messages; keep them readable.
_MAX_DETAIL_LENGTH = 500


@dataclass(frozen=True)
class BackendConfig:
    """Configuration for the backend client."""

    org_url: str
    token: str = ""
    timeout: float = DEFAULT_TIMEOUT
    max_concurrency: int = 10
    cache_ttl_seconds: float = 30.0
    batch_size: int = 200

    @classmethod
    def from_settings(cls, settings: BackendSettings) -> BackendConfig:
        """Create config from BackendSettings."""
        return cls(
            org_url=settings.org_url,
            token=settings.token.get_secret_value(),
            timeout=settings.timeout,
            max_concurrency=settings.max_concurrency,
            cache_ttl_seconds=settings.cache_ttl_seconds,
            batch_size=settings.batch_size,
        )


class BackendError(Exception):
    """Base exception for backend client errors.

    Attributes:
        message: Error description, with the response body appended when known.
        status_code: HTTP status of the failed response, if any.
        detail: Raw response body text, if any.
    """

    def __init__(self, message: str, *, status_code: int | None = None, detail: str = "") -> None:
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class BackendConnectionError(BackendError):
    """Failed to reach the backend, or the request timed out."""


class BackendAuthError(BackendError):
    """Authentication or authorization failed."""


class BackendNotFoundError(BackendError):
    """Requested resource does not exist."""


def _project_path(project: str) -> str:
    return quote(project, safe="")


def _body_detail(response: httpx.Response) -> str:
    text = (response.text or "").strip()
    return text[:_MAX_DETAIL_LENGTH]


def map_test_point(payload: Mapping[str, Any]) -> TestPoint:
    """Map a raw test point to a TestPoint."""
    reference = payload.get("testCaseReference") or {}
    results = payload.get("results") or {}
    return TestPoint(
        test_case_id=int(reference.get("id") or 0),
        test_case_name=str(reference.get("name") or ""),
        last_run_id=int(results["lastTestRunId"]) if results.get("lastTestRunId") else None,
        last_result_id=int(results["lastResultId"]) if results.get("lastResultId") else None,
        outcome=str(results.get("outcome") or ""),
    )


def map_test_case(payload: Mapping[str, Any]) -> TestCaseDefinition:
    """Map a raw suite test case entry to a TestCaseDefinition."""
    work_item = payload.get("workItem") or payload
    fields = WorkItemFields.from_payload(work_item)
    return TestCaseDefinition(
        id=int(work_item.get("id") or 0),
        title=str(work_item.get("name") or fields.text("System.Title")),
        steps_xml=fields.text(STEPS_FIELD, "Steps"),
        fields=fields,
    )


class BackendClient:
    """Client for the test-management backend.

    Must be used as an async context manager; the HTTP connection pool lives
    for the duration of the context.
    """

    def __init__(
        self,
        config: BackendConfig,
        *,
        cache: TTLCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Backend connection configuration.
            cache: Read cache; a new one with the configured TTL by default.
            transport: Optional httpx transport, for tests.
        """
        self._config = config
        self._cache = cache if cache is not None else TTLCache(config.cache_ttl_seconds)
        self._transport = transport
        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._client: httpx.AsyncClient | None = None

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def __aenter__(self) -> BackendClient:
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            base_url=self._config.org_url,
            timeout=self._config.timeout,
            auth=httpx.BasicAuth("", self._config.token) if self._config.token else None,
            params={"api-version": API_VERSION},
            headers={"Accept": "application/json"},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = "BackendClient must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        if response.is_success:
            return
        detail = _body_detail(response)
        suffix = f": {detail}" if detail else ""
        status = response.status_code
        if status in (401, 403):
            raise BackendAuthError(
                f"Backend authentication failed ({status}) for {path}{suffix}",
                status_code=status,
                detail=detail,
            )
        if status == 404:
            raise BackendNotFoundError(
                f"Backend resource not found: {path}{suffix}",
                status_code=status,
                detail=detail,
            )
        raise BackendError(
            f"Backend request failed ({status}) for {path}{suffix}",
            status_code=status,
            detail=detail,
        )

    def _decode(self, response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            detail = _body_detail(response)
            raise BackendError(
                f"Backend returned a non-JSON body ({response.status_code}) for {path}",
                status_code=response.status_code,
                detail=detail,
            ) from e

    async def _get_json(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        *,
        use_cache: bool = True,
    ) -> Any:
        """GET a JSON document, through the read cache.

        Raises:
            BackendConnectionError: Network failure or timeout.
            BackendAuthError: 401/403.
            BackendNotFoundError: 404.
            BackendError: Any other non-success status, or a body that is not JSON.
        """
        cache_key = ("GET", path, tuple(sorted((params or {}).items())))
        if use_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        client = self._get_client()
        async with self._semaphore:
            try:
                response = await client.get(path, params=params)
            except httpx.TimeoutException as e:
                raise BackendConnectionError(f"Backend request timed out: {path}") from e
            except httpx.TransportError as e:
                raise BackendConnectionError(f"Cannot connect to backend: {e}") from e

        self._raise_for_status(response, path)
        data = self._decode(response, path)
        if use_cache:
            self._cache.put(cache_key, data)
        return data

    async def _post_json(self, path: str, payload: Mapping[str, Any]) -> Any:
        client = self._get_client()
        async with self._semaphore:
            try:
                response = await client.post(path, json=payload)
            except httpx.TimeoutException as e:
                raise BackendConnectionError(f"Backend request timed out: {path}") from e
            except httpx.TransportError as e:
                raise BackendConnectionError(f"Cannot connect to backend: {e}") from e

        self._raise_for_status(response, path)
        return self._decode(response, path)

    # -------------------------------------------------------------------------
    # Test plans
    # -------------------------------------------------------------------------

    async def fetch_plan_name(self, project: str, plan_id: int) -> str:
        data = await self._get_json(f"{_project_path(project)}/_apis/testplan/Plans/{plan_id}")
        return str(data.get("name") or "")

    async def fetch_suite_tree(self, project: str, plan_id: int) -> list[dict[str, Any]]:
        """Fetch the plan's suites as a tree (root suites with `children`).

        Raises:
            BackendNotFoundError: When the plan has no suites.
        """
        path = f"{_project_path(project)}/_apis/testplan/Plans/{plan_id}/Suites"
        data = await self._get_json(path, {"asTreeView": "true"})
        suites = data.get("value") or []
        if not suites:
            msg = f"No test suites found for plan {plan_id}"
            raise BackendNotFoundError(msg)
        return suites

    async def fetch_test_points(self, project: str, plan_id: int, suite_id: int) -> list[TestPoint]:
        path = f"{_project_path(project)}/_apis/testplan/Plans/{plan_id}/Suites/{suite_id}/TestPoint"
        data = await self._get_json(path, {"includePointDetails": "true"}, use_cache=False)
        return [
            point
            for point in (map_test_point(item) for item in data.get("value") or [])
            if point.test_case_id
        ]

    async def fetch_suite_test_cases(
        self, project: str, plan_id: int, suite_id: int
    ) -> dict[int, TestCaseDefinition]:
        path = f"{_project_path(project)}/_apis/testplan/Plans/{plan_id}/Suites/{suite_id}/TestCase"
        data = await self._get_json(path, {"witFields": STEPS_FIELD}, use_cache=False)
        test_cases = (map_test_case(item) for item in data.get("value") or [])
        return {test_case.id: test_case for test_case in test_cases if test_case.id}

    # -------------------------------------------------------------------------
    # Test runs
    # -------------------------------------------------------------------------

    async def fetch_iterations(self, project: str, run_id: int, result_id: int) -> list[dict[str, Any]]:
        path = f"{_project_path(project)}/_apis/test/runs/{run_id}/Results/{result_id}/iterations"
        data = await self._get_json(path, {"includeActionResults": "true"}, use_cache=False)
        return list(data.get("value") or [])

    async def fetch_run_action_results(
        self, project: str, run_id: int, result_id: int
    ) -> list[ActionResult] | None:
        """Action results of the last iteration of a test result.

        Returns:
            The results, or None when the result has no iteration.
        """
        iterations = await self.fetch_iterations(project, run_id, result_id)
        if not iterations:
            return None
        last = iterations[-1]
        return [
            ActionResult.from_payload(item)
            for item in last.get("actionResults") or []
            if isinstance(item, Mapping)
        ]

    # -------------------------------------------------------------------------
    # Work items
    # -------------------------------------------------------------------------

    async def _fetch_work_item_batch(
        self, ids: Sequence[int], include_relations: bool
    ) -> list[WorkItem]:
        params: dict[str, Any] = {"ids": ",".join(str(i) for i in ids), "errorPolicy": "omit"}
        if include_relations:
            params["$expand"] = "relations"
        data = await self._get_json("_apis/wit/workitems", params)
        return [
            WorkItem.from_payload(item)
            for item in data.get("value") or []
            if isinstance(item, Mapping) and item.get("id")
        ]

    async def fetch_work_items_by_ids(
        self, ids: Sequence[int], *, include_relations: bool = False
    ) -> list[WorkItem]:
        """Batch fetch work items, optionally with their relations.

        Ids are deduplicated; batches run concurrently up to the concurrency cap.
        Missing ids are omitted from the result.
        """
        unique = unique_ints(ids)
        if not unique:
            return []
        size = self._config.batch_size
        batches = [unique[i : i + size] for i in range(0, len(unique), size)]
        results = await asyncio.gather(
            *(self._fetch_work_item_batch(batch, include_relations) for batch in batches),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        if failures:
            for failure in failures:
                logger.error("Work item batch failed: %s", failure)
            raise failures[0]
        work_items = [item for batch in results for item in batch]
        logger.debug(
            "Fetched %d of %d work items in %d batch(es)", len(work_items), len(unique), len(batches)
        )
        return work_items

    async def fetch_work_item_revision(self, work_item_id: int, revision: int) -> WorkItem:
        data = await self._get_json(f"_apis/wit/workitems/{work_item_id}/revisions/{revision}")
        return WorkItem.from_payload(data)

    async def fetch_test_case_steps(self, work_item_id: int, revision: int | None = None) -> str:
        """Steps XML of a work item, at a revision when one is given."""
        if revision:
            work_item = await self.fetch_work_item_revision(work_item_id, revision)
        else:
            data = await self._get_json(
                f"_apis/wit/workitems/{work_item_id}", {"fields": f"{STEPS_FIELD},System.Title"}
            )
            work_item = WorkItem.from_payload(data)
        return work_item.fields.text(STEPS_FIELD)

    async def fetch_shared_step(
        self, work_item_id: int, revision: int | None = None
    ) -> SharedStepDefinition:
        """Title and steps of a shared-step work item, at a revision when given."""
        if revision:
            work_item = await self.fetch_work_item_revision(work_item_id, revision)
        else:
            data = await self._get_json(f"_apis/wit/workitems/{work_item_id}")
            work_item = WorkItem.from_payload(data)
        return SharedStepDefinition(title=work_item.title, steps_xml=work_item.fields.text(STEPS_FIELD))

    async def query_work_item_ids(self, project: str, wiql: str) -> list[int]:
        """Run a WIQL query and return the matching work item ids."""
        data = await self._post_json(f"{_project_path(project)}/_apis/wit/wiql", {"query": wiql})
        return unique_ints(item.get("id") for item in data.get("workItems") or [])
