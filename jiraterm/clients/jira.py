from __future__ import annotations

import base64
import logging
import time
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from jiraterm.clients import parser
from jiraterm.core.config import Credentials
from jiraterm.core.errors import (
    ApiError,
    AuthError,
    JiraError,
    NetworkError,
    NotFoundError,
    ParseError,
    RateLimited,
    ServerError,
    ValidationError,
)
from jiraterm.core.metrics import Metrics
from jiraterm.core.rate_limiter import RateLimiter
from jiraterm.core.retry import RetryExecutor
from jiraterm.models.jira import (
    Comment,
    CreateTicketData,
    IssueType,
    Project,
    RichText,
    SearchResult,
    Ticket,
    TicketPatch,
    TicketRef,
    Transition,
)

logger = logging.getLogger(__name__)


def _snippet(r: httpx.Response) -> str:
    return (r.text or "")[:300].replace("\n", " ")


def _log_http_status(operation: str, r: httpx.Response) -> None:
    """Compact summary of a failed response: status, URL and a short snippet."""
    try:
        url: Any = r.request.url
    except RuntimeError:
        url = "?"
    logger.warning("[Jira] %s HTTP %s on %s: %s", operation, r.status_code, url, _snippet(r))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as delta-seconds or an HTTP date; None when unusable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def classify_response(r: httpx.Response) -> JiraError:
    """Map a non-2xx response onto the error taxonomy."""
    status = r.status_code
    snippet = _snippet(r)
    if status in (401, 403):
        return AuthError(
            "Unauthorized" if status == 401 else "Forbidden", status_code=status
        )
    if status == 404:
        return NotFoundError("Resource not found", status_code=status)
    if status == 429:
        return RateLimited(
            "Too many requests",
            retry_after=parse_retry_after(r.headers.get("Retry-After")),
        )
    if status >= 500:
        return ServerError(f"Jira error {status}: {snippet}", status_code=status)
    if status == 400:
        try:
            body = r.json()
        except ValueError:
            body = None
        messages, field_errors = parser.parse_error_body(body)
        summary = "; ".join(messages + [f"{k}: {v}" for k, v in field_errors.items()])
        return ValidationError(
            summary or f"Bad request: {snippet}",
            field_errors=field_errors,
            messages=messages,
            status_code=status,
        )
    return ApiError(f"Jira error {status}: {snippet}", status_code=status)


class JiraClient:
    """Async client for the Jira Cloud REST API v3.

    Every HTTP attempt takes a token from the rate limiter and runs inside the
    retry executor; responses come back as domain models or as a classified
    ``JiraError``. Nothing is cached here.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        retry: Optional[RetryExecutor] = None,
        metrics: Optional[Metrics] = None,
        timeout: float = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.credentials = credentials
        self.metrics = metrics or Metrics()
        self.rate_limiter = rate_limiter or RateLimiter.jira_cloud(metrics=self.metrics)
        self.retry = retry or RetryExecutor(metrics=self.metrics)
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def _headers(self) -> Dict[str, str]:
        c = self.credentials
        if c.auth_type == "bearer":
            auth = f"Bearer {c.token}"
        else:
            raw = f"{c.username}:{c.token}".encode()
            auth = f"Basic {base64.b64encode(raw).decode()}"
        return {
            "Authorization": auth,
            "Accept": "application/json",
        }

    @property
    def _base_url(self) -> str:
        return self.credentials.base_url

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """One rate-limited HTTP attempt. Returns parsed JSON, or None on 204."""
        await self.rate_limiter.wait_for_token()

        url = f"{self._base_url}{path}"
        logger.debug("[Jira] %s %s", method, url)
        start = time.perf_counter()
        try:
            r = await self._client.request(
                method=method,
                url=url,
                headers=self._headers,
                params=params,
                json=json_body,
            )
        except httpx.RequestError as e:
            self.metrics.requests.labels(operation, method, "network").inc()
            logger.warning("[Jira] %s unreachable %s: %s", operation, url, e)
            raise NetworkError(f"Network error: {e}") from e
        finally:
            self.metrics.latency.labels(operation, method).observe(time.perf_counter() - start)

        self.metrics.requests.labels(operation, method, str(r.status_code)).inc()

        if r.status_code >= 400:
            _log_http_status(operation, r)
            raise classify_response(r)

        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError:
            raise ParseError(f"Invalid JSON body (len={len(r.content)})")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        target: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        async def attempt() -> Any:
            return await self._send(
                method, path, operation=operation, params=params, json_body=json_body
            )

        return await self.retry.execute(attempt, operation_name=operation, target=target)

    @staticmethod
    def _parsed(operation: str, target: Optional[str], fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ParseError as e:
            raise e.with_context(operation, target)

    async def get_ticket(self, key: str) -> Ticket:
        data = await self._request(
            "GET",
            f"/issue/{key}",
            operation="get_ticket",
            target=key,
            params={"fields": ",".join(parser.ISSUE_FIELDS)},
        )
        return self._parsed("get_ticket", key, parser.parse_issue, data)

    async def search(self, jql: str, start_at: int = 0, page_size: int = 50) -> SearchResult:
        body: Dict[str, Any] = {
            "jql": jql,
            "startAt": max(0, start_at),
            "maxResults": max(1, page_size),
            "fields": parser.ISSUE_FIELDS,
        }
        data = await self._request(
            "POST", "/search", operation="search", target=jql, json_body=body
        )
        return self._parsed(
            "search",
            jql,
            parser.parse_search,
            data,
            jql=jql,
            start_at=start_at,
            page_size=page_size,
        )

    async def search_all(
        self,
        jql: str,
        page_size: int = 50,
        limit: Optional[int] = None,
    ) -> List[Ticket]:
        """Walk every page of ``jql``; ``limit`` caps the number of tickets."""
        tickets: List[Ticket] = []
        start_at = 0
        while True:
            size = page_size
            if limit is not None:
                remaining = limit - len(tickets)
                if remaining <= 0:
                    break
                size = max(1, min(page_size, remaining))
            result = await self.search(jql, start_at, size)
            tickets.extend(result.tickets)
            if not result.page.has_more or not result.page.keys:
                break
            start_at = result.page.next_start_at
        if limit is not None:
            tickets = tickets[:limit]
        return tickets

    async def create_ticket(self, data: CreateTicketData) -> TicketRef:
        created = await self._request(
            "POST",
            "/issue",
            operation="create_ticket",
            target=data.project_key,
            json_body=data.to_wire(),
        )
        return self._parsed("create_ticket", data.project_key, parser.parse_created, created)

    async def update_ticket(self, key: str, patch: TicketPatch) -> None:
        await self._request(
            "PUT",
            f"/issue/{key}",
            operation="update_ticket",
            target=key,
            json_body=patch.to_wire(),
        )

    async def list_transitions(self, key: str) -> List[Transition]:
        data = await self._request(
            "GET",
            f"/issue/{key}/transitions",
            operation="list_transitions",
            target=key,
        )
        return self._parsed("list_transitions", key, parser.parse_transitions, data)

    async def execute_transition(
        self,
        key: str,
        transition_id: str,
        comment: Optional[str] = None,
    ) -> None:
        body: Dict[str, Any] = {"transition": {"id": transition_id}}
        if comment:
            body["update"] = {
                "comment": [{"add": {"body": RichText.from_text(comment).doc}}]
            }
        await self._request(
            "POST",
            f"/issue/{key}/transitions",
            operation="execute_transition",
            target=key,
            json_body=body,
        )

    async def add_comment(self, key: str, body: Any) -> Comment:
        doc = body if isinstance(body, RichText) else RichText.from_text(str(body))
        data = await self._request(
            "POST",
            f"/issue/{key}/comment",
            operation="add_comment",
            target=key,
            json_body={"body": doc.doc},
        )
        return self._parsed("add_comment", key, parser.parse_comment, data)

    async def get_comments(self, key: str, max_results: int = 50) -> List[Comment]:
        max_results = max(1, min(max_results, 100))
        data = await self._request(
            "GET",
            f"/issue/{key}/comment",
            operation="get_comments",
            target=key,
            params={"maxResults": max_results, "orderBy": "created"},
        )
        return self._parsed("get_comments", key, parser.parse_comments, data)

    async def get_projects(self) -> List[Project]:
        data = await self._request("GET", "/project", operation="get_projects")
        return self._parsed("get_projects", None, parser.parse_projects, data)

    async def get_issue_types(self) -> List[IssueType]:
        data = await self._request("GET", "/issuetype", operation="get_issue_types")
        return self._parsed("get_issue_types", None, parser.parse_issue_types, data)
