"""Single entry point for UI code.

Reads go through the cache. Writes go to the server first, then invalidate
whatever they may have changed, then re-read, so the value handed back is
always the server's post-write state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, List, Optional

import httpx

from jiraterm.clients.jira import JiraClient
from jiraterm.core.config import Settings
from jiraterm.core.errors import NotFoundError, ParseError, ValidationError, VersionConflict
from jiraterm.core.metrics import Metrics
from jiraterm.core.rate_limiter import RateLimiter
from jiraterm.core.retry import RetryExecutor
from jiraterm.core.telemetry import setup_telemetry
from jiraterm.core.validators import validate_ticket_key
from jiraterm.models.jira import (
    Comment,
    CreateTicketData,
    IssueType,
    Project,
    SearchPage,
    SearchResult,
    StatusCategory,
    StatusView,
    Ticket,
    TicketPatch,
    Transition,
)
from jiraterm.services.cache import CacheTTLs, TicketCache
from jiraterm.services.connection import ConnectionResult, ConnectionValidator
from jiraterm.services.filters import filter_by_assignee, filter_by_status_category, filter_by_text
from jiraterm.services.state_machine import StatusListener, TicketStateMachine

logger = logging.getLogger(__name__)


class TicketRepository:
    def __init__(
        self,
        api: JiraClient,
        *,
        cache: Optional[TicketCache] = None,
        state_machine: Optional[TicketStateMachine] = None,
        listener: Optional[StatusListener] = None,
    ) -> None:
        self.api = api
        self.cache = cache or TicketCache(api)
        self.state_machine = state_machine or TicketStateMachine(self.cache, listener=listener)

    async def __aenter__(self) -> "TicketRepository":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.cache.clear()
        await self.api.aclose()

    # --- reads ---

    async def get_ticket(self, key: str) -> Ticket:
        return await self.cache.get_ticket(validate_ticket_key(key))

    async def refresh_ticket(self, key: str) -> Ticket:
        key = validate_ticket_key(key)
        self.cache.invalidate_ticket(key)
        return await self.cache.get_ticket(key)

    async def search(self, jql: str, start_at: int = 0, page_size: int = 50) -> SearchPage:
        return await self.cache.search(jql, start_at, page_size)

    async def search_tickets(self, jql: str, start_at: int = 0, page_size: int = 50) -> SearchResult:
        """One page with its tickets resolved through the ticket cache.

        Keys whose ticket cannot be read or parsed are left out of
        ``tickets`` (they stay on the page); other errors propagate.
        """
        page = await self.cache.search(jql, start_at, page_size)
        results = await asyncio.gather(
            *(self.cache.get_ticket(k) for k in page.keys), return_exceptions=True
        )
        tickets: List[Ticket] = []
        for key, res in zip(page.keys, results):
            if isinstance(res, (NotFoundError, ParseError)):
                logger.warning("[Jira] search hit %s unavailable: %s", key, res)
                continue
            if isinstance(res, BaseException):
                raise res
            tickets.append(res)
        return SearchResult(page=page, tickets=tuple(tickets))

    async def search_all(
        self,
        jql: str,
        page_size: int = 50,
        limit: Optional[int] = None,
    ) -> List[Ticket]:
        tickets: List[Ticket] = []
        start_at = 0
        while limit is None or len(tickets) < limit:
            result = await self.search_tickets(jql, start_at, page_size)
            tickets.extend(result.tickets)
            if not result.page.has_more or not result.page.keys:
                break
            start_at = result.page.next_start_at
        return tickets if limit is None else tickets[:limit]

    def filter_tickets(
        self,
        tickets: Iterable[Ticket],
        *,
        category: Optional[StatusCategory] = None,
        assignee: Optional[str] = None,
        text: Optional[str] = None,
    ) -> List[Ticket]:
        """Narrow tickets already in memory; unset criteria match everything."""
        out = list(tickets)
        if category is not None:
            out = filter_by_status_category(out, category)
        if assignee is not None:
            out = filter_by_assignee(out, assignee)
        if text:
            out = filter_by_text(out, text)
        return out

    async def get_comments(self, key: str) -> List[Comment]:
        return await self.cache.get_comments(validate_ticket_key(key))

    async def get_projects(self) -> List[Project]:
        return await self.cache.get_projects()

    async def get_issue_types(self) -> List[IssueType]:
        return await self.cache.get_issue_types()

    # --- writes ---

    async def create_ticket(self, data: CreateTicketData) -> Ticket:
        field_errors = {}
        if not data.project_key.strip():
            field_errors["project"] = "Project key is required"
        if not data.summary.strip():
            field_errors["summary"] = "Summary is required"
        if field_errors:
            raise ValidationError(
                "; ".join(field_errors.values()),
                field_errors=field_errors,
                operation="create_ticket",
                target=data.project_key or None,
            )

        ref = await self.api.create_ticket(data)
        logger.info("[Jira] created %s", ref.key)
        self.cache.invalidate_searches_for(ref.key, data.project_key)
        return await self.cache.get_ticket(ref.key)

    async def update_ticket(
        self,
        key: str,
        patch: TicketPatch,
        expected_version: Optional[int] = None,
    ) -> Ticket:
        key = validate_ticket_key(key)
        if expected_version is not None:
            current = await self.api.get_ticket(key)
            if current.version != expected_version:
                raise VersionConflict(
                    f"Ticket changed on the server (expected version {expected_version}, "
                    f"found {current.version})",
                    expected=expected_version,
                    actual=current.version,
                    operation="update_ticket",
                    target=key,
                )

        await self.api.update_ticket(key, patch)
        cached = self.cache.cached_ticket(key)
        self.cache.invalidate_ticket(key)
        self.cache.invalidate_searches_for(key, cached.project_key if cached else None)
        return await self.cache.get_ticket(key)

    async def add_comment(self, key: str, body: Any) -> Comment:
        key = validate_ticket_key(key)
        comment = await self.api.add_comment(key, body)
        # the comment moves ``updated`` and with it the version and JQL matches
        cached = self.cache.cached_ticket(key)
        self.cache.invalidate_ticket(key)
        self.cache.invalidate_searches_for(key, cached.project_key if cached else None)
        return comment

    # --- workflow ---

    async def available_transitions(self, key: str) -> List[Transition]:
        return await self.state_machine.available_transitions(validate_ticket_key(key))

    async def apply_transition(
        self,
        key: str,
        transition_id: str,
        comment: Optional[str] = None,
    ) -> Ticket:
        return await self.state_machine.apply_transition(
            validate_ticket_key(key), transition_id, comment
        )

    def status_view(self, key: str) -> Optional[StatusView]:
        return self.state_machine.status_view(key)

    # --- misc ---

    async def test_connection(self) -> ConnectionResult:
        return await ConnectionValidator().test_connection(self.api)

    def render_metrics(self) -> bytes:
        return self.api.metrics.render()


def build_repository(
    settings: Settings,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    listener: Optional[StatusListener] = None,
) -> TicketRepository:
    """Wire every layer from ``settings``. Raises ``ConfigError`` on bad credentials."""
    credentials = settings.credentials()
    setup_telemetry("jiraterm")

    metrics = Metrics()
    api = JiraClient(
        credentials,
        rate_limiter=RateLimiter(
            settings.rate_limit_capacity,
            settings.rate_limit_refill_per_second,
            metrics=metrics,
        ),
        retry=RetryExecutor(
            settings.retry_max_attempts,
            settings.retry_base_delay,
            settings.retry_max_delay,
            metrics=metrics,
        ),
        metrics=metrics,
        timeout=settings.http_timeout,
        http_client=http_client,
    )
    cache = TicketCache(
        api,
        ttls=CacheTTLs(
            ticket=settings.cache_ticket_ttl,
            search=settings.cache_search_ttl,
            reference=settings.cache_reference_ttl,
            transitions=settings.cache_transitions_ttl,
            comments=settings.cache_comments_ttl,
        ),
        max_entries=settings.cache_max_entries,
        metrics=metrics,
    )
    return TicketRepository(api, cache=cache, listener=listener)
