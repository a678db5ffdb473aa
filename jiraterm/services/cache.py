"""Read-through TTL cache in front of the Jira client.

Entries are keyed by tuples whose first element is the entry kind
(``ticket``, ``search``, ``transitions``, ``comments``, ``reference``).
Everything runs on one event loop, so table updates between awaits are
atomic; per-key exclusivity comes from the in-flight table, never from a
lock spanning unrelated keys.

Invalidation forgets any in-flight fetch for that key: a fetch that started
before a write can still answer the callers already waiting on it, but only
the fetch registered for a key may store its result, so it will not
repopulate the entry, and new callers start a fresh fetch. No per-key state
outlives the entry and its fetch.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import partial
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Hashable,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from jiraterm.clients.jira import JiraClient
from jiraterm.core.metrics import Metrics
from jiraterm.models.jira import (
    Comment,
    IssueType,
    Project,
    SearchPage,
    Ticket,
    Transition,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
CacheKey = Tuple[Hashable, ...]


@dataclass
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now < self.fetched_at + self.ttl


@dataclass
class CacheTTLs:
    ticket: float = 5 * 60
    search: float = 30
    reference: float = 60 * 60
    transitions: float = 15
    comments: float = 5 * 60

    def for_kind(self, kind: str) -> float:
        return float(getattr(self, kind))


# project = X / project in (X, Y); negative forms are matched so they can be ignored
_PROJECT_CLAUSE = re.compile(
    r"\bproject\s*(not\s+in|!=|=|in)\s*(\([^)]*\)|\"[^\"]*\"|'[^']*'|[\w-]+)",
    re.IGNORECASE,
)
_OR = re.compile(r"\bor\b", re.IGNORECASE)
# NOT project = X, !(project = X)
_NEGATION = re.compile(r"\bnot\b|!\s*\(", re.IGNORECASE)
_PROJECT_KEY = re.compile(r"^[A-Z][A-Z0-9_]+$")


def _project_tokens(raw: str) -> List[str]:
    raw = raw.strip()
    if raw.startswith("("):
        raw = raw[1:-1]
    return [t.strip().strip("\"'") for t in raw.split(",") if t.strip()]


def search_may_include(page: SearchPage, ticket_key: str, project_key: str) -> bool:
    """Could ``page`` (now or after a write) contain ``ticket_key``?

    Only a JQL that pins ``project`` to known keys, none of them
    ``project_key``, is ruled out. Anything else is assumed to match.
    """
    if ticket_key in page.keys:
        return True
    if _OR.search(page.query) or _NEGATION.search(page.query):
        return True
    named: List[str] = []
    for op, value in _PROJECT_CLAUSE.findall(page.query):
        if op.strip().lower() not in ("=", "in"):
            continue
        named.extend(_project_tokens(value))
    if not named:
        return True
    if not all(_PROJECT_KEY.match(t) for t in named):
        # names or numeric ids: cannot tell which key they stand for
        return True
    return project_key.upper() in named


class TicketCache:
    def __init__(
        self,
        api: JiraClient,
        *,
        ttls: Optional[CacheTTLs] = None,
        max_entries: int = 2000,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[Metrics] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.api = api
        self.ttls = ttls or CacheTTLs()
        self.max_entries = max_entries
        self._clock = clock
        self._metrics = metrics or getattr(api, "metrics", None)
        self._entries: "OrderedDict[CacheKey, CacheEntry[Any]]" = OrderedDict()
        self._inflight: Dict[CacheKey, "asyncio.Future[Any]"] = {}
        # bumped on every ticket invalidation; guards tickets stored as a side effect of a search
        self._ticket_epoch = 0

    def __len__(self) -> int:
        return len(self._entries)

    # --- internals ---

    def _lookup(self, cache_key: CacheKey) -> Optional[CacheEntry[Any]]:
        entry = self._entries.get(cache_key)
        if entry is not None and entry.is_fresh(self._clock()):
            self._entries.move_to_end(cache_key)
            return entry
        return None

    def _store(self, cache_key: CacheKey, value: Any) -> None:
        kind = str(cache_key[0])
        self._entries[cache_key] = CacheEntry(
            value=value, fetched_at=self._clock(), ttl=self.ttls.for_kind(kind)
        )
        self._entries.move_to_end(cache_key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("[Cache] evicted %s", evicted)
            if self._metrics is not None:
                self._metrics.cache_evictions.inc()

    def _invalidate(self, cache_key: CacheKey) -> bool:
        had_entry = self._entries.pop(cache_key, None) is not None
        dropped = self._inflight.pop(cache_key, None) is not None
        return had_entry or dropped

    def _fetch_done(self, cache_key: CacheKey, task: "asyncio.Future[Any]") -> None:
        if self._inflight.get(cache_key) is task:
            del self._inflight[cache_key]
        if not task.cancelled():
            # every waiter may have gone away; mark the outcome as retrieved
            task.exception()

    async def _fetch_and_store(
        self,
        cache_key: CacheKey,
        fetch: Callable[[], Awaitable[T]],
    ) -> T:
        value = await fetch()
        # still the registered fetch: no invalidation happened while it ran
        if self._inflight.get(cache_key) is asyncio.current_task():
            self._store(cache_key, value)
        else:
            logger.debug("[Cache] %s invalidated mid-flight, result not stored", cache_key)
        return value

    async def _read_through(self, cache_key: CacheKey, fetch: Callable[[], Awaitable[T]]) -> T:
        kind = str(cache_key[0])
        entry = self._lookup(cache_key)
        if entry is not None:
            if self._metrics is not None:
                self._metrics.cache_hits.labels(kind).inc()
            return entry.value

        if self._metrics is not None:
            self._metrics.cache_misses.labels(kind).inc()
        task = self._inflight.get(cache_key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(cache_key, fetch))
            self._inflight[cache_key] = task
            task.add_done_callback(partial(self._fetch_done, cache_key))
        else:
            logger.debug("[Cache] joining in-flight fetch for %s", cache_key)
        # a caller that gives up must not cancel the fetch other callers share
        return await asyncio.shield(task)

    # --- read-through ---

    async def get_ticket(self, key: str) -> Ticket:
        return await self._read_through(("ticket", key), partial(self.api.get_ticket, key))

    async def search(self, jql: str, start_at: int = 0, page_size: int = 50) -> SearchPage:
        async def fetch() -> SearchPage:
            epoch = self._ticket_epoch
            result = await self.api.search(jql, start_at, page_size)
            if epoch == self._ticket_epoch:
                for ticket in result.tickets:
                    self._store(("ticket", ticket.key), ticket)
            return result.page

        return await self._read_through(("search", jql, start_at, page_size), fetch)

    async def get_transitions(self, key: str) -> List[Transition]:
        return await self._read_through(
            ("transitions", key), partial(self.api.list_transitions, key)
        )

    async def get_comments(self, key: str) -> List[Comment]:
        return await self._read_through(("comments", key), partial(self.api.get_comments, key))

    async def get_projects(self) -> List[Project]:
        return await self._read_through(("reference", "projects"), self.api.get_projects)

    async def get_issue_types(self) -> List[IssueType]:
        return await self._read_through(("reference", "issue_types"), self.api.get_issue_types)

    def cached_ticket(self, key: str) -> Optional[Ticket]:
        """Last stored value for ``key``, fresh or not. Never fetches."""
        entry = self._entries.get(("ticket", key))
        return entry.value if entry is not None else None

    # --- invalidation ---

    def invalidate_ticket(self, key: str) -> bool:
        """Drop the ticket together with its transitions and comments."""
        self._ticket_epoch += 1
        dropped = self._invalidate(("ticket", key))
        self._invalidate(("transitions", key))
        self._invalidate(("comments", key))
        return dropped

    def invalidate_transitions(self, key: str) -> bool:
        return self._invalidate(("transitions", key))

    def invalidate_comments(self, key: str) -> bool:
        return self._invalidate(("comments", key))

    def invalidate_searches_matching(self, predicate: Callable[[SearchPage], bool]) -> int:
        """Drop every cached page ``predicate`` accepts, and every in-flight search.

        In-flight searches have no page to test yet, so they are always
        dropped.
        """
        doomed = [
            k
            for k, entry in self._entries.items()
            if k[0] == "search" and predicate(entry.value)
        ]
        doomed.extend(k for k in self._inflight if k[0] == "search" and k not in doomed)
        for k in doomed:
            self._invalidate(k)
        if doomed:
            logger.debug("[Cache] invalidated %d search page(s)", len(doomed))
        return len(doomed)

    def invalidate_searches_for(self, ticket_key: str, project_key: Optional[str] = None) -> int:
        project = project_key or ticket_key.split("-", 1)[0]
        return self.invalidate_searches_matching(
            lambda page: search_may_include(page, ticket_key, project)
        )

    def purge_expired(self) -> int:
        """Drop stale entries now rather than on their next read."""
        now = self._clock()
        stale = [k for k, entry in self._entries.items() if not entry.is_fresh(now)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def invalidate_reference(self) -> None:
        self._invalidate(("reference", "projects"))
        self._invalidate(("reference", "issue_types"))

    def clear(self) -> None:
        for k in list(self._entries) + list(self._inflight):
            self._invalidate(k)
        self._ticket_epoch += 1
