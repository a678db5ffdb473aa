"""Workflow transitions with an optimistic status view.

The server is the only authority on which transitions are legal; this module
never guesses a workflow. While a transition is in flight the view shows the
target status as pending, then either the re-fetched status or the status
that was confirmed before the attempt.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Literal, Optional, Tuple, Union

from jiraterm.core.errors import InvalidTransition
from jiraterm.models.jira import Status, StatusView, Ticket, Transition
from jiraterm.services.cache import TicketCache

logger = logging.getLogger(__name__)

Phase = Literal["optimistic", "confirmed", "rolled_back"]
StatusListener = Callable[[str, StatusView, Phase], None]
TicketOrKey = Union[Ticket, str]


def _key_of(ticket_or_key: TicketOrKey) -> str:
    return ticket_or_key.key if isinstance(ticket_or_key, Ticket) else ticket_or_key


class TicketStateMachine:
    def __init__(self, cache: TicketCache, *, listener: Optional[StatusListener] = None) -> None:
        self.cache = cache
        self.listener = listener
        # key -> (lock, number of callers holding or waiting on it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self._views: Dict[str, StatusView] = {}

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def _publish(self, key: str, view: StatusView, phase: Phase) -> None:
        self._views[key] = view
        logger.debug("[Transition] %s %s -> %s", key, phase, view.status.name)
        if self.listener is None:
            return
        try:
            self.listener(key, view, phase)
        except Exception:
            logger.warning("[Transition] status listener failed for %s", key, exc_info=True)

    async def available_transitions(self, ticket_or_key: TicketOrKey) -> List[Transition]:
        return await self.cache.get_transitions(_key_of(ticket_or_key))

    def status_view(self, key: str) -> Optional[StatusView]:
        """Pending status while a transition runs, else the cached ticket's status."""
        view = self._views.get(key)
        if view is not None and view.pending:
            return view
        ticket = self.cache.cached_ticket(key)
        if ticket is not None:
            return StatusView(key=key, status=ticket.status)
        return view

    async def apply_transition(
        self,
        ticket_or_key: TicketOrKey,
        transition_id: str,
        comment: Optional[str] = None,
    ) -> Ticket:
        key = _key_of(ticket_or_key)
        async with self._locked(key):
            transitions = await self.cache.get_transitions(key)
            chosen = next((t for t in transitions if t.id == transition_id), None)
            if chosen is None:
                raise InvalidTransition(
                    f"Transition {transition_id} is not available",
                    transition_id=transition_id,
                    operation="apply_transition",
                    target=key,
                )

            if isinstance(ticket_or_key, Ticket):
                current = ticket_or_key
            else:
                current = await self.cache.get_ticket(key)
            confirmed: Status = current.status

            self._publish(
                key,
                StatusView(key=key, status=chosen.to_status, pending=True, transition_id=chosen.id),
                "optimistic",
            )
            try:
                await self.cache.api.execute_transition(key, transition_id, comment)
            except BaseException:
                # cache untouched: the server never confirmed the write
                self._publish(key, StatusView(key=key, status=confirmed), "rolled_back")
                raise

            logger.info("[Transition] %s: %s applied", key, chosen.name)
            self.cache.invalidate_ticket(key)
            self.cache.invalidate_searches_for(key, current.project_key)
            try:
                ticket = await self.cache.get_ticket(key)
            except BaseException:
                # written but unreadable; no status is known any more
                self._views.pop(key, None)
                raise
            self._publish(key, StatusView(key=key, status=ticket.status), "confirmed")
            return ticket
