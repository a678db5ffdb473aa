"""Client-side narrowing of ticket lists already in memory."""

from __future__ import annotations

from typing import Iterable, List

from jiraterm.models.jira import StatusCategory, Ticket


def filter_by_status_category(tickets: Iterable[Ticket], category: StatusCategory) -> List[Ticket]:
    return [t for t in tickets if t.status.category == category]


def filter_by_assignee(tickets: Iterable[Ticket], account_id: str) -> List[Ticket]:
    return [t for t in tickets if t.assignee is not None and t.assignee.account_id == account_id]


def filter_by_text(tickets: Iterable[Ticket], query: str) -> List[Ticket]:
    """Case-insensitive substring match on summary or key. Empty query keeps all."""
    needle = query.lower()
    return [t for t in tickets if needle in t.summary.lower() or needle in t.key.lower()]
