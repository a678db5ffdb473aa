import asyncio
import types
from typing import Any, Dict, List, Optional

import httpx

from jiraterm.clients import parser
from jiraterm.clients.jira import JiraClient
from jiraterm.core.config import Credentials
from jiraterm.core.errors import NotFoundError
from jiraterm.core.rate_limiter import RateLimiter
from jiraterm.core.retry import RetryExecutor
from jiraterm.models.jira import (
    Comment,
    RichText,
    SearchPage,
    SearchResult,
    Status,
    Ticket,
    TicketRef,
    Transition,
    User,
)

TODO = ("10000", "To Do", "new")
IN_PROGRESS = ("3", "In Progress", "indeterminate")
DONE = ("10001", "Done", "done")


def status_payload(status=TODO) -> Dict[str, Any]:
    sid, name, cat = status
    return {"id": sid, "name": name, "statusCategory": {"key": cat}}


def issue_payload(
    key: str = "PROJ-1",
    *,
    summary: str = "Fix login redirect",
    status=TODO,
    assignee: Optional[Dict[str, Any]] = None,
    priority: Optional[Dict[str, Any]] = None,
    updated: str = "2024-01-15T10:30:00.000+0000",
    **extra: Any,
) -> Dict[str, Any]:
    project = key.split("-")[0]
    fields = {
        "summary": summary,
        "status": status_payload(status),
        "assignee": assignee,
        "priority": priority if priority is not None else {"id": "3", "name": "Medium"},
        "issuetype": {"name": "Task"},
        "project": {"key": project},
        "description": {
            "type": "doc",
            "version": 1,
            "content": [{"type": "paragraph", "content": [{"type": "text", "text": "Steps"}]}],
        },
        "created": "2024-01-10T09:00:00.000+0000",
        "updated": updated,
    }
    payload = {"id": str(10000 + int(key.split("-")[1])), "key": key, "fields": fields}
    payload.update(extra)
    return payload


def make_ticket(key: str = "PROJ-1", **kw: Any) -> Ticket:
    return parser.parse_issue(issue_payload(key, **kw))


def make_status(status=TODO) -> Status:
    return parser.parse_status(status_payload(status))


def make_transition(tid: str, name: str, status) -> Transition:
    return Transition(id=tid, name=name, to_status=make_status(status))


def make_page(jql: str, keys, *, start_at: int = 0, total: Optional[int] = None) -> SearchPage:
    keys = tuple(keys)
    return SearchPage(
        query=jql,
        start_at=start_at,
        page_size=50,
        total=total if total is not None else start_at + len(keys),
        keys=keys,
    )


def make_comment(cid: str = "1", text: str = "Looks good") -> Comment:
    return Comment(
        id=cid,
        author=User(account_id="acc-1", display_name="Ada"),
        body=RichText.from_text(text),
        created=parser.parse_datetime("2024-01-11T09:00:00.000+0000", "created"),
    )


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHttp:
    """Stands in for httpx.AsyncClient; replies from a queue of canned responses.

    Each queued item is an exception to raise, a ready ``httpx.Response``, or
    ``(status, json_body)`` / ``(status, json_body, headers)``.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: List[types.SimpleNamespace] = []
        self.closed = False

    async def request(self, method=None, url=None, headers=None, params=None, json=None):
        self.calls.append(
            types.SimpleNamespace(method=method, url=url, headers=headers, params=params, json=json)
        )
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        request = httpx.Request(method, url)
        if isinstance(item, httpx.Response):
            item.request = request
            return item
        status, body = item[0], item[1]
        headers_out = item[2] if len(item) > 2 else None
        if body is None:
            return httpx.Response(status, headers=headers_out, request=request)
        return httpx.Response(status, json=body, headers=headers_out, request=request)

    async def aclose(self) -> None:
        self.closed = True


def make_credentials(**kw: Any) -> Credentials:
    values = {
        "instance_url": "example.atlassian.net",
        "username": "me@example.com",
        "token": "tok",
    }
    values.update(kw)
    return Credentials(**values)


def make_client(http: FakeHttp, *, max_attempts: int = 3, sleep=None, **kw: Any) -> JiraClient:
    return JiraClient(
        kw.pop("credentials", None) or make_credentials(),
        rate_limiter=RateLimiter(1000, 1000),
        retry=RetryExecutor(
            max_attempts,
            sleep=sleep or SleepRecorder(),
            jitter=lambda a, b: 0.0,
        ),
        http_client=http,
        **kw,
    )


class FakeApi:
    """In-memory JiraClient replacement for the cache/state/repository layers."""

    def __init__(self) -> None:
        self.credentials = make_credentials()
        self.tickets: Dict[str, Any] = {}
        self.transitions: Dict[str, List[Transition]] = {}
        self.searches: Dict[Any, Any] = {}
        self.comments: Dict[str, List[Comment]] = {}
        self.projects: List[Any] = []
        self.issue_types: List[Any] = []
        self.calls: List[tuple] = []
        # when set, every read blocks on it; execute_gate blocks transitions only
        self.gate: Optional[asyncio.Event] = None
        self.execute_gate: Optional[asyncio.Event] = None
        self.execute_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.active_executes = 0
        self.max_active_executes = 0
        self.closed = False

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    async def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if self.gate is not None:
            await self.gate.wait()

    async def get_ticket(self, key: str) -> Ticket:
        # read before the gate: a delayed response carries the data of its send time
        value = self.tickets.get(key)
        await self._enter("get_ticket", key)
        if value is None:
            raise NotFoundError("Resource not found", operation="get_ticket", target=key)
        if isinstance(value, Exception):
            raise value
        return value

    async def search(self, jql: str, start_at: int = 0, page_size: int = 50) -> SearchResult:
        await self._enter("search", jql, start_at, page_size)
        value = self.searches[(jql, start_at)] if (jql, start_at) in self.searches else self.searches[jql]
        if isinstance(value, Exception):
            raise value
        return value

    async def list_transitions(self, key: str) -> List[Transition]:
        await self._enter("list_transitions", key)
        return list(self.transitions.get(key, []))

    async def execute_transition(self, key: str, transition_id: str, comment=None) -> None:
        self.calls.append(("execute_transition", key, transition_id, comment))
        self.active_executes += 1
        self.max_active_executes = max(self.max_active_executes, self.active_executes)
        try:
            if self.execute_gate is not None:
                await self.execute_gate.wait()
            if self.execute_error is not None:
                raise self.execute_error
        finally:
            self.active_executes -= 1
        target = next(t for t in self.transitions[key] if t.id == transition_id)
        old = self.tickets[key]
        self.tickets[key] = old.model_copy(
            update={"status": target.to_status, "version": old.version + 1}
        )

    async def update_ticket(self, key: str, patch) -> None:
        self.calls.append(("update_ticket", key, patch))
        if self.update_error is not None:
            raise self.update_error

    async def create_ticket(self, data) -> TicketRef:
        self.calls.append(("create_ticket", data))
        key = f"{data.project_key}-99"
        self.tickets[key] = make_ticket(key, summary=data.summary)
        return TicketRef(id="10099", key=key)

    async def add_comment(self, key: str, body) -> Comment:
        self.calls.append(("add_comment", key, body))
        comment = make_comment("99", str(body))
        self.comments.setdefault(key, []).append(comment)
        return comment

    async def get_comments(self, key: str) -> List[Comment]:
        await self._enter("get_comments", key)
        return list(self.comments.get(key, []))

    async def get_projects(self):
        await self._enter("get_projects")
        return list(self.projects)

    async def get_issue_types(self):
        await self._enter("get_issue_types")
        return list(self.issue_types)

    async def aclose(self) -> None:
        self.closed = True
