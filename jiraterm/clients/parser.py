"""Jira REST v3 payloads <-> domain models.

Parsing is strict about what the core relies on (key, status, timestamps...)
and lenient about the rest. Anything structurally wrong raises ``ParseError``,
which the retry layer treats as a server contract violation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from jiraterm.core.errors import ParseError
from jiraterm.models.jira import (
    Comment,
    IssueType,
    Priority,
    Project,
    RichText,
    SearchPage,
    SearchResult,
    Status,
    StatusCategory,
    Ticket,
    TicketRef,
    Transition,
    User,
)

logger = logging.getLogger(__name__)

# fields requested on every issue/search call
ISSUE_FIELDS = [
    "summary",
    "status",
    "assignee",
    "priority",
    "issuetype",
    "project",
    "description",
    "created",
    "updated",
]

_CATEGORY_KEYS = {
    "new": StatusCategory.TODO,
    "undefined": StatusCategory.TODO,
    "indeterminate": StatusCategory.IN_PROGRESS,
    "done": StatusCategory.DONE,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
)


def _obj(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ParseError(f"Expected object for '{what}'")
    return value


def _req_str(obj: Dict[str, Any], key: str, what: Optional[str] = None) -> str:
    val = obj.get(key)
    if val is None or isinstance(val, (dict, list)):
        raise ParseError(f"Missing '{what or key}' field")
    return str(val)


def parse_datetime(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise ParseError(f"Missing '{field_name}' field")
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ParseError(f"Failed to parse {field_name} datetime '{value}'")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: datetime) -> str:
    """Jira's own timestamp shape: ``2024-01-15T10:30:00.000+0000``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}" + dt.strftime("%z")


def parse_status(value: Any) -> Status:
    obj = _obj(value, "status")
    cat = (obj.get("statusCategory") or {}).get("key")
    if cat not in _CATEGORY_KEYS:
        raise ParseError(f"Unknown status category: {cat}")
    return Status(
        id=_req_str(obj, "id", "status.id"),
        name=_req_str(obj, "name", "status.name"),
        category=_CATEGORY_KEYS[cat],
    )


def parse_user(value: Any) -> Optional[User]:
    if value is None:
        return None
    obj = _obj(value, "user")
    return User(
        account_id=_req_str(obj, "accountId", "user.accountId"),
        display_name=obj.get("displayName") or "Unknown",
        email_address=obj.get("emailAddress"),
    )


def parse_priority(value: Any) -> Priority:
    if not isinstance(value, dict):
        return Priority()
    return Priority(name=value.get("name") or "Medium", id=value.get("id"))


def parse_rich_text(value: Any) -> Optional[RichText]:
    if value is None:
        return None
    if isinstance(value, str):
        # some instances still hand back wiki markup as a plain string
        return RichText.from_text(value)
    return RichText(doc=_obj(value, "document"))


def _derive_version(payload: Dict[str, Any], updated: datetime) -> int:
    raw = payload.get("version")
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    return (updated - _EPOCH) // timedelta(milliseconds=1)


def parse_issue(payload: Any) -> Ticket:
    data = _obj(payload, "issue")
    fields = _obj(data.get("fields"), "fields")
    updated = parse_datetime(fields.get("updated"), "updated")
    try:
        return Ticket(
            key=_req_str(data, "key"),
            id=_req_str(data, "id"),
            summary=_req_str(fields, "summary"),
            status=parse_status(fields.get("status")),
            assignee=parse_user(fields.get("assignee")),
            priority=parse_priority(fields.get("priority")),
            issue_type=_req_str(_obj(fields.get("issuetype"), "issuetype"), "name", "issuetype.name"),
            project_key=_req_str(_obj(fields.get("project"), "project"), "key", "project.key"),
            description=parse_rich_text(fields.get("description")),
            created=parse_datetime(fields.get("created"), "created"),
            updated=updated,
            version=_derive_version(data, updated),
        )
    except PydanticValidationError as e:
        raise ParseError(f"Invalid issue payload: {e.error_count()} field error(s)")


def ticket_to_wire(ticket: Ticket) -> Dict[str, Any]:
    """Serialize a ticket into the issue resource shape that parse_issue reads."""
    status: Dict[str, Any] = {
        "id": ticket.status.id,
        "name": ticket.status.name,
        "statusCategory": {"key": ticket.status.category.value},
    }
    priority: Dict[str, Any] = {"name": ticket.priority.name}
    if ticket.priority.id is not None:
        priority["id"] = ticket.priority.id
    assignee: Optional[Dict[str, Any]] = None
    if ticket.assignee is not None:
        assignee = {
            "accountId": ticket.assignee.account_id,
            "displayName": ticket.assignee.display_name,
        }
        if ticket.assignee.email_address is not None:
            assignee["emailAddress"] = ticket.assignee.email_address
    return {
        "id": ticket.id,
        "key": ticket.key,
        "fields": {
            "summary": ticket.summary,
            "status": status,
            "priority": priority,
            "assignee": assignee,
            "issuetype": {"name": ticket.issue_type},
            "project": {"key": ticket.project_key},
            "description": ticket.description.doc if ticket.description else None,
            "created": format_datetime(ticket.created),
            "updated": format_datetime(ticket.updated),
        },
    }


def _extract_search_items(data: Dict[str, Any]) -> List[Any]:
    items = data.get("issues")
    if items is None:
        items = data.get("values")
    if not isinstance(items, list):
        raise ParseError(f"Missing 'issues' array. Available keys: {sorted(data)}")
    return items


def parse_search(payload: Any, *, jql: str, start_at: int, page_size: int) -> SearchResult:
    data = _obj(payload, "search")
    items = _extract_search_items(data)

    keys: List[str] = []
    tickets: List[Ticket] = []
    for idx, item in enumerate(items):
        key = item.get("key") if isinstance(item, dict) else None
        if not isinstance(key, str):
            raise ParseError(f"Search result {idx} has no key")
        keys.append(key)
        try:
            tickets.append(parse_issue(item))
        except ParseError as e:
            # the key stays on the page; get_ticket will surface the error
            logger.warning("[Jira] could not parse search hit %s: %s", key, e.message)

    page_start = data.get("startAt", start_at)
    total = data.get("total")
    if not isinstance(total, int):
        total = int(page_start) + len(keys)
    elif not keys and total < int(page_start):
        # the result set shrank between pages; an empty page past the end is the last one
        total = int(page_start)
    try:
        page = SearchPage(
            query=jql,
            start_at=int(page_start),
            page_size=page_size,
            total=total,
            keys=tuple(keys),
        )
    except (PydanticValidationError, TypeError, ValueError) as e:
        raise ParseError(f"Invalid search page: {e}")
    return SearchResult(page=page, tickets=tuple(tickets))


def parse_transitions(payload: Any) -> List[Transition]:
    data = _obj(payload, "transitions")
    items = data.get("transitions")
    if not isinstance(items, list):
        raise ParseError("Missing 'transitions' array")
    out: List[Transition] = []
    for item in items:
        obj = _obj(item, "transition")
        out.append(
            Transition(
                id=_req_str(obj, "id", "transition.id"),
                name=_req_str(obj, "name", "transition.name"),
                to_status=parse_status(obj.get("to")),
            )
        )
    return out


def parse_comment(payload: Any) -> Comment:
    obj = _obj(payload, "comment")
    author = parse_user(obj.get("author"))
    if author is None:
        raise ParseError("Missing comment 'author' field")
    updated = obj.get("updated")
    return Comment(
        id=_req_str(obj, "id", "comment.id"),
        author=author,
        body=parse_rich_text(obj.get("body")) or RichText.from_text(""),
        created=parse_datetime(obj.get("created"), "created"),
        updated=parse_datetime(updated, "updated") if updated else None,
    )


def parse_comments(payload: Any) -> List[Comment]:
    if isinstance(payload, list):
        items = payload
    else:
        data = _obj(payload, "comments")
        items = data.get("comments")
        if not isinstance(items, list):
            raise ParseError(f"Missing 'comments' array. Available keys: {sorted(data)}")

    comments: List[Comment] = []
    for idx, item in enumerate(items):
        try:
            comments.append(parse_comment(item))
        except ParseError as e:
            logger.warning("[Jira] skipping comment at index %d: %s", idx, e.message)
    return comments


def _list_payload(payload: Any, what: str) -> List[Any]:
    if isinstance(payload, list):
        return payload
    data = _obj(payload, what)
    values = data.get("values")
    if not isinstance(values, list):
        raise ParseError(f"Missing '{what}' list")
    return values


def parse_projects(payload: Any) -> List[Project]:
    out: List[Project] = []
    for item in _list_payload(payload, "projects"):
        obj = _obj(item, "project")
        out.append(Project(id=_req_str(obj, "id"), key=_req_str(obj, "key"), name=obj.get("name")))
    return out


def parse_issue_types(payload: Any) -> List[IssueType]:
    out: List[IssueType] = []
    for item in _list_payload(payload, "issuetypes"):
        obj = _obj(item, "issuetype")
        out.append(
            IssueType(
                id=_req_str(obj, "id"),
                name=_req_str(obj, "name"),
                subtask=bool(obj.get("subtask", False)),
            )
        )
    return out


def parse_created(payload: Any) -> TicketRef:
    obj = _obj(payload, "created issue")
    return TicketRef(id=_req_str(obj, "id"), key=_req_str(obj, "key"))


def parse_error_body(payload: Any) -> Tuple[List[str], Dict[str, str]]:
    """``errorMessages`` and per-field ``errors`` from a 4xx body."""
    if not isinstance(payload, dict):
        return [], {}
    messages = [str(m) for m in payload.get("errorMessages") or [] if m]
    errors = payload.get("errors") or {}
    field_errors = {str(k): str(v) for k, v in errors.items()} if isinstance(errors, dict) else {}
    return messages, field_errors
