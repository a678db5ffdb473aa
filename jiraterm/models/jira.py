from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StatusCategory(str, Enum):
    """Workflow status categories, keyed by Jira's ``statusCategory.key``."""
    TODO = "new"
    IN_PROGRESS = "indeterminate"
    DONE = "done"


class Status(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: StatusCategory


class Priority(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "Medium"
    id: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    display_name: str = "Unknown"
    email_address: Optional[str] = None


class RichText(BaseModel):
    """Atlassian Document Format body, kept exactly as the server sent it."""

    model_config = ConfigDict(frozen=True)

    doc: Dict[str, Any]

    @classmethod
    def from_text(cls, text: str) -> "RichText":
        paragraphs = []
        for line in text.split("\n"):
            content = [{"type": "text", "text": line}] if line else []
            paragraphs.append({"type": "paragraph", "content": content})
        return cls(doc={"type": "doc", "version": 1, "content": paragraphs})

    def plain_text(self) -> str:
        """One line per text block; lists, quotes and panels are flattened."""
        lines: List[str] = []
        _collect_blocks(self.doc.get("content") or [], lines)
        return "\n".join(lines)


_TEXT_BLOCKS = {"paragraph", "heading", "codeBlock"}


def _inline_text(nodes: List[Any]) -> str:
    out: List[str] = []
    for node in nodes:
        if not isinstance(node, dict):
            continue
        node_type = node.get("type")
        if node_type == "text":
            text = node.get("text")
            if isinstance(text, str):
                out.append(text)
        elif node_type == "hardBreak":
            out.append("\n")
        else:
            out.append(_inline_text(node.get("content") or []))
    return "".join(out)


def _collect_blocks(nodes: List[Any], lines: List[str]) -> None:
    for node in nodes:
        if not isinstance(node, dict):
            continue
        node_type = node.get("type")
        if node_type == "text":
            lines.append(_inline_text([node]))
        elif node_type in _TEXT_BLOCKS:
            lines.append(_inline_text(node.get("content") or []))
        else:
            _collect_blocks(node.get("content") or [], lines)


class Ticket(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    id: str
    summary: str
    status: Status
    assignee: Optional[User] = None
    priority: Priority = Field(default_factory=Priority)
    issue_type: str
    project_key: str
    description: Optional[RichText] = None
    created: datetime
    updated: datetime
    version: int

    def is_todo(self) -> bool:
        return self.status.category == StatusCategory.TODO

    def is_in_progress(self) -> bool:
        return self.status.category == StatusCategory.IN_PROGRESS

    def is_done(self) -> bool:
        return self.status.category == StatusCategory.DONE


class SearchPage(BaseModel):
    """One page of a JQL search. Holds keys only; tickets live in the cache."""

    model_config = ConfigDict(frozen=True)

    query: str
    start_at: int = Field(ge=0)
    page_size: int = Field(ge=0)
    total: int = Field(ge=0)
    keys: Tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_bounds(self) -> "SearchPage":
        if self.start_at + len(self.keys) > self.total:
            raise ValueError(
                f"page overruns total: startAt={self.start_at} "
                f"returned={len(self.keys)} total={self.total}"
            )
        return self

    @property
    def has_more(self) -> bool:
        return self.start_at + len(self.keys) < self.total

    @property
    def next_start_at(self) -> int:
        return self.start_at + len(self.keys)


class SearchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: SearchPage
    tickets: Tuple[Ticket, ...] = ()


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    to_status: Status


class Comment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    author: User
    body: RichText
    created: datetime
    updated: Optional[datetime] = None


class Project(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    key: str
    name: Optional[str] = None


class IssueType(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    subtask: bool = False


class TicketRef(BaseModel):
    """What the server returns for a freshly created issue."""
    id: str
    key: str


class StatusView(BaseModel):
    """Status as the UI should show it right now."""
    model_config = ConfigDict(frozen=True)

    key: str
    status: Status
    pending: bool = False
    transition_id: Optional[str] = None


# --- Field values for create/update payloads ---


class StringValue(BaseModel):
    kind: Literal["string"] = "string"
    value: str

    def to_wire(self) -> Any:
        return self.value


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: float

    @field_validator("value", mode="before")
    @classmethod
    def _no_bools(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("booleans are not numbers here")
        return v

    def to_wire(self) -> Any:
        if float(self.value).is_integer():
            return int(self.value)
        return self.value


class BooleanValue(BaseModel):
    kind: Literal["boolean"] = "boolean"
    value: bool

    def to_wire(self) -> Any:
        return self.value


class DocumentValue(BaseModel):
    kind: Literal["document"] = "document"
    value: RichText

    def to_wire(self) -> Any:
        return self.value.doc


class ReferenceValue(BaseModel):
    """Pointer to another resource: user, priority, component, option..."""

    kind: Literal["reference"] = "reference"
    id: Optional[str] = None
    key: Optional[str] = None
    name: Optional[str] = None
    account_id: Optional[str] = None

    @model_validator(mode="after")
    def _needs_identifier(self) -> "ReferenceValue":
        if not (self.id or self.key or self.name or self.account_id):
            raise ValueError("reference needs one of id, key, name, account_id")
        return self

    def to_wire(self) -> Any:
        out: Dict[str, str] = {}
        if self.id:
            out["id"] = self.id
        if self.key:
            out["key"] = self.key
        if self.name:
            out["name"] = self.name
        if self.account_id:
            out["accountId"] = self.account_id
        return out


class NullValue(BaseModel):
    kind: Literal["null"] = "null"

    def to_wire(self) -> Any:
        return None


FieldValue = Annotated[
    Union[StringValue, NumberValue, BooleanValue, DocumentValue, ReferenceValue, NullValue],
    Field(discriminator="kind"),
]


def field_value(value: Any) -> Any:
    """Wrap a plain Python value in the matching tagged variant."""
    if isinstance(value, (StringValue, NumberValue, BooleanValue, DocumentValue, ReferenceValue, NullValue)):
        return value
    if value is None:
        return NullValue()
    if isinstance(value, bool):
        return BooleanValue(value=value)
    if isinstance(value, (int, float)):
        return NumberValue(value=value)
    if isinstance(value, str):
        return StringValue(value=value)
    if isinstance(value, RichText):
        return DocumentValue(value=value)
    raise TypeError(f"no field value variant for {type(value).__name__}")


def _check_field_names(fields: Dict[str, Any]) -> Dict[str, Any]:
    for name in fields:
        if not name or not name.strip():
            raise ValueError("field names must be non-empty")
    return fields


class TicketPatch(BaseModel):
    fields: Dict[str, FieldValue]

    @field_validator("fields")
    @classmethod
    def _check_names(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return _check_field_names(v)

    @classmethod
    def of(cls, **values: Any) -> "TicketPatch":
        return cls(fields={k: field_value(v) for k, v in values.items()})

    def to_wire(self) -> Dict[str, Any]:
        return {"fields": {k: v.to_wire() for k, v in self.fields.items()}}


class CreateTicketData(BaseModel):
    project_key: str
    issue_type: str
    summary: str
    description: Optional[RichText] = None
    assignee_account_id: Optional[str] = None
    priority: Optional[str] = None
    fields: Dict[str, FieldValue] = Field(default_factory=dict)

    @field_validator("fields")
    @classmethod
    def _check_names(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return _check_field_names(v)

    @field_validator("description", mode="before")
    @classmethod
    def _text_to_document(cls, v: Any) -> Any:
        if isinstance(v, str):
            return RichText.from_text(v)
        return v

    def to_wire(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "project": {"key": self.project_key},
            "issuetype": {"name": self.issue_type},
            "summary": self.summary,
        }
        if self.description is not None:
            fields["description"] = self.description.doc
        if self.assignee_account_id:
            fields["assignee"] = {"accountId": self.assignee_account_id}
        if self.priority:
            fields["priority"] = {"name": self.priority}
        for name, value in self.fields.items():
            fields[name] = value.to_wire()
        return {"fields": fields}
