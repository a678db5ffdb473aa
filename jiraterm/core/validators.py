from __future__ import annotations

import re

from jiraterm.core.errors import ValidationError

_TICKET_KEY = re.compile(r"^[A-Za-z][A-Za-z0-9_]*-\d+$")


def validate_instance(instance: str) -> str:
    """Return the trimmed instance host, or raise ``ValidationError``."""
    value = (instance or "").strip()
    if not value:
        raise ValidationError("Instance cannot be empty", field_errors={"instance": "empty"})
    if "." not in value:
        raise ValidationError(
            "Instance must be a valid domain", field_errors={"instance": value}
        )
    return value


def validate_ticket_key(key: str) -> str:
    value = (key or "").strip()
    if not value:
        raise ValidationError("Ticket key cannot be empty", field_errors={"key": "empty"})
    if not _TICKET_KEY.match(value):
        raise ValidationError(
            "Ticket key must be in format PROJECT-NUMBER", field_errors={"key": value}
        )
    return value
