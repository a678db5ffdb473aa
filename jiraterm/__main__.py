"""``python -m jiraterm``: check the configured Jira connection and exit.

The terminal UI lives elsewhere; this only wires the core from the
environment / ``.env`` and reports whether it can talk to the instance.
"""

import asyncio
import sys

from jiraterm.core.config import settings
from jiraterm.core.errors import ConfigError
from jiraterm.core.log_setup import configure_logging
from jiraterm.services.repository import build_repository


async def _check() -> int:
    try:
        repo = build_repository(settings)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    async with repo:
        result = await repo.test_connection()
    if result.is_connected:
        print(f"Connected to {repo.api.credentials.instance_url}")
        return 0
    print(result.error_message, file=sys.stderr)
    return 1


def main() -> None:
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(_check()))


if __name__ == "__main__":
    main()
