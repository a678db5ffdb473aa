from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from jiraterm.clients.jira import JiraClient
from jiraterm.core.config import validate_credentials
from jiraterm.core.errors import AuthError, ConfigError, JiraError, NetworkError

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    AUTHENTICATION_FAILED = "authentication_failed"
    NETWORK_ERROR = "network_error"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN_ERROR = "unknown_error"


_MESSAGES = {
    ConnectionStatus.AUTHENTICATION_FAILED: "Authentication failed. Please check your credentials.",
    ConnectionStatus.NETWORK_ERROR: "Network error. Please check your internet connection.",
    ConnectionStatus.CONFIGURATION_ERROR: "Configuration error. Please check your Jira settings.",
}


class ConnectionResult(BaseModel):
    status: ConnectionStatus
    detail: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def error_message(self) -> Optional[str]:
        if self.status == ConnectionStatus.CONNECTED:
            return None
        return _MESSAGES.get(self.status) or self.detail or "Unknown error"


class ConnectionValidator:
    """Cheap reachability and auth check against a live instance."""

    # bounded query; unbounded JQL is rejected by newer search endpoints
    PROBE_JQL = "assignee = currentUser() ORDER BY updated DESC"

    async def test_connection(self, client: JiraClient) -> ConnectionResult:
        logger.info("[Jira] testing connection to %s", client.credentials.instance_url)
        try:
            validate_credentials(client.credentials)
            await client.search(self.PROBE_JQL, 0, 1)
        except AuthError as e:
            logger.warning("[Jira] connection test failed: %s", e)
            return ConnectionResult(status=ConnectionStatus.AUTHENTICATION_FAILED, detail=str(e))
        except NetworkError as e:
            logger.warning("[Jira] connection test failed: %s", e)
            return ConnectionResult(status=ConnectionStatus.NETWORK_ERROR, detail=str(e))
        except ConfigError as e:
            logger.warning("[Jira] connection test failed: %s", e)
            return ConnectionResult(status=ConnectionStatus.CONFIGURATION_ERROR, detail=str(e))
        except JiraError as e:
            logger.warning("[Jira] connection test failed: %s", e)
            return ConnectionResult(status=ConnectionStatus.UNKNOWN_ERROR, detail=str(e))
        logger.info("[Jira] connection test successful")
        return ConnectionResult(status=ConnectionStatus.CONNECTED)
