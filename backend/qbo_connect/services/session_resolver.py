from __future__ import annotations

import logging
from typing import Dict, Tuple

from ..errors import NoConnection
from .teams import TeamRepository

logger = logging.getLogger(__name__)


class SessionResolver:
    """Map (caller, team) to the tenant that holds the team's QuickBooks connection.

    Create one per inbound request. The cache lives on the instance, so a
    disconnect or reconnect is visible to the very next request.
    """

    def __init__(self, teams: TeamRepository) -> None:
        self._teams = teams
        self._cache: Dict[Tuple[str, str], str] = {}

    def resolve(self, caller_user_id: str, team_id: str) -> str:
        key = (caller_user_id, team_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        tenant_id = self._teams.get_connection_tenant(team_id)
        if not tenant_id:
            logger.info(
                "qbo_session_unresolved",
                extra={"user_id": caller_user_id, "team_id": team_id},
            )
            raise NoConnection(f"team {team_id} has no QuickBooks connection")
        self._cache[key] = tenant_id
        return tenant_id
