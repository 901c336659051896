from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..db import SessionLocal
from ..db_models import TeamDB, TeamMembershipDB
from ..models import Role, Team, TeamMembership, ensure_aware

logger = logging.getLogger(__name__)


class TeamRepository(Protocol):
    """Team rows, memberships and the team -> connection tenant mapping.

    A user holds at most one role per team; ``set_role`` replaces it.
    """

    def create_team(
        self, name: str, owner_user_id: str, team_id: str | None = None
    ) -> Team: ...

    def get_team(self, team_id: str) -> Team | None: ...

    def delete_team(self, team_id: str) -> None: ...

    def get_role(self, team_id: str, user_id: str) -> Role | None: ...

    def set_role(self, team_id: str, user_id: str, role: Role) -> TeamMembership: ...

    def remove_member(self, team_id: str, user_id: str) -> None: ...

    def list_members(self, team_id: str) -> List[TeamMembership]: ...

    def get_connection_tenant(self, team_id: str) -> str | None: ...

    def set_connection_tenant(self, team_id: str, tenant_id: str | None) -> None: ...

    def detach_tenant(self, tenant_id: str) -> int: ...


class InMemoryTeamRepository:
    def __init__(self) -> None:
        self._teams: Dict[str, Team] = {}
        self._roles: Dict[Tuple[str, str], Role] = {}
        self._lock = threading.Lock()

    def create_team(
        self, name: str, owner_user_id: str, team_id: str | None = None
    ) -> Team:
        team = Team(id=team_id or str(uuid4()), name=name, owner_user_id=owner_user_id)
        with self._lock:
            if team.id in self._teams:
                raise ValueError(f"team {team.id} already exists")
            self._teams[team.id] = team
            self._roles[(team.id, owner_user_id)] = Role.ADMIN
        return team

    def get_team(self, team_id: str) -> Optional[Team]:
        return self._teams.get(team_id)

    def delete_team(self, team_id: str) -> None:
        with self._lock:
            self._teams.pop(team_id, None)
            for key in [k for k in self._roles if k[0] == team_id]:
                del self._roles[key]

    def get_role(self, team_id: str, user_id: str) -> Optional[Role]:
        return self._roles.get((team_id, user_id))

    def set_role(self, team_id: str, user_id: str, role: Role) -> TeamMembership:
        role = Role(role)
        with self._lock:
            if team_id not in self._teams:
                raise KeyError(team_id)
            self._roles[(team_id, user_id)] = role
        return TeamMembership(team_id=team_id, user_id=user_id, role=role)

    def remove_member(self, team_id: str, user_id: str) -> None:
        with self._lock:
            self._roles.pop((team_id, user_id), None)

    def list_members(self, team_id: str) -> List[TeamMembership]:
        return [
            TeamMembership(team_id=tid, user_id=uid, role=role)
            for (tid, uid), role in self._roles.items()
            if tid == team_id
        ]

    def get_connection_tenant(self, team_id: str) -> Optional[str]:
        team = self._teams.get(team_id)
        return team.connection_tenant_id if team else None

    def set_connection_tenant(self, team_id: str, tenant_id: str | None) -> None:
        with self._lock:
            team = self._teams.get(team_id)
            if team is None:
                raise KeyError(team_id)
            team.connection_tenant_id = tenant_id

    def detach_tenant(self, tenant_id: str) -> int:
        with self._lock:
            count = 0
            for team in self._teams.values():
                if team.connection_tenant_id == tenant_id:
                    team.connection_tenant_id = None
                    count += 1
            return count


def _to_team(row: TeamDB) -> Team:
    return Team(
        id=row.id,
        name=row.name,
        owner_user_id=row.owner_user_id,
        connection_tenant_id=row.connection_tenant_id,
        created_at=ensure_aware(row.created_at),
    )


class SqlTeamRepository:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def create_team(
        self, name: str, owner_user_id: str, team_id: str | None = None
    ) -> Team:
        session = self._session_factory()
        try:
            row = TeamDB(id=team_id or str(uuid4()), name=name, owner_user_id=owner_user_id)
            session.add(row)
            session.add(
                TeamMembershipDB(
                    team_id=row.id, user_id=owner_user_id, role=Role.ADMIN.value
                )
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ValueError(f"team {row.id} already exists") from exc
            session.refresh(row)
            return _to_team(row)
        finally:
            session.close()

    def get_team(self, team_id: str) -> Optional[Team]:
        session = self._session_factory()
        try:
            row = session.get(TeamDB, team_id)
            return _to_team(row) if row is not None else None
        finally:
            session.close()

    def delete_team(self, team_id: str) -> None:
        session = self._session_factory()
        try:
            # SQLite does not enforce ON DELETE CASCADE unless foreign keys are
            # switched on, so memberships go explicitly.
            session.query(TeamMembershipDB).filter(
                TeamMembershipDB.team_id == team_id
            ).delete(synchronize_session=False)
            session.query(TeamDB).filter(TeamDB.id == team_id).delete(
                synchronize_session=False
            )
            session.commit()
        finally:
            session.close()

    def get_role(self, team_id: str, user_id: str) -> Optional[Role]:
        session = self._session_factory()
        try:
            row = (
                session.query(TeamMembershipDB)
                .filter(
                    TeamMembershipDB.team_id == team_id,
                    TeamMembershipDB.user_id == user_id,
                )
                .one_or_none()
            )
            if row is None:
                return None
            try:
                return Role(row.role)
            except ValueError:
                logger.warning(
                    "team_membership_unknown_role",
                    extra={"team_id": team_id, "user_id": user_id, "role": row.role},
                )
                return None
        finally:
            session.close()

    def set_role(self, team_id: str, user_id: str, role: Role) -> TeamMembership:
        role = Role(role)
        session = self._session_factory()
        try:
            if session.get(TeamDB, team_id) is None:
                raise KeyError(team_id)
            row = (
                session.query(TeamMembershipDB)
                .filter(
                    TeamMembershipDB.team_id == team_id,
                    TeamMembershipDB.user_id == user_id,
                )
                .one_or_none()
            )
            if row is None:
                session.add(
                    TeamMembershipDB(team_id=team_id, user_id=user_id, role=role.value)
                )
            else:
                row.role = role.value
            session.commit()
            return TeamMembership(team_id=team_id, user_id=user_id, role=role)
        finally:
            session.close()

    def remove_member(self, team_id: str, user_id: str) -> None:
        session = self._session_factory()
        try:
            session.query(TeamMembershipDB).filter(
                TeamMembershipDB.team_id == team_id,
                TeamMembershipDB.user_id == user_id,
            ).delete(synchronize_session=False)
            session.commit()
        finally:
            session.close()

    def list_members(self, team_id: str) -> List[TeamMembership]:
        session = self._session_factory()
        try:
            rows = (
                session.query(TeamMembershipDB)
                .filter(TeamMembershipDB.team_id == team_id)
                .order_by(TeamMembershipDB.joined_at)
                .all()
            )
            return [
                TeamMembership(team_id=r.team_id, user_id=r.user_id, role=Role(r.role))
                for r in rows
            ]
        finally:
            session.close()

    def get_connection_tenant(self, team_id: str) -> Optional[str]:
        session = self._session_factory()
        try:
            row = session.get(TeamDB, team_id)
            return row.connection_tenant_id if row is not None else None
        finally:
            session.close()

    def set_connection_tenant(self, team_id: str, tenant_id: str | None) -> None:
        session = self._session_factory()
        try:
            row = session.get(TeamDB, team_id)
            if row is None:
                raise KeyError(team_id)
            row.connection_tenant_id = tenant_id
            session.commit()
        finally:
            session.close()

    def detach_tenant(self, tenant_id: str) -> int:
        session = self._session_factory()
        try:
            count = (
                session.query(TeamDB)
                .filter(TeamDB.connection_tenant_id == tenant_id)
                .update({"connection_tenant_id": None}, synchronize_session=False)
            )
            session.commit()
            return int(count or 0)
        finally:
            session.close()
