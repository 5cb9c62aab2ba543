"""Team (scope) management on top of the SyncCoordinator.

Teams are cached locally under ``StorageKeys.TEAMS`` as a JSON array and
mirrored to the ``teams`` collection. Remote documents carry an extra
``memberIds`` list so membership can be queried with ``array-contains``.
"""

import asyncio
from typing import Any

from teamslots.errors import ConflictError, NotFoundError, ValidationError
from teamslots.logging import get_logger
from teamslots.models import Team, TeamMember
from teamslots.stores.local import StorageKeys, get_json, set_json
from teamslots.stores.remote import TEAMS_COLLECTION, Document, WhereClause
from teamslots.sync import SyncCoordinator, WriteResult

log = get_logger(__name__)


def _team_document(team: Team) -> Document:
    data = team.to_json()
    data["memberIds"] = team.member_ids
    return data


def _as_member(user: TeamMember | dict[str, Any], role: str) -> TeamMember:
    if isinstance(user, TeamMember):
        return user.model_copy(update={"role": role})
    return TeamMember(**{**user, "role": role})


class TeamService:
    def __init__(self, coordinator: SyncCoordinator) -> None:
        self.coordinator = coordinator
        self.local = coordinator.local
        self._teams_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Local cache
    # ------------------------------------------------------------------
    async def _local_teams(self) -> list[Team]:
        raw = await get_json(self.local, StorageKeys.TEAMS, default=[])
        teams: list[Team] = []
        for item in raw:
            try:
                teams.append(Team.from_json(item))
            except ValidationError as e:
                log.warning("cached_team_invalid", error=str(e))
        return teams

    async def _cache_teams(self, teams: list[Team]) -> None:
        async with self._teams_lock:
            cached = {t.id: t for t in await self._local_teams()}
            order = list(cached)
            for team in teams:
                if team.id not in cached:
                    order.append(team.id)
                cached[team.id] = team
            await set_json(self.local, StorageKeys.TEAMS, [cached[i].to_json() for i in order])

    async def _save(self, team: Team) -> WriteResult:
        async def local_apply() -> None:
            await self._cache_teams([team])

        return await self.coordinator.write_document(
            TEAMS_COLLECTION, team.id, _team_document(team), local_apply
        )

    async def _all_teams(self, where: list[WhereClause] | None = None) -> list[Team]:
        docs = await self.coordinator.query_documents(TEAMS_COLLECTION, where or [])
        if docs is None:
            return await self._local_teams()
        teams: list[Team] = []
        for doc in docs:
            try:
                teams.append(Team.from_json(doc))
            except ValidationError as e:
                log.warning("remote_team_invalid", team_id=doc.get("id"), error=str(e))
        await self._cache_teams(teams)
        return teams

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------
    async def create_team(
        self, name: str, admin: TeamMember | dict[str, Any], description: str = ""
    ) -> Team:
        """Create a team with ``admin`` as its first member and make it current.

        Raises:
            ValidationError: If the name or admin details are invalid.
            ConflictError: If a team with the same name (case-insensitive) exists.
        """
        admin_member = _as_member(admin, "admin")
        team = Team(name=name, description=description, members=[admin_member])

        existing = await self._all_teams()
        if any(t.name.lower() == team.name.lower() for t in existing):
            raise ConflictError("Team name already exists")

        result = await self._save(team)
        await self.set_current_team_id(team.id)
        await self.set_current_user_id(admin_member.id)
        log.info("team_created", team_id=team.id, name=team.name, queued=result.queued)
        return team

    async def join_team(self, code: str, user: TeamMember | dict[str, Any]) -> Team:
        """Join the team whose join code is ``code``.

        Raises:
            NotFoundError: If no team has that code.
            ConflictError: If the user is already a member or the team is full.
        """
        normalized = code.strip().upper()
        teams = await self._all_teams([WhereClause(field="code", value=normalized)])
        team = next((t for t in teams if t.code == normalized), None)
        if team is None:
            raise NotFoundError("Invalid team code")

        member = _as_member(user, "member")
        team.add_member(member)
        await self._save(team)
        await self.set_current_team_id(team.id)
        await self.set_current_user_id(member.id)
        log.info("team_joined", team_id=team.id, member_id=member.id)
        return team

    async def leave_team(self, team_id: str, member_id: str) -> Team:
        team = await self.get_team(team_id)
        team.remove_member(member_id)
        await self._save(team)
        if await self.get_current_team_id() == team_id and await self.get_current_user_id() == member_id:
            await self.local.remove(StorageKeys.CURRENT_TEAM_ID)
        log.info("team_left", team_id=team_id, member_id=member_id)
        return team

    async def rename_team(self, team_id: str, name: str, description: str | None = None) -> Team:
        team = await self.get_team(team_id)
        candidate = name.strip()
        others = [t for t in await self._all_teams() if t.id != team_id]
        if any(t.name.lower() == candidate.lower() for t in others):
            raise ConflictError("Team name already exists")
        team.rename(name, description)
        await self._save(team)
        return team

    async def get_teams(self, user_id: str | None = None) -> list[Team]:
        """Teams visible to ``user_id`` (all teams when None), remote first."""
        where = [WhereClause(field="memberIds", op="array-contains", value=user_id)] if user_id else None
        teams = await self._all_teams(where)
        if user_id:
            teams = [t for t in teams if user_id in t.member_ids]
        return teams

    async def get_team(self, team_id: str) -> Team:
        teams = await self._all_teams([WhereClause(field="id", value=team_id)])
        team = next((t for t in teams if t.id == team_id), None)
        if team is None:
            raise NotFoundError(f"Team {team_id} not found")
        return team

    # ------------------------------------------------------------------
    # Session settings (local only)
    # ------------------------------------------------------------------
    async def get_current_team_id(self) -> str | None:
        return await get_json(self.local, StorageKeys.CURRENT_TEAM_ID)

    async def set_current_team_id(self, team_id: str) -> None:
        await set_json(self.local, StorageKeys.CURRENT_TEAM_ID, team_id)

    async def get_current_user_id(self) -> str | None:
        return await get_json(self.local, StorageKeys.CURRENT_USER_ID)

    async def set_current_user_id(self, user_id: str) -> None:
        await set_json(self.local, StorageKeys.CURRENT_USER_ID, user_id)

    async def get_language(self) -> str | None:
        return await get_json(self.local, StorageKeys.LANGUAGE)

    async def set_language(self, language: str) -> None:
        await set_json(self.local, StorageKeys.LANGUAGE, language)

    async def sign_out(self) -> None:
        """Forget the session selection, keeping cached teams and availability."""
        await self.local.multi_remove([StorageKeys.CURRENT_TEAM_ID, StorageKeys.CURRENT_USER_ID])
