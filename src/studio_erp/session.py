"""Session and tenant scope.

A session holds at most one active team. Every cache operation asks the scope
for the active team id first; none is issued without one. Listeners learn
about sign-in, sign-out, and tenant switches so the cache can drop another
tenant's data before anything else reads it.
"""

from __future__ import annotations

from typing import Callable, List, Optional

from . import log
from .constants import DELETE_ROLES, EDIT_ROLES, INVITE_ROLES, TeamRole
from .errors import TenantScopeError
from .models import Team, TeamMember

ScopeListener = Callable[[Optional[str], Optional[str]], None]


class TenantScope:
    """Active team identity for the lifetime of a session."""

    def __init__(self) -> None:
        self._team: Optional[Team] = None
        self._membership: Optional[TeamMember] = None
        self._listeners: List[ScopeListener] = []

    @property
    def team(self) -> Optional[Team]:
        return self._team

    @property
    def membership(self) -> Optional[TeamMember]:
        return self._membership

    @property
    def team_id(self) -> Optional[str]:
        return self._team.id if self._team is not None else None

    @property
    def role(self) -> Optional[TeamRole]:
        if self._membership is None:
            return None
        return TeamRole(self._membership.role)

    @property
    def can_edit(self) -> bool:
        return self.role in EDIT_ROLES

    @property
    def can_delete(self) -> bool:
        return self.role in DELETE_ROLES

    @property
    def can_invite(self) -> bool:
        return self.role in INVITE_ROLES

    def require_team_id(self) -> str:
        """Return the active team id or fail loudly.

        Raises:
            TenantScopeError: If nobody is signed in to a team.
        """

        if self._team is None:
            raise TenantScopeError("No active team: sign in before touching tenant data")
        return self._team.id

    def require_team(self) -> Team:
        self.require_team_id()
        return self._team  # type: ignore[return-value]

    def sign_in(self, team: Team, membership: Optional[TeamMember] = None) -> None:
        """Make ``team`` the active tenant.

        The membership must belong to the same team. Switching directly from
        one team to another notifies listeners the same way a sign-out would.
        """

        if membership is not None and membership.team_id != team.id:
            raise TenantScopeError(
                f"Membership '{membership.id}' belongs to team '{membership.team_id}', not '{team.id}'"
            )
        previous = self.team_id
        self._team = team
        self._membership = membership
        log.info("Signed in to team '%s' as %s", team.id, membership.role if membership else "guest")
        self._notify(previous, team.id)

    def replace_team(self, team: Team) -> None:
        """Swap in a confirmed copy of the active team (e.g. new tax rates)."""

        if team.id != self.require_team_id():
            raise TenantScopeError(f"Team '{team.id}' is not the active team")
        self._team = team

    def sign_out(self) -> None:
        previous = self.team_id
        self._team = None
        self._membership = None
        if previous is not None:
            log.info("Signed out of team '%s'", previous)
        self._notify(previous, None)

    def add_listener(self, listener: ScopeListener) -> Callable[[], None]:
        """Register ``listener(previous_team_id, new_team_id)``; return a remover."""

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, previous: Optional[str], current: Optional[str]) -> None:
        for listener in list(self._listeners):
            listener(previous, current)
