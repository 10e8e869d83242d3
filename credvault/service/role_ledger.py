from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from credvault.logging import get_logger
from credvault.service.identity_provider import ExternalIdentityProvider
from credvault.service.roles import Role, can_grant, role_has_permission
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import User, UserRoleAssignment, utcnow

logger = get_logger(__name__)


class RoleStore(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def create_role_assignment(
        self,
        *,
        user_id: int,
        role: str,
        assigned_at: datetime,
        assigned_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> UserRoleAssignment: ...

    def list_role_assignments(
        self, user_id: int, *, active_only: bool = False
    ) -> List[UserRoleAssignment]: ...

    def revoke_role_assignment(
        self,
        assignment_id: int,
        *,
        revoked_at: datetime,
        revoked_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> bool: ...

    def list_users_with_role(self, role: str) -> List[User]: ...

    def count_active_roles(self) -> Dict[str, int]: ...


def _append_note(existing: Optional[str], note: Optional[str], label: str) -> Optional[str]:
    if not note:
        return existing
    entry = f"{label}: {note}"
    return f"{existing} | {entry}" if existing else entry


class RoleLedger:
    """Append-only role history with at most one active role per user.

    Rows are never deleted; revocation stamps ``revoked_at``/``revoked_by``
    and appends to the notes. The one-active-role rule is checked here and
    enforced again by the store, so two racing assignments cannot both land.
    """

    def __init__(
        self,
        store: RoleStore,
        *,
        identity_provider: Optional[ExternalIdentityProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.identity_provider = identity_provider
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def _mirror(self, user: User, role: Role, *, grant: bool) -> None:
        if self.identity_provider is None or not user.external_id:
            return
        if grant:
            ok = await self.identity_provider.assign_role(user.external_id, role)
        else:
            ok = await self.identity_provider.remove_role(user.external_id, role)
        if not ok:
            logger.warning(
                "role_mirror_failed", user_id=user.id, role=role.value, grant=grant
            )

    async def assign(
        self,
        user_id: int,
        role: Role,
        assigned_by: Optional[int],
        notes: Optional[str] = None,
    ) -> bool:
        try:
            user = await asyncio.to_thread(self.store.get_user, user_id)
            if user is None:
                logger.warning("role_assign_unknown_user", user_id=user_id, role=role.value)
                return False
            active = await asyncio.to_thread(
                self.store.list_role_assignments, user_id, active_only=True
            )
            if active:
                logger.warning(
                    "role_assign_conflict",
                    user_id=user_id,
                    role=role.value,
                    current_role=active[0].role,
                )
                return False
            await asyncio.to_thread(
                self.store.create_role_assignment,
                user_id=user_id,
                role=role.value,
                assigned_at=self._now(),
                assigned_by=assigned_by,
                notes=notes,
            )
        except ConstraintViolation as exc:
            logger.warning(
                "role_assign_conflict", user_id=user_id, role=role.value, error=exc.message
            )
            return False
        except Exception as exc:
            logger.error(
                "role_assign_failed",
                user_id=user_id,
                role=role.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info(
            "role_assigned", user_id=user_id, role=role.value, assigned_by=assigned_by
        )
        await self._mirror(user, role, grant=True)
        return True

    async def revoke(
        self,
        user_id: int,
        role: Role,
        revoked_by: Optional[int],
        notes: Optional[str] = None,
    ) -> bool:
        try:
            active = await asyncio.to_thread(
                self.store.list_role_assignments, user_id, active_only=True
            )
            match = next((a for a in active if a.role == role.value), None)
            if match is None:
                logger.warning("role_revoke_not_active", user_id=user_id, role=role.value)
                return False
            revoked = await asyncio.to_thread(
                self.store.revoke_role_assignment,
                match.id,
                revoked_at=self._now(),
                revoked_by=revoked_by,
                notes=_append_note(match.notes, notes, "Revoked"),
            )
            if not revoked:
                return False
            user = await asyncio.to_thread(self.store.get_user, user_id)
        except Exception as exc:
            logger.error(
                "role_revoke_failed",
                user_id=user_id,
                role=role.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("role_revoked", user_id=user_id, role=role.value, revoked_by=revoked_by)
        if user is not None:
            await self._mirror(user, role, grant=False)
        return True

    async def revoke_all(
        self, user_id: int, revoked_by: Optional[int], notes: Optional[str] = None
    ) -> bool:
        try:
            active = await asyncio.to_thread(
                self.store.list_role_assignments, user_id, active_only=True
            )
            if not active:
                return False
            now = self._now()
            for assignment in active:
                await asyncio.to_thread(
                    self.store.revoke_role_assignment,
                    assignment.id,
                    revoked_at=now,
                    revoked_by=revoked_by,
                    notes=_append_note(assignment.notes, notes, "Revoked"),
                )
            user = await asyncio.to_thread(self.store.get_user, user_id)
        except Exception as exc:
            logger.error(
                "role_revoke_all_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("roles_revoked", user_id=user_id, count=len(active), revoked_by=revoked_by)
        if user is not None:
            for assignment in active:
                role = Role.parse(assignment.role)
                if role is not None:
                    await self._mirror(user, role, grant=False)
        return True

    async def current_role(self, user_id: int) -> Optional[Role]:
        active = await asyncio.to_thread(
            self.store.list_role_assignments, user_id, active_only=True
        )
        if not active:
            return None
        return Role.parse(active[0].role)

    async def history(self, user_id: int) -> List[UserRoleAssignment]:
        return await asyncio.to_thread(self.store.list_role_assignments, user_id)

    async def users_with_role(self, role: Role) -> List[User]:
        return await asyncio.to_thread(self.store.list_users_with_role, role.value)

    async def has_permission(self, user_id: int, permission: str) -> bool:
        return role_has_permission(await self.current_role(user_id), permission)

    async def can_assign(self, acting_user_id: int, target_role: Role) -> bool:
        return can_grant(await self.current_role(acting_user_id), target_role)

    async def statistics(self) -> Dict[Role, int]:
        counts = await asyncio.to_thread(self.store.count_active_roles)
        return {role: counts.get(role.value, 0) for role in Role}
