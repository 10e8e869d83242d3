from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from credvault.logging import get_logger
from credvault.service.roles import Role, RoleNamespace
from credvault.storage.models import User

logger = get_logger(__name__)


class ExternalIdentityProvider(Protocol):
    """Capability interface for mirroring local identities to an external IdP.

    Every method is best-effort: failures are reported as ``None``/``False``
    and never raised, so local writes never depend on the provider.
    """

    async def create_user(self, user: User) -> Optional[str]: ...

    async def update_user(self, external_id: str, user: User) -> bool: ...

    async def assign_role(self, external_id: str, role: Role) -> bool: ...

    async def remove_role(self, external_id: str, role: Role) -> bool: ...

    async def set_user_enabled(self, external_id: str, enabled: bool) -> bool: ...

    async def sync_user(self, user: User, role: Optional[Role] = None) -> Optional[str]: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class RealmCredentials:
    realm: str
    client_id: str
    client_secret: Optional[str]


class KeycloakIdentityProvider:
    """Keycloak admin-API adapter with one realm per role namespace.

    Users live in the platform realm; realm roles are resolved in the realm
    owning the role's namespace. Admin tokens come from the client-credentials
    grant and are cached until shortly before expiry.
    """

    _TOKEN_REFRESH_MARGIN = 30.0

    def __init__(
        self,
        base_url: str,
        *,
        platform: RealmCredentials,
        services: RealmCredentials,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.realms: Dict[RoleNamespace, RealmCredentials] = {
            RoleNamespace.PLATFORM: platform,
            RoleNamespace.SERVICES: services,
        }
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )
        self._tokens: Dict[str, tuple[str, float]] = {}

    async def close(self) -> None:
        await self._client.aclose()

    def _realm_for(self, role: Optional[Role] = None) -> RealmCredentials:
        namespace = role.namespace if role else RoleNamespace.PLATFORM
        return self.realms[namespace]

    async def _admin_token(self, creds: RealmCredentials) -> str:
        cached = self._tokens.get(creds.realm)
        if cached and cached[1] > time.monotonic():
            return cached[0]
        response = await self._client.post(
            f"/realms/{creds.realm}/protocol/openid-connect/token",
            data={
                "grant_type": "client_credentials",
                "client_id": creds.client_id,
                "client_secret": creds.client_secret or "",
            },
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        payload = response.json()
        token = payload["access_token"]
        ttl = float(payload.get("expires_in", 60))
        self._tokens[creds.realm] = (
            token,
            time.monotonic() + max(0.0, ttl - self._TOKEN_REFRESH_MARGIN),
        )
        return token

    async def _request(
        self,
        method: str,
        path: str,
        creds: RealmCredentials,
        *,
        json: Any = None,
    ) -> httpx.Response:
        token = await self._admin_token(creds)
        response = await self._client.request(
            method,
            f"/admin/realms/{creds.realm}{path}",
            json=json,
            headers={"Authorization": f"Bearer {token}"},
        )
        response.raise_for_status()
        return response

    @staticmethod
    def _representation(user: User) -> dict:
        attributes: Dict[str, list[str]] = {"local_user_id": [str(user.id)]}
        if user.phone_number:
            attributes["phone_number"] = [user.phone_number]
        return {
            "username": user.email or user.phone_number,
            "email": user.email,
            "emailVerified": user.is_email_verified,
            "enabled": user.is_active,
            "attributes": attributes,
        }

    @staticmethod
    def _log_failure(event: str, exc: Exception, **context) -> None:
        if isinstance(exc, httpx.HTTPStatusError):
            context["status_code"] = exc.response.status_code
        logger.warning(event, error_type=type(exc).__name__, error=str(exc), **context)

    async def create_user(self, user: User) -> Optional[str]:
        creds = self._realm_for()
        try:
            response = await self._request(
                "POST", "/users", creds, json=self._representation(user)
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            self._log_failure("idp_create_user_failed", exc, user_id=user.id)
            return None
        location = response.headers.get("Location", "")
        external_id = location.rstrip("/").rsplit("/", 1)[-1] if location else None
        if not external_id:
            logger.warning("idp_create_user_missing_location", user_id=user.id)
            return None
        logger.info("idp_user_created", user_id=user.id, external_id=external_id)
        return external_id

    async def update_user(self, external_id: str, user: User) -> bool:
        creds = self._realm_for()
        try:
            await self._request(
                "PUT", f"/users/{external_id}", creds, json=self._representation(user)
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            self._log_failure("idp_update_user_failed", exc, user_id=user.id)
            return False
        return True

    async def _role_mapping(self, external_id: str, role: Role, method: str) -> bool:
        creds = self._realm_for(role)
        try:
            role_repr = (
                await self._request("GET", f"/roles/{role.external_name}", creds)
            ).json()
            await self._request(
                method,
                f"/users/{external_id}/role-mappings/realm",
                creds,
                json=[role_repr],
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            self._log_failure(
                "idp_role_mapping_failed",
                exc,
                external_id=external_id,
                role=role.value,
                method=method,
            )
            return False
        return True

    async def assign_role(self, external_id: str, role: Role) -> bool:
        return await self._role_mapping(external_id, role, "POST")

    async def remove_role(self, external_id: str, role: Role) -> bool:
        return await self._role_mapping(external_id, role, "DELETE")

    async def set_user_enabled(self, external_id: str, enabled: bool) -> bool:
        creds = self._realm_for()
        try:
            await self._request(
                "PUT", f"/users/{external_id}", creds, json={"enabled": enabled}
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            self._log_failure(
                "idp_set_enabled_failed", exc, external_id=external_id, enabled=enabled
            )
            return False
        return True

    async def sync_user(self, user: User, role: Optional[Role] = None) -> Optional[str]:
        external_id = user.external_id
        if external_id:
            if not await self.update_user(external_id, user):
                return None
        else:
            external_id = await self.create_user(user)
            if not external_id:
                return None
        if role is not None:
            await self.assign_role(external_id, role)
        return external_id


def build_identity_provider(settings) -> Optional[ExternalIdentityProvider]:
    """Return the configured provider, or None when mirroring is disabled."""
    if not settings.idp_enabled:
        return None
    return KeycloakIdentityProvider(
        settings.idp_base_url,
        platform=RealmCredentials(
            realm=settings.idp_platform_realm,
            client_id=settings.idp_platform_client_id,
            client_secret=settings.idp_platform_client_secret,
        ),
        services=RealmCredentials(
            realm=settings.idp_services_realm,
            client_id=settings.idp_services_client_id,
            client_secret=settings.idp_services_client_secret,
        ),
        timeout=settings.idp_timeout_seconds,
    )
