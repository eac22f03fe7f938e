from __future__ import annotations

from typing import Optional

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.errors import (
    InsufficientPermissionError,
    NotFoundError,
    TokenInvalidError,
)
from admincore.service.permissions import MENU_ACTIONS, PermissionResolver
from admincore.service.tokens import Identity, TokenService
from admincore.storage.models import MenuPermissions

logger = get_logger(__name__)


class AuthorizationGate:
    """Turns a bearer header plus a requested action into allow or a typed denial.

    Verdicts come from the resolver against live role state; the token only
    establishes who is asking. Unknown users or menus are reported as
    ``InsufficientPermissionError``, which keeps ids from leaking to
    non-administrative callers.
    """

    def __init__(
        self, tokens: TokenService, resolver: PermissionResolver, settings: Settings
    ) -> None:
        self.tokens = tokens
        self.resolver = resolver
        self.settings = settings

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate_bearer(self, header: Optional[str]) -> Identity:
        token = self._extract_bearer(header)
        if token is None:
            raise TokenInvalidError("missing bearer token")
        return self.tokens.verify(token)

    def menu_permissions(self, identity: Identity, menu_id: str) -> MenuPermissions:
        try:
            return self.resolver.resolve(identity.user_id, menu_id)
        except NotFoundError:
            logger.warning("menu_lookup_denied", user_id=identity.user_id, menu_id=menu_id)
            raise InsufficientPermissionError(detail={"menu_id": menu_id})

    def require_menu_action(
        self, identity: Identity, menu_id: str, action: str
    ) -> MenuPermissions:
        normalized = (action or "").strip().upper()
        perms = self.menu_permissions(identity, menu_id)
        if normalized not in MENU_ACTIONS or not perms.allows(normalized):
            logger.warning(
                "menu_action_denied",
                user_id=identity.user_id,
                menu_id=menu_id,
                action=normalized,
            )
            raise InsufficientPermissionError(
                detail={"menu_id": menu_id, "action": normalized}
            )
        return perms

    def require_admin(self, identity: Identity) -> Identity:
        """Admin role, or any ADMIN-action permission, held through an active role."""
        try:
            allowed = self.resolver.is_admin(identity.user_id)
        except NotFoundError:
            allowed = False
        if allowed:
            return identity
        logger.warning("admin_denied", user_id=identity.user_id)
        raise InsufficientPermissionError(detail={"role": self.settings.admin_role_name})


__all__ = ["AuthorizationGate"]
