"""
Authorization policy.

`decide` is a pure function of (identity, action, resource owner). Handlers
call `authorize`, which raises the matching error on a deny. Rules are
evaluated in order and the first match wins:

1. READ_PUBLIC_CATALOG: always allowed.
2. READ_OWN_OR_SELF: admin, or the caller owns the resource; else Forbidden.
3. WRITE_OWN_OR_SELF: as (2), but an anonymous caller is Unauthorized.
4. ADMIN_ONLY: admin; anonymous is Unauthorized, anyone else Forbidden.

Ownership can only be checked once the resource is loaded, so handlers look
the resource up (and return NotFound) before calling `authorize` with its
owner id.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from auth import Identity
from errors import Forbidden, Unauthorized

logger = structlog.get_logger(__name__)


class Action(str, Enum):
    READ_PUBLIC_CATALOG = "ReadPublicCatalog"
    READ_OWN_OR_SELF = "ReadOwnOrSelf"
    WRITE_OWN_OR_SELF = "WriteOwnOrSelf"
    ADMIN_ONLY = "AdminOnly"


class DenyReason(str, Enum):
    UNAUTHORIZED = "Unauthorized"
    FORBIDDEN = "Forbidden"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None


ALLOW = Decision(True)
DENY_UNAUTHORIZED = Decision(False, DenyReason.UNAUTHORIZED)
DENY_FORBIDDEN = Decision(False, DenyReason.FORBIDDEN)


def _owns(identity: Optional[Identity], owner_id: Optional[str]) -> bool:
    return identity is not None and owner_id is not None and identity.id == str(owner_id)


def decide(identity: Optional[Identity], action: Action, owner_id: Optional[str] = None) -> Decision:
    if action == Action.READ_PUBLIC_CATALOG:
        return ALLOW

    if action == Action.READ_OWN_OR_SELF:
        if (identity is not None and identity.is_admin) or _owns(identity, owner_id):
            return ALLOW
        return DENY_FORBIDDEN

    if action == Action.WRITE_OWN_OR_SELF:
        if identity is None:
            return DENY_UNAUTHORIZED
        if identity.is_admin or _owns(identity, owner_id):
            return ALLOW
        return DENY_FORBIDDEN

    if action == Action.ADMIN_ONLY:
        if identity is None:
            return DENY_UNAUTHORIZED
        return ALLOW if identity.is_admin else DENY_FORBIDDEN

    raise ValueError(f"Unknown action: {action}")


def authorize(
    identity: Optional[Identity],
    action: Action,
    owner_id: Optional[str] = None,
    message: Optional[str] = None,
) -> None:
    decision = decide(identity, action, owner_id)
    if decision.allowed:
        return
    logger.debug(
        "policy_denied",
        action=action.value,
        reason=decision.reason.value,
        caller=identity.id if identity else None,
    )
    if decision.reason == DenyReason.UNAUTHORIZED:
        raise Unauthorized(message)
    raise Forbidden(message)


def require_identity(identity: Optional[Identity]) -> Identity:
    """Endpoints that only make sense for a logged-in caller."""
    if identity is None:
        raise Unauthorized()
    return identity
