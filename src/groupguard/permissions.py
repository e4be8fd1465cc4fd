from __future__ import annotations

import logging
from enum import IntEnum
from typing import Iterable

from .context import MessageContext
from .errors import PermissionDenied
from .services.metadata_cache import GroupMetadataCache

log = logging.getLogger("groupguard.permissions")


class PermissionTier(IntEnum):
    """Permission tiers for command access control."""
    PUBLIC = 0
    ADMIN = 1
    OWNER = 2

    @classmethod
    def from_name(cls, name: str) -> "PermissionTier":
        return cls[name.upper()]


async def is_group_admin(ctx: MessageContext, cache: GroupMetadataCache, *, default: bool = False) -> bool:
    """Check the provider's group metadata for admin/superadmin.

    Returns ``default`` when the metadata cannot be fetched.
    """
    try:
        metadata = await cache.fetch(ctx.connection, ctx.conversation_id)
    except Exception as e:
        log.warning("Group metadata unavailable for %s: %s", ctx.conversation_id, e)
        return default
    participant = metadata.participant(ctx.sender_id)
    return participant is not None and participant.is_admin


def is_owner(ctx: MessageContext, owner_account_ids: Iterable[str] = ()) -> bool:
    """Check if the sender is the tenant's own account or a configured owner."""
    sender = ctx.sender_id
    if sender in set(owner_account_ids):
        return True
    identity = ctx.session.identity
    return bool(ctx.session.elevated and identity is not None and identity.account_id == sender)


async def require_tier(
    required: PermissionTier,
    ctx: MessageContext,
    cache: GroupMetadataCache,
    owner_account_ids: Iterable[str] = (),
) -> None:
    """Raise PermissionDenied if the sender is below ``required``."""
    if required is PermissionTier.PUBLIC:
        return
    if required is PermissionTier.OWNER:
        if not is_owner(ctx, owner_account_ids):
            raise PermissionDenied(f"{ctx.sender_id} is not an owner")
        return
    if is_owner(ctx, owner_account_ids) or await is_group_admin(ctx, cache):
        return
    raise PermissionDenied(f"{ctx.sender_id} is not a group admin")
