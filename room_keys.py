"""Canonical, tenant-prefixed room keys.

Key schema:
    {tenant}:general
    {tenant}:dm:{min(a, b)}:{max(a, b)}

Every room a connection may subscribe or send to must go through this module
so that the tenant prefix is always part of the key. Tenant and principal ids
never contain the separator, so a key splits back into its parts unambiguously.
"""
from errors import InvalidRoomError

ROOM_SEPARATOR = ":"
GENERAL = "general"
DM = "dm"


def valid_identifier(value: str) -> bool:
    """Non-empty and free of the room separator."""
    return bool(value) and ROOM_SEPARATOR not in value


def tenant_prefix(tenant: str) -> str:
    return f"{tenant}{ROOM_SEPARATOR}"


def general_room(tenant: str) -> str:
    if not valid_identifier(tenant):
        raise InvalidRoomError(f"invalid tenant {tenant!r} for general room")
    return f"{tenant}:{GENERAL}"


def dm_room(tenant: str, user_a: str, user_b: str) -> str:
    """Direct-message room shared by two principals.

    Both participants derive the same key regardless of who initiates,
    because the two identifiers are sorted before joining.
    """
    if not all(valid_identifier(v) for v in (tenant, user_a, user_b)):
        raise InvalidRoomError("dm room requires a tenant and two principals without ':'")
    first, second = sorted([user_a, user_b])
    return f"{tenant}:{DM}:{first}:{second}"


def belongs_to_tenant(room: str, tenant: str) -> bool:
    """True when the room key is a well-formed room of this tenant."""
    if not room or not valid_identifier(tenant):
        return False
    prefix = tenant_prefix(tenant)
    if not room.startswith(prefix):
        return False

    rest = room[len(prefix):]
    if rest == GENERAL:
        return True
    parts = rest.split(ROOM_SEPARATOR)
    return (
        len(parts) == 3
        and parts[0] == DM
        and valid_identifier(parts[1])
        and valid_identifier(parts[2])
        and parts[1] <= parts[2]
    )
