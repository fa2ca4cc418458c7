from __future__ import annotations

from enum import IntFlag


class Permission(IntFlag):
    """Server role permission bits."""

    VIEW_CHANNELS = 1 << 0
    SEND_MESSAGES = 1 << 1
    MANAGE_MESSAGES = 1 << 5
    KICK_MEMBERS = 1 << 15
    BAN_MEMBERS = 1 << 16
    ADMINISTRATOR = 1 << 17


def has_permission(user_perms: int, required: int) -> bool:
    """True when every bit in ``required`` is granted; ADMINISTRATOR grants all."""
    perms = int(user_perms)
    if perms & Permission.ADMINISTRATOR:
        return True
    return (perms & int(required)) == int(required)
