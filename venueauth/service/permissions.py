"""Venue sub-user capability flags and role defaults.

Permissions are a bitmask. A check passes when every required bit is
granted; holding extra bits never hurts. The role only chooses the
initial mask, after which the stored mask is authoritative.
"""

from __future__ import annotations

from enum import IntEnum, IntFlag
from functools import reduce
from operator import or_
from types import MappingProxyType
from typing import List, Mapping


class VenuePermissions(IntFlag):
    NONE = 0

    # Venue management
    VIEW_VENUE_DETAILS = 1 << 0
    EDIT_VENUE_DETAILS = 1 << 1
    MANAGE_PRICING = 1 << 2
    MANAGE_WORKING_HOURS = 1 << 3
    MANAGE_VENUE_IMAGES = 1 << 4

    # Sub-user management
    VIEW_SUB_USERS = 1 << 5
    CREATE_SUB_USERS = 1 << 6
    EDIT_SUB_USERS = 1 << 7
    DELETE_SUB_USERS = 1 << 8
    RESET_SUB_USER_PASSWORDS = 1 << 9

    # Bookings
    VIEW_BOOKINGS = 1 << 10
    CREATE_BOOKINGS = 1 << 11
    EDIT_BOOKINGS = 1 << 12
    CANCEL_BOOKINGS = 1 << 13

    # Customers
    VIEW_CUSTOMERS = 1 << 14
    MANAGE_CUSTOMERS = 1 << 15

    # Finance
    VIEW_FINANCIALS = 1 << 16
    MANAGE_FINANCIALS = 1 << 17
    PROCESS_REFUNDS = 1 << 18

    # Reporting
    VIEW_REPORTS = 1 << 19
    EXPORT_REPORTS = 1 << 20
    VIEW_AUDIT_LOGS = 1 << 21
    VIEW_COWORKER_ACTIVITY = 1 << 22


ALL_PERMISSIONS = VenuePermissions(
    reduce(or_, (p.value for p in VenuePermissions), 0)
)


class SubUserRole(IntEnum):
    ADMIN = 0
    COWORKER = 1
    OPERATOR = 2
    STAFF = 3


# Read-only after import; pass a different mapping to default_permissions_for to override.
ROLE_DEFAULT_PERMISSIONS: Mapping[SubUserRole, VenuePermissions] = MappingProxyType(
    {
        SubUserRole.ADMIN: ALL_PERMISSIONS,
        SubUserRole.COWORKER: (
            VenuePermissions.VIEW_VENUE_DETAILS
            | VenuePermissions.VIEW_BOOKINGS
            | VenuePermissions.CREATE_BOOKINGS
            | VenuePermissions.EDIT_BOOKINGS
            | VenuePermissions.VIEW_CUSTOMERS
            | VenuePermissions.VIEW_REPORTS
        ),
        SubUserRole.OPERATOR: (
            VenuePermissions.VIEW_VENUE_DETAILS
            | VenuePermissions.VIEW_BOOKINGS
            | VenuePermissions.CREATE_BOOKINGS
            | VenuePermissions.EDIT_BOOKINGS
            | VenuePermissions.CANCEL_BOOKINGS
            | VenuePermissions.VIEW_CUSTOMERS
            | VenuePermissions.MANAGE_CUSTOMERS
            | VenuePermissions.VIEW_REPORTS
        ),
        SubUserRole.STAFF: (
            VenuePermissions.VIEW_VENUE_DETAILS
            | VenuePermissions.VIEW_BOOKINGS
            | VenuePermissions.CREATE_BOOKINGS
            | VenuePermissions.VIEW_CUSTOMERS
        ),
    }
)


def has_permissions(granted: int, required: int) -> bool:
    """Subset test: every bit in ``required`` must be present in ``granted``."""
    return (int(granted) & int(required)) == int(required)


def default_permissions_for(
    role: SubUserRole,
    table: Mapping[SubUserRole, VenuePermissions] = ROLE_DEFAULT_PERMISSIONS,
) -> VenuePermissions:
    return table.get(SubUserRole(role), VenuePermissions.NONE)


def normalize_permissions(value: int) -> VenuePermissions:
    """Drop bits outside the known vocabulary."""
    return VenuePermissions(int(value) & ALL_PERMISSIONS.value)


def permission_names(mask: int) -> List[str]:
    return [
        p.name.lower()
        for p in VenuePermissions
        if p.value and has_permissions(mask, p.value)
    ]


__all__ = [
    "VenuePermissions",
    "ALL_PERMISSIONS",
    "SubUserRole",
    "ROLE_DEFAULT_PERMISSIONS",
    "has_permissions",
    "default_permissions_for",
    "normalize_permissions",
    "permission_names",
]
