"""
Extraction-boundary filters shared by the pipelines.

Users that are erased (soft-deleted), guests, or application-service users
are never migrated, and neither is anything that belongs to them. Rows whose
user does not exist at all are *not* filtered here: they reach the pipeline
and are reported as dangling references.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa

from syn2mas.tables import synapse_erased_users, synapse_users


def is_erased(user_id: Any) -> sa.ColumnElement[bool]:
    return sa.exists().where(synapse_erased_users.c.user_id == user_id)


def eligible_user(users: sa.Table | Any = synapse_users) -> sa.ColumnElement[bool]:
    """Predicate on the legacy users table selecting users that are migrated."""
    return sa.and_(
        users.c.is_guest == 0,
        users.c.appservice_id.is_(None),
        ~is_erased(users.c.name),
    )


def owned_by_eligible_user(user_id: Any) -> sa.ColumnElement[bool]:
    """
    Predicate on a child row's user id.

    True unless the owning user exists and is filtered out, or is erased.
    """
    owner = synapse_users.alias("owner")
    filtered_owner = (
        sa.exists()
        .where(owner.c.name == user_id)
        .where(sa.or_(owner.c.is_guest != 0, owner.c.appservice_id.is_not(None)))
    )
    return sa.and_(~filtered_owner, ~is_erased(user_id))


def is_admin(user_id: Any) -> sa.ScalarSelect[Any]:
    """Scalar subquery: the admin flag of the owning user (0 when unknown)."""
    admin = synapse_users.alias("admin_owner")
    return (
        sa.select(sa.func.coalesce(sa.func.max(admin.c.admin), 0))
        .where(admin.c.name == user_id)
        .scalar_subquery()
    )


__all__ = [
    "eligible_user",
    "is_admin",
    "is_erased",
    "owned_by_eligible_user",
]
