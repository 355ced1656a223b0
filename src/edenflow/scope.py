from __future__ import annotations

import re
from typing import Any

from .errors import Forbidden, ScopeInvalid, ScopeMissing
from .models import Scope
from .storage import (
    get_account,
    get_account_role,
    get_organization,
    get_organization_role,
    list_global_roles,
    touch_account_access,
    upsert_user,
)

ROLE_RANK = {"viewer": 1, "editor": 2, "admin": 3, "owner": 4}

# Global roles act outside any account membership.
GLOBAL_ROLE_EQUIVALENT = {
    "super_admin": "owner",
    "support": "viewer",
    "billing_admin": "viewer",
}

ROLE_PERMISSIONS = {
    "owner": {
        "read": True,
        "create_content": True,
        "run_jobs": True,
        "manage_sources": True,
        "manage_templates": True,
        "manage_users": True,
        "manage_settings": True,
    },
    "admin": {
        "read": True,
        "create_content": True,
        "run_jobs": True,
        "manage_sources": True,
        "manage_templates": True,
        "manage_users": True,
        "manage_settings": True,
    },
    "editor": {
        "read": True,
        "create_content": True,
        "run_jobs": True,
        "manage_sources": True,
        "manage_templates": False,
        "manage_users": False,
        "manage_settings": False,
    },
    "viewer": {
        "read": True,
        "create_content": False,
        "run_jobs": False,
        "manage_sources": False,
        "manage_templates": False,
        "manage_users": False,
        "manage_settings": False,
    },
}


def resolve_account_id(
    header: str | None = None,
    query: str | None = None,
    session: str | None = None,
    body: Any = None,
) -> str:
    for candidate in (header, query, session, body):
        if candidate is None:
            continue
        value = str(candidate).strip()
        if value:
            return value
    raise ScopeMissing("Account context required")


def build_scope(
    conn: Any,
    account_id: str,
    user_id: str | None = None,
    email: str | None = None,
) -> Scope:
    account = get_account(conn, account_id)
    if account is None or not account.is_active:
        raise ScopeInvalid("account_not_found")
    organization = get_organization(conn, account.organization_id)
    if organization is None or not organization.is_active:
        raise ScopeInvalid("organization_not_found")
    if not user_id:
        return Scope(
            organization_id=organization.id,
            account_id=account.id,
            user_id=None,
            role="",
            email=email,
        )

    global_roles = tuple(list_global_roles(conn, user_id))
    if global_roles:
        role = max(
            (GLOBAL_ROLE_EQUIVALENT.get(item, "viewer") for item in global_roles),
            key=lambda item: ROLE_RANK[item],
        )
        return Scope(
            organization_id=organization.id,
            account_id=account.id,
            user_id=user_id,
            role=role,
            email=email,
            global_roles=global_roles,
        )

    account_role = get_account_role(conn, account.id, user_id)
    org_role = get_organization_role(conn, organization.id, user_id)
    role = account_role or org_role
    if not role:
        raise Forbidden("no_account_access")
    upsert_user(conn, user_id, email)
    if account_role:
        touch_account_access(conn, account.id, user_id)
    return Scope(
        organization_id=organization.id,
        account_id=account.id,
        user_id=user_id,
        role=role,
        email=email,
    )


def has_role(scope: Scope, minimum: str) -> bool:
    if not scope.role:
        return False
    return ROLE_RANK.get(scope.role, 0) >= ROLE_RANK[minimum]


def require_role(scope: Scope, minimum: str) -> Scope:
    if not has_role(scope, minimum):
        raise Forbidden("insufficient_role")
    return scope


def permissions_for_role(role: str) -> dict[str, bool]:
    return dict(ROLE_PERMISSIONS.get(role, {key: False for key in ROLE_PERMISSIONS["viewer"]}))


_TAIL_CLAUSE = re.compile(r"\b(GROUP\s+BY|ORDER\s+BY|LIMIT|OFFSET)\b", re.IGNORECASE)
_WHERE = re.compile(r"\bWHERE\b", re.IGNORECASE)


def add_account_filter(
    sql: str, params: tuple | list, account_id: str, alias: str | None = None
) -> tuple[str, tuple]:
    """Embed ``account_id`` in the WHERE clause of a query that lacks it.

    Returns the rewritten SQL with the parameter list adjusted so the new
    placeholder lines up with its position in the statement.
    """
    column = f"{alias}.account_id" if alias else "account_id"
    if re.search(rf"(?<![\w.]){re.escape(column)}\s*=", sql):
        return sql, tuple(params)
    body = sql.rstrip().rstrip(";")
    where = _WHERE.search(body)
    if where:
        insert_at = where.end()
        tail = _TAIL_CLAUSE.search(body, insert_at)
        end = tail.start() if tail else len(body)
        predicate = body[insert_at:end].strip()
        rest = " " + body[end:] if tail else ""
        rewritten = f"{body[:insert_at]} {column} = ? AND ({predicate}){rest}"
    else:
        tail = _TAIL_CLAUSE.search(body)
        insert_at = tail.start() if tail else len(body)
        rewritten = body[:insert_at] + f" WHERE {column} = ? " + body[insert_at:]
    index = body[:insert_at].count("?")
    new_params = list(params)
    new_params.insert(index, account_id)
    return rewritten, tuple(new_params)
