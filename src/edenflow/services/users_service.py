from __future__ import annotations

import logging
import secrets
from typing import Any

from ..errors import NotFound, ValidationError
from ..models import ACCOUNT_ROLES, Invitation, Scope
from ..scope import ROLE_RANK, permissions_for_role
from ..storage import (
    assign_account_role,
    get_account,
    get_account_role,
    list_account_users,
    remove_account_role,
    upsert_user,
)
from ..utils import log_event, new_id, utc_now_iso, utc_now_iso_offset

DEFAULT_INVITATION_HOURS = 168

_INVITATION_COLUMNS = """
    id, account_id, invited_email, role, invited_by, token, expires_at, status, created_at
"""

logger = logging.getLogger("edenflow.users")


def list_users(conn: Any, account_id: str) -> list[dict[str, Any]]:
    return list_account_users(conn, account_id)


def assign_role(
    conn: Any,
    scope: Scope,
    user_id: str,
    role: str,
    email: str | None = None,
) -> dict[str, Any]:
    _check_role(role)
    if not user_id:
        raise ValidationError("user_id is required")
    if ROLE_RANK[role] > ROLE_RANK.get(scope.role, 0):
        raise ValidationError("cannot grant a role above your own")
    current = get_account_role(conn, scope.account_id, user_id)
    if current == "owner" and role != "owner" and _owner_count(conn, scope.account_id) <= 1:
        raise ValidationError("account must keep at least one owner")
    upsert_user(conn, user_id, email)
    assign_account_role(conn, scope.account_id, user_id, role, assigned_by=scope.user_id)
    log_event(
        logger,
        logging.INFO,
        "user_role_assigned",
        account_id=scope.account_id,
        user_id=user_id,
        role=role,
        assigned_by=scope.user_id,
    )
    return {"user_id": user_id, "account_id": scope.account_id, "role": role}


def remove_user(conn: Any, scope: Scope, user_id: str) -> None:
    current = get_account_role(conn, scope.account_id, user_id)
    if current is None:
        raise NotFound("User not found in account")
    if current == "owner" and _owner_count(conn, scope.account_id) <= 1:
        raise ValidationError("account must keep at least one owner")
    remove_account_role(conn, scope.account_id, user_id)
    log_event(
        logger,
        logging.INFO,
        "user_removed",
        account_id=scope.account_id,
        user_id=user_id,
        removed_by=scope.user_id,
    )


def create_invitation(
    conn: Any,
    scope: Scope,
    email: str,
    role: str,
    expires_in_hours: int = DEFAULT_INVITATION_HOURS,
) -> Invitation:
    _check_role(role)
    email = (email or "").strip().lower()
    if "@" not in email:
        raise ValidationError("invalid email")
    if expires_in_hours <= 0:
        raise ValidationError("expires_in_hours must be positive")
    if ROLE_RANK[role] > ROLE_RANK.get(scope.role, 0):
        raise ValidationError("cannot invite with a role above your own")
    expire_invitations(conn, scope.account_id)
    existing = conn.execute(
        """
        SELECT id FROM account_invitations
        WHERE account_id = ? AND invited_email = ? AND status = 'pending'
        """,
        (scope.account_id, email),
    ).fetchone()
    if existing:
        raise ValidationError("invitation already pending for this email")
    invitation_id = new_id("inv")
    conn.execute(
        """
        INSERT INTO account_invitations
            (id, account_id, invited_email, role, invited_by, token, expires_at, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
        """,
        (
            invitation_id,
            scope.account_id,
            email,
            role,
            scope.user_id,
            secrets.token_hex(32),
            utc_now_iso_offset(seconds=expires_in_hours * 3600),
            utc_now_iso(),
        ),
    )
    conn.commit()
    log_event(
        logger,
        logging.INFO,
        "invitation_created",
        account_id=scope.account_id,
        invitation_id=invitation_id,
        role=role,
    )
    invitation = get_invitation(conn, scope.account_id, invitation_id)
    if invitation is None:
        raise NotFound("invitation_not_found")
    return invitation


def get_invitation(conn: Any, account_id: str, invitation_id: str) -> Invitation | None:
    row = conn.execute(
        f"SELECT {_INVITATION_COLUMNS} FROM account_invitations WHERE account_id = ? AND id = ?",
        (account_id, invitation_id),
    ).fetchone()
    return Invitation(*row) if row else None


def list_invitations(conn: Any, account_id: str, status: str | None = "pending") -> list[Invitation]:
    expire_invitations(conn, account_id)
    params: list[Any] = [account_id]
    clause = ""
    if status:
        clause = " AND status = ?"
        params.append(status)
    cursor = conn.execute(
        f"""
        SELECT {_INVITATION_COLUMNS} FROM account_invitations
        WHERE account_id = ?{clause}
        ORDER BY created_at DESC, id
        """,
        tuple(params),
    )
    return [Invitation(*row) for row in cursor.fetchall()]


def accept_invitation(
    conn: Any, token: str, user_id: str, email: str | None = None
) -> dict[str, Any]:
    if not token or not user_id:
        raise ValidationError("token and user_id are required")
    now = utc_now_iso()
    with conn.transaction():
        row = conn.execute(
            f"""
            SELECT {_INVITATION_COLUMNS} FROM account_invitations
            WHERE token = ? AND status = 'pending' AND expires_at > ?
            """,
            (token, now),
        ).fetchone()
        if not row:
            raise NotFound("Invalid or expired invitation")
        invitation = Invitation(*row)
        account = get_account(conn, invitation.account_id)
        if account is None or not account.is_active:
            raise NotFound("Invalid or expired invitation")
        conn.execute(
            """
            UPDATE account_invitations
            SET status = 'accepted', accepted_at = ?, accepted_by = ?
            WHERE id = ? AND status = 'pending'
            """,
            (now, user_id, invitation.id),
        )
        upsert_user(conn, user_id, email or invitation.invited_email)
        assign_account_role(
            conn, invitation.account_id, user_id, invitation.role, assigned_by=invitation.invited_by
        )
    log_event(
        logger,
        logging.INFO,
        "invitation_accepted",
        account_id=invitation.account_id,
        invitation_id=invitation.id,
        user_id=user_id,
    )
    return {"account_id": invitation.account_id, "role": invitation.role}


def cancel_invitation(conn: Any, account_id: str, invitation_id: str) -> None:
    cursor = conn.execute(
        """
        UPDATE account_invitations SET status = 'cancelled'
        WHERE account_id = ? AND id = ? AND status = 'pending'
        """,
        (account_id, invitation_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        raise NotFound("Invitation not found or already processed")


def expire_invitations(conn: Any, account_id: str | None = None) -> int:
    params: list[Any] = [utc_now_iso()]
    clause = ""
    if account_id:
        clause = " AND account_id = ?"
        params.append(account_id)
    cursor = conn.execute(
        f"""
        UPDATE account_invitations SET status = 'expired'
        WHERE status = 'pending' AND expires_at <= ?{clause}
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount


def permission_summary(scope: Scope) -> dict[str, Any]:
    return {
        "account_id": scope.account_id,
        "organization_id": scope.organization_id,
        "user_id": scope.user_id,
        "role": scope.role,
        "global_roles": list(scope.global_roles),
        "permissions": permissions_for_role(scope.role),
    }


def invitation_to_dict(invitation: Invitation, include_token: bool = False) -> dict[str, Any]:
    data = {
        "id": invitation.id,
        "accountId": invitation.account_id,
        "invitedEmail": invitation.invited_email,
        "role": invitation.role,
        "invitedBy": invitation.invited_by,
        "expiresAt": invitation.expires_at,
        "status": invitation.status,
        "createdAt": invitation.created_at,
    }
    if include_token:
        data["token"] = invitation.token
    return data


def _check_role(role: str) -> None:
    if role not in ACCOUNT_ROLES:
        raise ValidationError(f"invalid role {role}")


def _owner_count(conn: Any, account_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM user_accounts WHERE account_id = ? AND role = 'owner'",
        (account_id,),
    ).fetchone()
    return int(row[0]) if row else 0
