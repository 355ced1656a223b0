import pytest

from edenflow.errors import NotFound, ValidationError
from edenflow.scope import build_scope
from edenflow.services.users_service import (
    accept_invitation,
    assign_role,
    cancel_invitation,
    create_invitation,
    get_invitation,
    list_invitations,
    list_users,
    permission_summary,
    remove_user,
)
from edenflow.storage import get_account_role
from edenflow.utils import utc_now_iso_offset


def test_admin_assigns_roles_up_to_their_own(conn, tenants):
    admin = build_scope(conn, tenants.a, tenants.admin)

    assert assign_role(conn, admin, "user-new", "editor", "new@example.com")["role"] == "editor"
    assert get_account_role(conn, tenants.a, "user-new") == "editor"
    with pytest.raises(ValidationError, match="above your own"):
        assign_role(conn, admin, "user-new", "owner")
    with pytest.raises(ValidationError, match="invalid role"):
        assign_role(conn, admin, "user-new", "superuser")


def test_last_owner_is_kept(conn, tenants):
    owner = build_scope(conn, tenants.a, tenants.owner)

    with pytest.raises(ValidationError, match="at least one owner"):
        assign_role(conn, owner, tenants.owner, "admin")
    with pytest.raises(ValidationError, match="at least one owner"):
        remove_user(conn, owner, tenants.owner)

    assign_role(conn, owner, tenants.admin, "owner")
    remove_user(conn, owner, tenants.owner)
    assert get_account_role(conn, tenants.a, tenants.owner) is None


def test_remove_unknown_user(conn, tenants):
    owner = build_scope(conn, tenants.a, tenants.owner)
    with pytest.raises(NotFound):
        remove_user(conn, owner, tenants.b_owner)


def test_list_users_is_per_account(conn, tenants):
    users = list_users(conn, tenants.b)
    assert [user["user_id"] for user in users] == [tenants.b_owner]


def test_invitation_round_trip(conn, tenants):
    admin = build_scope(conn, tenants.a, tenants.admin)

    invitation = create_invitation(conn, admin, " New.Editor@Example.com ", "editor")

    assert invitation.invited_email == "new.editor@example.com"
    assert invitation.status == "pending"
    assert len(invitation.token) == 64
    with pytest.raises(ValidationError, match="already pending"):
        create_invitation(conn, admin, "new.editor@example.com", "viewer")

    accepted = accept_invitation(conn, invitation.token, "user-invited")

    assert accepted == {"account_id": tenants.a, "role": "editor"}
    assert get_account_role(conn, tenants.a, "user-invited") == "editor"
    assert get_invitation(conn, tenants.a, invitation.id).status == "accepted"
    with pytest.raises(NotFound):
        accept_invitation(conn, invitation.token, "user-other")


def test_invitation_validation(conn, tenants):
    editor = build_scope(conn, tenants.a, tenants.editor)
    with pytest.raises(ValidationError, match="invalid email"):
        create_invitation(conn, editor, "not-an-email", "viewer")
    with pytest.raises(ValidationError, match="above your own"):
        create_invitation(conn, editor, "boss@example.com", "admin")


def test_expired_invitation_cannot_be_accepted(conn, tenants):
    admin = build_scope(conn, tenants.a, tenants.admin)
    invitation = create_invitation(conn, admin, "late@example.com", "viewer")
    conn.execute(
        "UPDATE account_invitations SET expires_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-60), invitation.id),
    )
    conn.commit()

    with pytest.raises(NotFound):
        accept_invitation(conn, invitation.token, "user-late")
    assert list_invitations(conn, tenants.a) == []
    assert [item.status for item in list_invitations(conn, tenants.a, status=None)] == ["expired"]


def test_cancelled_invitation_is_final(conn, tenants):
    admin = build_scope(conn, tenants.a, tenants.admin)
    invitation = create_invitation(conn, admin, "maybe@example.com", "viewer")

    cancel_invitation(conn, tenants.a, invitation.id)

    with pytest.raises(NotFound):
        cancel_invitation(conn, tenants.a, invitation.id)
    with pytest.raises(NotFound):
        accept_invitation(conn, invitation.token, "user-maybe")


def test_permission_summary(conn, tenants):
    summary = permission_summary(build_scope(conn, tenants.a, tenants.root))

    assert summary["role"] == "owner"
    assert summary["global_roles"] == ["super_admin"]
    assert summary["permissions"]["manage_users"] is True
