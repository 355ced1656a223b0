import pytest

from edenflow.errors import Forbidden, ScopeInvalid, ScopeMissing
from edenflow.jobs import enqueue_job
from edenflow.scope import (
    add_account_filter,
    build_scope,
    has_role,
    permissions_for_role,
    require_role,
    resolve_account_id,
)
from edenflow.storage import assign_organization_role, set_account_active, set_organization_active, upsert_user


def test_account_id_resolution_order():
    assert resolve_account_id(header="acct_h", query="acct_q") == "acct_h"
    assert resolve_account_id(header="  ", query=None, session="acct_s", body="acct_b") == "acct_s"
    assert resolve_account_id(body="acct_b") == "acct_b"
    with pytest.raises(ScopeMissing):
        resolve_account_id(header="", query=" ")


def test_member_scope_carries_role(conn, tenants):
    scope = build_scope(conn, tenants.a, tenants.editor, "editor@example.com")

    assert scope.account_id == tenants.a
    assert scope.organization_id == tenants.org_id
    assert scope.role == "editor"
    assert scope.global_roles == ()


def test_global_role_acts_without_membership(conn, tenants):
    scope = build_scope(conn, tenants.b, tenants.root)

    assert scope.role == "owner"
    assert scope.global_roles == ("super_admin",)


def test_organization_role_applies_to_every_account(conn, tenants):
    upsert_user(conn, "user-org", "org@example.com")
    assign_organization_role(conn, tenants.org_id, "user-org", "admin")

    assert build_scope(conn, tenants.b, "user-org").role == "admin"


def test_other_tenants_members_are_forbidden(conn, tenants):
    with pytest.raises(Forbidden):
        build_scope(conn, tenants.a, tenants.b_owner)
    with pytest.raises(Forbidden):
        build_scope(conn, tenants.a, "user-stranger")


def test_inactive_account_or_organization_is_invalid(conn, tenants):
    with pytest.raises(ScopeInvalid):
        build_scope(conn, "acct_missing", tenants.owner)
    set_account_active(conn, tenants.b, False)
    with pytest.raises(ScopeInvalid):
        build_scope(conn, tenants.b, tenants.b_owner)
    set_organization_active(conn, tenants.org_id, False)
    with pytest.raises(ScopeInvalid):
        build_scope(conn, tenants.a, tenants.owner)


def test_anonymous_scope_has_no_role(conn, tenants):
    scope = build_scope(conn, tenants.a)

    assert scope.role == ""
    assert has_role(scope, "viewer") is False


def test_role_ranking(conn, tenants):
    editor = build_scope(conn, tenants.a, tenants.editor)
    viewer = build_scope(conn, tenants.a, tenants.viewer)

    assert has_role(editor, "editor")
    assert not has_role(editor, "admin")
    assert require_role(viewer, "viewer") is viewer
    with pytest.raises(Forbidden, match="insufficient_role"):
        require_role(viewer, "editor")


def test_permissions_for_role():
    assert permissions_for_role("editor")["run_jobs"] is True
    assert permissions_for_role("editor")["manage_templates"] is False
    assert not any(permissions_for_role("ghost").values())


def test_account_filter_joins_existing_where():
    sql, params = add_account_filter(
        "SELECT * FROM jobs WHERE status = ? ORDER BY created_at LIMIT ?", ("queued", 5), "acct_1"
    )

    assert sql == "SELECT * FROM jobs WHERE account_id = ? AND (status = ?) ORDER BY created_at LIMIT ?"
    assert params == ("acct_1", "queued", 5)


def test_account_filter_keeps_or_predicates_inside_the_account(conn, tenants):
    own = enqueue_job(conn, tenants.a, "analyze_articles", {})
    enqueue_job(conn, tenants.b, "source_refresh", {})

    sql, params = add_account_filter(
        "SELECT id FROM jobs WHERE job_type = ? OR job_type = ?;",
        ("analyze_articles", "source_refresh"),
        tenants.a,
    )

    assert sql == "SELECT id FROM jobs WHERE account_id = ? AND (job_type = ? OR job_type = ?)"
    assert conn.execute(sql, params).fetchall() == [(own,)]


def test_account_filter_adds_where_before_tail():
    sql, params = add_account_filter("SELECT id FROM jobs ORDER BY id LIMIT ?", [10], "acct_1")

    assert sql == "SELECT id FROM jobs  WHERE account_id = ? ORDER BY id LIMIT ?"
    assert params == ("acct_1", 10)


def test_account_filter_leaves_scoped_queries_alone():
    sql = "SELECT * FROM jobs j WHERE j.account_id = ? AND j.id = ?"

    assert add_account_filter(sql, ("acct_1", "job_1"), "acct_1", alias="j") == (sql, ("acct_1", "job_1"))


def test_account_filter_uses_alias():
    sql, params = add_account_filter("SELECT t.id FROM prompt_templates t", (), "acct_1", alias="t")

    assert sql == "SELECT t.id FROM prompt_templates t WHERE t.account_id = ? "
    assert params == ("acct_1",)
