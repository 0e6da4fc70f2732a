# tests/test_admin.py — Audit trail, tenant settings and user directory
import csv
import io

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from audit import write_entry
from models import AuditLog, QuestionStatus, QuestionTag, Tag

from tests.conftest import admin_key_headers, get_auth_headers, make_question


# ============================================================
# AUDIT
# ============================================================

@pytest.mark.asyncio
async def test_privileged_mutation_is_audited(client: AsyncClient, db_session, tenant, engineering, moderator):
    question = await make_question(db_session, tenant, engineering)
    resp = await client.post(
        f"/api/v1/questions/{question.id}/respond",
        json={"response": "Next sprint."},
        headers={**get_auth_headers(moderator, tenant), "X-Request-ID": "req-123", "User-Agent": "pytest"},
    )
    assert resp.status_code == 200

    log = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == "question.respond")
    )).scalar_one()
    assert log.tenant_id == tenant.id
    assert log.user_id == moderator.id
    assert log.user_email == moderator.email
    assert log.entity_type == "Question"
    assert log.entity_id == question.id
    assert log.before_state == {"status": "OPEN"}
    assert log.after_state == {"status": "ANSWERED"}
    assert log.request_id == "req-123"
    assert log.user_agent == "pytest"


@pytest.mark.asyncio
async def test_admin_key_actions_are_attributed(client: AsyncClient, db_session, tenant, engineering):
    question = await make_question(db_session, tenant, engineering)
    resp = await client.post(f"/api/v1/questions/{question.id}/freeze", headers=admin_key_headers(tenant))
    assert resp.status_code == 200

    log = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == "question.freeze")
    )).scalar_one()
    assert log.user_id is None
    assert log.user_name == "admin-key"


@pytest.mark.asyncio
async def test_denied_request_is_not_audited(client: AsyncClient, db_session, tenant, engineering, member):
    question = await make_question(db_session, tenant, engineering)
    resp = await client.post(f"/api/v1/questions/{question.id}/pin", headers=get_auth_headers(member, tenant))
    assert resp.status_code == 403

    logs = (await db_session.execute(select(AuditLog))).scalars().all()
    assert logs == []


@pytest.mark.asyncio
async def test_failed_audit_write_is_swallowed(tenant):
    def broken_factory():
        raise RuntimeError("database unavailable")

    ok = await write_entry(broken_factory, {"tenant_id": tenant.id, "action": "x", "entity_type": "Question"})
    assert ok is False


@pytest.mark.asyncio
async def test_audit_log_listing_and_filters(client: AsyncClient, db_session, tenant, engineering, admin):
    question = await make_question(db_session, tenant, engineering)
    headers = get_auth_headers(admin, tenant)
    await client.post(f"/api/v1/questions/{question.id}/pin", headers=headers)
    await client.post(f"/api/v1/questions/{question.id}/freeze", headers=headers)

    resp = await client.get("/api/v1/admin/audit", headers=headers)
    assert resp.status_code == 200
    actions = {log["action"] for log in resp.json()["logs"]}
    assert actions == {"question.pin", "question.freeze"}

    resp = await client.get("/api/v1/admin/audit", params={"action": "question.pin"}, headers=headers)
    assert [log["action"] for log in resp.json()["logs"]] == ["question.pin"]

    resp = await client.get("/api/v1/admin/audit/count", params={"entity_id": question.id}, headers=headers)
    assert resp.json() == {"total": 2}


@pytest.mark.asyncio
async def test_audit_log_requires_admin(client: AsyncClient, tenant, moderator):
    resp = await client.get("/api/v1/admin/audit", headers=get_auth_headers(moderator, tenant))
    assert resp.status_code == 403
    assert resp.json()["error"] == "InsufficientRole"


@pytest.mark.asyncio
async def test_audit_log_is_tenant_isolated(client: AsyncClient, db_session, tenant, other_tenant, engineering):
    question = await make_question(db_session, tenant, engineering)
    await client.post(f"/api/v1/questions/{question.id}/pin", headers=admin_key_headers(tenant))

    resp = await client.get("/api/v1/admin/audit", headers=admin_key_headers(other_tenant))
    assert resp.status_code == 200
    assert resp.json()["logs"] == []


# ============================================================
# SETTINGS
# ============================================================

@pytest.mark.asyncio
async def test_settings_defaults(client: AsyncClient, tenant):
    resp = await client.get("/api/v1/admin/settings", headers=admin_key_headers(tenant))
    assert resp.status_code == 200
    data = resp.json()
    assert data["questions"] == {"min_length": 10, "max_length": 2000}
    assert data["users"]["default_role"] == "member"


@pytest.mark.asyncio
async def test_settings_partial_update_merges(client: AsyncClient, db_session, tenant):
    headers = admin_key_headers(tenant)
    resp = await client.patch("/api/v1/admin/settings", json={"questions": {"max_length": 500}}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["questions"] == {"min_length": 10, "max_length": 500}

    log = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == "tenant.settings.update")
    )).scalar_one()
    assert log.before_state["questions"]["max_length"] == 2000
    assert log.after_state["questions"]["max_length"] == 500


@pytest.mark.asyncio
@pytest.mark.parametrize("update", [
    {"questions": {"min_length": 600, "max_length": 500}},
    {"users": {"default_role": "superuser"}},
    {"security": {"session_timeout": 0}},
    {"branding": {"primary_color": "blue"}},
    {"features": {"allow_anonymous_questions": "yes"}},
])
async def test_invalid_settings_rejected(client: AsyncClient, tenant, update):
    resp = await client.patch("/api/v1/admin/settings", json=update, headers=admin_key_headers(tenant))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_settings_require_admin(client: AsyncClient, tenant, moderator):
    resp = await client.patch(
        "/api/v1/admin/settings",
        json={"questions": {"max_length": 500}},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 403


# ============================================================
# TENANT & USERS
# ============================================================

@pytest.mark.asyncio
async def test_tenant_profile(client: AsyncClient, tenant, member):
    resp = await client.get("/api/v1/admin/tenant", headers=get_auth_headers(member, tenant))
    assert resp.status_code == 200
    assert resp.json()["slug"] == "acme"

    resp = await client.patch("/api/v1/admin/tenant", json={"name": "Acme Inc"}, headers=admin_key_headers(tenant))
    assert resp.status_code == 200
    assert resp.json()["name"] == "Acme Inc"


@pytest.mark.asyncio
async def test_list_tenant_users(client: AsyncClient, tenant, engineering, admin, moderator, outsider):
    resp = await client.get("/api/v1/admin/users", headers=get_auth_headers(admin, tenant))
    assert resp.status_code == 200
    users = {u["email"]: u for u in resp.json()}
    assert set(users) == {"admin@acme.io", "mod@acme.io", "outsider@acme.io"}
    assert users["mod@acme.io"]["memberships"][0]["role"] == "moderator"
    assert users["outsider@acme.io"]["memberships"] == []


# ============================================================
# AUDIT SCOPE
# ============================================================

@pytest.mark.asyncio
async def test_team_admin_only_sees_own_teams_audit(
    client: AsyncClient, db_session, tenant, engineering, product, admin,
):
    ours = await make_question(db_session, tenant, engineering)
    theirs = await make_question(db_session, tenant, product, "A product team question")
    key = admin_key_headers(tenant)
    await client.post(f"/api/v1/questions/{ours.id}/pin", headers=key)
    await client.post(f"/api/v1/questions/{theirs.id}/pin", headers=key)
    await client.patch("/api/v1/admin/settings", json={"questions": {"max_length": 500}}, headers=key)

    headers = get_auth_headers(admin, tenant)
    resp = await client.get("/api/v1/admin/audit", headers=headers)
    assert resp.status_code == 200
    assert [(log["action"], log["entity_id"]) for log in resp.json()["logs"]] == [("question.pin", ours.id)]

    resp = await client.get("/api/v1/admin/audit/count", headers=headers)
    assert resp.json() == {"total": 1}

    # The admin key sees team and tenant-level entries alike
    resp = await client.get("/api/v1/admin/audit/count", headers=key)
    assert resp.json() == {"total": 3}


@pytest.mark.asyncio
async def test_team_is_recorded_on_audit_entries(client: AsyncClient, db_session, tenant, engineering, admin):
    question = await make_question(db_session, tenant, engineering)
    await client.post(f"/api/v1/questions/{question.id}/freeze", headers=get_auth_headers(admin, tenant))

    log = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == "question.freeze")
    )).scalar_one()
    assert log.team_id == engineering.id


@pytest.mark.asyncio
async def test_audit_export_csv(client: AsyncClient, db_session, tenant, engineering, admin):
    question = await make_question(db_session, tenant, engineering)
    headers = get_auth_headers(admin, tenant)
    await client.post(f"/api/v1/questions/{question.id}/pin", headers={**headers, "User-Agent": "pytest"})

    resp = await client.get("/api/v1/admin/audit/export", headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]

    rows = list(csv.reader(io.StringIO(resp.text)))
    assert rows[0][:4] == ["timestamp", "user_email", "user_name", "action"]
    assert len(rows) == 2
    assert rows[1][1:4] == [admin.email, admin.name, "question.pin"]


@pytest.mark.asyncio
async def test_audit_export_json_and_bad_format(client: AsyncClient, db_session, tenant, engineering):
    question = await make_question(db_session, tenant, engineering)
    key = admin_key_headers(tenant)
    await client.post(f"/api/v1/questions/{question.id}/pin", headers=key)

    resp = await client.get("/api/v1/admin/audit/export", params={"format": "json"}, headers=key)
    assert resp.status_code == 200
    data = resp.json()
    assert data["tenant"] == "acme"
    assert data["total_records"] == 1
    assert data["logs"][0]["action"] == "question.pin"

    resp = await client.get("/api/v1/admin/audit/export", params={"format": "xml"}, headers=key)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_audit_export_requires_admin(client: AsyncClient, tenant, moderator):
    resp = await client.get("/api/v1/admin/audit/export", headers=get_auth_headers(moderator, tenant))
    assert resp.status_code == 403


# ============================================================
# DATA EXPORT
# ============================================================

@pytest.mark.asyncio
async def test_export_preview_is_scoped_to_administered_teams(
    client: AsyncClient, db_session, tenant, engineering, product, admin,
):
    ours = await make_question(db_session, tenant, engineering)
    await make_question(db_session, tenant, product, "A product team question")
    await make_question(db_session, tenant, None, "A question with no team at all")

    resp = await client.get("/api/v1/admin/export/preview", headers=get_auth_headers(admin, tenant))
    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 1
    assert [q["id"] for q in data["preview"]] == [ours.id]

    resp = await client.get(
        "/api/v1/admin/export/preview",
        params={"team_id": product.id},
        headers=get_auth_headers(admin, tenant),
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "NotAMember"


@pytest.mark.asyncio
async def test_export_preview_filters(client: AsyncClient, db_session, tenant, engineering, product):
    answered = await make_question(
        db_session, tenant, engineering, "Answered question about laptops",
        status=QuestionStatus.ANSWERED, response_text="Ask IT.", upvotes=4,
    )
    await make_question(db_session, tenant, engineering, upvotes=1)
    await make_question(db_session, tenant, product, "A product team question", upvotes=9)
    key = admin_key_headers(tenant)

    resp = await client.get("/api/v1/admin/export/preview", headers=key)
    assert resp.json()["count"] == 3

    resp = await client.get("/api/v1/admin/export/preview", params={"team_id": engineering.id}, headers=key)
    assert resp.json()["count"] == 2

    resp = await client.get(
        "/api/v1/admin/export/preview",
        params={"team_id": engineering.id, "status": "ANSWERED"},
        headers=key,
    )
    assert [q["id"] for q in resp.json()["preview"]] == [answered.id]

    resp = await client.get(
        "/api/v1/admin/export/preview", params={"min_upvotes": 2, "max_upvotes": 5}, headers=key,
    )
    assert [q["id"] for q in resp.json()["preview"]] == [answered.id]

    resp = await client.get("/api/v1/admin/export/preview", params={"has_response": "true"}, headers=key)
    assert [q["id"] for q in resp.json()["preview"]] == [answered.id]


@pytest.mark.asyncio
async def test_export_requires_admin(client: AsyncClient, tenant, engineering, moderator):
    resp = await client.get("/api/v1/admin/export/preview", headers=get_auth_headers(moderator, tenant))
    assert resp.status_code == 403
    assert resp.json()["error"] == "InsufficientRole"


@pytest.mark.asyncio
async def test_export_download_csv(client: AsyncClient, db_session, tenant, engineering, admin):
    tag = Tag(tenant_id=tenant.id, name="it")
    db_session.add(tag)
    await db_session.commit()
    question = await make_question(db_session, tenant, engineering, 'Can we get "dark mode", please?')
    db_session.add(QuestionTag(question_id=question.id, tag_id=tag.id))
    await db_session.commit()

    resp = await client.get("/api/v1/admin/export/download", headers=get_auth_headers(admin, tenant))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert 'filename="pulsestage-export-' in resp.headers["content-disposition"]

    rows = list(csv.reader(io.StringIO(resp.text)))
    header, row = rows[0], rows[1]
    record = dict(zip(header, row))
    assert record["id"] == question.id
    assert record["body"] == 'Can we get "dark mode", please?'
    assert record["team_slug"] == "engineering"
    assert record["tags"] == f"it({tag.id})"

    log = (await db_session.execute(select(AuditLog).where(AuditLog.action == "data.export"))).scalar_one()
    assert log.audit_metadata == {"format": "csv", "count": 1}


@pytest.mark.asyncio
async def test_export_download_json(client: AsyncClient, db_session, tenant, engineering):
    question = await make_question(db_session, tenant, engineering)
    resp = await client.get(
        "/api/v1/admin/export/download", params={"format": "json"}, headers=admin_key_headers(tenant),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_count"] == 1
    assert data["questions"][0]["id"] == question.id
