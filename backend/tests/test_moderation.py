# tests/test_moderation.py — Moderation queue, bulk operations and stats
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import AuditLog, Question, QuestionStatus, QuestionTag, Role, Tag, utcnow

from tests.conftest import (
    add_membership, admin_key_headers, get_auth_headers, make_question, make_user,
)


async def make_tag(db_session, tenant, name="onboarding") -> Tag:
    tag = Tag(tenant_id=tenant.id, name=name)
    db_session.add(tag)
    await db_session.commit()
    await db_session.refresh(tag)
    return tag


# ============================================================
# QUEUE
# ============================================================

@pytest.mark.asyncio
async def test_queue_shows_only_moderated_teams(
    client: AsyncClient, db_session, tenant, engineering, product, moderator,
):
    mine = await make_question(db_session, tenant, engineering)
    await make_question(db_session, tenant, product, "A product team question")
    await make_question(db_session, tenant, None, "A question with no team at all")

    resp = await client.get("/api/v1/moderation/queue", headers=get_auth_headers(moderator, tenant))
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 1
    assert [q["id"] for q in data["questions"]] == [mine.id]


@pytest.mark.asyncio
async def test_queue_for_other_team_is_denied(client: AsyncClient, tenant, product, moderator):
    resp = await client.get(
        "/api/v1/moderation/queue",
        params={"team_id": product.id},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "NotAMember"


@pytest.mark.asyncio
async def test_queue_for_unknown_team(client: AsyncClient, tenant, moderator):
    resp = await client.get(
        "/api/v1/moderation/queue",
        params={"team_id": "missing"},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_queue_spans_all_moderated_teams(client: AsyncClient, db_session, tenant, engineering, product):
    user = await make_user(db_session, tenant, "twohats@acme.io")
    await add_membership(db_session, user, engineering, Role.MODERATOR)
    await add_membership(db_session, user, product, Role.ADMIN)
    await make_question(db_session, tenant, engineering)
    await make_question(db_session, tenant, product, "A product team question")

    resp = await client.get("/api/v1/moderation/queue", headers=get_auth_headers(user, tenant))
    assert resp.status_code == 200
    assert resp.json()["total"] == 2


@pytest.mark.asyncio
async def test_queue_admin_key_sees_everything(client: AsyncClient, db_session, tenant, engineering):
    await make_question(db_session, tenant, engineering)
    await make_question(db_session, tenant, None, "A question with no team at all")
    resp = await client.get("/api/v1/moderation/queue", headers=admin_key_headers(tenant))
    assert resp.status_code == 200
    assert resp.json()["total"] == 2


@pytest.mark.asyncio
async def test_queue_admin_key_honours_team_filter(client: AsyncClient, db_session, tenant, engineering, product):
    mine = await make_question(db_session, tenant, engineering)
    await make_question(db_session, tenant, product, "A product team question")
    await make_question(db_session, tenant, None, "A question with no team at all")

    resp = await client.get(
        "/api/v1/moderation/queue", params={"team_id": engineering.id}, headers=admin_key_headers(tenant),
    )
    assert resp.status_code == 200
    assert {q["team_id"] for q in resp.json()["questions"]} == {engineering.id}
    assert [q["id"] for q in resp.json()["questions"]] == [mine.id]

    resp = await client.get(
        "/api/v1/moderation/stats", params={"team_id": engineering.id}, headers=admin_key_headers(tenant),
    )
    assert resp.status_code == 200
    assert resp.json()["overall"]["total_questions"] == 1


@pytest.mark.asyncio
async def test_queue_filters(client: AsyncClient, db_session, tenant, engineering, moderator):
    await make_question(db_session, tenant, engineering)
    pinned = await make_question(db_session, tenant, engineering, "Pinned question for the queue", is_pinned=True)
    await make_question(
        db_session, tenant, engineering, "Already answered question here",
        status=QuestionStatus.ANSWERED, reviewed_by=moderator.id,
    )
    headers = get_auth_headers(moderator, tenant)

    resp = await client.get("/api/v1/moderation/queue", params={"is_pinned": "true"}, headers=headers)
    assert [q["id"] for q in resp.json()["questions"]] == [pinned.id]

    resp = await client.get("/api/v1/moderation/queue", params={"needs_review": "true"}, headers=headers)
    assert resp.json()["total"] == 2

    resp = await client.get("/api/v1/moderation/queue", params={"reviewed_by": moderator.id}, headers=headers)
    assert resp.json()["total"] == 1


@pytest.mark.asyncio
async def test_member_cannot_view_queue(client: AsyncClient, tenant, member):
    resp = await client.get("/api/v1/moderation/queue", headers=get_auth_headers(member, tenant))
    assert resp.status_code == 403


# ============================================================
# BULK
# ============================================================

@pytest.mark.asyncio
async def test_bulk_pin_partial_success(client: AsyncClient, db_session, tenant, engineering, product, moderator):
    mine = await make_question(db_session, tenant, engineering)
    theirs = await make_question(db_session, tenant, product, "A product team question")

    resp = await client.post(
        "/api/v1/moderation/bulk-action",
        json={"question_ids": [mine.id, theirs.id, "missing"], "action": "pin"},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success_count"] == 1
    assert data["error_count"] == 2
    assert data["total"] == 3
    results = {r["question_id"]: r for r in data["results"]}
    assert results[mine.id]["success"] is True
    assert results[theirs.id]["error"] == "NotAMember"
    assert results["missing"]["error"] == "Question not found"

    await db_session.refresh(mine)
    await db_session.refresh(theirs)
    assert mine.is_pinned is True
    assert theirs.is_pinned is False


@pytest.mark.asyncio
async def test_bulk_skips_teamless_questions_for_moderators(client: AsyncClient, db_session, tenant, moderator):
    loose = await make_question(db_session, tenant, None, "A question with no team at all")
    resp = await client.post(
        "/api/v1/moderation/bulk-action",
        json={"question_ids": [loose.id], "action": "freeze"},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 200
    assert resp.json()["results"][0]["error"] == "Out of scope"


@pytest.mark.asyncio
async def test_bulk_delete_requires_admin(client: AsyncClient, db_session, tenant, engineering, moderator):
    question = await make_question(db_session, tenant, engineering)
    resp = await client.post(
        "/api/v1/moderation/bulk-action",
        json={"question_ids": [question.id], "action": "delete"},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 403
    assert resp.json()["error"] == "InsufficientRole"


@pytest.mark.asyncio
async def test_bulk_delete_by_admin(client: AsyncClient, db_session, tenant, engineering, admin):
    question = await make_question(db_session, tenant, engineering)
    resp = await client.post(
        "/api/v1/moderation/bulk-action",
        json={"question_ids": [question.id], "action": "delete"},
        headers=get_auth_headers(admin, tenant),
    )
    assert resp.status_code == 200
    assert resp.json()["success_count"] == 1

    remaining = (await db_session.execute(select(Question).where(Question.id == question.id))).scalar_one_or_none()
    assert remaining is None

    log = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == "question.bulk_delete")
    )).scalar_one()
    assert log.user_id == admin.id
    assert log.audit_metadata["question_ids"] == [question.id]


@pytest.mark.asyncio
async def test_bulk_tag_add_and_remove(client: AsyncClient, db_session, tenant, engineering, moderator):
    tag = await make_tag(db_session, tenant)
    q1 = await make_question(db_session, tenant, engineering)
    q2 = await make_question(db_session, tenant, engineering, "Second onboarding question")
    headers = get_auth_headers(moderator, tenant)

    resp = await client.post(
        "/api/v1/moderation/bulk-tag",
        json={"question_ids": [q1.id, q2.id], "tag_id": tag.id, "action": "add"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["success_count"] == 2
    links = (await db_session.execute(select(QuestionTag).where(QuestionTag.tag_id == tag.id))).scalars().all()
    assert len(links) == 2

    resp = await client.post(
        "/api/v1/moderation/bulk-tag",
        json={"question_ids": [q1.id], "tag_id": tag.id, "action": "remove"},
        headers=headers,
    )
    assert resp.json()["success_count"] == 1
    links = (await db_session.execute(select(QuestionTag).where(QuestionTag.tag_id == tag.id))).scalars().all()
    assert [link.question_id for link in links] == [q2.id]


@pytest.mark.asyncio
async def test_bulk_tag_partial_success(client: AsyncClient, db_session, tenant, engineering, moderator):
    tag = await make_tag(db_session, tenant)
    question = await make_question(db_session, tenant, engineering)

    resp = await client.post(
        "/api/v1/moderation/bulk-tag",
        json={"question_ids": [question.id, "missing"], "tag_id": tag.id, "action": "add"},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert (data["success_count"], data["error_count"], data["total"]) == (1, 1, 2)
    results = {r["question_id"]: r for r in data["results"]}
    assert results["missing"]["error"] == "Question not found"

    links = (await db_session.execute(select(QuestionTag).where(QuestionTag.tag_id == tag.id))).scalars().all()
    assert [link.question_id for link in links] == [question.id]


@pytest.mark.asyncio
async def test_bulk_tag_unknown_tag(client: AsyncClient, db_session, tenant, engineering, moderator):
    question = await make_question(db_session, tenant, engineering)
    resp = await client.post(
        "/api/v1/moderation/bulk-tag",
        json={"question_ids": [question.id], "tag_id": "missing"},
        headers=get_auth_headers(moderator, tenant),
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_bulk_request_limits(client: AsyncClient, tenant, moderator):
    headers = get_auth_headers(moderator, tenant)
    resp = await client.post(
        "/api/v1/moderation/bulk-action", json={"question_ids": [], "action": "pin"}, headers=headers,
    )
    assert resp.status_code == 422

    resp = await client.post(
        "/api/v1/moderation/bulk-action",
        json={"question_ids": [f"q{i}" for i in range(101)], "action": "pin"},
        headers=headers,
    )
    assert resp.status_code == 422


# ============================================================
# STATS
# ============================================================

@pytest.mark.asyncio
async def test_moderation_stats(client: AsyncClient, db_session, tenant, engineering, product, moderator):
    created = utcnow() - timedelta(minutes=30)
    await make_question(
        db_session, tenant, engineering, "Answered by the moderator",
        status=QuestionStatus.ANSWERED, reviewed_by=moderator.id,
        created_at=created, responded_at=created + timedelta(minutes=20),
    )
    await make_question(db_session, tenant, engineering, "Pinned by the moderator", is_pinned=True, pinned_by=moderator.id)
    await make_question(db_session, tenant, product, "Outside the moderator's teams")

    resp = await client.get("/api/v1/moderation/stats", headers=get_auth_headers(moderator, tenant))
    assert resp.status_code == 200
    data = resp.json()
    assert data["overall"]["total_questions"] == 2
    assert data["overall"]["answered"] == 1
    assert data["overall"]["pinned"] == 1

    stats = {m["user_id"]: m for m in data["moderators"]}
    assert stats[moderator.id]["questions_answered"] == 1
    assert stats[moderator.id]["questions_pinned"] == 1
    assert stats[moderator.id]["avg_response_time_minutes"] == pytest.approx(20.0, abs=0.1)
