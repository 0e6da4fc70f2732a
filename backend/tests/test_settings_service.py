# tests/test_settings_service.py — Settings merge/validation and search scoring
import copy

import pytest

from audit import clean_metadata
from models import Question, QuestionStatus
from settings_service import (
    DEFAULT_SETTINGS, SettingsValidationError, deep_merge, get_tenant_settings,
    update_tenant_settings, validate_settings,
)
from search import extract_keywords, score_question


def test_deep_merge_keeps_untouched_keys():
    merged = deep_merge(DEFAULT_SETTINGS, {"branding": {"logo_url": "https://cdn.acme.io/logo.png"}})
    assert merged["branding"]["logo_url"] == "https://cdn.acme.io/logo.png"
    assert merged["branding"]["primary_color"] == DEFAULT_SETTINGS["branding"]["primary_color"]
    # Input is not mutated
    assert DEFAULT_SETTINGS["branding"]["logo_url"] is None


def test_defaults_are_valid():
    validate_settings(copy.deepcopy(DEFAULT_SETTINGS))


def test_non_object_section_rejected():
    settings = deep_merge(DEFAULT_SETTINGS, {"questions": 5})
    with pytest.raises(SettingsValidationError):
        validate_settings(settings)


def test_boolean_is_not_an_integer():
    settings = deep_merge(DEFAULT_SETTINGS, {"security": {"session_timeout": True}})
    with pytest.raises(SettingsValidationError):
        validate_settings(settings)


@pytest.mark.asyncio
async def test_update_persists_and_merges(db_session, tenant):
    await update_tenant_settings(db_session, tenant.id, {"users": {"default_role": "viewer"}})
    await db_session.commit()
    await update_tenant_settings(db_session, tenant.id, {"security": {"session_timeout": 24}})
    await db_session.commit()

    settings = await get_tenant_settings(db_session, tenant.id)
    assert settings["users"]["default_role"] == "viewer"
    assert settings["security"]["session_timeout"] == 24


@pytest.mark.asyncio
async def test_invalid_update_raises(db_session, tenant):
    with pytest.raises(SettingsValidationError):
        await update_tenant_settings(db_session, tenant.id, {"questions": {"max_length": 6000}})


def test_clean_metadata():
    assert clean_metadata({"team_id": None, "tag": "hr"}) == {"tag": "hr"}
    assert clean_metadata({"team_id": None}) is None
    assert clean_metadata(None) is None


# ============================================================
# SEARCH
# ============================================================

def test_extract_keywords_drops_stop_words():
    assert extract_keywords("How do I request a new laptop?") == ["request", "new", "laptop"]


def test_extract_keywords_caps_at_five():
    assert len(extract_keywords("alpha bravo charlie delta echo foxtrot golf")) == 5


def test_score_question_prefers_phrase_and_answers():
    answered = Question(
        body="How do I request a new laptop?",
        response_text="File an IT ticket to request a laptop.",
        status=QuestionStatus.ANSWERED,
        upvotes=0,
    )
    unrelated = Question(body="Where is the cafeteria?", status=QuestionStatus.OPEN, upvotes=0)
    keywords = ["request", "laptop"]

    # 2+2 body, 1+1 response, 5 phrase in body
    assert score_question(answered, keywords, "request a new laptop") == 11
    # Only the open-status bonus
    assert score_question(unrelated, keywords, "request a new laptop") == 1
