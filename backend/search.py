# search.py — Keyword search over questions and answers
import re
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession

from models import Question, QuestionStatus
from scoping import tenant_select
from tenancy import TenantScope

MAX_KEYWORDS = 5
MAX_CANDIDATES = 50
DEFAULT_LIMIT = 20

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "can", "you", "we", "i", "is", "are", "was", "were", "be",
    "been", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "about", "there", "when", "where",
    "why", "how", "what", "who", "which", "this", "that", "these", "those",
})

_PUNCTUATION = re.compile(r"[^\w\s]")
_LIKE_SPECIAL = re.compile(r"([\\%_])")


def escape_like(term: str) -> str:
    """Make % and _ (and the escape character itself) match literally in LIKE patterns"""
    return _LIKE_SPECIAL.sub(r"\\\1", term)


def extract_keywords(text: str) -> List[str]:
    words = _PUNCTUATION.sub(" ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS][:MAX_KEYWORDS]


def score_question(question: Question, keywords: List[str], phrase: str) -> float:
    body = (question.body or "").lower()
    response = (question.response_text or "").lower()
    phrase = phrase.lower()

    score = 0.0
    for keyword in keywords:
        if keyword in body:
            score += 2
        if keyword in response:
            score += 1
    if phrase and phrase in body:
        score += 5
    if phrase and phrase in response:
        score += 3
    if question.status == QuestionStatus.OPEN:
        score += 1
    score += (question.upvotes or 0) * 0.1
    return score


async def search_questions(
    db: AsyncSession,
    tenant: TenantScope,
    query: str,
    team_id: Optional[str] = None,
    limit: int = DEFAULT_LIMIT,
) -> List[Tuple[Question, float]]:
    """Questions matching any keyword, best score first. Short queries return nothing."""
    phrase = query.strip()
    if len(phrase) < 2:
        return []

    terms = extract_keywords(phrase) or [phrase.lower()]
    conditions = []
    for term in terms:
        pattern = f"%{escape_like(term)}%"
        conditions.append(Question.body.ilike(pattern, escape="\\"))
        conditions.append(Question.response_text.ilike(pattern, escape="\\"))

    stmt = tenant_select(Question, tenant).where(or_(*conditions))
    if team_id:
        stmt = stmt.where(Question.team_id == team_id)
    stmt = stmt.order_by(Question.upvotes.desc(), Question.created_at.desc()).limit(MAX_CANDIDATES)

    result = await db.execute(stmt)
    scored = [(q, score_question(q, terms, phrase)) for q in result.scalars().all()]
    scored.sort(key=lambda item: (item[1], item[0].upvotes or 0), reverse=True)
    return scored[:limit]
