"""
api/routes/questions.py -- Q&A REST endpoints.

Routes:
  GET  /api/questions                 -- paginated list; tag / search / sort filters
  POST /api/questions                 -- ask a question (requires auth)
  GET  /api/questions/{id}            -- question with answers; counts a view
  POST /api/questions/{id}/answers    -- answer a question (requires auth)
  POST /api/questions/{id}/vote       -- up/down vote a question (requires auth)
  POST /api/questions/{id}/answers/{answer_id}/vote
                                      -- up/down vote an answer (requires auth)

Listed and fetched questions carry upvotes, downvotes, vote_score and
answer_count; answers carry their own vote counts. sort=votes ranks by upvotes.

Every question and answer embeds its author's public profile. Authors are
loaded with one UserStore.find_many() call per response, not one per row.

All routes share the "api" rate limit (100 requests/minute per client).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.errors import NotFound
from api.limiter import RateLimit
from api.models import (
    AnswerCreate,
    AnswerOut,
    Pagination,
    QuestionCreate,
    QuestionDetailOut,
    QuestionOut,
    VoteOut,
    VoteRequest,
    envelope_response,
)
from auth.dependencies import get_current_claims
from auth.models import IdentityClaims
from auth.store import UserStore
from qa.models import Answer, Question
from qa.store import SORT_OPTIONS, QAStore

logger = logging.getLogger("devsolve.api.questions")

# Auth policy:
# - GET  /api/questions, /api/questions/{id}: public
# - POST /api/questions, /answers, /vote: requires auth (get_current_claims)
router = APIRouter(dependencies=[Depends(RateLimit("api"))])

# Keeps (page - 1) * limit inside SQLite's 64-bit OFFSET.
MAX_PAGE = 100_000


def _load_question(qa_store: QAStore, question_id: int) -> Question:
    question = qa_store.get_question(question_id)
    if question is None:
        raise NotFound("Question not found")
    return question


def _load_voter(request: Request, claims: IdentityClaims) -> int:
    user = request.app.state.user_store.find_by_id(claims.subject)
    if user is None:
        raise NotFound("User not found")
    return user.id


@router.get("/questions")
def list_questions(
    request: Request,
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(10, ge=1, le=50),
    tag: str | None = Query(None, max_length=50),
    search: str | None = Query(None, max_length=200),
    sort: str = "newest",
) -> JSONResponse:
    """List questions newest first by default. An unrecognised sort falls back to newest."""
    qa_store: QAStore = request.app.state.qa_store
    user_store: UserStore = request.app.state.user_store

    result = qa_store.list_questions(
        page=page,
        limit=limit,
        tag=tag,
        search=search,
        sort=sort if sort in SORT_OPTIONS else "newest",
    )
    authors = user_store.find_many(q.author_id for q in result.items)
    data = [QuestionOut.from_question(q, authors.get(q.author_id)) for q in result.items]
    return envelope_response(data=data, pagination=Pagination.from_page(result))


@router.post("/questions", status_code=201)
def create_question(
    request: Request,
    body: QuestionCreate,
    claims: IdentityClaims = Depends(get_current_claims),
) -> JSONResponse:
    qa_store: QAStore = request.app.state.qa_store
    user_store: UserStore = request.app.state.user_store

    author = user_store.find_by_id(claims.subject)
    if author is None:
        raise NotFound("User not found")

    question = qa_store.create_question(
        Question(title=body.title, body=body.body, tags=body.tags, author_id=author.id)
    )
    logger.info("User %s asked question %s", author.id, question.id)
    return envelope_response(201, message="Question created", data=QuestionOut.from_question(question, author))


@router.get("/questions/{question_id}")
def get_question(request: Request, question_id: int) -> JSONResponse:
    """Return one question with its answers. Each fetch adds one view."""
    qa_store: QAStore = request.app.state.qa_store
    user_store: UserStore = request.app.state.user_store

    question = qa_store.increment_views(question_id)
    if question is None:
        raise NotFound("Question not found")
    answers = qa_store.list_answers(question_id)
    authors = user_store.find_many([question.author_id, *(a.author_id for a in answers)])

    detail = QuestionDetailOut(
        **QuestionOut.from_question(question, authors.get(question.author_id)).model_dump(),
        answers=[AnswerOut.from_answer(a, authors.get(a.author_id)) for a in answers],
    )
    return envelope_response(data=detail)


@router.post("/questions/{question_id}/answers", status_code=201)
def create_answer(
    request: Request,
    question_id: int,
    body: AnswerCreate,
    claims: IdentityClaims = Depends(get_current_claims),
) -> JSONResponse:
    qa_store: QAStore = request.app.state.qa_store
    user_store: UserStore = request.app.state.user_store

    question = _load_question(qa_store, question_id)
    author = user_store.find_by_id(claims.subject)
    if author is None:
        raise NotFound("User not found")

    answer = qa_store.create_answer(Answer(question_id=question.id, author_id=author.id, body=body.body))
    return envelope_response(201, message="Answer posted", data=AnswerOut.from_answer(answer, author))


@router.post("/questions/{question_id}/vote")
def vote_question(
    request: Request,
    question_id: int,
    body: VoteRequest,
    claims: IdentityClaims = Depends(get_current_claims),
) -> JSONResponse:
    """Cast, switch or withdraw the caller's vote on a question."""
    qa_store: QAStore = request.app.state.qa_store
    voter_id = _load_voter(request, claims)
    counts = qa_store.cast_vote("question", question_id, voter_id, body.value)
    if counts is None:
        raise NotFound("Question not found")
    logger.info("User %s voted %s on question %s", voter_id, body.direction, question_id)
    return envelope_response(message="Vote recorded", data=VoteOut.from_counts(counts))


@router.post("/questions/{question_id}/answers/{answer_id}/vote")
def vote_answer(
    request: Request,
    question_id: int,
    answer_id: int,
    body: VoteRequest,
    claims: IdentityClaims = Depends(get_current_claims),
) -> JSONResponse:
    qa_store: QAStore = request.app.state.qa_store
    voter_id = _load_voter(request, claims)
    answer = qa_store.get_answer(answer_id)
    if answer is None or answer.question_id != question_id:
        raise NotFound("Answer not found")
    counts = qa_store.cast_vote("answer", answer_id, voter_id, body.value)
    if counts is None:
        raise NotFound("Answer not found")
    logger.info("User %s voted %s on answer %s", voter_id, body.direction, answer_id)
    return envelope_response(message="Vote recorded", data=VoteOut.from_counts(counts))
