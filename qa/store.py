"""
qa/store.py -- SQLAlchemy Core persistence layer for questions and answers.

Pattern: Repository + Data Mapper (same as auth/store.py).
QAStore is the repository; _row_to_question / _row_to_answer are the mappers.

Listing:
  list_questions(page, limit, tag, search, sort) returns a QuestionPage with the
  total match count so the route can build {page, limit, total, pages}.
  sort: "newest" (default) | "oldest" | "views" (most viewed first) | "votes"
  (most upvotes first). Both ranked sorts break ties newest first.
  search is a case-insensitive substring match over title and body.
  tag matches one element of the JSON-encoded tags column exactly.
  Listed questions carry answer_count and up/down vote counts, loaded with one
  grouped query per table for the whole page.

Voting:
  One row per (target, user) in the votes table; value is +1 or -1. Casting
  again replaces the earlier vote, casting 0 withdraws it.

Security:
  All queries use bound parameters. LIKE wildcards in user input are escaped,
  so "%" and "_" match literally.

Layer rule: no imports from api/, web/, or auth/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from core.config import get_settings
from qa.models import Answer, Question, QuestionPage

SORT_OPTIONS = ("newest", "oldest", "views", "votes")
VOTE_TARGETS = ("question", "answer")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_questions = Table(
    "questions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(150), nullable=False),
    Column("body", Text, nullable=False),
    Column("author_id", Integer, nullable=False, index=True),
    Column("tags", Text, nullable=False, server_default="[]"),  # JSON array
    Column("views", Integer, nullable=False, server_default="0"),
    Column("is_closed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False, index=True),
    Column("updated_at", String(32), nullable=False),
)

_answers = Table(
    "answers",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("question_id", Integer, ForeignKey("questions.id"), nullable=False, index=True),
    Column("author_id", Integer, nullable=False),
    Column("body", Text, nullable=False),
    Column("is_accepted", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# target_type + target_id point at questions.id or answers.id.
_votes = Table(
    "votes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("target_type", String(16), nullable=False),
    Column("target_id", Integer, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("value", Integer, nullable=False),
    CheckConstraint("value IN (-1, 1)", name="ck_votes_value"),
    UniqueConstraint("target_type", "target_id", "user_id", name="uq_votes_target_user"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _upvote_count():
    """Correlated count of a question's upvotes, for ORDER BY."""
    return (
        select(func.count())
        .select_from(_votes)
        .where(
            _votes.c.target_type == "question",
            _votes.c.target_id == _questions.c.id,
            _votes.c.value == 1,
        )
        .correlate(_questions)
        .scalar_subquery()
    )


def _vote_counts(conn, target_type: str, ids: list[int]) -> dict[int, tuple[int, int]]:
    """Return {target_id: (upvotes, downvotes)} for the ids that have votes."""
    if not ids:
        return {}
    counts: dict[int, list[int]] = {}
    rows = conn.execute(
        select(_votes.c.target_id, _votes.c.value, func.count())
        .where(_votes.c.target_type == target_type, _votes.c.target_id.in_(ids))
        .group_by(_votes.c.target_id, _votes.c.value)
    ).fetchall()
    for target_id, value, n in rows:
        pair = counts.setdefault(target_id, [0, 0])
        pair[0 if value > 0 else 1] = n
    return {k: (up, down) for k, (up, down) in counts.items()}


def _attach_question_counts(conn, questions: list[Question]) -> list[Question]:
    ids = [q.id for q in questions]
    if not ids:
        return questions
    answer_counts = dict(
        conn.execute(
            select(_answers.c.question_id, func.count())
            .where(_answers.c.question_id.in_(ids))
            .group_by(_answers.c.question_id)
        ).fetchall()
    )
    votes = _vote_counts(conn, "question", ids)
    for q in questions:
        q.answer_count = answer_counts.get(q.id, 0)
        q.upvotes, q.downvotes = votes.get(q.id, (0, 0))
    return questions


def _attach_answer_counts(conn, answers: list[Answer]) -> list[Answer]:
    votes = _vote_counts(conn, "answer", [a.id for a in answers])
    for a in answers:
        a.upvotes, a.downvotes = votes.get(a.id, (0, 0))
    return answers


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class QAStore:
    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def list_questions(
        self,
        page: int = 1,
        limit: int = 10,
        tag: str | None = None,
        search: str | None = None,
        sort: str = "newest",
    ) -> QuestionPage:
        """Return one page of questions matching the optional tag and search filters."""
        if sort not in SORT_OPTIONS:
            raise ValueError(f"sort must be one of {SORT_OPTIONS}, got {sort!r}")
        conditions = []
        if tag:
            # Tags are stored as a JSON array of lower-cased strings; match one
            # element including its quotes so "py" does not match "python".
            needle = _escape_like(json.dumps(tag.strip().lower()))
            conditions.append(_questions.c.tags.like(f"%{needle}%", escape="\\"))
        if search:
            needle = f"%{_escape_like(search.strip().lower())}%"
            conditions.append(
                or_(
                    func.lower(_questions.c.title).like(needle, escape="\\"),
                    func.lower(_questions.c.body).like(needle, escape="\\"),
                )
            )

        if sort == "oldest":
            order = (_questions.c.created_at.asc(), _questions.c.id.asc())
        elif sort == "views":
            order = (_questions.c.views.desc(), _questions.c.created_at.desc(), _questions.c.id.desc())
        elif sort == "votes":
            order = (_upvote_count().desc(), _questions.c.created_at.desc(), _questions.c.id.desc())
        else:
            order = (_questions.c.created_at.desc(), _questions.c.id.desc())

        query = _questions.select().where(*conditions).order_by(*order)
        query = query.limit(limit).offset((page - 1) * limit)
        count_query = select(func.count()).select_from(_questions).where(*conditions)
        with self.engine.connect() as conn:
            items = _attach_question_counts(conn, [_row_to_question(r) for r in conn.execute(query).fetchall()])
            total = conn.execute(count_query).scalar_one()
        return QuestionPage(
            items=items,
            total=total,
            page=page,
            limit=limit,
        )

    def create_question(self, question: Question) -> Question:
        now = _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _questions.insert().values(
                    title=question.title,
                    body=question.body,
                    author_id=question.author_id,
                    tags=json.dumps(question.tags),
                    views=question.views,
                    is_closed=1 if question.is_closed else 0,
                    created_at=_iso(now),
                    updated_at=_iso(now),
                )
            )
            conn.commit()
        question.id = result.inserted_primary_key[0]
        question.created_at = now
        question.updated_at = now
        return question

    def get_question(self, question_id: int) -> Question | None:
        with self.engine.connect() as conn:
            row = conn.execute(_questions.select().where(_questions.c.id == question_id)).fetchone()
            if row is None:
                return None
            return _attach_question_counts(conn, [_row_to_question(row)])[0]

    def increment_views(self, question_id: int) -> Question | None:
        """Add one view atomically and return the updated question (None if unknown)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _questions.update()
                .where(_questions.c.id == question_id)
                .values(views=_questions.c.views + 1)
            )
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_question(question_id)

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    def list_answers(self, question_id: int) -> list[Answer]:
        """Return a question's answers, accepted answer first, then oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _answers.select()
                .where(_answers.c.question_id == question_id)
                .order_by(_answers.c.is_accepted.desc(), _answers.c.created_at.asc(), _answers.c.id.asc())
            ).fetchall()
            return _attach_answer_counts(conn, [_row_to_answer(r) for r in rows])

    def get_answer(self, answer_id: int) -> Answer | None:
        with self.engine.connect() as conn:
            row = conn.execute(_answers.select().where(_answers.c.id == answer_id)).fetchone()
            if row is None:
                return None
            return _attach_answer_counts(conn, [_row_to_answer(row)])[0]

    def create_answer(self, answer: Answer) -> Answer:
        now = _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _answers.insert().values(
                    question_id=answer.question_id,
                    author_id=answer.author_id,
                    body=answer.body,
                    is_accepted=1 if answer.is_accepted else 0,
                    created_at=_iso(now),
                    updated_at=_iso(now),
                )
            )
            conn.commit()
        answer.id = result.inserted_primary_key[0]
        answer.created_at = now
        answer.updated_at = now
        return answer

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def cast_vote(self, target_type: str, target_id: int, user_id: int, value: int) -> tuple[int, int] | None:
        """Record user_id's vote on a question or answer and return (upvotes, downvotes).

        value is 1 (up), -1 (down) or 0 (withdraw). A later vote replaces an
        earlier one from the same user. Returns None when the target does not exist.
        """
        if target_type not in VOTE_TARGETS:
            raise ValueError(f"target_type must be one of {VOTE_TARGETS}, got {target_type!r}")
        if value not in (-1, 0, 1):
            raise ValueError(f"value must be -1, 0 or 1, got {value!r}")
        table = _questions if target_type == "question" else _answers
        with self.engine.connect() as conn:
            if conn.execute(select(table.c.id).where(table.c.id == target_id)).first() is None:
                return None
            conn.execute(
                delete(_votes).where(
                    _votes.c.target_type == target_type,
                    _votes.c.target_id == target_id,
                    _votes.c.user_id == user_id,
                )
            )
            if value:
                conn.execute(
                    _votes.insert().values(
                        target_type=target_type, target_id=target_id, user_id=user_id, value=value
                    )
                )
            conn.commit()
            return _vote_counts(conn, target_type, [target_id]).get(target_id, (0, 0))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_question(row) -> Question:
    return Question(
        id=row.id,
        title=row.title,
        body=row.body,
        author_id=row.author_id,
        tags=json.loads(row.tags or "[]"),
        views=row.views,
        is_closed=bool(row.is_closed),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )


def _row_to_answer(row) -> Answer:
    return Answer(
        id=row.id,
        question_id=row.question_id,
        author_id=row.author_id,
        body=row.body,
        is_accepted=bool(row.is_accepted),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )
