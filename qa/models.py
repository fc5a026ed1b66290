"""
qa/models.py -- Domain dataclasses for questions and answers.

Pure data containers. Validation of titles, bodies and tags happens in the API
request models; persistence and ordering live in qa/store.py.

author_id refers to users.id. Author profiles are joined in by the route layer
(UserStore.find_many), never by this package -- qa/ does not import auth/.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class Question:
    """A posted question.

    tags are lower-cased before they reach the store (1-5 per question).
    upvotes, downvotes and answer_count are read-side counts filled in by
    QAStore; they are never written from the dataclass.
    id is None before the record is written to the database.
    """

    title: str
    body: str
    author_id: int
    tags: list[str] = field(default_factory=list)
    views: int = 0
    is_closed: bool = False
    upvotes: int = 0
    downvotes: int = 0
    answer_count: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def vote_score(self) -> int:
        return self.upvotes - self.downvotes


@dataclass
class Answer:
    question_id: int
    author_id: int
    body: str
    is_accepted: bool = False
    upvotes: int = 0
    downvotes: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def vote_score(self) -> int:
        return self.upvotes - self.downvotes


@dataclass
class QuestionPage:
    """One page of a question listing plus the total match count."""

    items: list[Question]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0
