"""
blog/models.py -- Domain dataclasses for posts, comments and reactions.

Pattern: Data class (pure data container, zero logic beyond serialization).
The store builds these from rows; the service turns them into the JSON
payloads that get cached, so to_dict() output is exactly what a cache entry
holds.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field


@dataclass
class Comment:
    post_id: str
    user_id: int
    text: str
    id: int | None = None
    created_at: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Post:
    """A blog post. id is chosen by the author (a slug such as "p1").

    comment_count, likes and dislikes are derived on read; they are not
    columns. comments is filled only for single-post reads.
    """

    id: str
    title: str
    content: str
    user_id: int
    created_at: str | None = None
    updated_at: str | None = None
    comment_count: int = 0
    likes: int = 0
    dislikes: int = 0
    comments: list[Comment] = field(default_factory=list)

    def to_dict(self, with_comments: bool = False) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "comment_count": self.comment_count,
            "likes": self.likes,
            "dislikes": self.dislikes,
        }
        if with_comments:
            data["comments"] = [c.to_dict() for c in self.comments]
        return data


@dataclass(frozen=True)
class ReactionCounts:
    """Result of a like/dislike toggle: the caller's state and the new totals."""

    post_id: str
    reaction: str | None  # "like", "dislike" or None after un-toggling
    likes: int
    dislikes: int

    def to_dict(self) -> dict:
        return asdict(self)
