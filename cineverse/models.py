# cineverse/models.py
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

MOVIE_STATUSES = ("watched", "pending", "favorite")


def now_iso() -> str:
    # fixed width so timestamps compare correctly as strings
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _from_row(cls, row: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


@dataclass
class Movie:
    id: Optional[str]
    title: str
    genre: Optional[str] = None
    year: Optional[int] = None
    director: Optional[str] = None
    poster_url: Optional[str] = None
    rating: Optional[float] = None
    tmdb_id: Optional[int] = None
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Movie":
        return _from_row(cls, row)


@dataclass
class Review:
    id: Optional[str]
    movie_id: str
    user_id: str
    rating: Optional[int] = None
    comment: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Review":
        return _from_row(cls, row)


@dataclass
class UserMovie:
    id: Optional[str]
    user_id: str
    movie_id: str
    status: str = "pending"  # "watched", "pending", "favorite"
    user_rating: Optional[float] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserMovie":
        return _from_row(cls, row)


@dataclass
class Identity:
    """An authenticated principal as returned by the identity provider."""
    id: str
    email: str
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Identity":
        ident = _from_row(cls, row)
        ident.user_metadata = dict(row.get("user_metadata") or {})
        return ident


@dataclass
class Session:
    access_token: str
    user: Identity
    refresh_token: Optional[str] = None


@dataclass
class UserProfile:
    id: str
    email: str
    username: Optional[str] = None
    created_at: Optional[str] = None
    last_sign_in: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class UserStats:
    total_movies: int = 0
    watched_movies: int = 0
    favorite_movies: int = 0
    pending_movies: int = 0


@dataclass
class Page:
    items: List[Any]
    total_items: int
    page: int
    per_page: int
