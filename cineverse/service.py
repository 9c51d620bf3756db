# cineverse/service.py
from typing import Any, Dict, List, Mapping, Optional, Tuple
from decimal import ROUND_HALF_UP, Decimal
import logging

from cineverse.errors import (AuthRequiredError, CineVerseError, ConflictError, DuplicateReviewError,
                              RemoteError, ValidationError)
from cineverse.models import (MOVIE_STATUSES, Identity, Movie, Page, Review, Session, UserMovie,
                              UserProfile, UserStats, now_iso)
from cineverse.query import MOVIES, REVIEWS, USER_MOVIES, QueryExecutor, is_blank, remote_call
from cineverse.repo import Contains, Equals

logger = logging.getLogger(__name__)


def _check_range(op: str, name: str, value: Any, low: float, high: float) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not low <= value <= high:
        logger.warning("%s: rejected %s=%r", op, name, value)
        raise ValidationError(f"{name} must be between {low:g} and {high:g}")


def _check_movie_fields(op: str, data: Mapping[str, Any]) -> None:
    _check_range(op, "rating", data.get("rating"), 0, 10)
    year = data.get("year")
    if year is not None and (isinstance(year, bool) or not isinstance(year, int)):
        logger.warning("%s: rejected year=%r", op, year)
        raise ValidationError("year must be an integer")


class CineService:
    """
    Auth, movie, review and profile operations over one store.

    The service is built from an injected repo (RestRepo, SqliteRepo or
    InMemoryRepo from cineverse.repo) and an identity backend (RestAuth or
    InMemoryAuth from cineverse.auth). Nothing is global.
    """

    def __init__(self, repo, auth, clock=now_iso):
        self.repo = repo
        self.auth = auth
        self.query = QueryExecutor(repo, clock=clock)
        logger.debug("CineService initialized with repo %s and auth %s",
                     type(repo).__name__, type(auth).__name__)

    # ---- Auth ----
    def login(self, email: str, password: str) -> Session:
        if is_blank(email) or is_blank(password):
            logger.warning("login: email or password missing")
            raise ValidationError("email and password required")
        with remote_call("login"):
            session = self.auth.sign_in(email, password)
        logger.info("Login ok: %s", session.user.email)
        return session

    def register(self, email: str, password: str, username: str = "") -> Tuple[Identity, Optional[Session]]:
        """Create an account. The username defaults to the local part of the email."""
        if is_blank(email) or is_blank(password):
            logger.warning("register: email or password missing")
            raise ValidationError("email and password required")
        metadata = {"username": username or email.split("@")[0]}
        with remote_call("register"):
            user, session = self.auth.sign_up(email, password, metadata)
        logger.info("Registered user %s", user.email)
        return user, session

    def logout(self) -> None:
        with remote_call("logout"):
            self.auth.sign_out()
        logger.info("Logout ok")

    def get_current_user(self) -> Optional[Identity]:
        """Current identity, or None. Lookup errors are logged, never raised."""
        try:
            return self.auth.get_user()
        except CineVerseError as e:
            logger.error("get_current_user failed: %s", e)
            return None

    def check_session(self) -> Optional[Session]:
        try:
            return self.auth.get_session()
        except CineVerseError as e:
            logger.error("check_session failed: %s", e)
            return None

    def update_user(self, **changes) -> Identity:
        """Pass-through to the identity provider (email, password, data)."""
        if not changes:
            logger.warning("update_user: nothing to update")
            raise ValidationError("nothing to update")
        with remote_call("update_user"):
            user = self.auth.update_user(changes)
        logger.info("Updated user %s", user.id)
        return user

    def _require_user(self, action: str) -> Identity:
        try:
            user = self.auth.get_user()
        except RemoteError as e:
            logger.error("%s: identity lookup failed: %s", action, e)
            raise AuthRequiredError(f"you must be signed in to {action}") from e
        if not user:
            logger.warning("%s: no signed-in user", action)
            raise AuthRequiredError(f"you must be signed in to {action}")
        return user

    # ---- Movies ----
    def create_movie(self, data: Mapping[str, Any]) -> Movie:
        """Create a movie owned by the signed-in user. Title is required."""
        if is_blank(data.get("title")):
            logger.warning("create_movie: missing title")
            raise ValidationError("title required")
        _check_movie_fields("create_movie", data)
        user = self._require_user("create a movie")
        payload = {k: v for k, v in data.items() if k not in ("id", "created_at", "updated_at")}
        payload["user_id"] = user.id
        movie = Movie.from_row(self.query.create(MOVIES, payload))
        logger.info("Created movie id=%s title=%s", movie.id, movie.title)
        return movie

    def search_movies(self, title: Optional[str] = None, genre: Optional[str] = None,
                      year: Optional[int] = None, page: int = 1, per_page: int = 10) -> Page:
        """Title is a substring match, genre and year are exact. Newest first."""
        result = self.query.list(MOVIES, {"title": title, "genre": genre, "year": year},
                                 page=page, per_page=per_page)
        result.items = [Movie.from_row(r) for r in result.items]
        logger.info("search_movies: %d movies (showing %d)", result.total_items, len(result.items))
        return result

    def get_movie(self, movie_id: str) -> Movie:
        return Movie.from_row(self.query.get_by_id(MOVIES, movie_id))

    def update_movie(self, movie_id: str, data: Mapping[str, Any]) -> Movie:
        _check_movie_fields("update_movie", data)
        changes = {k: v for k, v in data.items() if k not in ("user_id", "updated_at")}
        return Movie.from_row(self.query.update(MOVIES, movie_id, changes))

    def delete_movie(self, movie_id: str) -> None:
        self.query.delete(MOVIES, movie_id)

    def list_all_movies(self) -> List[Movie]:
        return [Movie.from_row(r) for r in self.query.find(MOVIES)]

    def list_user_movies(self) -> List[Movie]:
        """Movies owned by the signed-in user, newest first."""
        user = self._require_user("list your movies")
        return [Movie.from_row(r) for r in self.query.find(MOVIES, [Equals("user_id", user.id)])]

    def get_movies_by_genre(self, genre: str) -> List[Movie]:
        if is_blank(genre):
            logger.warning("get_movies_by_genre: genre missing")
            raise ValidationError("genre required")
        rows = self.query.find(MOVIES, [Contains("genre", genre)], order_by="rating")
        return [Movie.from_row(r) for r in rows]

    def get_movies_by_year(self, year: int) -> List[Movie]:
        _check_movie_fields("get_movies_by_year", {"year": year})
        rows = self.query.find(MOVIES, [Equals("year", year)], order_by="rating")
        return [Movie.from_row(r) for r in rows]

    def get_top_rated_movies(self, limit: int = 10) -> List[Movie]:
        return [Movie.from_row(r) for r in self.query.find(MOVIES, order_by="rating", limit=limit)]

    def set_movie_status(self, movie_id: str, status: str, user_rating: Optional[float] = None) -> UserMovie:
        """Mark a movie watched/pending/favorite for the signed-in user."""
        if status not in MOVIE_STATUSES:
            logger.warning("set_movie_status: rejected status=%r", status)
            raise ValidationError(f"status must be one of {', '.join(MOVIE_STATUSES)}")
        _check_range("set_movie_status", "user_rating", user_rating, 0, 10)
        user = self._require_user("track a movie")
        existing = self.query.find(USER_MOVIES, [Equals("user_id", user.id), Equals("movie_id", movie_id)],
                                   columns=["id"], limit=1)
        if existing:
            row = self.query.update(USER_MOVIES, existing[0]["id"], {"status": status, "user_rating": user_rating})
        else:
            row = self.query.create(USER_MOVIES, {"user_id": user.id, "movie_id": movie_id,
                                                  "status": status, "user_rating": user_rating})
        logger.info("Movie %s marked %s for user %s", movie_id, status, user.id)
        return UserMovie.from_row(row)

    # ---- Reviews ----
    def get_reviews_by_movie(self, movie_id: str) -> List[Review]:
        return [Review.from_row(r) for r in self.query.find(REVIEWS, [Equals("movie_id", movie_id)])]

    def get_reviews_by_user(self, user_id: str) -> List[Review]:
        return [Review.from_row(r) for r in self.query.find(REVIEWS, [Equals("user_id", user_id)])]

    def create_review(self, data: Mapping[str, Any]) -> Review:
        """
        Create a review. movie_id and user_id are required and a user may
        review a movie only once.

        The existence check and the insert are two round trips. Where the store
        enforces UNIQUE (movie_id, user_id) a concurrent duplicate still comes
        back as DuplicateReviewError from the insert.
        """
        if is_blank(data.get("movie_id")) or is_blank(data.get("user_id")):
            logger.warning("create_review: movie_id or user_id missing")
            raise ValidationError("movie_id and user_id required")
        _check_range("create_review", "rating", data.get("rating"), 1, 10)
        pair = [Equals("movie_id", data["movie_id"]), Equals("user_id", data["user_id"])]
        if self.query.find(REVIEWS, pair, columns=["id"], limit=1):
            logger.warning("Duplicate review user=%s movie=%s", data["user_id"], data["movie_id"])
            raise DuplicateReviewError("duplicate review: you have already reviewed this movie")
        try:
            row = self.query.create(REVIEWS, {k: v for k, v in data.items() if k not in ("id", "created_at")})
        except ConflictError as e:
            logger.warning("Duplicate review rejected by store user=%s movie=%s", data["user_id"], data["movie_id"])
            raise DuplicateReviewError("duplicate review: you have already reviewed this movie",
                                       code=e.code, status=e.status) from e
        logger.info("Created review id=%s movie=%s", row.get("id"), data["movie_id"])
        return Review.from_row(row)

    def update_review(self, review_id: str, changes: Mapping[str, Any]) -> Review:
        _check_range("update_review", "rating", changes.get("rating"), 1, 10)
        try:
            row = self.query.update(REVIEWS, review_id, changes)
        except ConflictError as e:
            logger.warning("Duplicate review rejected by store on update review=%s", review_id)
            raise DuplicateReviewError("duplicate review: you have already reviewed this movie",
                                       code=e.code, status=e.status) from e
        return Review.from_row(row)

    def delete_review(self, review_id: str) -> None:
        self.query.delete(REVIEWS, review_id)

    def get_review(self, review_id: str) -> Review:
        return Review.from_row(self.query.get_by_id(REVIEWS, review_id))

    def get_average_rating(self, movie_id: str) -> float:
        """Mean review rating rounded to one decimal, 0 when there are no reviews."""
        avg = self.query.aggregate(REVIEWS, [Equals("movie_id", movie_id)], field="rating", func="avg")
        # half-up, so 8.25 -> 8.3
        return float(Decimal(str(avg)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))

    def get_latest_reviews(self, limit: int = 10) -> List[Review]:
        return [Review.from_row(r) for r in self.query.find(REVIEWS, limit=limit)]

    # ---- Users ----
    @staticmethod
    def _profile(user: Identity, email_fallback: bool = False) -> UserProfile:
        username = user.user_metadata.get("username")
        if not username and email_fallback:
            username = user.email.split("@")[0]
        return UserProfile(id=user.id, email=user.email, username=username or None,
                           created_at=user.created_at, last_sign_in=user.last_sign_in_at)

    def get_user_profile(self, user_id: str) -> UserProfile:
        """
        Profile of any user. Needs admin rights on the identity provider;
        without them only the signed-in user's own profile is readable.
        """
        try:
            user = self.auth.get_user_by_id(user_id)
        except RemoteError as e:
            logger.debug("admin lookup of %s refused (%s), trying current user", user_id, e)
            current = self.get_current_user()
            if current and current.id == user_id:
                return self._profile(current)
            logger.warning("get_user_profile: no access to user %s", user_id)
            raise AuthRequiredError("cannot access this user's profile") from e
        return self._profile(user)

    def get_current_user_profile(self) -> UserProfile:
        return self._profile(self._require_user("view your profile"), email_fallback=True)

    def update_user_profile(self, user_id: str, username: Optional[str] = None,
                            email: Optional[str] = None) -> UserProfile:
        """Change username and/or email. A user may only update their own profile."""
        user = self._require_user("update your profile")
        if user.id != user_id:
            logger.warning("update_user_profile: user %s tried to update %s", user.id, user_id)
            raise AuthRequiredError("you can only update your own profile")
        updates: Dict[str, Any] = {}
        if username:
            updates["data"] = {**user.user_metadata, "username": username}
        if email and email != user.email:
            updates["email"] = email
        if not updates:
            logger.warning("update_user_profile: nothing to update")
            raise ValidationError("username or email required")
        with remote_call("update_user_profile"):
            updated = self.auth.update_user(updates)
        logger.info("Updated profile of user %s", user_id)
        profile = self._profile(updated)
        profile.updated_at = now_iso()
        return profile

    def get_user_stats(self, user_id: str) -> UserStats:
        """Counts recomputed from movies and user_movies on every call."""
        if is_blank(user_id):
            logger.warning("get_user_stats: user_id missing")
            raise ValidationError("user_id required")
        by_user = Equals("user_id", user_id)
        stats = UserStats(total_movies=self.query.aggregate(MOVIES, [by_user]))
        for status in MOVIE_STATUSES:
            n = self.query.aggregate(USER_MOVIES, [by_user, Equals("status", status)])
            setattr(stats, f"{status}_movies", n)
        logger.info("Stats for user %s: %s", user_id, stats)
        return stats

    def get_current_user_stats(self) -> UserStats:
        return self.get_user_stats(self._require_user("view your stats").id)
