import pytest
from datetime import datetime, timedelta, timezone

from cineverse.auth import InMemoryAuth
from cineverse.errors import (AuthRequiredError, DuplicateReviewError, NotFoundError, RemoteError,
                              ValidationError)
from cineverse.repo import InMemoryRepo
from cineverse.service import CineService


class TickClock:
    """Deterministic clock, one second per call."""
    def __init__(self):
        self.t = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.t += timedelta(seconds=1)
        return self.t.isoformat(timespec="microseconds")


# ---------- Fixtures ----------
@pytest.fixture
def repo():
    return InMemoryRepo()

@pytest.fixture
def auth():
    return InMemoryAuth()

@pytest.fixture
def svc(repo, auth):
    return CineService(repo, auth, clock=TickClock())

@pytest.fixture
def alice(svc):
    user, _ = svc.register("alice@example.com", "secret123", "alice")
    return user

@pytest.fixture
def movie(svc, alice):
    return svc.create_movie({"title": "Inception", "genre": "Sci-Fi", "year": 2010, "rating": 8.8})

GENRES = ["Sci-Fi", "Drama", "Sci-Fi", "Crime", "Action", "Drama", "Sci-Fi", "Crime", "Action", "Drama"]

@pytest.fixture
def ten_movies(svc, alice):
    return [svc.create_movie({"title": f"Movie {i}", "genre": g, "year": 1990 + i, "rating": float(i)})
            for i, g in enumerate(GENRES)]


# ---------- Auth ----------
def test_register_defaults_username_to_email(svc):
    user, session = svc.register("bob@example.com", "pw123456")
    assert user.user_metadata["username"] == "bob"
    assert session is not None

def test_login_and_current_user(svc, alice):
    svc.logout()
    assert svc.get_current_user() is None
    session = svc.login("alice@example.com", "secret123")
    assert session.user.id == alice.id
    assert svc.get_current_user().email == "alice@example.com"

def test_login_wrong_password(svc, alice):
    with pytest.raises(RemoteError, match="Invalid login credentials"):
        svc.login("alice@example.com", "nope")

@pytest.mark.parametrize("email, password", [("", "x"), ("a@b.c", ""), ("  ", "  ")])
def test_login_requires_credentials(svc, email, password):
    with pytest.raises(ValidationError):
        svc.login(email, password)

def test_get_current_user_swallows_errors(svc, alice, monkeypatch):
    def boom():
        raise RemoteError("JWT expired")
    monkeypatch.setattr(svc.auth, "get_user", boom)
    assert svc.get_current_user() is None

def test_check_session(svc, alice):
    assert svc.check_session().user.id == alice.id
    svc.logout()
    assert svc.check_session() is None

def test_update_user_passes_through(svc, alice):
    user = svc.update_user(data={"username": "ally"})
    assert user.user_metadata["username"] == "ally"


# ---------- Movies: create / read ----------
@pytest.mark.parametrize("title", ["A", "The Dark Knight", "  Spaced  "])
def test_create_then_get_returns_title(svc, alice, title):
    m = svc.create_movie({"title": title, "genre": "Drama"})
    got = svc.get_movie(m.id)
    assert got.title == title
    assert got.user_id == alice.id

def test_create_movie_stamps_timestamps(svc, movie):
    assert movie.created_at is not None
    assert movie.created_at == movie.updated_at

@pytest.mark.parametrize("title", ["", "   ", None])
def test_create_movie_blank_title_makes_no_remote_call(svc, repo, alice, title):
    repo.calls.clear()
    with pytest.raises(ValidationError):
        svc.create_movie({"title": title, "genre": "Drama"})
    assert repo.calls == []

@pytest.mark.parametrize("bad", [{"rating": 10.5}, {"rating": -1}, {"year": "1999"}, {"rating": "8"}])
def test_create_movie_invalid_fields(svc, alice, bad):
    with pytest.raises(ValidationError):
        svc.create_movie({"title": "X", **bad})

def test_create_movie_requires_login(svc, repo):
    with pytest.raises(AuthRequiredError):
        svc.create_movie({"title": "Anonymous"})
    assert "insert:movies" not in repo.calls

def test_get_missing_movie(svc):
    with pytest.raises(NotFoundError):
        svc.get_movie("does-not-exist")


# ---------- Movies: search / list ----------
def test_search_by_genre_scenario(svc, ten_movies):
    page = svc.search_movies(genre="Sci-Fi")
    assert page.total_items == 3
    assert all(m.genre == "Sci-Fi" for m in page.items)

def test_search_title_is_case_insensitive_substring(svc, ten_movies):
    page = svc.search_movies(title="movie 1")
    assert [m.title for m in page.items] == ["Movie 1"]

def test_search_by_year(svc, ten_movies):
    page = svc.search_movies(year=1995)
    assert page.total_items == 1 and page.items[0].title == "Movie 5"

def test_search_newest_first(svc, ten_movies):
    page = svc.search_movies(per_page=3)
    assert [m.title for m in page.items] == ["Movie 9", "Movie 8", "Movie 7"]

@pytest.mark.parametrize("per_page", [1, 3, 4, 10, 25])
def test_pagination_window_and_total(svc, ten_movies, per_page):
    seen = []
    for page_no in range(1, 12):
        page = svc.search_movies(page=page_no, per_page=per_page)
        assert len(page.items) <= per_page
        assert page.total_items == 10
        seen += [m.id for m in page.items]
    assert sorted(seen) == sorted(m.id for m in ten_movies)

@pytest.mark.parametrize("page, per_page", [(0, 10), (1, 0), (-1, 5)])
def test_pagination_rejects_bad_window(svc, page, per_page):
    with pytest.raises(ValidationError):
        svc.search_movies(page=page, per_page=per_page)

def test_list_all_and_user_movies(svc, alice, movie):
    svc.register("bob@example.com", "pw123456", "bob")
    svc.create_movie({"title": "Bob's movie"})
    assert len(svc.list_all_movies()) == 2
    mine = svc.list_user_movies()
    assert [m.title for m in mine] == ["Bob's movie"]

def test_list_user_movies_requires_login(svc):
    with pytest.raises(AuthRequiredError):
        svc.list_user_movies()

def test_movies_by_genre_is_substring_and_rating_desc(svc, alice):
    svc.create_movie({"title": "a", "genre": "Sci-Fi", "rating": 7.0})
    svc.create_movie({"title": "b", "genre": "sci-fi horror", "rating": 9.0})
    svc.create_movie({"title": "c", "genre": "Drama", "rating": 8.0})
    assert [m.title for m in svc.get_movies_by_genre("SCI")] == ["b", "a"]

def test_movies_by_year(svc, ten_movies):
    assert [m.year for m in svc.get_movies_by_year(1992)] == [1992]

def test_top_rated(svc, ten_movies):
    top = svc.get_top_rated_movies(limit=3)
    assert [m.rating for m in top] == [9.0, 8.0, 7.0]


# ---------- Movies: update / delete ----------
def test_update_rating_refreshes_updated_at(svc, movie):
    svc.update_movie(movie.id, {"rating": 9.0})
    got = svc.get_movie(movie.id)
    assert got.rating == 9.0
    assert got.updated_at > movie.updated_at
    assert got.created_at == movie.created_at

def test_update_movie_blank_title(svc, movie):
    with pytest.raises(ValidationError):
        svc.update_movie(movie.id, {"title": ""})

def test_update_missing_movie(svc, alice):
    with pytest.raises(NotFoundError):
        svc.update_movie("nope", {"rating": 5.0})

def test_delete_then_get_not_found(svc, movie):
    svc.delete_movie(movie.id)
    with pytest.raises(NotFoundError):
        svc.get_movie(movie.id)

def test_second_delete_is_reported(svc, movie):
    svc.delete_movie(movie.id)
    with pytest.raises(NotFoundError):
        svc.delete_movie(movie.id)


# ---------- Reviews ----------
def test_second_review_for_same_pair_is_duplicate(svc, alice, movie):
    first = svc.create_review({"movie_id": movie.id, "user_id": alice.id, "rating": 8, "comment": "great"})
    assert first.id is not None
    with pytest.raises(DuplicateReviewError, match="duplicate review"):
        svc.create_review({"movie_id": movie.id, "user_id": alice.id, "rating": 3})

def test_duplicate_caught_by_store_when_check_races(svc, alice, movie, monkeypatch):
    svc.create_review({"movie_id": movie.id, "user_id": alice.id, "rating": 8})
    # the other writer's row is invisible to the pre-check
    monkeypatch.setattr(svc.query, "find", lambda *a, **kw: [])
    with pytest.raises(DuplicateReviewError):
        svc.create_review({"movie_id": movie.id, "user_id": alice.id, "rating": 5})

@pytest.mark.parametrize("data", [{"user_id": "u"}, {"movie_id": "m"}, {"movie_id": "", "user_id": "u"}])
def test_review_requires_ids_before_any_call(svc, repo, data):
    repo.calls.clear()
    with pytest.raises(ValidationError):
        svc.create_review(data)
    assert repo.calls == []

@pytest.mark.parametrize("rating", [0, 11, 15.5])
def test_review_rating_range(svc, alice, movie, rating):
    with pytest.raises(ValidationError):
        svc.create_review({"movie_id": movie.id, "user_id": alice.id, "rating": rating})

def test_reviews_by_movie_and_user(svc, alice, movie):
    other = svc.create_movie({"title": "Other"})
    svc.create_review({"movie_id": movie.id, "user_id": alice.id, "rating": 8})
    svc.create_review({"movie_id": other.id, "user_id": alice.id, "rating": 6})
    svc.create_review({"movie_id": movie.id, "user_id": "someone-else", "rating": 4})
    assert len(svc.get_reviews_by_movie(movie.id)) == 2
    assert len(svc.get_reviews_by_user(alice.id)) == 2

def test_update_get_delete_review(svc, alice, movie):
    r = svc.create_review({"movie_id": movie.id, "user_id": alice.id, "rating": 8})
    svc.update_review(r.id, {"comment": "changed my mind", "rating": 6})
    got = svc.get_review(r.id)
    assert got.comment == "changed my mind" and got.rating == 6
    svc.delete_review(r.id)
    with pytest.raises(NotFoundError):
        svc.get_review(r.id)

def test_update_review_onto_taken_pair_is_duplicate(svc, alice, movie):
    svc.create_review({"movie_id": movie.id, "user_id": "u1", "rating": 5})
    r = svc.create_review({"movie_id": movie.id, "user_id": "u2", "rating": 6})
    with pytest.raises(DuplicateReviewError):
        svc.update_review(r.id, {"user_id": "u1"})
    assert svc.get_review(r.id).user_id == "u2"

def test_average_rating(svc, alice, movie):
    assert svc.get_average_rating(movie.id) == 0
    for uid, rating in [("u1", 7), ("u2", 8), ("u3", 10)]:
        svc.create_review({"movie_id": movie.id, "user_id": uid, "rating": rating})
    assert svc.get_average_rating(movie.id) == 8.3

def test_average_rating_rounds_halves_up(svc, alice, movie):
    for uid, rating in [("u1", 8), ("u2", 8), ("u3", 8), ("u4", 9)]:
        svc.create_review({"movie_id": movie.id, "user_id": uid, "rating": rating})
    # mean is 8.25
    assert svc.get_average_rating(movie.id) == 8.3

def test_latest_reviews(svc, alice, movie):
    for i in range(5):
        svc.create_review({"movie_id": movie.id, "user_id": f"u{i}", "rating": i + 1})
    latest = svc.get_latest_reviews(limit=2)
    assert [r.user_id for r in latest] == ["u4", "u3"]


# ---------- Users ----------
def test_current_user_profile(svc, alice):
    p = svc.get_current_user_profile()
    assert (p.id, p.email, p.username) == (alice.id, "alice@example.com", "alice")
    assert p.last_sign_in is not None

def test_current_profile_falls_back_to_email(svc, alice):
    svc.update_user(data={})
    assert svc.get_current_user_profile().username == "alice"

def test_profile_of_self_without_admin(svc, alice):
    assert svc.get_user_profile(alice.id).email == "alice@example.com"

def test_profile_of_other_without_admin(svc, alice):
    bob, _ = svc.register("bob@example.com", "pw123456", "bob")
    with pytest.raises(AuthRequiredError):
        svc.get_user_profile(alice.id)

def test_profile_of_other_with_admin(repo):
    svc = CineService(repo, InMemoryAuth(admin=True))
    alice, _ = svc.register("alice@example.com", "secret123", "alice")
    svc.register("bob@example.com", "pw123456", "bob")
    assert svc.get_user_profile(alice.id).username == "alice"

def test_update_own_profile(svc, alice):
    p = svc.update_user_profile(alice.id, username="alice2", email="alice2@example.com")
    assert p.username == "alice2" and p.email == "alice2@example.com"
    assert p.updated_at is not None
    assert svc.get_current_user_profile().username == "alice2"

def test_update_email_to_taken_address(svc, auth, alice):
    svc.register("bob@example.com", "pw123456", "bob")
    with pytest.raises(RemoteError, match="already been registered"):
        svc.update_user(email="alice@example.com")
    assert svc.get_current_user().email == "bob@example.com"
    auth.sign_out()
    assert auth.sign_in("alice@example.com", "secret123").user.id == alice.id

def test_update_other_profile_refused(svc, alice):
    with pytest.raises(AuthRequiredError, match="own profile"):
        svc.update_user_profile("someone-else", username="x")

def test_update_profile_needs_changes(svc, alice):
    with pytest.raises(ValidationError):
        svc.update_user_profile(alice.id)

def test_user_stats(svc, alice):
    movies = [svc.create_movie({"title": f"m{i}"}) for i in range(4)]
    svc.set_movie_status(movies[0].id, "watched")
    svc.set_movie_status(movies[1].id, "watched", user_rating=8.0)
    svc.set_movie_status(movies[2].id, "favorite")
    svc.set_movie_status(movies[3].id, "pending")
    stats = svc.get_user_stats(alice.id)
    assert (stats.total_movies, stats.watched_movies, stats.favorite_movies, stats.pending_movies) == (4, 2, 1, 1)
    assert svc.get_current_user_stats() == stats

def test_set_movie_status_updates_existing(svc, alice, movie):
    first = svc.set_movie_status(movie.id, "pending")
    second = svc.set_movie_status(movie.id, "watched", user_rating=9.5)
    assert first.id == second.id
    assert svc.get_user_stats(alice.id).watched_movies == 1

def test_set_movie_status_invalid(svc, alice, movie):
    with pytest.raises(ValidationError):
        svc.set_movie_status(movie.id, "abandoned")

def test_stats_for_unknown_user_are_zero(svc):
    stats = svc.get_user_stats("ghost")
    assert stats.total_movies == 0 and stats.watched_movies == 0
