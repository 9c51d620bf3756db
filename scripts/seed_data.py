# scripts/seed_data.py
"""
Insert demo movies for a demo account and print its stats.
Run: python -m scripts.seed_data
Exits 1 on any failure.
"""
import logging
import sys

from cineverse.errors import CineVerseError, RemoteError
from cineverse.models import MOVIE_STATUSES
from cineverse.query import MOVIES, USER_MOVIES
from run import configure_logging, create_service, load_config

logger = logging.getLogger("seed")

DEMO_EMAIL = "demo@cinematicverse.com"
DEMO_PASSWORD = "DemoPassword123!"

SAMPLE_MOVIES = [
    {"title": "Inception", "genre": "Sci-Fi", "year": 2010, "director": "Christopher Nolan",
     "poster_url": "https://image.tmdb.org/t/p/w500/9gk7adHYeDvHkCSEqAvQNLV5Ber.jpg",
     "rating": 8.8, "tmdb_id": 27205},
    {"title": "The Dark Knight", "genre": "Action", "year": 2008, "director": "Christopher Nolan",
     "poster_url": "https://image.tmdb.org/t/p/w500/qJ2tW6WMUDux911r6m7haRef0WH.jpg",
     "rating": 9.0, "tmdb_id": 155},
    {"title": "Interstellar", "genre": "Sci-Fi", "year": 2014, "director": "Christopher Nolan",
     "poster_url": "https://image.tmdb.org/t/p/w500/gEU2QniE6E77NI6lCU6MxlNBvIx.jpg",
     "rating": 8.6, "tmdb_id": 157336},
    {"title": "Pulp Fiction", "genre": "Crime", "year": 1994, "director": "Quentin Tarantino",
     "poster_url": "https://image.tmdb.org/t/p/w500/d5iIlFn5s0ImszYzBPb8JPIfbXD.jpg",
     "rating": 8.9, "tmdb_id": 680},
    {"title": "The Matrix", "genre": "Sci-Fi", "year": 1999, "director": "Lana Wachowski, Lilly Wachowski",
     "poster_url": "https://image.tmdb.org/t/p/w500/f89U3ADr1oiB1s9GkdPOEpXUk5H.jpg",
     "rating": 8.7, "tmdb_id": 603},
    {"title": "Forrest Gump", "genre": "Drama", "year": 1994, "director": "Robert Zemeckis",
     "poster_url": "https://image.tmdb.org/t/p/w500/arw2vcBveWOVZr6pxd9XTd1TdQa.jpg",
     "rating": 8.8, "tmdb_id": 13},
    {"title": "The Shawshank Redemption", "genre": "Drama", "year": 1994, "director": "Frank Darabont",
     "poster_url": "https://image.tmdb.org/t/p/w500/q6y0Go1tsGEsmtFryDOJo3dEmqu.jpg",
     "rating": 9.3, "tmdb_id": 278},
    {"title": "Fight Club", "genre": "Drama", "year": 1999, "director": "David Fincher",
     "poster_url": "https://image.tmdb.org/t/p/w500/pB8BM7pdSp6B6Ih7QZ4DrQ3PmJK.jpg",
     "rating": 8.4, "tmdb_id": 550},
    {"title": "Gladiator", "genre": "Action", "year": 2000, "director": "Ridley Scott",
     "poster_url": "https://image.tmdb.org/t/p/w500/ty8TGRuvJLPUmAR1H1nRIsgwvim.jpg",
     "rating": 8.5, "tmdb_id": 98},
    {"title": "The Godfather", "genre": "Crime", "year": 1972, "director": "Francis Ford Coppola",
     "poster_url": "https://image.tmdb.org/t/p/w500/3bhkrj58Vtu7enYsRolD1fZdja1.jpg",
     "rating": 9.2, "tmdb_id": 238},
]


def login_or_register(svc):
    try:
        return svc.login(DEMO_EMAIL, DEMO_PASSWORD).user
    except RemoteError:
        logger.info("Demo account missing, registering %s", DEMO_EMAIL)
        svc.register(DEMO_EMAIL, DEMO_PASSWORD, "DemoUser")
        return svc.login(DEMO_EMAIL, DEMO_PASSWORD).user


def clear_existing(svc, user_id):
    svc.query.delete_where(USER_MOVIES, {"user_id": user_id})
    svc.query.delete_where(MOVIES, {"user_id": user_id})


def seed(svc):
    user = login_or_register(svc)
    clear_existing(svc, user.id)
    movies = [svc.create_movie(m) for m in SAMPLE_MOVIES]
    for i, movie in enumerate(movies):
        # user_rating in [7.0, 10.0)
        svc.set_movie_status(movie.id, MOVIE_STATUSES[i % 3], user_rating=round(7 + (i * 0.37) % 3, 1))
    stats = svc.get_user_stats(user.id)
    print("-" * 40)
    print(f"  Total movies:      {stats.total_movies}")
    print(f"  Watched:           {stats.watched_movies}")
    print(f"  Pending:           {stats.pending_movies}")
    print(f"  Favorite:          {stats.favorite_movies}")
    print("-" * 40)
    svc.logout()
    return stats


def main(cfg=None) -> int:
    cfg = cfg if cfg is not None else load_config()
    configure_logging(cfg.get("logging_level", "INFO"))
    try:
        seed(create_service(cfg))
    except CineVerseError as e:
        logger.error("Seed failed: %s", e)
        return 1
    print(f"Seed completed. Demo user: {DEMO_EMAIL} / {DEMO_PASSWORD}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
