import json
import os
import logging

import requests
from dotenv import load_dotenv

from cineverse.auth import InMemoryAuth, RestAuth
from cineverse.repo import InMemoryRepo, RestRepo, SqliteRepo
from cineverse.service import CineService

DEFAULT_CFG = {
    "backend": "supabase",  # "supabase", "sqlite" or "memory"
    "database": "data/cineverse.db",
    "supabase_url": None,
    "supabase_anon_key": None,
    "timeout": 10,
    "logging_level": "INFO"
}

ENV_KEYS = {
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_ANON_KEY": "supabase_anon_key",
    "CINEVERSE_BACKEND": "backend",
    "CINEVERSE_DATABASE": "database",
    "LOG_LEVEL": "logging_level",
}

logger = logging.getLogger(__name__)


def load_config(path="config.json", env_file=".env"):
    """Defaults, then config.json, then environment (a .env file is loaded first)."""
    merged = DEFAULT_CFG.copy()
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                merged.update(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read %s: %s - using defaults", path, e)
    load_dotenv(env_file)
    for env, key in ENV_KEYS.items():
        if os.environ.get(env):
            merged[key] = os.environ[env]
    return merged


def configure_logging(level_name: str):
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # quieter http client
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def check_config(cfg) -> bool:
    """Log a startup diagnostic when the hosted backend is selected but not configured."""
    if cfg.get("backend", "supabase") != "supabase":
        return True
    missing = [env for env, key in ENV_KEYS.items()
               if key in ("supabase_url", "supabase_anon_key") and not cfg.get(key)]
    if missing:
        logger.error("Missing configuration %s; set them in the environment or a .env file. "
                     "Remote calls will fail until they are set.", " and ".join(missing))
        return False
    return True


def create_service(cfg=None) -> CineService:
    """
    Build the service for the configured backend. A missing URL or key is
    reported here and yields a service whose remote calls raise RemoteError.
    """
    cfg = cfg if cfg is not None else load_config()
    backend = cfg.get("backend", "supabase")
    if backend == "memory":
        service = CineService(InMemoryRepo(), InMemoryAuth())
    elif backend == "sqlite":
        repo = SqliteRepo(cfg["database"])
        repo.init_schema()
        service = CineService(repo, InMemoryAuth())
    elif backend == "supabase":
        check_config(cfg)
        http = requests.Session()
        timeout = float(cfg.get("timeout", 10))
        auth = RestAuth(cfg.get("supabase_url"), cfg.get("supabase_anon_key"), session=http, timeout=timeout)
        repo = RestRepo(cfg.get("supabase_url"), cfg.get("supabase_anon_key"), session=http, timeout=timeout,
                        token_provider=lambda: auth.access_token)
        service = CineService(repo, auth)
    else:
        raise ValueError(f"unknown backend {backend!r}")
    logger.info("CineVerse service ready (backend=%s)", backend)
    return service


if __name__ == "__main__":
    cfg = load_config()
    configure_logging(cfg.get("logging_level", "INFO"))
    create_service(cfg)
