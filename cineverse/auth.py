# cineverse/auth.py
"""
Identity backends. Both keep the current session in the instance; the
service reads it through get_user()/get_session().
"""
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

import requests

from cineverse.errors import RemoteError
from cineverse.models import Identity, Session, now_iso
from cineverse.repo import NOT_CONFIGURED, error_from_response

logger = logging.getLogger(__name__)


class RestAuth:
    """Client for the hosted identity API (/auth/v1)."""

    def __init__(self, url: Optional[str], api_key: Optional[str],
                 session: Optional[requests.Session] = None, timeout: float = 10):
        self.base_url = url.rstrip("/") if url else None
        self.api_key = api_key
        self.http = session or requests.Session()
        self.timeout = timeout
        self.session: Optional[Session] = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    @property
    def access_token(self) -> Optional[str]:
        return self.session.access_token if self.session else None

    def _call(self, method: str, path: str, json=None, params=None, token: Optional[str] = None) -> Any:
        if not self.configured:
            raise RemoteError(NOT_CONFIGURED)
        headers = {"apikey": self.api_key, "Authorization": f"Bearer {token or self.api_key}"}
        try:
            resp = self.http.request(method, f"{self.base_url}/auth/v1/{path}", json=json, params=params,
                                     headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteError(str(e)) from e
        if not resp.ok:
            raise error_from_response(resp)
        return resp.json() if resp.content else None

    @staticmethod
    def _session_from(body: Dict[str, Any]) -> Session:
        return Session(access_token=body["access_token"], refresh_token=body.get("refresh_token"),
                       user=Identity.from_row(body["user"]))

    def sign_in(self, email: str, password: str) -> Session:
        body = self._call("POST", "token", params={"grant_type": "password"},
                          json={"email": email, "password": password})
        self.session = self._session_from(body)
        return self.session

    def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> Tuple[Identity, Optional[Session]]:
        body = self._call("POST", "signup", json={"email": email, "password": password, "data": metadata})
        # with email confirmation enabled the body is the bare user, no session
        if "access_token" in body:
            self.session = self._session_from(body)
            return self.session.user, self.session
        return Identity.from_row(body.get("user") or body), None

    def sign_out(self) -> None:
        """Revoke the token remotely. The local session is dropped even if that fails."""
        session, self.session = self.session, None
        if session:
            self._call("POST", "logout", token=session.access_token)

    def get_session(self) -> Optional[Session]:
        return self.session

    def get_user(self) -> Optional[Identity]:
        if not self.session:
            return None
        body = self._call("GET", "user", token=self.session.access_token)
        return Identity.from_row(body)

    def update_user(self, changes: Dict[str, Any]) -> Identity:
        if not self.session:
            raise RemoteError("Auth session missing!")
        body = self._call("PUT", "user", json=changes, token=self.session.access_token)
        user = Identity.from_row(body)
        self.session.user = user
        return user

    def get_user_by_id(self, user_id: str) -> Identity:
        """Admin lookup. Fails with RemoteError unless the key has admin rights."""
        return Identity.from_row(self._call("GET", f"admin/users/{user_id}"))


class InMemoryAuth:
    """Fake identity provider for tests and the local backends."""

    def __init__(self, admin: bool = False):
        self.admin = admin
        self._users: Dict[str, Dict[str, Any]] = {}  # by email
        self.session: Optional[Session] = None

    @property
    def access_token(self) -> Optional[str]:
        return self.session.access_token if self.session else None

    @staticmethod
    def _identity(u: Dict[str, Any]) -> Identity:
        return Identity(id=u["id"], email=u["email"], user_metadata=dict(u["user_metadata"]),
                        created_at=u["created_at"], last_sign_in_at=u.get("last_sign_in_at"))

    def sign_in(self, email: str, password: str) -> Session:
        u = self._users.get(email)
        if not u or u["password"] != password:
            raise RemoteError("Invalid login credentials", code="invalid_credentials", status=400)
        u["last_sign_in_at"] = now_iso()
        self.session = Session(access_token=uuid.uuid4().hex, user=self._identity(u))
        return self.session

    def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> Tuple[Identity, Optional[Session]]:
        if not email or "@" not in email:
            raise RemoteError("Unable to validate email address: invalid format", status=400)
        if email in self._users:
            raise RemoteError("User already registered", code="user_already_exists", status=422)
        self._users[email] = {"id": str(uuid.uuid4()), "email": email, "password": password,
                              "user_metadata": dict(metadata), "created_at": now_iso()}
        session = self.sign_in(email, password)
        return session.user, session

    def sign_out(self) -> None:
        self.session = None

    def get_session(self) -> Optional[Session]:
        return self.session

    def get_user(self) -> Optional[Identity]:
        if not self.session:
            return None
        return self._identity(self._users[self.session.user.email])

    def update_user(self, changes: Dict[str, Any]) -> Identity:
        if not self.session:
            raise RemoteError("Auth session missing!", status=401)
        new_email = changes.get("email")
        if new_email and new_email != self.session.user.email and new_email in self._users:
            raise RemoteError("A user with this email address has already been registered",
                              code="email_exists", status=422)
        u = self._users.pop(self.session.user.email)
        if changes.get("data") is not None:
            u["user_metadata"] = dict(changes["data"])
        if changes.get("email"):
            u["email"] = changes["email"]
        if changes.get("password"):
            u["password"] = changes["password"]
        self._users[u["email"]] = u
        self.session.user = self._identity(u)
        return self.session.user

    def get_user_by_id(self, user_id: str) -> Identity:
        if not self.admin:
            raise RemoteError("User not allowed", code="not_admin", status=403)
        for u in self._users.values():
            if u["id"] == user_id:
                return self._identity(u)
        raise RemoteError("User not found", code="user_not_found", status=404)
