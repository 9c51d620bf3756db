# cineverse/repo.py
"""
Storage backends behind the query executor.

Every repo implements the same four calls on plain dict rows:

    select(query)                       -> (rows, total or None)
    insert(resource, row)               -> stored row (with id)
    update(resource, filters, changes)  -> list of updated rows
    delete(resource, filters)           -> number of removed rows

RestRepo talks to the hosted table API, SqliteRepo to a local database and
InMemoryRepo keeps everything in dicts for unit tests.
"""
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import requests

from cineverse.errors import ConflictError, RemoteError

logger = logging.getLogger(__name__)

# Postgres error code for unique_violation
UNIQUE_VIOLATION = "23505"
UNDEFINED_COLUMN = "42703"
NOT_CONFIGURED = "backend not configured: set SUPABASE_URL and SUPABASE_ANON_KEY"


# --- Query model ---
@dataclass(frozen=True)
class Equals:
    field: str
    value: Any


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring match."""
    field: str
    value: str


Filter = Union[Equals, Contains]


@dataclass
class Query:
    resource: str
    filters: Sequence[Filter] = field(default_factory=list)
    columns: Optional[Sequence[str]] = None  # None -> every column
    order_by: Optional[str] = None
    descending: bool = True
    offset: int = 0
    limit: Optional[int] = None
    count: bool = False


def _matches(row: Dict[str, Any], flt: Filter) -> bool:
    value = row.get(flt.field)
    if isinstance(flt, Contains):
        return value is not None and str(flt.value).lower() in str(value).lower()
    return value == flt.value


def _project(row: Dict[str, Any], columns: Optional[Sequence[str]]) -> Dict[str, Any]:
    if not columns:
        return dict(row)
    return {c: row.get(c) for c in columns}


def escape_like(value: Any) -> str:
    """Make % and _ literal in a LIKE pattern (backslash is the escape on both stores)."""
    return str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# --- REST repo (hosted table API) ---
class RestRepo:
    """
    Table API client. Filters are encoded as `column=op.value` query
    parameters, the total count comes back in the Content-Range header.
    """

    def __init__(self, url: Optional[str], api_key: Optional[str],
                 session: Optional[requests.Session] = None, timeout: float = 10,
                 token_provider: Optional[Callable[[], Optional[str]]] = None):
        self.base_url = url.rstrip("/") if url else None
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.token_provider = token_provider

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        token = (self.token_provider() if self.token_provider else None) or self.api_key
        headers = {"apikey": self.api_key, "Authorization": f"Bearer {token}"}
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _filter_params(filters: Sequence[Filter]) -> List[Tuple[str, str]]:
        params = []
        for f in filters:
            if isinstance(f, Contains):
                params.append((f.field, f"ilike.*{escape_like(f.value)}*"))
            elif f.value is None:
                params.append((f.field, "is.null"))
            elif isinstance(f.value, bool):
                params.append((f.field, f"is.{str(f.value).lower()}"))
            else:
                params.append((f.field, f"eq.{f.value}"))
        return params

    def _request(self, method: str, resource: str, params=None, json=None, prefer=None) -> requests.Response:
        if not self.configured:
            raise RemoteError(NOT_CONFIGURED)
        url = f"{self.base_url}/rest/v1/{resource}"
        try:
            resp = self.session.request(method, url, params=params, json=json,
                                        headers=self._headers(prefer), timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteError(str(e)) from e
        if not resp.ok:
            raise error_from_response(resp)
        return resp

    def select(self, query: Query) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        params = [("select", ",".join(query.columns) if query.columns else "*")]
        params += self._filter_params(query.filters)
        if query.order_by:
            params.append(("order", f"{query.order_by}.{'desc' if query.descending else 'asc'}"))
        if query.offset:
            params.append(("offset", str(query.offset)))
        if query.limit is not None:
            params.append(("limit", str(query.limit)))
        resp = self._request("GET", query.resource, params=params,
                             prefer="count=exact" if query.count else None)
        rows = resp.json()
        total = parse_content_range(resp.headers.get("Content-Range")) if query.count else None
        if query.count and total is None:
            total = len(rows)
        return rows, total

    def insert(self, resource: str, row: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._request("POST", resource, json=[row], prefer="return=representation")
        rows = resp.json()
        if not rows:
            raise RemoteError(f"insert into {resource} returned no row")
        return rows[0]

    def update(self, resource: str, filters: Sequence[Filter], changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = self._request("PATCH", resource, params=self._filter_params(filters), json=changes,
                             prefer="return=representation")
        return resp.json()

    def delete(self, resource: str, filters: Sequence[Filter]) -> int:
        resp = self._request("DELETE", resource, params=self._filter_params(filters),
                             prefer="return=representation")
        return len(resp.json() or [])


def parse_content_range(value: Optional[str]) -> Optional[int]:
    """'0-9/42' -> 42, '*/0' -> 0, '0-9/*' -> None"""
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


def error_from_response(resp: requests.Response) -> RemoteError:
    """Map an error response to RemoteError, keeping the remote message verbatim."""
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = (body.get("message") or body.get("msg") or body.get("error_description")
               or body.get("error") or resp.text or resp.reason or f"HTTP {resp.status_code}")
    code = body.get("code") or body.get("error_code")
    code = str(code) if code is not None else None
    if code == UNIQUE_VIOLATION or resp.status_code == 409:
        return ConflictError(message, code=code, status=resp.status_code)
    return RemoteError(message, code=code, status=resp.status_code)


# --- SQLite repo ---
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS movies (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    genre TEXT,
    year INTEGER,
    director TEXT,
    poster_url TEXT,
    rating REAL,
    tmdb_id INTEGER,
    user_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reviews (
    id TEXT PRIMARY KEY,
    movie_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    rating INTEGER,
    comment TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (movie_id, user_id),
    FOREIGN KEY (movie_id) REFERENCES movies(id)
);

CREATE TABLE IF NOT EXISTS user_movies (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    movie_id TEXT NOT NULL,
    status TEXT NOT NULL,
    user_rating REAL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, movie_id),
    FOREIGN KEY (movie_id) REFERENCES movies(id)
);
"""


class SqliteRepo:
    def __init__(self, db_path: str):
        self.db_path = db_path
        folder = os.path.dirname(db_path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        self._columns: Dict[str, List[str]] = {}

    @contextmanager
    def conn(self):
        con = sqlite3.connect(self.db_path)
        con.row_factory = sqlite3.Row
        try:
            yield con
            con.commit()
        finally:
            con.close()

    def init_schema(self) -> None:
        with self.conn() as c:
            c.executescript(SCHEMA_SQL)

    def _check_columns(self, c, table: str, names) -> None:
        if table not in self._columns:
            rows = c.execute(f"PRAGMA table_info({table})").fetchall()
            if not rows:
                raise RemoteError(f'relation "{table}" does not exist', code="42P01")
            self._columns[table] = [r["name"] for r in rows]
        for n in names:
            if n not in self._columns[table]:
                raise RemoteError(f"column {table}.{n} does not exist", code=UNDEFINED_COLUMN)

    def _where(self, c, table: str, filters: Sequence[Filter]) -> Tuple[str, List[Any]]:
        self._check_columns(c, table, [f.field for f in filters])
        clauses, params = [], []
        for f in filters:
            if isinstance(f, Contains):
                escaped = escape_like(f.value)
                clauses.append(f"lower({f.field}) LIKE lower(?) ESCAPE '\\'")
                params.append(f"%{escaped}%")
            elif f.value is None:
                clauses.append(f"{f.field} IS NULL")
            else:
                clauses.append(f"{f.field} = ?")
                params.append(f.value)
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    def select(self, query: Query) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        with self.conn() as c:
            where, params = self._where(c, query.resource, query.filters)
            cols = list(query.columns) if query.columns else []
            self._check_columns(c, query.resource, cols + ([query.order_by] if query.order_by else []))
            sql = f"SELECT {', '.join(cols) if cols else '*'} FROM {query.resource}{where}"
            if query.order_by:
                # nulls first on descending order, last on ascending, like Postgres
                direction = "DESC NULLS FIRST" if query.descending else "ASC NULLS LAST"
                rowid = "DESC" if query.descending else "ASC"
                sql += f" ORDER BY {query.order_by} {direction}, rowid {rowid}"
            if query.limit is not None or query.offset:
                sql += " LIMIT ? OFFSET ?"
                rows = c.execute(sql, (*params, query.limit if query.limit is not None else -1,
                                       query.offset)).fetchall()
            else:
                rows = c.execute(sql, tuple(params)).fetchall()
            total = None
            if query.count:
                total = c.execute(f"SELECT COUNT(*) FROM {query.resource}{where}", tuple(params)).fetchone()[0]
            return [dict(r) for r in rows], total

    def insert(self, resource: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row.setdefault("id", uuid.uuid4().hex)
        with self.conn() as c:
            self._check_columns(c, resource, row.keys())
            names = ", ".join(row.keys())
            marks = ", ".join("?" for _ in row)
            try:
                c.execute(f"INSERT INTO {resource} ({names}) VALUES ({marks})", tuple(row.values()))
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e):
                    raise ConflictError(str(e), code=UNIQUE_VIOLATION) from e
                raise RemoteError(str(e)) from e
            r = c.execute(f"SELECT * FROM {resource} WHERE id = ?", (row["id"],)).fetchone()
            return dict(r)

    def update(self, resource: str, filters: Sequence[Filter], changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self.conn() as c:
            where, params = self._where(c, resource, filters)
            self._check_columns(c, resource, changes.keys())
            ids = [r["id"] for r in c.execute(f"SELECT id FROM {resource}{where}", tuple(params)).fetchall()]
            if not ids or not changes:
                return [dict(r) for r in c.execute(f"SELECT * FROM {resource}{where}", tuple(params)).fetchall()]
            sets = ", ".join(f"{k} = ?" for k in changes)
            marks = ", ".join("?" for _ in ids)
            try:
                c.execute(f"UPDATE {resource} SET {sets} WHERE id IN ({marks})", (*changes.values(), *ids))
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e):
                    raise ConflictError(str(e), code=UNIQUE_VIOLATION) from e
                raise RemoteError(str(e)) from e
            rows = c.execute(f"SELECT * FROM {resource} WHERE id IN ({marks})", tuple(ids)).fetchall()
            return [dict(r) for r in rows]

    def delete(self, resource: str, filters: Sequence[Filter]) -> int:
        with self.conn() as c:
            where, params = self._where(c, resource, filters)
            cur = c.execute(f"DELETE FROM {resource}{where}", tuple(params))
            return cur.rowcount


# --- In-memory repo (simple, used for unit tests) ---
class InMemoryRepo:
    """
    Dict-backed fake of the table API. `unique` maps a resource to the
    column tuples that must be unique, mirroring the SQLite schema.
    Every call is appended to `calls` so tests can assert on round trips.
    """

    DEFAULT_UNIQUE = {"reviews": [("movie_id", "user_id")], "user_movies": [("user_id", "movie_id")]}

    def __init__(self, unique: Optional[Dict[str, List[Tuple[str, ...]]]] = None):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._order: Dict[str, int] = {}
        self._seq = 0
        self.unique = self.DEFAULT_UNIQUE if unique is None else unique
        self.calls: List[str] = []

    def _table(self, resource: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(resource, {})

    def _filtered(self, resource: str, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        return [r for r in self._table(resource).values() if all(_matches(r, f) for f in filters)]

    def _check_unique(self, resource: str, row: Dict[str, Any], skip_id=None) -> None:
        for cols in self.unique.get(resource, []):
            key = tuple(row.get(c) for c in cols)
            for other in self._table(resource).values():
                if other["id"] != skip_id and tuple(other.get(c) for c in cols) == key:
                    raise ConflictError(
                        f'duplicate key value violates unique constraint "{resource}_{"_".join(cols)}_key"',
                        code=UNIQUE_VIOLATION)

    def select(self, query: Query) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        self.calls.append(f"select:{query.resource}")
        res = self._filtered(query.resource, query.filters)
        res.sort(key=lambda r: self._order[r["id"]], reverse=query.descending)
        if query.order_by:
            col = query.order_by
            present = [r for r in res if r.get(col) is not None]
            missing = [r for r in res if r.get(col) is None]
            present.sort(key=lambda r: r[col], reverse=query.descending)
            # nulls first on descending order, like Postgres
            res = missing + present if query.descending else present + missing
        total = len(res) if query.count else None
        end = None if query.limit is None else query.offset + query.limit
        return [_project(r, query.columns) for r in res[query.offset:end]], total

    def insert(self, resource: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(f"insert:{resource}")
        row = dict(row)
        row.setdefault("id", uuid.uuid4().hex)
        self._check_unique(resource, row)
        self._seq += 1
        self._order[row["id"]] = self._seq
        self._table(resource)[row["id"]] = row
        return dict(row)

    def update(self, resource: str, filters: Sequence[Filter], changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.calls.append(f"update:{resource}")
        out = []
        for r in self._filtered(resource, filters):
            merged = {**r, **changes}
            self._check_unique(resource, merged, skip_id=r["id"])
            r.update(changes)
            out.append(dict(r))
        return out

    def delete(self, resource: str, filters: Sequence[Filter]) -> int:
        self.calls.append(f"delete:{resource}")
        doomed = self._filtered(resource, filters)
        for r in doomed:
            self._table(resource).pop(r["id"], None)
        return len(doomed)
