# cineverse/query.py
"""
Query executor and result normalizer.

Turns logical requests (filters, pagination, sort) into repo queries and
maps the results to plain values: a record, a list of records or a Page,
or a raised error. Never both.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from cineverse.errors import AmbiguousResultError, NotFoundError, RemoteError, ValidationError
from cineverse.models import Page, now_iso
from cineverse.repo import Contains, Equals, Filter, Query

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Filters = Union[Mapping[str, Any], Sequence[Filter], None]

AGGREGATES = ("count", "sum", "avg")


@dataclass(frozen=True)
class Resource:
    """A named remote collection and the rules applied at this boundary."""
    name: str
    required: Tuple[str, ...] = ()
    text_fields: Tuple[str, ...] = ()  # substring match when filtering by mapping
    stamp_created: bool = True
    stamp_updated: bool = False


MOVIES = Resource("movies", required=("title",), text_fields=("title", "director"), stamp_updated=True)
REVIEWS = Resource("reviews", required=("movie_id", "user_id"), text_fields=("comment",))
USER_MOVIES = Resource("user_movies", required=("user_id", "movie_id", "status"))


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@contextmanager
def remote_call(what: str):
    """Log a remote failure as '<what> failed: <message>' and re-raise it unchanged."""
    try:
        yield
    except RemoteError as e:
        logger.error("%s failed: %s", what, e)
        raise


class QueryExecutor:
    """
    Executes queries against an injected repo (RestRepo, SqliteRepo or
    InMemoryRepo). Remote failures are logged with the operation name and
    re-raised unchanged; nothing is retried.
    """

    def __init__(self, repo, clock: Callable[[], str] = now_iso):
        self.repo = repo
        self.clock = clock
        logger.debug("QueryExecutor initialized with repo %s", type(repo).__name__)

    @staticmethod
    def build_filters(resource: Resource, filters: Filters) -> List[Filter]:
        """
        Turn a {field: value} mapping into predicates: substring match on the
        resource's text fields, exact match otherwise. None/"" values are skipped.
        Sequences of Filter objects pass through.
        """
        if not filters:
            return []
        if not isinstance(filters, Mapping):
            return list(filters)
        out: List[Filter] = []
        for name, value in filters.items():
            if value is None or value == "":
                continue
            out.append(Contains(name, value) if name in resource.text_fields else Equals(name, value))
        return out

    def list(self, resource: Resource, filters: Filters = None, page: int = 1, per_page: int = 10,
             sort_field: str = "created_at", sort_direction: str = "desc") -> Page:
        """One window of the filtered set plus the size of the whole set."""
        if page < 1 or per_page < 1:
            logger.warning("list %s: invalid window page=%s per_page=%s", resource.name, page, per_page)
            raise ValidationError("page and per_page must be >= 1")
        if sort_direction not in ("asc", "desc"):
            logger.warning("list %s: invalid sort_direction %r", resource.name, sort_direction)
            raise ValidationError("sort_direction must be 'asc' or 'desc'")
        q = Query(resource.name, filters=self.build_filters(resource, filters), order_by=sort_field,
                  descending=sort_direction == "desc", offset=(page - 1) * per_page, limit=per_page,
                  count=True)
        with remote_call(f"list {resource.name}"):
            rows, total = self.repo.select(q)
        logger.info("Listed %s: %d of %s (page %s)", resource.name, len(rows), total, page)
        return Page(items=rows, total_items=total or 0, page=page, per_page=per_page)

    def find(self, resource: Resource, filters: Filters = None, order_by: Optional[str] = "created_at",
             descending: bool = True, limit: Optional[int] = None,
             columns: Optional[Sequence[str]] = None) -> List[Record]:
        if limit is not None and limit < 1:
            logger.warning("find %s: invalid limit %s", resource.name, limit)
            raise ValidationError("limit must be >= 1")
        q = Query(resource.name, filters=self.build_filters(resource, filters), columns=columns,
                  order_by=order_by, descending=descending, limit=limit)
        with remote_call(f"find {resource.name}"):
            rows, _ = self.repo.select(q)
        logger.debug("Found %d %s", len(rows), resource.name)
        return rows

    def get_by_id(self, resource: Resource, record_id: Any) -> Record:
        if is_blank(record_id):
            logger.warning("get %s: blank id", resource.name)
            raise ValidationError("id required")
        with remote_call(f"get {resource.name} {record_id}"):
            rows, _ = self.repo.select(Query(resource.name, filters=[Equals("id", record_id)]))
        return self._single(resource, record_id, rows)

    def _single(self, resource: Resource, record_id: Any, rows: List[Record]) -> Record:
        if not rows:
            logger.debug("%s %s not found", resource.name, record_id)
            raise NotFoundError(f"{resource.name} {record_id} not found")
        if len(rows) > 1:
            logger.error("%s %s matched %d rows, expected one", resource.name, record_id, len(rows))
            raise AmbiguousResultError(f"{resource.name} {record_id} matched {len(rows)} rows")
        return rows[0]

    def create(self, resource: Resource, payload: Mapping[str, Any]) -> Record:
        """Validate required fields locally, stamp timestamps, insert one row."""
        missing = [f for f in resource.required if is_blank(payload.get(f))]
        if missing:
            logger.warning("create %s: missing required %s", resource.name, ", ".join(missing))
            raise ValidationError(f"{', '.join(missing)} required")
        row = dict(payload)
        ts = self.clock()
        if resource.stamp_created:
            row["created_at"] = ts
        if resource.stamp_updated:
            row["updated_at"] = ts
        with remote_call(f"create {resource.name}"):
            created = self.repo.insert(resource.name, row)
        logger.info("Created %s id=%s", resource.name, created.get("id"))
        return created

    def update(self, resource: Resource, record_id: Any, changes: Mapping[str, Any]) -> Record:
        if is_blank(record_id):
            logger.warning("update %s: blank id", resource.name)
            raise ValidationError("id required")
        blanked = [f for f in resource.required if f in changes and is_blank(changes[f])]
        if blanked:
            logger.warning("update %s %s: blank required %s", resource.name, record_id, ", ".join(blanked))
            raise ValidationError(f"{', '.join(blanked)} required")
        row = {k: v for k, v in changes.items() if k not in ("id", "created_at")}
        if resource.stamp_updated:
            row["updated_at"] = self.clock()
        with remote_call(f"update {resource.name} {record_id}"):
            rows = self.repo.update(resource.name, [Equals("id", record_id)], row)
        updated = self._single(resource, record_id, rows)
        logger.info("Updated %s id=%s", resource.name, record_id)
        return updated

    def delete(self, resource: Resource, record_id: Any) -> None:
        """
        Delete one row by id. Deleting an id that no longer exists raises
        NotFoundError, so a repeated delete is reported to the caller.
        """
        if is_blank(record_id):
            logger.warning("delete %s: blank id", resource.name)
            raise ValidationError("id required")
        with remote_call(f"delete {resource.name} {record_id}"):
            removed = self.repo.delete(resource.name, [Equals("id", record_id)])
        if not removed:
            logger.warning("delete %s %s: no such row", resource.name, record_id)
            raise NotFoundError(f"{resource.name} {record_id} not found")
        logger.info("Deleted %s id=%s", resource.name, record_id)

    def delete_where(self, resource: Resource, filters: Filters) -> int:
        """Bulk delete. An empty filter set is refused."""
        flts = self.build_filters(resource, filters)
        if not flts:
            logger.warning("delete %s: refused, no filters", resource.name)
            raise ValidationError("refusing to delete without filters")
        with remote_call(f"delete {resource.name}"):
            removed = self.repo.delete(resource.name, flts)
        logger.info("Deleted %d %s", removed, resource.name)
        return removed

    def aggregate(self, resource: Resource, filters: Filters = None, field: Optional[str] = None,
                  func: str = "count") -> float:
        """
        count/sum/avg over the matching rows.

        The rows are pulled and reduced here, not in the store, so the cost is
        O(n) in the number of matching rows. Fine for per-movie ratings and
        per-user counts; not a path for large aggregations.
        """
        if func not in AGGREGATES:
            logger.warning("aggregate %s: unknown func %r", resource.name, func)
            raise ValidationError(f"unknown aggregate {func!r}")
        if func != "count" and not field:
            logger.warning("aggregate %s: %s without a field", resource.name, func)
            raise ValidationError(f"{func} needs a field")
        q = Query(resource.name, filters=self.build_filters(resource, filters), columns=[field or "id"])
        with remote_call(f"aggregate {func} {resource.name}"):
            rows, _ = self.repo.select(q)
        if func == "count":
            return len(rows)
        values = [r[field] for r in rows if r.get(field) is not None]
        if func == "sum":
            return sum(values)
        return sum(values) / len(values) if values else 0.0
