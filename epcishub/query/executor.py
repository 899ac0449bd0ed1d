"""
Query execution against an event store.

Pages are fetched with one extra row: its presence is what tells the executor
that a next page exists, without a separate COUNT query.
"""

from dataclasses import dataclass, field
import logging
from typing import Any

from epcishub.core.exceptions import QueryTooComplexException, StoreError
from epcishub.core.store import EventStore
from epcishub.query.compiler import DEFAULT_PAGE_SIZE, SERVER_MAX_PAGE_SIZE, compile_query
from epcishub.query.models import QueryParams
from epcishub.query.predicates import PageSpec, PredicateSpec

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """One page of matching event documents."""

    events: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    spec: PredicateSpec | None = None

    @property
    def has_more(self) -> bool:
        return self.next_page_token is not None


class QueryExecutor:
    """
    Compiles query parameters and runs them against an event store.

    Example:
        >>> executor = QueryExecutor(store)
        >>> result = await executor.execute({"EQ_action": ["OBSERVE"], "perPage": 10})
        >>> result.next_page_token
        '10'
    """

    def __init__(
        self,
        store: EventStore,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = SERVER_MAX_PAGE_SIZE,
    ):
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def compile(self, params: QueryParams | dict[str, Any] | None) -> PredicateSpec:
        return compile_query(
            params,
            default_page_size=self.default_page_size,
            max_page_size=self.max_page_size,
        )

    async def execute(
        self, params: QueryParams | dict[str, Any] | None, query_name: str | None = None
    ) -> QueryResult:
        """
        Execute one page of a query.

        Raises:
            ValidationException: On malformed parameters
            QueryTooComplexException: If the store fails to execute the query
        """
        spec = self.compile(params)
        return await self.execute_spec(spec, query_name=query_name)

    async def execute_spec(self, spec: PredicateSpec, query_name: str | None = None) -> QueryResult:
        if spec.unsatisfiable:
            return QueryResult(spec=spec)

        try:
            rows = await self.store.query_events(
                spec, limit=spec.page.size + 1, offset=spec.page.offset
            )
        except StoreError as e:
            label = f"query '{query_name}'" if query_name else "ad-hoc query"
            logger.error(f"Store failed executing {label}: {e}")
            raise QueryTooComplexException(f"The query could not be executed: {e}") from e

        next_token = None
        if len(rows) > spec.page.size:
            rows = rows[: spec.page.size]
            next_token = str(spec.page.next_offset)

        return QueryResult(events=rows, next_page_token=next_token, spec=spec)

    async def collect_all(self, params: QueryParams | dict[str, Any] | None) -> list[dict[str, Any]]:
        """
        Follow page tokens until the result set is exhausted.

        ``eventCountLimit`` and ``maxEventCount`` cap the total collected,
        the smaller one winning when both are set.
        """
        query = QueryParams.parse(params)
        limits = [n for n in (query.event_count_limit, query.max_event_count) if n is not None]
        cap = min(limits) if limits else None

        spec = self.compile(query)
        size = self.max_page_size if cap is None else min(cap, self.max_page_size)
        spec = spec.with_page(PageSpec(size=size, offset=spec.page.offset))
        events: list[dict[str, Any]] = []
        while True:
            result = await self.execute_spec(spec)
            events.extend(result.events)
            if cap is not None and len(events) >= cap:
                return events[:cap]
            if not result.has_more:
                return events
            spec = spec.with_page(PageSpec(size=spec.page.size, offset=spec.page.next_offset))
