"""Query interface: parameters, predicate compilation and execution."""

from epcishub.query.compiler import compile_query
from epcishub.query.executor import QueryExecutor, QueryResult
from epcishub.query.models import QueryDefinition, QueryParams
from epcishub.query.predicates import Op, OrderSpec, PageSpec, Predicate, PredicateSpec

__all__ = [
    "Op",
    "OrderSpec",
    "PageSpec",
    "Predicate",
    "PredicateSpec",
    "QueryDefinition",
    "QueryExecutor",
    "QueryParams",
    "QueryResult",
    "compile_query",
]
