from graphql_tiny.api.client import GraphQLClient
from graphql_tiny.api.errors import (
    ArgumentError,
    ConnectionError,
    DeadlineExceededError,
    GraphQLError,
    GraphQLTinyError,
    HTTPError,
    RateLimitError,
)
from graphql_tiny.api.pager import Pager

__all__ = [
    "GraphQLClient",
    "Pager",
    "ArgumentError",
    "ConnectionError",
    "DeadlineExceededError",
    "GraphQLError",
    "GraphQLTinyError",
    "HTTPError",
    "RateLimitError",
]
