__version__ = "0.1.0"

from graphql_tiny.api import (  # noqa: E402
    ArgumentError,
    ConnectionError,
    DeadlineExceededError,
    GraphQLClient,
    GraphQLError,
    GraphQLTinyError,
    HTTPError,
    Pager,
    RateLimitError,
)

__all__ = [
    "__version__",
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
