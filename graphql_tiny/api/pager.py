"""
Cursor pagination on top of ``GraphQLClient.execute``.

A ``Pager`` runs the same query repeatedly, feeding the cursor from each
page's ``pageInfo`` block into the next request's variables, until a page
reports no further pages.

Locating ``pageInfo``:
    TreeSearchLocator  → first pageInfo anywhere in the response with a next page
    PathLocator        → explicit key path, ``data``/``pageInfo`` added when missing
    CallableLocator    → user function returning the pageInfo block

All locators hand their candidate to ``extract_cursor``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterator

from graphql_tiny.api.errors import ArgumentError
from graphql_tiny.obs.logging import log_event

if TYPE_CHECKING:
    from graphql_tiny.api.client import GraphQLClient

MAX_SEARCH_DEPTH = 64


@dataclass(frozen=True)
class PageKeys:
    has_more: str
    cursor: str


NEXT_PAGE_KEYS = {
    "before": PageKeys("hasPreviousPage", "startCursor"),
    "after": PageKeys("hasNextPage", "endCursor"),
}


def extract_cursor(data: Any, keys: PageKeys) -> str | None:
    """
    Return the cursor for the next page, or None when there is none.

    ``data`` may hold a ``pageInfo`` key or be the pageInfo block itself.
    """
    if not isinstance(data, Mapping):
        return None

    page_info = data.get("pageInfo")
    if not isinstance(page_info, Mapping):
        page_info = data if keys.has_more in data else None
    if page_info is None or not page_info.get(keys.has_more):
        return None

    return page_info.get(keys.cursor)


class TreeSearchLocator:
    """
    Depth-first search for the first object whose ``pageInfo`` has more pages.

    Mappings are checked before their values, values and sequence items are
    visited in order. Nodes deeper than ``max_depth`` are not visited.
    """

    def __init__(self, max_depth: int = MAX_SEARCH_DEPTH) -> None:
        self._max_depth = max_depth

    def find_cursor(self, response: Any, keys: PageKeys) -> str | None:
        stack: list[tuple[Any, int]] = [(response, 0)]
        while stack:
            node, depth = stack.pop()
            if depth > self._max_depth:
                continue
            if isinstance(node, Mapping):
                cursor = extract_cursor(node, keys)
                if cursor is not None:
                    return cursor
                children = list(node.values())
            elif isinstance(node, list):
                children = node
            else:
                continue
            stack.extend((child, depth + 1) for child in reversed(children))
        return None


class PathLocator:
    def __init__(self, path: Sequence[Any]) -> None:
        if isinstance(path, (str, bytes)) or not path:
            raise ArgumentError(f"invalid pagination path {path!r}")
        self._original = list(path)
        self._path = self._normalize(self._original)

    @property
    def path(self) -> list[Any]:
        return list(self._path)

    @staticmethod
    def _normalize(path: list[Any]) -> list[Any]:
        normalized = list(path)
        # pageInfo is looked up by extract_cursor
        if normalized and normalized[-1] == "pageInfo":
            normalized.pop()
        if not normalized or normalized[0] != "data":
            normalized.insert(0, "data")
        return normalized

    def find_cursor(self, response: Any, keys: PageKeys) -> str | None:
        try:
            node = dig(response, self._path)
        except TypeError as exc:
            # Report the caller's path, not the normalized one
            raise ArgumentError(f"invalid pagination path {self._original!r}: {exc}") from exc
        return extract_cursor(node, keys)


class CallableLocator:
    def __init__(self, func: Callable[[Any], Any]) -> None:
        self._func = func

    def find_cursor(self, response: Any, keys: PageKeys) -> str | None:
        return extract_cursor(self._func(response), keys)


def dig(data: Any, path: Sequence[Any]) -> Any:
    """
    Walk ``path`` through nested mappings and lists.

    Missing keys and None values end the walk with None. Indexing a list
    with a non-integer or indexing a scalar raises TypeError.
    """
    node = data
    for key in path:
        if node is None:
            return None
        if isinstance(node, Mapping):
            node = node.get(key)
        elif isinstance(node, list):
            if isinstance(key, bool) or not isinstance(key, int):
                raise TypeError(f"no implicit conversion of {type(key).__name__} into list index ({key!r})")
            node = node[key] if -len(node) <= key < len(node) else None
        else:
            raise TypeError(f"{type(node).__name__} does not have a {key!r} key")
    return node


def build_locator(locator: Any) -> Any:
    if locator is None:
        return TreeSearchLocator()
    if hasattr(locator, "find_cursor"):
        return locator
    if isinstance(locator, (list, tuple)):
        return PathLocator(locator)
    if callable(locator):
        return CallableLocator(locator)
    raise ArgumentError(f"invalid pagination locator {locator!r}")


class Pager:
    def __init__(
        self,
        client: "GraphQLClient",
        direction: str = "after",
        *,
        locator: Any = None,
        variable: str | None = None,
        max_pages: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if direction not in NEXT_PAGE_KEYS:
            raise ArgumentError(f"invalid pagination option {direction!r}")
        if max_pages is not None and max_pages < 1:
            raise ArgumentError("max_pages must be >= 1")

        self._client = client
        self._direction = direction
        self._keys = NEXT_PAGE_KEYS[direction]
        self._locator = build_locator(locator)
        self._variable = re.sub(r"\A\$", "", variable or direction)
        if not self._variable:
            raise ArgumentError("pagination variable name required")
        self._max_pages = max_pages
        self._logger = logger or getattr(client, "logger", None) or logging.getLogger(__name__)

    @property
    def direction(self) -> str:
        return self._direction

    @property
    def variable(self) -> str:
        return self._variable

    def execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        on_page: Callable[[Any], None] | None = None,
        *,
        deadline_ts: float | None = None,
    ) -> int:
        """
        Fetch every page, calling ``on_page`` with each response in order.

        Returns the number of pages fetched. Errors from the client abort
        pagination; pages already handed to ``on_page`` stay handled.
        """
        count = 0
        for page in self.pages(query, variables, deadline_ts=deadline_ts):
            if on_page is not None:
                on_page(page)
            count += 1
        return count

    def pages(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        deadline_ts: float | None = None,
    ) -> Iterator[Any]:
        self._check_variable(query)
        return self._iter_pages(query, dict(variables or {}), deadline_ts)

    def _iter_pages(
        self,
        query: str,
        variables: dict[str, Any],
        deadline_ts: float | None,
    ) -> Iterator[Any]:
        previous_cursor = variables.get(self._variable)
        page_number = 0

        while True:
            page = self._client.execute(query, variables, deadline_ts=deadline_ts)
            page_number += 1
            yield page

            cursor = self._locator.find_cursor(page, self._keys)
            log_event(
                self._logger,
                logging.DEBUG,
                "pagination_page",
                "Fetched page",
                page=page_number,
                cursor=cursor,
                direction=self._direction,
            )
            if cursor is None:
                return
            if cursor == previous_cursor:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "pagination_stalled",
                    "Cursor did not advance; stopping pagination",
                    page=page_number,
                    cursor=cursor,
                )
                return
            if self._max_pages is not None and page_number >= self._max_pages:
                return

            variables = {**variables, self._variable: cursor}
            previous_cursor = cursor

    def _check_variable(self, query: str) -> None:
        if not isinstance(query, str) or not re.search(rf"\${re.escape(self._variable)}\s*:", query):
            raise ArgumentError(f"query does not contain the pagination variable '{self._variable}'")
