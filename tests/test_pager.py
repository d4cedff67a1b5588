import json
import logging
import re

import httpx
import pytest

from graphql_tiny.api.client import GraphQLClient
from graphql_tiny.api.errors import ArgumentError, HTTPError
from graphql_tiny.api.pager import (
    NEXT_PAGE_KEYS,
    PathLocator,
    TreeSearchLocator,
    dig,
    extract_cursor,
)
from graphql_tiny.config import RetryConfig

FORWARD_QUERY = """
query product($id: ID! $after: String) {
  product(id: $id) {
    variants(first: 1 after: $after) {
      pageInfo { hasNextPage endCursor }
      edges { node { position } }
    }
  }
}
"""

BACKWARD_QUERY = """
query product($id: ID! $before: String!) {
  product(id: $id) {
    variants(last: 1 before: $before) {
      pageInfo { hasPreviousPage startCursor }
      edges { node { position } }
    }
  }
}
"""


def variants_page(position: int, page_info: dict, collections: dict | None = None) -> dict:
    product = {
        "variants": {
            "pageInfo": page_info,
            "edges": [{"node": {"position": position}}],
        }
    }
    if collections is not None:
        product = {"collections": collections, **product}
    return {"data": {"product": product}}


def forward_pages(count: int) -> dict[str | None, dict]:
    """Map the incoming ``after`` cursor to the page served for it."""
    pages = {}
    cursor = None
    for position in range(1, count + 1):
        next_cursor = f"c{position:03d}" if position < count else None
        page_info = {"hasNextPage": next_cursor is not None, "endCursor": next_cursor or f"c{position:03d}"}
        pages[cursor] = variants_page(position, page_info)
        cursor = next_cursor
    return pages


class Recorder:
    def __init__(self, pages: dict, variable: str = "after") -> None:
        self.pages = pages
        self.variable = variable
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        cursor = body.get("variables", {}).get(self.variable)
        return httpx.Response(200, json=self.pages[cursor])


def build_client(handler) -> GraphQLClient:
    return GraphQLClient(
        "example",
        "token",
        RetryConfig(max_attempts=1, jitter=False),
        transport=httpx.MockTransport(handler),
        sleep=lambda _: None,
    )


def positions_of(pages: list[dict]) -> list[int]:
    return [page["data"]["product"]["variants"]["edges"][0]["node"]["position"] for page in pages]


def test_paginates_forward_in_order() -> None:
    recorder = Recorder(forward_pages(3))
    client = build_client(recorder)
    seen: list[dict] = []

    count = client.paginate().execute(FORWARD_QUERY, {"id": "gid://shopify/Product/1"}, seen.append)

    assert count == 3
    assert positions_of(seen) == [1, 2, 3]
    assert [request.get("variables", {}).get("after") for request in recorder.requests] == [None, "c001", "c002"]
    assert all(request["variables"]["id"] == "gid://shopify/Product/1" for request in recorder.requests)


def test_single_continuation_then_stop() -> None:
    pages = {
        None: variants_page(1, {"hasNextPage": True, "endCursor": "abc"}),
        "abc": variants_page(2, {"hasNextPage": False, "endCursor": "def"}),
    }
    recorder = Recorder(pages)

    build_client(recorder).paginate("after").execute(FORWARD_QUERY, None, lambda page: None)

    assert len(recorder.requests) == 2
    assert recorder.requests[1]["variables"] == {"after": "abc"}


def test_caller_variables_not_mutated() -> None:
    recorder = Recorder(forward_pages(2))
    variables = {"id": "1"}

    build_client(recorder).paginate().execute(FORWARD_QUERY, variables, lambda page: None)

    assert variables == {"id": "1"}


def test_missing_pagination_variable_fails_before_any_request() -> None:
    recorder = Recorder(forward_pages(2))
    client = build_client(recorder)
    query = FORWARD_QUERY.replace("$after: String", "$afterX: String")

    with pytest.raises(ArgumentError, match="query does not contain the pagination variable 'after'"):
        client.paginate().execute(query, None, lambda page: None)
    with pytest.raises(ArgumentError, match="'afterx'"):
        client.paginate("after", variable="afterx").pages(query)

    assert recorder.requests == []


def test_custom_variable_name_with_or_without_dollar() -> None:
    query = FORWARD_QUERY.replace("$after", "$custom")
    for name in ("custom", "$custom"):
        recorder = Recorder(forward_pages(2), variable="custom")
        pager = build_client(recorder).paginate("after", variable=name)

        pages = list(pager.pages(query, {"id": "1"}))

        assert pager.variable == "custom"
        assert positions_of(pages) == [1, 2]


def test_paginates_backward() -> None:
    pages = {
        "start": variants_page(3, {"hasPreviousPage": True, "startCursor": "b2"}),
        "b2": variants_page(2, {"hasPreviousPage": True, "startCursor": "b1"}),
        "b1": variants_page(1, {"hasPreviousPage": False, "startCursor": None}),
    }
    recorder = Recorder(pages, variable="before")

    seen = list(build_client(recorder).paginate("before").pages(BACKWARD_QUERY, {"before": "start"}))

    assert positions_of(seen) == [3, 2, 1]


def test_invalid_direction_and_locator() -> None:
    client = build_client(Recorder({}))

    with pytest.raises(ArgumentError, match="invalid pagination option"):
        client.paginate("sideways")
    with pytest.raises(ArgumentError, match="invalid pagination locator"):
        client.paginate(locator=42)


def test_path_locator_uses_given_field() -> None:
    collections = {"pageInfo": {"hasNextPage": False, "endCursor": None}, "edges": []}
    pages = {None: variants_page(1, {"hasNextPage": True, "endCursor": "next"}, collections)}
    for path in (["product", "collections"], ["data", "product", "collections", "pageInfo"]):
        recorder = Recorder(pages)
        seen: list[dict] = []

        build_client(recorder).paginate(locator=path).execute(FORWARD_QUERY, None, seen.append)

        assert positions_of(seen) == [1]
        assert len(recorder.requests) == 1


def test_path_locator_normalization() -> None:
    assert PathLocator(["product", "variants", "pageInfo"]).path == ["data", "product", "variants"]
    assert PathLocator(["data", "product"]).path == ["data", "product"]


def test_path_type_mismatch_reports_original_path() -> None:
    path = ["product", "variants", "edges", "BOGUS"]
    recorder = Recorder(forward_pages(2))
    seen: list[dict] = []

    with pytest.raises(ArgumentError, match=re.escape(f"invalid pagination path {path!r}:")):
        build_client(recorder).paginate(locator=path).execute(FORWARD_QUERY, None, seen.append)

    # The page is handed to the callback before the cursor lookup fails
    assert len(seen) == 1


def test_callable_locator() -> None:
    collections = {"pageInfo": {"hasNextPage": False, "endCursor": None}}
    pages = {
        None: variants_page(1, {"hasNextPage": True, "endCursor": "next"}, {**collections}),
        "next": variants_page(2, {"hasNextPage": False, "endCursor": None}),
    }

    def finder(data: dict) -> dict:
        return data["data"]["product"]["variants"]["pageInfo"]

    seen = list(build_client(Recorder(pages)).paginate(locator=finder).pages(FORWARD_QUERY))

    assert positions_of(seen) == [1, 2]


def test_tree_search_skips_exhausted_page_info() -> None:
    collections = {"pageInfo": {"hasNextPage": False, "endCursor": "old"}}
    response = variants_page(1, {"hasNextPage": True, "endCursor": "variant-cursor"}, collections)

    assert TreeSearchLocator().find_cursor(response, NEXT_PAGE_KEYS["after"]) == "variant-cursor"


def test_tree_search_depth_cap() -> None:
    node: dict = {"pageInfo": {"hasNextPage": True, "endCursor": "deep"}}
    for _ in range(100):
        node = {"nested": node}

    assert TreeSearchLocator().find_cursor(node, NEXT_PAGE_KEYS["after"]) is None
    assert TreeSearchLocator(max_depth=200).find_cursor(node, NEXT_PAGE_KEYS["after"]) == "deep"


def test_tree_search_walks_lists() -> None:
    response = {"data": {"nodes": [{"id": 1}, {"children": {"pageInfo": {"hasNextPage": True, "endCursor": "x"}}}]}}

    assert TreeSearchLocator().find_cursor(response, NEXT_PAGE_KEYS["after"]) == "x"


def test_extract_cursor_accepts_page_info_or_parent() -> None:
    keys = NEXT_PAGE_KEYS["before"]
    page_info = {"hasPreviousPage": True, "startCursor": "s"}

    assert extract_cursor({"pageInfo": page_info}, keys) == "s"
    assert extract_cursor(page_info, keys) == "s"
    assert extract_cursor({"pageInfo": {"hasPreviousPage": False, "startCursor": "s"}}, keys) is None
    assert extract_cursor(None, keys) is None


def test_dig() -> None:
    data = {"a": [{"b": 1}]}

    assert dig(data, ["a", 0, "b"]) == 1
    assert dig(data, ["missing", "b"]) is None
    with pytest.raises(TypeError):
        dig(data, ["a", "b"])
    with pytest.raises(TypeError):
        dig(data, ["a", 0, "b", "c"])


def test_stalled_cursor_stops(caplog: pytest.LogCaptureFixture) -> None:
    pages = {
        None: variants_page(1, {"hasNextPage": True, "endCursor": "same"}),
        "same": variants_page(2, {"hasNextPage": True, "endCursor": "same"}),
    }
    recorder = Recorder(pages)

    with caplog.at_level(logging.WARNING):
        seen = list(build_client(recorder).paginate().pages(FORWARD_QUERY))

    assert positions_of(seen) == [1, 2]
    assert any(getattr(record, "event", None) == "pagination_stalled" for record in caplog.records)


def test_max_pages() -> None:
    recorder = Recorder(forward_pages(5))

    count = build_client(recorder).paginate(max_pages=2).execute(FORWARD_QUERY, None, lambda page: None)

    assert count == 2
    assert len(recorder.requests) == 2


def test_page_error_aborts_pagination() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(200, json=variants_page(1, {"hasNextPage": True, "endCursor": "c1"}))
        return httpx.Response(500, text="boom")

    seen: list[dict] = []
    with pytest.raises(HTTPError):
        build_client(handler).paginate().execute(FORWARD_QUERY, None, seen.append)

    assert positions_of(seen) == [1]
    assert calls == 2


def test_empty_cursor_is_passed_through() -> None:
    pages = {
        None: variants_page(1, {"hasNextPage": True, "endCursor": ""}),
        "": variants_page(2, {"hasNextPage": False, "endCursor": "z"}),
    }
    recorder = Recorder(pages)

    count = build_client(recorder).paginate().execute(FORWARD_QUERY, None, lambda page: None)

    assert count == 2
    assert recorder.requests[1]["variables"] == {"after": ""}
    assert extract_cursor({"hasNextPage": True, "endCursor": ""}, NEXT_PAGE_KEYS["after"]) == ""
