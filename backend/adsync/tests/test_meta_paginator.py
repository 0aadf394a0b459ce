"""Unit tests for MetaPaginator.

WHAT: Following paging.next links, inter-page throttling and progress callbacks
WHY: A missed page silently drops campaigns; a sleep after the last page
     wastes time on every edge of every sync
"""

from adsync.services.meta_paginator import MetaPaginator

from conftest import GRAPH_ROOT, TEST_TOKEN, graph_error


def _next(cursor: str) -> str:
    return f"{GRAPH_ROOT}/act_1/campaigns?after={cursor}&access_token={TEST_TOKEN}"


class TestFetchAllPages:
    def test_collects_items_across_pages(self, graph, meta_client, sleeps):
        graph.add(
            "act_1/campaigns",
            {"data": [{"id": "1"}, {"id": "2"}], "paging": {"next": _next("a")}},
            {"data": [{"id": "3"}], "paging": {"next": _next("b")}},
            {"data": [{"id": "4"}], "paging": {}},
        )
        paginator = MetaPaginator(meta_client, page_delay=2.0)

        items = paginator.fetch_all_pages(meta_client.build_url("act_1/campaigns", {"limit": 2}))

        assert [item["id"] for item in items] == ["1", "2", "3", "4"]
        assert graph.count("act_1/campaigns") == 3

    def test_sleeps_between_pages_but_not_after_last(self, graph, meta_client, sleeps):
        """WHAT: N pages produce exactly N-1 page delays."""
        graph.add(
            "act_1/campaigns",
            {"data": [{"id": "1"}], "paging": {"next": _next("a")}},
            {"data": [{"id": "2"}], "paging": {"next": _next("b")}},
            {"data": [{"id": "3"}]},
        )

        MetaPaginator(meta_client, page_delay=2.0).fetch_all_pages(meta_client.build_url("act_1/campaigns"))

        assert sleeps == [2.0, 2.0]

    def test_empty_first_page_returns_empty_list(self, graph, meta_client, sleeps):
        graph.add("act_1/campaigns", {"data": []})

        items = MetaPaginator(meta_client).fetch_all_pages(meta_client.build_url("act_1/campaigns"))

        assert items == []
        assert sleeps == []

    def test_on_page_receives_running_totals(self, graph, meta_client):
        graph.add(
            "act_1/campaigns",
            {"data": [{"id": "1"}, {"id": "2"}], "paging": {"next": _next("a")}},
            {"data": [{"id": "3"}]},
        )
        pages = []

        MetaPaginator(meta_client).fetch_all_pages(
            meta_client.build_url("act_1/campaigns"),
            on_page=lambda page, total: pages.append((page, total)),
        )

        assert pages == [(1, 2), (2, 3)]

    def test_retried_page_is_not_duplicated(self, graph, meta_client, sleeps):
        """WHAT: A page that hit a rate limit is fetched again, not appended twice."""
        graph.add(
            "act_1/campaigns",
            {"data": [{"id": "1"}], "paging": {"next": _next("a")}},
            graph_error(17),
            {"data": [{"id": "2"}]},
        )

        items = MetaPaginator(meta_client, page_delay=2.0).fetch_all_pages(meta_client.build_url("act_1/campaigns"))

        assert [item["id"] for item in items] == ["1", "2"]
        assert sleeps == [2.0, 3.0]
