"""Pytest configuration for sync engine tests

WHAT: Shared fakes and fixtures: a routed Graph API fake behind
      httpx.MockTransport, a recording SyncControl, and a fake asset store
WHY: Every component talks to Meta through an injected httpx.Client, so tests
     run fully offline and never sleep for real
REFERENCES:
    - adsync/services/meta_graph_client.py
    - adsync/services/sync_control.py
"""

import json
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import httpx
import pytest

from adsync.models import Integration
from adsync.services.asset_store import AssetOwner
from adsync.services.meta_graph_client import MetaGraphClient
from adsync.services.sync_control import SyncControl

GRAPH_ROOT = "https://graph.facebook.com/v21.0"
TEST_TOKEN = "test-token"


# ============================================================================
# Fakes
# ============================================================================

class FakeGraph:
    """Routes Graph API requests to canned responses.

    Routes are keyed by (method, path relative to the versioned root). Each
    route holds a queue of responses; the last one is sticky. A response is a
    dict/list (200 JSON), an httpx.Response, an exception to raise, or a
    callable taking the request.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, path: str, *responses: Any, method: str = "GET") -> "FakeGraph":
        self.routes.setdefault((method, path.strip("/")), []).extend(responses)
        return self

    def paths(self, method: str = "GET") -> List[str]:
        return [self._path(r) for r in self.requests if r.method == method]

    def count(self, path: str, method: str = "GET") -> int:
        return self.paths(method).count(path.strip("/"))

    @staticmethod
    def _path(request: httpx.Request) -> str:
        path = request.url.path
        prefix = "/v21.0"
        if path.startswith(prefix):
            path = path[len(prefix):]
        return path.strip("/")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, self._path(request))
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(
                400,
                json={"error": {"code": 100, "message": f"Unknown path {key[1]}"}},
            )

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(request)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)


def graph_error(code: int, status: int = 400, message: str = "error", subcode: Optional[int] = None) -> httpx.Response:
    error = {"code": code, "message": message, "fbtrace_id": "trace"}
    if subcode is not None:
        error["error_subcode"] = subcode
    return httpx.Response(status, json={"error": error})


def batch_items(request: httpx.Request) -> List[Dict[str, str]]:
    form = parse_qs(request.content.decode())
    return json.loads(form["batch"][0])


def batch_responder(bodies: Dict[str, Any]) -> Callable[[httpx.Request], httpx.Response]:
    """Answer a batch call from a map of entity id -> body (or (code, body))."""

    def respond(request: httpx.Request) -> httpx.Response:
        results = []
        for item in batch_items(request):
            entity_id = item["relative_url"].split("?")[0].split("/")[0]
            body = bodies.get(entity_id, {"data": []})
            code = 200
            if isinstance(body, tuple):
                code, body = body
            results.append(None if body is None else {"code": code, "body": json.dumps(body)})
        return httpx.Response(200, json=results)

    return respond


class FakeAssetStore:
    """Asset store that records calls and returns predictable locations."""

    def __init__(self, reject: Tuple[str, ...] = ()):
        self.calls: List[Tuple[str, AssetOwner]] = []
        self.reject = reject

    def download_and_save(self, source_url: str, owner: AssetOwner) -> Optional[str]:
        self.calls.append((source_url, owner))
        if any(marker in source_url for marker in self.reject):
            return None
        name = source_url.rsplit("/", 1)[-1]
        return f"/objects/{owner.integration_id}/{owner.ad_set_external_id}/{name}"

    @property
    def urls(self) -> List[str]:
        return [url for url, _ in self.calls]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def control(sleeps) -> SyncControl:
    return SyncControl(sleep=sleeps.append)


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def http_client(graph):
    client = httpx.Client(transport=httpx.MockTransport(graph.handler))
    yield client
    client.close()


@pytest.fixture
def meta_client(http_client, control) -> MetaGraphClient:
    return MetaGraphClient(TEST_TOKEN, http_client, control=control)


@pytest.fixture
def integration() -> Integration:
    return Integration(
        id="integration-1",
        access_token=TEST_TOKEN,
        account_id="123",
        company_id="company-1",
        account_name="Brand Account",
    )


@pytest.fixture
def asset_store() -> FakeAssetStore:
    return FakeAssetStore()


@pytest.fixture
def owner() -> AssetOwner:
    return AssetOwner(
        integration_id="integration-1",
        ad_set_external_id="as_1",
        ad_external_id="ad_1",
        company_id="company-1",
    )
