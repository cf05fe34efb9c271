import json

import httpx
import pytest

from amg_portal.amg_client import FHIR_PREFIX, GRAPHQL_PATH, AmgClient

BASE_URL = "https://amg.test"


def _response(status: int, payload=None, text=None) -> httpx.Response:
    if payload is not None:
        return httpx.Response(status, json=payload)
    return httpx.Response(status, text=text or "")


class FakeAmg:
    """Canned AMG upstream behind an httpx.MockTransport."""

    def __init__(self):
        self.routes: dict[tuple[str, str], tuple] = {}
        self.graphql_routes: dict[str, tuple] = {}
        self.requests: list[httpx.Request] = []
        self.reply("POST", "/login/", payload={"token": "secret-token"})

    def reply(self, method: str, path: str, status: int = 200, payload=None, text=None) -> None:
        self.routes[(method, FHIR_PREFIX + path)] = (status, payload, text)

    def graphql(self, field: str, status: int = 200, payload=None, text=None) -> None:
        self.graphql_routes[field] = (status, payload, text)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == GRAPHQL_PATH:
            query = json.loads(request.content)["query"]
            for field, canned in self.graphql_routes.items():
                if field in query:
                    return _response(*canned)
            return httpx.Response(200, json={"data": {}})
        canned = self.routes.get((request.method, request.url.path))
        if canned is None:
            return httpx.Response(404, json={"resourceType": "OperationOutcome", "issue": []})
        return _response(*canned)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def client(self, username: str = "user", password: str = "pass") -> AmgClient:
        return AmgClient(
            BASE_URL, username, password, transport=httpx.MockTransport(self.handler)
        )


@pytest.fixture
def fake_amg() -> FakeAmg:
    return FakeAmg()
