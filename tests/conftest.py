import io

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from proxy import create_app


def make_response(url, status=200, body=b"", headers=None, raw=None):
    """A real requests.Response whose body is read from memory."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.headers = CaseInsensitiveDict(headers or {})
    response.raw = raw if raw is not None else io.BytesIO(body)
    return response


class FakeOrigin:
    """Stands in for Session.get, serving canned responses per URL."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, url, status=200, body=b"", headers=None):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = (status, body, headers or {})

    def fail(self, url, error):
        self.routes[url] = error

    def get(self, url, params=None, headers=None, stream=False, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        route = self.routes.get(url)
        if isinstance(route, Exception):
            raise route
        if route is None:
            return make_response(url, 404, b"not found", {"Content-Type": "text/plain"})
        status, body, headers = route
        return make_response(url, status, body, headers)


@pytest.fixture
def app():
    app = create_app({"TESTING": True, "STREAM_CHUNK_SIZE": 8})
    yield app
    app.extensions["upstream"].close()


@pytest.fixture
def origin(app, monkeypatch):
    fake = FakeOrigin()
    monkeypatch.setattr(app.extensions["upstream"].session, "get", fake.get)
    return fake


@pytest.fixture
def client(app, origin):
    return app.test_client()
