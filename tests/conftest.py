import json
from io import BytesIO
from urllib.parse import urlparse

import pytest
from PIL import Image

from playlistbot.config import Settings


class FakeResponse:
    def __init__(self, status_code, payload=None, headers=None, text=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._payload = payload
        if text is not None:
            self.text = text
        else:
            self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


class FakeSession:
    """Routes requests to ``handler(method, path, **kwargs)`` and records every call."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def request(self, method, url, **kwargs):
        path = urlparse(url).path
        self.calls.append({"method": method, "url": url, "path": path, **kwargs})
        return self.handler(method, path, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def put(self, url, **kwargs):
        return self.request("PUT", url, **kwargs)

    def paths(self, method=None):
        return [c["path"] for c in self.calls if method is None or c["method"] == method]


def chat_response(plan):
    return FakeResponse(
        200, {"choices": [{"message": {"content": json.dumps(plan)}}]}
    )


def png_bytes(size=(64, 64), color=(200, 40, 90)):
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def settings():
    return Settings(
        spotify_client_id="client-id",
        spotify_client_secret="client-secret",
        spotify_refresh_token="refresh-token",
        openai_api_key="sk-test",
    )
