from __future__ import annotations

from typing import Dict, List, Tuple, Union

import requests
from requests.structures import CaseInsensitiveDict

Route = Union[str, bytes, Tuple[int, Union[str, bytes]], Tuple[int, Union[str, bytes], str]]


class FakeSession:
    """In-memory stand-in for requests.Session; unknown URLs answer 404."""

    def __init__(self, routes: Dict[str, Route]) -> None:
        self.routes = routes
        self.calls: List[str] = []

    def get(self, url: str, timeout=None, **_kwargs) -> requests.Response:
        self.calls.append(url)
        route = self.routes.get(url, (404, b"not found"))
        if isinstance(route, tuple):
            status, body = route[0], route[1]
            content_type = route[2] if len(route) > 2 else guess_type(url)
        else:
            status, body, content_type = 200, route, guess_type(url)
        resp = requests.Response()
        resp.status_code = status
        resp._content = body.encode("utf-8") if isinstance(body, str) else body
        resp.headers = CaseInsensitiveDict({"Content-Type": content_type})
        resp.url = url
        resp.encoding = "utf-8"
        return resp

    def count(self, url: str) -> int:
        return self.calls.count(url)


def guess_type(url: str) -> str:
    path = url.split("?", 1)[0]
    if path.endswith((".js", ".mjs")):
        return "application/javascript"
    if path.endswith(".css"):
        return "text/css"
    if path.endswith((".json", ".map")):
        return "application/json"
    if path.endswith(".png"):
        return "image/png"
    return "text/html; charset=utf-8"
