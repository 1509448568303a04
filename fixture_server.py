from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import unquote, urlparse

import requests
from flask import Flask, Response, jsonify, request
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict
from werkzeug.serving import make_server


STATIC_FIXTURES: Dict[str, Tuple[bytes, str]] = {
    "/sub folder/countries-bg.jpeg": (b"fake-jpeg-data", "image/jpeg"),
    "/foo.html": (b"<p>foo</p>\n", "text/html; charset=utf-8"),
    "/styles/site.css": (b"body { background: url(../images/bg.png); }\n", "text/css"),
    "/images/bg.png": (b"fake-png-data", "image/png"),
    "/images/logo.svg": (b"<svg xmlns='http://www.w3.org/2000/svg'/>", "image/svg+xml"),
}

Route = Union[Tuple[bytes, str], int, Exception]


def create_fixture_app() -> Flask:
    app = Flask(__name__)
    hits: Dict[str, int] = {}
    app.config["HITS"] = hits

    @app.get("/slow")
    def slow():
        time.sleep(float(request.args.get("delay", "1")))
        return Response(b"slow", mimetype="text/plain")

    @app.get("/status/<int:code>")
    def status(code: int):
        return Response(request.args.get("message", f"status {code}"), status=code)

    @app.get("/flaky/<key>")
    def flaky(key: str):
        hits[key] = hits.get(key, 0) + 1
        if hits[key] <= int(request.args.get("failures", "2")):
            return Response("try again", status=503)
        return Response(f"ok after {hits[key]}", mimetype="text/plain")

    @app.route("/echo", methods=["POST", "PUT"])
    def echo():
        files = {
            name: {
                "filename": storage.filename,
                "content_type": storage.mimetype,
                "size": len(storage.read()),
            }
            for name, storage in request.files.items()
        }
        return jsonify(
            {
                "method": request.method,
                "content_type": request.mimetype,
                "form": request.form.to_dict(),
                "files": files,
                "json": request.get_json(silent=True),
                "user_agent": request.headers.get("User-Agent", ""),
            }
        )

    @app.get("/<path:path>")
    def static_fixture(path: str):
        fixture = STATIC_FIXTURES.get("/" + path)
        if fixture is None:
            return Response("not found", status=404)
        body, content_type = fixture
        return Response(body, content_type=content_type)

    return app


class FixtureServer:
    """A Flask app on an ephemeral loopback port, served from a thread."""

    def __init__(self, app: Optional[Flask] = None) -> None:
        self.app = app or create_fixture_app()
        self._server = make_server("127.0.0.1", 0, self.app, threaded=True)
        self.port = int(self._server.server_port)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def start(self) -> "FixtureServer":
        self._thread.start()
        return self

    def close(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)

    def __enter__(self) -> "FixtureServer":
        return self.start()

    def __exit__(self, *_exc: object) -> None:
        self.close()


class FixtureAdapter(BaseAdapter):
    """Serves canned responses for exact URLs without opening sockets.

    A route is ``(body, content_type)``, an HTTP status code, or an exception
    to raise. URLs are matched with their path percent-decoded.
    """

    def __init__(self, routes: Dict[str, Route], delays: Optional[Dict[str, float]] = None) -> None:
        super().__init__()
        self.routes = {self._key(url): route for url, route in routes.items()}
        self.delays = {self._key(url): delay for url, delay in (delays or {}).items()}
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def _key(self, url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}{unquote(parsed.path)}"

    def count(self, url: str) -> int:
        key = self._key(url)
        with self._lock:
            return sum(1 for call in self.calls if self._key(call) == key)

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        key = self._key(request.url)
        with self._lock:
            self.calls.append(request.url)
        delay = self.delays.get(key)
        if delay:
            time.sleep(delay)

        route = self.routes.get(key, 404)
        if isinstance(route, Exception):
            raise route

        response = requests.Response()
        response.url = request.url
        response.request = request
        if isinstance(route, int):
            response.status_code = route
            response.reason = "Fixture status"
            response._content = f"status {route}".encode("utf-8")
            response.headers = CaseInsensitiveDict({"content-type": "text/plain"})
        else:
            body, content_type = route
            response.status_code = 200
            response.reason = "OK"
            response._content = body
            response.headers = CaseInsensitiveDict({"content-type": content_type} if content_type else {})
        return response

    def close(self) -> None:
        pass


def fixture_session(adapter: FixtureAdapter, *prefixes: str) -> requests.Session:
    session = requests.Session()
    for prefix in prefixes:
        session.mount(prefix, adapter)
    return session
