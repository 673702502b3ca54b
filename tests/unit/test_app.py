"""
Unit tests for App routing and dispatch (no sockets).
"""

import logging

import pytest

from embedhttp import App, NOT_FOUND, RouterFrozenError, create_app
from embedhttp.config import ServerConfig
from embedhttp.http.request import Request, parse_request


def make_request(method: str, path: str, body: bytes = b"") -> Request:
    """Helper to create a request for testing."""
    return Request(method=method, path=path, body=body)


class TestRegistration:
    """App route helpers delegate to its Router."""

    def test_decorator_and_direct(self):
        app = App()

        @app.get("/a")
        def a(request, response):
            pass

        def b(request, response):
            pass

        app.post("/b", b)

        assert app.router.match("GET", "/a") is a
        assert app.router.match("POST", "/b") is b

    @pytest.mark.parametrize("method", ["get", "post", "put", "delete", "patch", "head", "options"])
    def test_method_helpers(self, method):
        app = App()

        def handler(request, response):
            pass

        getattr(app, method)("/x", handler)
        assert app.router.match(method.upper(), "/x") is handler

    def test_route_any_method(self):
        app = App()

        def handler(request, response):
            pass

        app.route("/x", "REPORT", handler)
        assert app.router.match("REPORT", "/x") is handler
        assert app.router.match("GET", "/x") is NOT_FOUND

    def test_create_app(self):
        config = ServerConfig(port=1234)
        app = create_app(config)

        assert isinstance(app, App)
        assert app.config is config

    def test_not_running_before_run(self):
        app = App()
        assert app.address is None
        assert app.is_running is False
        assert app.wait_until_ready(timeout=0.01) is False


class TestDispatch:
    """Tests for App.dispatch()."""

    def test_hello_world(self):
        app = App()

        @app.get("/")
        def index(request, response):
            response.json([("message", "Hello world")])

        response = app.dispatch(make_request("GET", "/"))

        assert response.status == 200
        assert response.body == b'{"message":"Hello world"}'
        assert response.get_header("Content-Type") == "application/json"

    def test_handler_sees_request(self):
        app = App()

        @app.post("/echo")
        def echo(request, response):
            response.status = 201
            response.json([("method", request.method), ("got", request.json)])

        response = app.dispatch(make_request("POST", "/echo", b'{"a": 1}'))

        assert response.status == 201
        assert response.body == b'{"method":"POST","got":{"a":1}}'

    def test_no_route_is_404(self):
        response = App().dispatch(make_request("GET", "/missing"))

        assert response.status == 404
        assert response.body == b'{"error":"Not Found"}'

    def test_wrong_method_is_404(self):
        app = App()
        app.get("/only-get", lambda request, response: None)

        assert app.dispatch(make_request("POST", "/only-get")).status == 404

    def test_encoded_slash_does_not_match_shorter_route(self):
        """/a%2F is a different resource from /a."""
        app = App()
        app.get("/a", lambda request, response: response.text("a"))

        request = parse_request(b"GET /a%2F HTTP/1.1\r\n\r\n")

        assert app.dispatch(request).status == 404
        assert app.dispatch(parse_request(b"GET /a/ HTTP/1.1\r\n\r\n")).status == 200

    def test_handler_exception_is_500(self, caplog):
        """Exceptions become a generic 500 and the traceback is logged."""
        app = App()

        @app.get("/boom")
        def boom(request, response):
            response.set_header("X-Partial", "1")
            raise ValueError("secret detail")

        with caplog.at_level(logging.ERROR, logger="embedhttp"):
            response = app.dispatch(make_request("GET", "/boom"))

        assert response.status == 500
        assert response.body == b'{"error":"Internal Server Error"}'
        assert b"secret" not in response.body
        assert response.get_header("X-Partial") is None
        assert "Handler error for GET /boom" in caplog.text
        assert "ValueError: secret detail" in caplog.text

    def test_invalid_json_body_is_400(self):
        """An HTTPParseError escaping a handler keeps its status."""
        app = App()

        @app.post("/json")
        def needs_json(request, response):
            response.json([("got", request.json)])

        response = app.dispatch(make_request("POST", "/json", b"{broken"))

        assert response.status == 400
        assert response.body == b'{"error":"Bad Request"}'

    def test_handler_can_return_nothing(self):
        """A handler that does nothing yields an empty 200."""
        app = App()
        app.get("/", lambda request, response: None)

        response = app.dispatch(make_request("GET", "/"))

        assert response.status == 200
        assert response.body == b""


class TestRunValidation:
    """run() fails before binding on a bad configuration."""

    def test_invalid_config(self):
        app = App(ServerConfig(read_timeout=0, handle_signals=False))

        with pytest.raises(ValueError):
            app.run(port=0)

    def test_routes_not_frozen_by_failed_run(self):
        app = App(ServerConfig(max_connections=0, handle_signals=False))

        with pytest.raises(ValueError):
            app.run(port=0)

        app.get("/still-open", lambda request, response: None)

    def test_frozen_error_type(self):
        app = App()
        app.router.freeze()

        with pytest.raises(RouterFrozenError):
            app.get("/late", lambda request, response: None)
