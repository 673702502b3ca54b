"""
Integration tests: a real App on a loopback port, driven with raw sockets.
"""

import errno
import logging
import socket
import threading
import time

import pytest

from conftest import ServerThread, make_config, parse_response, recv_all
from embedhttp import App, BindError, RouterFrozenError


class TestHelloWorld:
    """The canonical embedding."""

    def test_exact_request(self, serve, hello_app):
        """GET / returns the hello-world JSON."""
        server = serve(hello_app)

        raw = server.request(b"GET / HTTP/1.1\r\nHost: x\r\n\r\n")
        status, headers, body = parse_response(raw)

        assert raw.startswith(b"HTTP/1.1 200 OK\r\n")
        assert status == 200
        assert headers["content-type"] == "application/json"
        assert headers["content-length"] == "25"
        assert headers["connection"] == "close"
        assert headers["server"] == "embedhttp/1.0"
        assert headers["date"].endswith(" GMT")
        assert body == b'{"message":"Hello world"}'

    def test_connection_closed_after_response(self, serve, hello_app):
        """One request per connection: the server closes after answering."""
        server = serve(hello_app)

        with server.connect() as sock:
            sock.sendall(b"GET / HTTP/1.1\r\nHost: x\r\n\r\n")
            raw = recv_all(sock)

        assert raw.endswith(b'{"message":"Hello world"}')

    def test_post_json_echo(self, serve, hello_app):
        server = serve(hello_app)
        body = b'{"name": "x", "n": [1, 2]}'

        raw = server.request(
            b"POST /echo HTTP/1.1\r\nHost: x\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(body)}\r\n\r\n".encode()
            + body
        )
        status, _, response_body = parse_response(raw)

        assert status == 200
        assert response_body == b'{"received":{"name":"x","n":[1,2]}}'

    def test_many_sequential_requests(self, serve, hello_app):
        server = serve(hello_app)

        for _ in range(20):
            status, _, body = server.get("/")
            assert status == 200
            assert body == b'{"message":"Hello world"}'


class TestErrors:
    """Error responses on the wire."""

    def test_unknown_route_is_404(self, serve, hello_app):
        server = serve(hello_app)

        status, headers, body = server.get("/nope")

        assert status == 404
        assert headers["content-type"] == "application/json"
        assert body == b'{"error":"Not Found"}'

    def test_malformed_request_then_recovery(self, serve, hello_app):
        """A 400 on one connection does not affect the next."""
        server = serve(hello_app)

        status, headers, body = parse_response(server.request(b"NOT A VALID REQUEST\r\n\r\n"))
        assert status == 400
        assert headers["connection"] == "close"
        assert body == b'{"error":"Bad Request"}'

        status, _, body = server.get("/")
        assert status == 200
        assert body == b'{"message":"Hello world"}'

    def test_handler_exception_isolated(self, serve, hello_app, caplog):
        """A failing handler yields 500 and the server keeps serving."""
        server = serve(hello_app)

        with caplog.at_level(logging.ERROR, logger="embedhttp"):
            status, _, body = server.get("/boom")

        assert status == 500
        assert body == b'{"error":"Internal Server Error"}'
        assert b"exploded" not in body

        status, _, _ = server.get("/")
        assert status == 200

    def test_body_too_large_is_413(self, serve):
        app = App(make_config(max_body_size=10))
        app.post("/upload", lambda request, response: response.text("ok"))
        server = serve(app)

        raw = server.request(b"POST /upload HTTP/1.1\r\nContent-Length: 100\r\n\r\n" + b"x" * 100)

        assert parse_response(raw)[0] == 413

    def test_transfer_encoding_is_501(self, serve, hello_app):
        server = serve(hello_app)

        raw = server.request(
            b"POST /echo HTTP/1.1\r\nTransfer-Encoding: chunked\r\n\r\n0\r\n\r\n"
        )

        assert parse_response(raw)[0] == 501

    def test_invalid_response_from_handler_is_500(self, serve):
        """A handler that sets an impossible status gets a 500 instead."""
        app = App(make_config())

        @app.get("/bad-status")
        def bad_status(request, response):
            response.status = 1000

        @app.get("/bad-header")
        def bad_header(request, response):
            response.set_header("X-Inject", "a\r\nSet-Cookie: x=1")

        server = serve(app)

        assert server.get("/bad-status")[0] == 500
        status, headers, _ = server.get("/bad-header")
        assert status == 500
        assert "set-cookie" not in headers


class TestFraming:
    """Requests split across TCP segments."""

    def test_fragmented_request(self, serve, hello_app):
        server = serve(hello_app)

        with server.connect() as sock:
            for piece in (b"GE", b"T / HT", b"TP/1.1\r\nHo", b"st: x\r", b"\n\r\n"):
                sock.sendall(piece)
                time.sleep(0.02)
            status, _, body = parse_response(recv_all(sock))

        assert status == 200
        assert body == b'{"message":"Hello world"}'

    def test_fragmented_body(self, serve, hello_app):
        server = serve(hello_app)
        body = b'{"k": "v"}'

        with server.connect() as sock:
            sock.sendall(
                b"POST /echo HTTP/1.1\r\n"
                + f"Content-Length: {len(body)}\r\n\r\n".encode()
                + body[:4]
            )
            time.sleep(0.05)
            sock.sendall(body[4:])
            status, _, response_body = parse_response(recv_all(sock))

        assert status == 200
        assert response_body == b'{"received":{"k":"v"}}'


class TestSlowClients:
    """A stalled client cannot hold up anyone else."""

    def test_slow_client_does_not_block_others(self, serve):
        app = App(make_config(read_timeout=1.0))
        app.get("/", lambda request, response: response.json([("ok", True)]))
        server = serve(app)

        with server.connect() as slow:
            slow.sendall(b"GET / HTTP/1.1\r\nHost:")   # never finished

            started = time.monotonic()
            status, _, body = server.get("/")
            elapsed = time.monotonic() - started

            assert status == 200
            assert body == b'{"ok":true}'
            assert elapsed < 0.9

            # The stalled client eventually gets a 408
            status, headers, body = parse_response(recv_all(slow))
            assert status == 408
            assert headers["connection"] == "close"
            assert body == b'{"error":"Request Timeout"}'

    def test_idle_client_times_out(self, serve):
        """A client that connects and sends nothing is answered with 408."""
        app = App(make_config(read_timeout=0.3))
        server = serve(app)

        with server.connect() as sock:
            raw = recv_all(sock)

        assert parse_response(raw)[0] == 408

    def test_connection_cap_returns_503(self, serve):
        """Past max_connections, new clients get 503 right away."""
        app = App(make_config(max_connections=1, read_timeout=2.0))
        app.get("/", lambda request, response: response.text("ok"))
        server = serve(app)

        with server.connect() as holder:
            holder.sendall(b"GET / HTTP/1.1\r\n")   # occupies the only slot
            time.sleep(0.3)

            status, _, body = server.get("/")
            assert status == 503
            assert body == b'{"error":"Server overloaded"}'

            holder.sendall(b"\r\n")
            assert parse_response(recv_all(holder))[0] == 200

    def test_rejected_clients_do_not_stall_accept_loop(self, serve):
        """Over-limit clients that keep their sockets open delay nobody."""
        app = App(make_config(max_connections=1, read_timeout=2.0))
        app.get("/", lambda request, response: response.text("ok"))
        server = serve(app)

        rejected = []
        with server.connect() as holder:
            holder.sendall(b"GET / HTTP/1.1\r\n")   # occupies the only slot
            time.sleep(0.3)
            try:
                started = time.monotonic()
                for _ in range(6):
                    sock = server.connect()
                    rejected.append(sock)
                    sock.sendall(b"GET / HTTP/1.1\r\nHost: x\r\n\r\n")

                # Every 503 arrives while the earlier rejected sockets stay open
                statuses = [parse_response(recv_all(sock))[0] for sock in rejected]
                elapsed = time.monotonic() - started
            finally:
                for sock in rejected:
                    sock.close()

            holder.sendall(b"\r\n")
            assert parse_response(recv_all(holder))[0] == 200

        assert statuses == [503] * 6
        assert elapsed < 1.0

    def test_concurrent_clients(self, serve, hello_app):
        server = serve(hello_app)
        results = []
        lock = threading.Lock()

        def client():
            status, _, _ = server.get("/")
            with lock:
                results.append(status)

        threads = [threading.Thread(target=client) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5.0)

        assert results == [200] * 10


class TestLifecycle:
    """run(), shutdown(), bind errors."""

    def test_bind_error(self):
        """An occupied port fails run() immediately."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]

            app = App(make_config())
            started = time.monotonic()
            with pytest.raises(BindError) as exc_info:
                app.run(port=port)

        assert time.monotonic() - started < 1.0
        assert exc_info.value.errno == errno.EADDRINUSE
        assert exc_info.value.address_in_use
        assert exc_info.value.port == port
        assert isinstance(exc_info.value, OSError)

    def test_port_zero_reports_address(self, serve, hello_app):
        server = serve(hello_app)

        host, port = hello_app.address
        assert host == "127.0.0.1"
        assert port > 0
        assert hello_app.is_running

    def test_explicit_port(self, free_port):
        app = App(make_config())
        app.get("/", lambda request, response: response.text("hi"))
        server = ServerThread(app, port=free_port).start()
        try:
            assert server.port == free_port
            assert server.get("/")[2] == b"hi"
        finally:
            server.stop()

    def test_shutdown_returns_from_run(self, hello_app):
        server = ServerThread(hello_app).start()

        server.stop()

        assert server.stopped
        assert server.error is None
        assert hello_app.address is None
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", server.port), timeout=1.0).close()

    def test_shutdown_from_handler(self):
        app = App(make_config())

        @app.post("/quit")
        def quit_handler(request, response):
            response.json([("stopping", True)])
            app.shutdown()

        server = ServerThread(app).start()
        status, _, body = parse_response(server.request(b"POST /quit HTTP/1.1\r\n\r\n"))

        assert status == 200
        assert body == b'{"stopping":true}'
        server._thread.join(timeout=5.0)
        assert server.stopped

    def test_routes_frozen_while_running(self, serve, hello_app):
        serve(hello_app)

        with pytest.raises(RouterFrozenError):
            hello_app.get("/late", lambda request, response: None)

    def test_access_log(self, serve, caplog):
        app = App(make_config(log_level="INFO"))
        app.get("/logged", lambda request, response: response.text("x"))

        with caplog.at_level(logging.INFO, logger="embedhttp"):
            server = serve(app)
            server.get("/logged?a=1")

            deadline = time.monotonic() + 2.0
            while time.monotonic() < deadline:
                if any(r.name == "embedhttp.access" for r in caplog.records):
                    break
                time.sleep(0.02)

        access = [r.getMessage() for r in caplog.records if r.name == "embedhttp.access"]
        assert access
        assert '"GET /logged?a=1" 200 1' in access[0]
