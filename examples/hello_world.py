"""
=============================================================================
EXAMPLE: HELLO WORLD
=============================================================================

The smallest embedding: one route, one JSON response.

    python examples/hello_world.py
    curl -i http://localhost:8080/

    HTTP/1.1 200 OK
    Content-Type: application/json
    Connection: close
    Server: embedhttp/1.0
    Date: ...
    Content-Length: 25

    {"message":"Hello world"}

Configuration comes from the environment (HTTP_PORT, HTTP_LOG_LEVEL, ...).
Stop with Ctrl+C.

=============================================================================
"""

from embedhttp import App, ServerConfig


app = App(ServerConfig.from_env())


@app.get("/")
def index(request, response):
    response.json([("message", "Hello world")])


if __name__ == "__main__":
    app.run()
