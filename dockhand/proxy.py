"""
Runtime Proxy
=============

A Flask app with one catch-all route that forwards every method and path to
the local runtime through RuntimeClient, then streams the runtime's status,
headers and body back to the caller.

Unix-socket runtimes get a fresh socket connection per request; TCP
runtimes share the client's pooled session, so only the destination host
changes. Paths with an `attach` segment are forced to return buffered
stdout logs (logs=1&stream=0&stdout=1).

A runtime that cannot be dialed yields a 500 for that request only.
"""

from __future__ import annotations
import logging
from contextlib import ExitStack

import requests
from flask import Flask, Response, request, stream_with_context
from werkzeug.serving import BaseWSGIServer, make_server

from .errors import RuntimeUnreachable
from .runtime import RuntimeClient

log = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

ATTACH_PARAMS = "logs=1&stream=0&stdout=1"

# RFC 7230 §6.1, plus Host which the runtime session sets itself
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "trailers", "transfer-encoding", "upgrade", "host",
}

CHUNK_SIZE = 64 * 1024


def is_attach_path(path: str) -> bool:
    return "attach" in path.strip("/").split("/")


def forward_query(path: str, query: str) -> str:
    if is_attach_path(path):
        return f"{query}&{ATTACH_PARAMS}" if query else ATTACH_PARAMS
    return query


def end_to_end(headers) -> list[tuple[str, str]]:
    return [(k, v) for k, v in headers.items() if k.lower() not in HOP_BY_HOP]


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "-"


def create_proxy_app(client: RuntimeClient) -> Flask:
    app = Flask(__name__)

    @app.route("/", defaults={"path": ""}, methods=ALL_METHODS)
    @app.route("/<path:path>", methods=ALL_METHODS)
    def forward(path: str):
        target = "/" + path
        query  = forward_query(target, request.query_string.decode("latin-1"))
        log.info(f"[proxy] {client_ip()} {request.method} {target}{'?' + query if query else ''}")

        stack = ExitStack()
        try:
            upstream = stack.enter_context(client.open(
                request.method,
                f"{target}?{query}" if query else target,
                headers = dict(end_to_end(request.headers)),
                data    = request.get_data() or None,
                stream  = True,
            ))
        except RuntimeUnreachable as e:
            stack.close()
            log.error(f"[proxy] {request.method} {target}: {e}")
            return Response(f"Error connecting to runtime: {e.reason}\n", status=500, mimetype="text/plain")
        except requests.RequestException as e:
            stack.close()
            log.error(f"[proxy] {request.method} {target}: {e}")
            return Response(f"Error talking to runtime: {e}\n", status=502, mimetype="text/plain")

        def body():
            yield from upstream.raw.stream(CHUNK_SIZE, decode_content=False)

        response = Response(
            stream_with_context(body()),
            status  = upstream.status_code,
            headers = end_to_end(upstream.headers),
        )
        response.call_on_close(stack.close)
        return response

    return app


def serve(app: Flask, address: str, port: int) -> BaseWSGIServer:
    """Threaded WSGI server; the caller runs serve_forever()."""
    return make_server(address, port, app, threaded=True)
