"""
Pytest configuration and shared fixtures for the Dockhand Agent tests.

Provides mock servers that stand in for the two things the agent talks to:
  - a container runtime, served over TCP and over a Unix socket
  - the remote fleet service, which records every request it receives
"""

import json
import os
import shutil
import socketserver
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, List

import pytest

# Add project root to Python path for imports
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


CONTAINER_IDS = ["a" * 64, "b" * 64]

CONTAINERS = [
    {"Id": CONTAINER_IDS[0], "Names": ["/web"], "Image": "web:latest", "State": "running"},
    {"Id": CONTAINER_IDS[1], "Names": ["/db"], "Image": "postgres:16", "State": "exited"},
]

IMAGES = [
    {
        "Id": "sha256:" + "1" * 64,
        "Created": 1700000000,
        "RepoTags": ["web:latest"],
        "Size": 1024,
        "VirtualSize": 2048,
        "Labels": None,
    },
    {
        "Id": "sha256:" + "2" * 64,
        "Created": 1700000100,
        "RepoTags": None,
        "Size": 512,
    },
]


def inspect_result(container_id: str) -> dict:
    return {"Id": container_id, "State": {"Running": True, "Pid": 4242}, "Config": {"Hostname": container_id[:12]}}


@dataclass
class Recorded:
    method: str
    path: str
    headers: dict
    body: bytes

    def json(self):
        return json.loads(self.body)


@dataclass
class MockServer:
    url: str
    requests: List[Recorded] = field(default_factory=list)
    fail_paths: set = field(default_factory=set)

    def posts_to(self, path: str) -> List[Recorded]:
        return [r for r in self.requests if r.method == "POST" and r.path == path]


# ============================================================================
# Handlers
# ============================================================================


class _RecordingHandler(BaseHTTPRequestHandler):
    state: MockServer = None

    def log_message(self, format, *args):
        pass

    def _record(self) -> Recorded:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        rec = Recorded(self.command, self.path, dict(self.headers.items()), body)
        self.state.requests.append(rec)
        return rec

    def _reply(self, status: int, payload, content_type="application/json", extra=None):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for k, v in (extra or {}).items():
            self.send_header(k, v)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)


class RuntimeHandler(_RecordingHandler):
    """Answers the handful of runtime endpoints the agent uses."""

    def _route(self):
        self._record()
        path = self.path.split("?", 1)[0]
        extra = {"X-Runtime": "mock", "Api-Version": "1.41"}

        if path in self.state.fail_paths:
            return self._reply(500, {"message": "boom"}, extra=extra)
        if path == "/_ping":
            return self._reply(200, b"OK", content_type="text/plain", extra=extra)
        if path.endswith("/containers/json") or path == "/containers/json":
            return self._reply(200, CONTAINERS, extra=extra)
        if path.endswith("/images/json") or path == "/images/json":
            return self._reply(200, IMAGES, extra=extra)
        parts = path.strip("/").split("/")
        if len(parts) >= 3 and parts[-3] == "containers" and parts[-1] == "json":
            if parts[-2] in CONTAINER_IDS:
                return self._reply(200, inspect_result(parts[-2]), extra=extra)
            return self._reply(404, {"message": f"No such container: {parts[-2]}"}, extra=extra)
        if "attach" in parts:
            return self._reply(200, b"hello from the container\n",
                               content_type="application/vnd.docker.raw-stream", extra=extra)
        return self._reply(404, {"message": "page not found"}, extra=extra)

    do_GET = do_POST = do_PUT = do_DELETE = do_HEAD = _route


class RemoteHandler(_RecordingHandler):
    """Fleet service: accepts uploads and hands out a key at registration."""

    def do_POST(self):
        rec = self._record()
        if rec.path in self.state.fail_paths:
            return self._reply(500, {"detail": "nope"})
        if rec.path == "/agent/register/":
            return self._reply(200, {"key": "abc123"})
        return self._reply(200, {"ok": True})


class ThreadingUnixHTTPServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


def _handler_for(base, state: MockServer):
    return type(base.__name__, (base,), {"state": state})


def _serve(server):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def tcp_runtime():
    """Mock runtime reachable over HTTP on 127.0.0.1."""
    state = MockServer(url="")
    server = ThreadingHTTPServer(("127.0.0.1", 0), _handler_for(RuntimeHandler, state))
    server.daemon_threads = True
    state.url = f"http://127.0.0.1:{server.server_address[1]}"
    _serve(server)
    yield state
    server.shutdown()
    server.server_close()


@pytest.fixture
def short_tmp():
    """Short temp dir; Unix socket paths are limited to ~100 bytes."""
    path = tempfile.mkdtemp(prefix="dh-")
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def unix_runtime(short_tmp):
    """Mock runtime listening on a Unix domain socket; `url` is the socket path."""
    sock_path = str(short_tmp / "runtime.sock")
    state = MockServer(url=sock_path)
    server = ThreadingUnixHTTPServer(sock_path, _handler_for(RuntimeHandler, state))
    _serve(server)
    yield state
    server.shutdown()
    server.server_close()
    if os.path.exists(sock_path):
        os.unlink(sock_path)


@pytest.fixture
def mock_remote():
    """Mock fleet service recording every upload."""
    state = MockServer(url="")
    server = ThreadingHTTPServer(("127.0.0.1", 0), _handler_for(RemoteHandler, state))
    server.daemon_threads = True
    state.url = f"http://127.0.0.1:{server.server_address[1]}"
    _serve(server)
    yield state
    server.shutdown()
    server.server_close()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep DOCKHAND_* variables from the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("DOCKHAND_"):
            monkeypatch.delenv(name)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
