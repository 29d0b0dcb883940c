"""
Runtime Client
==============

Talks HTTP to the local container runtime, whichever transport it uses.

  - TcpEndpoint:  one pooled requests.Session against the base URL
  - UnixEndpoint: a fresh Session per call with docker's UnixHTTPAdapter
                  mounted, so every call dials its own socket connection
                  and nothing is shared between threads

Both expose the same `open()` context manager, so collectors and the proxy
never look at the transport.
"""

from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import requests
from docker.transport import UnixHTTPAdapter

from .config import DEFAULT_TIMEOUT, RuntimeEndpoint, TcpEndpoint, UnixEndpoint
from .errors import MalformedPayloadError, RuntimeResponseError, RuntimeUnreachable

log = logging.getLogger(__name__)

UNIX_BASE_URL = "http+docker://localhost"


class RuntimeClient:
    def __init__(
        self,
        endpoint:    RuntimeEndpoint,
        api_version: Optional[str] = None,
        timeout:     float         = DEFAULT_TIMEOUT,
    ):
        self.endpoint    = endpoint
        self.api_version = api_version.strip("/") if api_version else None
        self.timeout     = timeout

        if isinstance(endpoint, TcpEndpoint):
            self.base_url = endpoint.url
            self._pooled: Optional[requests.Session] = requests.Session()
        elif isinstance(endpoint, UnixEndpoint):
            self.base_url = UNIX_BASE_URL
            self._pooled = None
        else:
            raise TypeError(f"unknown runtime endpoint {endpoint!r}")

    # ─── Sessions ─────────────────────────────────────────────────────────────

    def _unix_session(self) -> requests.Session:
        session = requests.Session()
        session.mount(
            "http+docker://",
            UnixHTTPAdapter(f"http+unix://{self.endpoint.path}", timeout=self.timeout),
        )
        return session

    def path_for(self, *segments: str) -> str:
        """Build a runtime path, prefixed with the API version when one is set."""
        parts = [self.api_version] if self.api_version else []
        parts += [s.strip("/") for s in segments if s]
        return "/" + "/".join(parts)

    # ─── Requests ─────────────────────────────────────────────────────────────

    @contextmanager
    def open(
        self,
        method:  str,
        path:    str,
        params:  Any            = None,
        headers: Optional[dict] = None,
        data:    Any            = None,
        stream:  bool           = False,
    ) -> Iterator[requests.Response]:
        """
        Issue one request and yield the response.
        The connection (and in Unix mode the one-shot session) is released on exit.
        Raises RuntimeUnreachable when the runtime cannot be dialed.
        """
        session = self._pooled if self._pooled is not None else self._unix_session()
        owned   = self._pooled is None
        try:
            try:
                resp = session.request(
                    method,
                    self.base_url + path,
                    params  = params,
                    headers = headers,
                    data    = data,
                    stream  = stream,
                    timeout = self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                raise RuntimeUnreachable(str(self.endpoint), e) from e
            try:
                yield resp
            finally:
                resp.close()
        finally:
            if owned:
                session.close()

    def get_json(self, path: str, params: Any = None) -> Any:
        with self.open("GET", path, params=params) as resp:
            if not resp.ok:
                raise RuntimeResponseError(path, resp.status_code, resp.text)
            try:
                return resp.json()
            except ValueError as e:
                raise MalformedPayloadError(f"runtime returned invalid JSON for {path}: {e}") from e

    def ping(self) -> bool:
        """Cheap reachability check used once at startup."""
        with self.open("GET", self.path_for("_ping")) as resp:
            return resp.ok

    def close(self):
        if self._pooled is not None:
            self._pooled.close()
