"""
Agent Configuration
===================

One immutable `AgentConfig` is built at startup and handed to every
component's constructor. Nothing reads configuration from module state.

Sources, highest precedence first:
  1. command-line flags
  2. DOCKHAND_* environment variables
  3. the JSON config file (~/.dockhand/agent.json), which register mode
     writes so the issued agent key survives restarts
  4. built-in defaults
"""

from __future__ import annotations
import argparse
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union
from urllib.parse import urlparse

from .errors import ConfigError

VERSION = "0.4.0"

CONFIG_PATH = Path.home() / ".dockhand" / "agent.json"

DEFAULT_RUNTIME   = "/var/run/docker.sock"
DEFAULT_INTERVAL  = 5
DEFAULT_PORT      = 4500
DEFAULT_TIMEOUT   = 30.0

# ─── Runtime Endpoint ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class UnixEndpoint:
    """Runtime reachable through a Unix domain socket."""
    path: str

    def __str__(self) -> str:
        return f"unix://{self.path}"


@dataclass(frozen=True)
class TcpEndpoint:
    """Runtime reachable over HTTP(S)."""
    url: str

    def __str__(self) -> str:
        return self.url


RuntimeEndpoint = Union[UnixEndpoint, TcpEndpoint]


def parse_runtime_endpoint(raw: str) -> RuntimeEndpoint:
    """
    Decide the transport once, from the endpoint string.
    http(s):// and tcp:// become a TcpEndpoint, anything else is a socket path.
    """
    value = (raw or "").strip()
    if not value:
        raise ConfigError("runtime endpoint must not be empty")

    if value.startswith("unix://"):
        value = value[len("unix://"):]
        if not value:
            raise ConfigError(f"unix endpoint has no socket path: {raw!r}")
        return UnixEndpoint(path=value)

    parsed = urlparse(value)
    if parsed.scheme == "tcp":
        parsed = parsed._replace(scheme="http")
    if parsed.scheme in ("http", "https"):
        if not parsed.netloc:
            raise ConfigError(f"runtime URL has no host: {raw!r}")
        return TcpEndpoint(url=parsed.geturl().rstrip("/"))
    if parsed.scheme and parsed.netloc:
        raise ConfigError(f"unsupported runtime URL scheme {parsed.scheme!r} in {raw!r}")

    return UnixEndpoint(path=value)

# ─── Agent Config ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AgentConfig:
    remote_url:       str
    runtime:          RuntimeEndpoint
    agent_key:        str            = ""
    api_version:      Optional[str]  = None
    interval:         int            = DEFAULT_INTERVAL
    metrics_interval: int            = 0       # 0 disables the metrics pipeline
    listen_address:   str            = "0.0.0.0"
    listen_port:      int            = DEFAULT_PORT
    host_ip:          Optional[str]  = None
    register:         bool           = False
    request_timeout:  float          = DEFAULT_TIMEOUT
    config_path:      Path           = field(default=CONFIG_PATH, compare=False)

    def __post_init__(self):
        if not self.remote_url:
            raise ConfigError("a remote service URL is required (--url)")
        if not urlparse(self.remote_url).netloc:
            raise ConfigError(f"remote service URL has no host: {self.remote_url!r}")
        if self.interval <= 0:
            raise ConfigError(f"interval must be positive, got {self.interval}")
        if self.metrics_interval < 0:
            raise ConfigError(f"metrics interval must not be negative, got {self.metrics_interval}")
        if not 0 < self.listen_port < 65536:
            raise ConfigError(f"listen port out of range: {self.listen_port}")
        object.__setattr__(self, "remote_url", self.remote_url.rstrip("/"))

    @property
    def metrics_enabled(self) -> bool:
        return self.metrics_interval > 0

    def auth_headers(self) -> dict:
        return {"Authorization": f"AgentKey:{self.agent_key}"}

# ─── Config File ──────────────────────────────────────────────────────────────

def load_config(path: Path) -> dict:
    if path.exists():
        try:
            return json.loads(path.read_text())
        except ValueError as e:
            raise ConfigError(f"config file {path} is not valid JSON: {e}") from e
    return {}

def save_config(path: Path, cfg: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg, indent=2))

# ─── Command Line ─────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    env = os.environ.get
    parser = argparse.ArgumentParser(
        prog="dockhand-agent",
        description="Relays local container runtime inventory to a fleet service "
                    "and proxies the runtime API",
    )
    parser.add_argument("--url", default=env("DOCKHAND_URL"),
                        help="Remote fleet service URL")
    parser.add_argument("--key", default=env("DOCKHAND_KEY"),
                        help="Agent key issued at registration")
    parser.add_argument("--docker", default=env("DOCKHAND_DOCKER"),
                        help=f"Runtime socket path or URL (default: {DEFAULT_RUNTIME})")
    parser.add_argument("--api-version", default=env("DOCKHAND_API_VERSION"),
                        help="Runtime API version prefix, e.g. v1.41 (default: unversioned)")
    parser.add_argument("--interval", type=int, default=_env_int("DOCKHAND_INTERVAL"),
                        help=f"Inventory poll interval in seconds (default: {DEFAULT_INTERVAL})")
    parser.add_argument("--metrics-interval", type=int, default=_env_int("DOCKHAND_METRICS_INTERVAL"),
                        help="Metrics interval in seconds, 0 disables metrics (default: 0)")
    parser.add_argument("--address", default=env("DOCKHAND_ADDRESS"),
                        help="Proxy listen address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=_env_int("DOCKHAND_PORT"),
                        help=f"Proxy listen port (default: {DEFAULT_PORT})")
    parser.add_argument("--ip", default=env("DOCKHAND_IP"),
                        help="External IP to register instead of the detected one")
    parser.add_argument("--register", action="store_true",
                        help="Register with the remote service, store the key and exit")
    parser.add_argument("--config", type=Path, default=Path(env("DOCKHAND_CONFIG", str(CONFIG_PATH))),
                        help=f"JSON config file (default: {CONFIG_PATH})")
    parser.add_argument("--log-level", default=env("DOCKHAND_LOG_LEVEL", "INFO"),
                        help="Logging level (default: INFO)")
    parser.add_argument("--version", action="version", version=VERSION)
    return parser


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _int_field(name: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def config_from_args(args: argparse.Namespace) -> AgentConfig:
    """Merge parsed flags over the config file and defaults."""
    stored = load_config(args.config)

    def pick(flag, key, default=None):
        if flag is not None:
            return flag
        return stored.get(key, default)

    return AgentConfig(
        remote_url       = pick(args.url, "url", ""),
        agent_key        = pick(args.key, "key", ""),
        runtime          = parse_runtime_endpoint(pick(args.docker, "docker", DEFAULT_RUNTIME)),
        api_version      = pick(args.api_version, "api_version"),
        interval         = _int_field("interval", pick(args.interval, "interval", DEFAULT_INTERVAL)),
        metrics_interval = _int_field("metrics_interval", pick(args.metrics_interval, "metrics_interval", 0)),
        listen_address   = pick(args.address, "address", "0.0.0.0"),
        listen_port      = _int_field("port", pick(args.port, "port", DEFAULT_PORT)),
        host_ip          = pick(args.ip, "ip"),
        register         = args.register,
        config_path      = args.config,
    )


def load_agent_config(argv: Optional[Sequence[str]] = None) -> tuple[AgentConfig, argparse.Namespace]:
    args = build_parser().parse_args(argv)
    return config_from_args(args), args
