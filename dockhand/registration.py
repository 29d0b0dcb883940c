"""
Registration
============

One-time handshake with the remote service:

  POST {remote}/agent/register/   name=<hostname> port=<listen port> hostname=<ip>
  → {"key": "<agent key>"}

The IP is the --ip override when given, otherwise the first IPv4 interface
address that is neither loopback nor on the blocklist (the default Docker
bridge gateway is on it).
"""

from __future__ import annotations
import ipaddress
import logging
import socket
from typing import Iterable, Optional

import psutil  # type: ignore
import requests

from .config import AgentConfig
from .errors import RegistrationError

log = logging.getLogger(__name__)

BLOCKED_IPS = frozenset({"127.0.0.1", "172.17.42.1"})


def interface_addresses() -> list[str]:
    """IPv4 addresses of every local interface, in psutil's order."""
    addrs = []
    for nic_addrs in psutil.net_if_addrs().values():
        addrs += [a.address for a in nic_addrs if a.family == socket.AF_INET]
    return addrs


def select_host_ip(addresses: Iterable[str], blocklist: Iterable[str] = BLOCKED_IPS) -> Optional[str]:
    blocked = set(blocklist)
    for raw in addresses:
        try:
            ip = ipaddress.ip_address(raw.split("/")[0])
        except ValueError:
            log.debug(f"[register] ignoring unparsable address {raw!r}")
            continue
        if ip.version == 4 and not ip.is_loopback and str(ip) not in blocked:
            return str(ip)
    return None


def register(
    config:    AgentConfig,
    session:   Optional[requests.Session] = None,
    addresses: Optional[Iterable[str]]    = None,
) -> str:
    """Register this host and return the agent key issued by the remote service."""
    host_ip = config.host_ip or select_host_ip(
        addresses if addresses is not None else interface_addresses()
    )
    if not host_ip:
        raise RegistrationError("no usable interface address found; pass --ip")

    log.info(f"Using {host_ip} as the runtime host IP")
    log.info("If this is not correct, re-register with --ip or update the host on the remote service")
    log.info(f"Registering at {config.remote_url}")

    http = session or requests
    try:
        resp = http.post(
            f"{config.remote_url}/agent/register/",
            data    = {
                "name":     socket.gethostname(),
                "port":     str(config.listen_port),
                "hostname": host_ip,
            },
            timeout = config.request_timeout,
        )
    except requests.RequestException as e:
        raise RegistrationError(f"registration request failed: {e}") from e

    if not resp.ok:
        raise RegistrationError(f"registration rejected: {resp.status_code} {resp.text[:200]}")
    try:
        key = resp.json()["key"]
    except (ValueError, KeyError, TypeError) as e:
        raise RegistrationError(f"unexpected registration reply: {resp.text[:200]}") from e

    log.info(f"Agent key: {key}")
    return key
