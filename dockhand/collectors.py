"""
Inventory Collectors
====================

Each collector queries the runtime once and returns a WorkUnit addressed to
one remote endpoint:

  collect_containers  GET containers/json?all=1 + one inspect per container
                      -> POST /agent/containers/
  collect_images      GET images/json?all=0
                      -> POST /agent/images/

A list or inspect failure aborts the whole collector call; a partial
container snapshot is never produced.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any

from .runtime import RuntimeClient

log = logging.getLogger(__name__)

CONTAINERS_PATH = "/agent/containers/"
IMAGES_PATH     = "/agent/images/"
METRICS_PATH    = "/agent/metrics/"

# ─── Work Unit ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WorkUnit:
    """One payload bound for one remote upload endpoint."""
    path:    str
    payload: Any = field(repr=False)

# ─── Snapshots ────────────────────────────────────────────────────────────────

@dataclass
class ContainerSnapshot:
    summary: dict    # entry from containers/json
    detail:  dict    # containers/{id}/json

    def to_payload(self) -> dict:
        return {"Container": self.summary, "Meta": self.detail}


@dataclass
class ImageSummary:
    id:           str
    created:      int
    tags:         list[str]
    size:         int
    virtual_size: int

    @classmethod
    def from_api(cls, raw: dict) -> "ImageSummary":
        return cls(
            id           = raw.get("Id", ""),
            created      = raw.get("Created", 0),
            tags         = raw.get("RepoTags") or [],
            size         = raw.get("Size", 0),
            virtual_size = raw.get("VirtualSize", raw.get("Size", 0)),
        )

    def to_payload(self) -> dict:
        return {
            "Id":          self.id,
            "Created":     self.created,
            "RepoTags":    self.tags,
            "Size":        self.size,
            "VirtualSize": self.virtual_size,
        }

# ─── Collectors ───────────────────────────────────────────────────────────────

def list_containers(client: RuntimeClient) -> list[dict]:
    return client.get_json(client.path_for("containers", "json"), params={"all": 1}) or []


def inspect_container(client: RuntimeClient, container_id: str) -> dict:
    return client.get_json(client.path_for("containers", container_id, "json"), params={"all": 1})


def list_images(client: RuntimeClient) -> list[dict]:
    return client.get_json(client.path_for("images", "json"), params={"all": 0}) or []


def collect_containers(client: RuntimeClient) -> WorkUnit:
    snapshots = [
        ContainerSnapshot(summary=entry, detail=inspect_container(client, entry["Id"]))
        for entry in list_containers(client)
    ]
    log.debug(f"[collect] {len(snapshots)} container(s)")
    return WorkUnit(path=CONTAINERS_PATH, payload=[s.to_payload() for s in snapshots])


def collect_images(client: RuntimeClient) -> WorkUnit:
    images = [ImageSummary.from_api(raw) for raw in list_images(client)]
    log.debug(f"[collect] {len(images)} image(s)")
    return WorkUnit(path=IMAGES_PATH, payload=[i.to_payload() for i in images])
