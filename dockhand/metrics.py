"""
Container Metrics
=================

Samples host process data for containers and builds ContainerMetric
payloads for POST /agent/metrics/.

Every container has a launcher process on the host (lxc-start, a
containerd shim, ...) whose command line carries the container id. The
launcher's direct children (ppid == launcher pid) are the container's
processes; their CPU percent and resident memory are summed.

CPU percent comes from /proc/<pid>/stat scheduler ticks (user, system,
child user, child system) over the seconds since the process started,
integer arithmetic throughout. Memory is the VmRSS line of
/proc/<pid>/status, in kB.
"""

from __future__ import annotations
import logging
import os
import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Pattern

import psutil  # type: ignore

from .collectors import METRICS_PATH, WorkUnit
from .errors import MalformedPayloadError

log = logging.getLogger(__name__)

LAUNCHER_PATTERN = re.compile(
    r"(?:lxc-start\b.*?\s-n\s+|containerd-shim\S*\b.*?\s-id\s+)(?P<id>[0-9a-f]{12,64})\b"
)
_VMRSS = re.compile(r"^VmRSS:\s*(\d+)", re.MULTILINE)

# ─── Payload Types ────────────────────────────────────────────────────────────

@dataclass
class Counter:
    name:  str
    value: int
    unit:  str

    def to_payload(self) -> dict:
        return {"name": self.name, "value": self.value, "unit": self.unit}


@dataclass
class ContainerMetric:
    container_id: str
    counters:     list[Counter] = field(default_factory=list)
    type:         str           = "container"

    def to_payload(self) -> dict:
        return {
            "container_id": self.container_id,
            "counters":     [c.to_payload() for c in self.counters],
            "type":         self.type,
        }

# ─── /proc Parsing ────────────────────────────────────────────────────────────

def cpu_usage(stat_text: str, uptime_text: str, hertz: int = 100) -> int:
    """CPU percent of one process. Returns 0 when no whole second has elapsed."""
    try:
        # comm (field 2) may contain spaces; field 3 onwards follows the last ')'
        rest = stat_text.rsplit(")", 1)[-1].split()
        utime, stime, cutime, cstime = (int(v) for v in rest[11:15])
        start_ticks = int(rest[19])
        uptime      = int(float(uptime_text.split()[0]))
    except (ValueError, IndexError) as e:
        raise MalformedPayloadError(f"unparsable process stat: {e}") from e

    seconds = uptime - start_ticks // hertz
    if seconds <= 0:
        return 0
    total_ticks = utime + stime + cutime + cstime
    return 100 * (total_ticks // hertz) // seconds


def memory_usage(status_text: str) -> int:
    """Resident set size in kB from a /proc/<pid>/status blob, 0 if absent."""
    match = _VMRSS.search(status_text)
    return int(match.group(1)) if match else 0


def container_id_from_cmdline(cmdline: str, pattern: Pattern = LAUNCHER_PATTERN) -> Optional[str]:
    match = pattern.search(cmdline)
    return match.group("id") if match else None

# ─── Sampler ──────────────────────────────────────────────────────────────────

class ProcessSampler:
    def __init__(
        self,
        proc_root: Path    = Path("/proc"),
        pattern:   Pattern = LAUNCHER_PATTERN,
        hertz:     Optional[int] = None,
    ):
        self.proc_root = Path(proc_root)
        self.pattern   = pattern
        self.hertz     = hertz or os.sysconf("SC_CLK_TCK")

    def process_cpu(self, pid: int) -> int:
        return cpu_usage(
            (self.proc_root / str(pid) / "stat").read_text(),
            (self.proc_root / "uptime").read_text(),
            self.hertz,
        )

    def process_memory(self, pid: int) -> int:
        return memory_usage((self.proc_root / str(pid) / "status").read_text())

    def _processes(self) -> list[tuple[int, int, str]]:
        procs = []
        for p in psutil.process_iter(["pid", "ppid", "cmdline"], ad_value=None):
            info = p.info
            cmdline = " ".join(info.get("cmdline") or [])
            procs.append((info["pid"], info.get("ppid") or 0, cmdline))
        return procs

    def sample(self) -> list[ContainerMetric]:
        procs = self._processes()
        children: dict[int, list[int]] = defaultdict(list)
        for pid, ppid, _ in procs:
            children[ppid].append(pid)

        metrics = []
        for pid, _, cmdline in procs:
            container_id = container_id_from_cmdline(cmdline, self.pattern)
            if not container_id:
                continue

            cpu = mem = 0
            for child in children.get(pid, []):
                try:
                    child_cpu = self.process_cpu(child)
                    child_mem = self.process_memory(child)
                except (FileNotFoundError, ProcessLookupError, PermissionError) as e:
                    log.debug(f"[metrics] pid {child} of {container_id[:12]} vanished: {e}")
                except MalformedPayloadError as e:
                    log.warning(f"[metrics] skipping pid {child} of {container_id[:12]}: {e}")
                else:
                    cpu += child_cpu
                    mem += child_mem

            metrics.append(ContainerMetric(
                container_id = container_id,
                counters     = [
                    Counter(name="cpu",    value=cpu, unit="%"),
                    Counter(name="memory", value=mem, unit="kb"),
                ],
            ))
        return metrics


def collect_metrics(sampler: ProcessSampler) -> WorkUnit:
    metrics = sampler.sample()
    log.debug(f"[collect] metrics for {len(metrics)} container(s)")
    return WorkUnit(path=METRICS_PATH, payload=[m.to_payload() for m in metrics])
