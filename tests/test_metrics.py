"""
Tests for host process sampling and the /proc counter parsers.
"""

from unittest.mock import Mock, patch

import pytest

from dockhand.collectors import METRICS_PATH
from dockhand.errors import MalformedPayloadError
from dockhand.metrics import (
    ProcessSampler,
    collect_metrics,
    container_id_from_cmdline,
    cpu_usage,
    memory_usage,
)

CID = "3f4e" + "0" * 60


def make_stat(utime, stime, cutime, cstime, start, comm="my proc"):
    return (
        f"1234 ({comm}) S 1 1234 1234 0 -1 4194304 100 0 0 0 "
        f"{utime} {stime} {cutime} {cstime} 20 0 1 0 {start} 1000000 50"
    )


def make_status(rss_kb):
    return f"Name:\tnginx\nState:\tS (sleeping)\nVmPeak:\t  9000 kB\nVmRSS:\t   {rss_kb} kB\nThreads:\t1\n"


class TestCpuUsage:
    def test_percent_over_lifetime(self):
        # 10s of CPU over 100s of life
        assert cpu_usage(make_stat(400, 300, 200, 100, 2000), "120.50 300.00", hertz=100) == 10

    def test_zero_elapsed_seconds(self):
        assert cpu_usage(make_stat(400, 300, 0, 0, 2000), "20.00 5.00", hertz=100) == 0

    def test_started_after_uptime_reading(self):
        assert cpu_usage(make_stat(1, 1, 0, 0, 5000), "20.00 5.00", hertz=100) == 0

    def test_integer_arithmetic(self):
        # 1.5s of CPU truncates to 1s before scaling
        assert cpu_usage(make_stat(150, 0, 0, 0, 0), "3.99 1.00", hertz=100) == 33

    def test_comm_with_parens_and_spaces(self):
        stat = make_stat(1000, 0, 0, 0, 0, comm="weird) name (x")
        assert cpu_usage(stat, "10.0 1.0", hertz=100) == 100

    def test_truncated_stat(self):
        with pytest.raises(MalformedPayloadError):
            cpu_usage("1234 (sh) S 1 2", "10.0 1.0")


class TestMemoryUsage:
    def test_vmrss_value(self):
        assert memory_usage("Name:\tx\nVmRSS:    1024 kB\n") == 1024

    def test_realistic_status(self):
        assert memory_usage(make_status(5120)) == 5120

    def test_missing_field(self):
        assert memory_usage("Name:\tkthreadd\nState:\tS\n") == 0


class TestLauncherMatching:
    def test_containerd_shim(self):
        cmd = f"/usr/bin/containerd-shim-runc-v2 -namespace moby -id {CID} -address /run/containerd/containerd.sock"
        assert container_id_from_cmdline(cmd) == CID

    def test_lxc_start(self):
        assert container_id_from_cmdline(f"lxc-start -n {CID} -f /var/lib/lxc/config") == CID

    def test_unrelated_process(self):
        assert container_id_from_cmdline("nginx: worker process") is None


def _proc(pid, ppid, cmdline):
    p = Mock()
    p.info = {"pid": pid, "ppid": ppid, "cmdline": cmdline}
    return p


@pytest.fixture
def proc_root(tmp_path):
    (tmp_path / "uptime").write_text("120.00 400.00\n")
    for pid, ticks, rss in [(101, 1000, 2048), (102, 500, 1024)]:
        d = tmp_path / str(pid)
        d.mkdir()
        (d / "stat").write_text(make_stat(ticks, 0, 0, 0, 2000))
        (d / "status").write_text(make_status(rss))
    return tmp_path


@pytest.fixture
def process_table():
    return [
        _proc(1, 0, ["/sbin/init"]),
        _proc(100, 1, ["containerd-shim-runc-v2", "-namespace", "moby", "-id", CID]),
        _proc(101, 100, ["nginx", "-g", "daemon off;"]),
        _proc(102, 100, ["nginx: worker process"]),
        _proc(103, 100, ["short-lived"]),       # no /proc entry: exited
        _proc(200, 1, ["bash"]),
    ]


class TestProcessSampler:
    def test_sums_launcher_children(self, proc_root, process_table):
        sampler = ProcessSampler(proc_root=proc_root, hertz=100)
        with patch("dockhand.metrics.psutil.process_iter", return_value=process_table):
            metrics = sampler.sample()

        assert len(metrics) == 1
        m = metrics[0]
        assert m.container_id == CID
        # 10s and 5s of CPU over 100s
        assert [(c.name, c.value, c.unit) for c in m.counters] == [("cpu", 15, "%"), ("memory", 3072, "kb")]

    def test_collect_metrics_work_unit(self, proc_root, process_table):
        sampler = ProcessSampler(proc_root=proc_root, hertz=100)
        with patch("dockhand.metrics.psutil.process_iter", return_value=process_table):
            unit = collect_metrics(sampler)

        assert unit.path == METRICS_PATH
        assert unit.payload == [{
            "container_id": CID,
            "counters": [
                {"name": "cpu", "value": 15, "unit": "%"},
                {"name": "memory", "value": 3072, "unit": "kb"},
            ],
            "type": "container",
        }]

    def test_no_containers(self, proc_root):
        sampler = ProcessSampler(proc_root=proc_root, hertz=100)
        with patch("dockhand.metrics.psutil.process_iter", return_value=[_proc(1, 0, None)]):
            assert sampler.sample() == []

    def test_child_without_status_counts_neither_value(self, proc_root, process_table):
        # exited between reading stat and status
        d = proc_root / "104"
        d.mkdir()
        (d / "stat").write_text(make_stat(3000, 0, 0, 0, 2000))
        process_table.append(_proc(104, 100, ["half-gone"]))

        sampler = ProcessSampler(proc_root=proc_root, hertz=100)
        with patch("dockhand.metrics.psutil.process_iter", return_value=process_table):
            metrics = sampler.sample()

        assert [(c.name, c.value) for c in metrics[0].counters] == [("cpu", 15), ("memory", 3072)]

    def test_memory_read_error_discards_cpu_of_that_child(self, proc_root, process_table):
        sampler = ProcessSampler(proc_root=proc_root, hertz=100)
        real_memory = sampler.process_memory

        def memory(pid):
            if pid == 101:
                raise ProcessLookupError(pid)
            return real_memory(pid)

        with patch("dockhand.metrics.psutil.process_iter", return_value=process_table), \
             patch.object(sampler, "process_memory", side_effect=memory):
            metrics = sampler.sample()

        # only pid 102 remains: 5s of CPU over 100s, 1024 kB
        assert [(c.name, c.value) for c in metrics[0].counters] == [("cpu", 5), ("memory", 1024)]
