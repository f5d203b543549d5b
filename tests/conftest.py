"""Pytest configuration and fixtures for trialgate."""

import os
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional

import pytest

from trialgate.config import GatewayConfig, TensorBoardConfig
from trialgate.contracts import (
    MetricDataRecord,
    TrialJobInfo,
    TrialJobStatistics,
    TrialJobStatus,
)
from trialgate.exceptions import NotFoundError, SpawnError, TerminationError
from trialgate.tensorboard import TensorBoardProcess, TensorBoardSessionManager


class InMemoryManager:
    """Engine double that records every call in a shared ``calls`` list."""

    def __init__(self, calls: Optional[List[Any]] = None):
        self.calls = calls if calls is not None else []
        self.profile: Dict[str, Any] = {"id": "exp-0001", "params": {"maxTrialNum": 10}}
        self.cluster_metadata: Dict[str, str] = {}
        self.failing_metadata_keys: set = set()
        self.custom_jobs: List[str] = []
        self.stop_error: Optional[Exception] = None
        self.jobs: Dict[str, TrialJobInfo] = {
            "trial-ok": TrialJobInfo(
                id="trial-ok",
                status=TrialJobStatus.SUCCEEDED,
                start_time=1,
                end_time=2,
                log_path="/logs/trial-ok",
            ),
            "trial-failed": TrialJobInfo(
                id="trial-failed",
                status=TrialJobStatus.FAILED,
                log_path="/logs/trial-failed",
            ),
            "trial-failed-nolog": TrialJobInfo(id="trial-failed-nolog", status=TrialJobStatus.FAILED),
            "trial-running": TrialJobInfo(
                id="trial-running",
                status=TrialJobStatus.RUNNING,
                log_path="/logs/trial-running",
            ),
        }
        self.metrics = [
            MetricDataRecord(1, "trial-ok", "0", "PERIODICAL", 0, "0.5"),
            MetricDataRecord(2, "trial-ok", "0", "FINAL", 0, "0.9"),
            MetricDataRecord(3, "trial-failed", "1", "PERIODICAL", 0, "0.1"),
        ]

    async def get_experiment_profile(self):
        self.calls.append("get_experiment_profile")
        return dict(self.profile)

    async def update_experiment_profile(self, profile, update_type):
        self.calls.append(("update_experiment_profile", update_type))
        if update_type is None:
            raise ValueError("update_type is required")
        self.profile.update(profile)

    async def start_experiment(self, profile):
        self.calls.append("start_experiment")
        self.profile = dict(profile)
        return "exp-0001"

    async def resume_experiment(self):
        self.calls.append("resume_experiment")

    async def stop_experiment(self):
        self.calls.append("stop_experiment")
        if self.stop_error is not None:
            raise self.stop_error

    async def get_trial_job_statistics(self):
        counts: Dict[TrialJobStatus, int] = {}
        for job in self.jobs.values():
            counts[job.status] = counts.get(job.status, 0) + 1
        return [TrialJobStatistics(status, number) for status, number in counts.items()]

    async def set_cluster_metadata(self, key, value):
        self.calls.append(("set_cluster_metadata", key))
        if key in self.failing_metadata_keys:
            raise RuntimeError(f"cannot apply cluster metadata {key}")
        self.cluster_metadata[key] = value

    async def get_cluster_metadata(self, key):
        if key not in self.cluster_metadata:
            raise NotFoundError(f"cluster metadata {key} not found")
        return self.cluster_metadata[key]

    async def list_trial_jobs(self, status=None):
        return [j for j in self.jobs.values() if status is None or j.status.value == status]

    async def get_trial_job(self, trial_job_id):
        if trial_job_id not in self.jobs:
            raise NotFoundError(f"trial job {trial_job_id} not found")
        return self.jobs[trial_job_id]

    async def add_customized_trial_job(self, hyper_params):
        self.custom_jobs.append(hyper_params)

    async def cancel_trial_job_by_user(self, trial_job_id):
        job = await self.get_trial_job(trial_job_id)
        self.jobs[trial_job_id] = replace(job, status=TrialJobStatus.USER_CANCELED)

    async def get_metric_data(self, trial_job_id=None, metric_type=None):
        return [
            m
            for m in self.metrics
            if (trial_job_id is None or m.trial_job_id == trial_job_id)
            and (metric_type is None or m.type == metric_type)
        ]


class InMemoryDataStore:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.init_calls = 0

    async def init(self):
        self.init_calls += 1
        if self.error is not None:
            raise self.error


class FakePopen:
    def __init__(self, pid: int):
        self.pid = pid
        self.returncode = None

    def poll(self):
        return self.returncode


class FakeLauncher:
    """Launcher double: hands out sequential ports and records spawn/terminate."""

    def __init__(self, calls: Optional[List[Any]] = None, base_port: int = 7000):
        self.config = TensorBoardConfig(host="127.0.0.1")
        self.calls = calls if calls is not None else []
        self.base_port = base_port
        self.spawned: List[TensorBoardProcess] = []
        self.terminated: List[str] = []
        self.spawn_attempts = 0
        self.spawn_error: Optional[Exception] = None
        self.terminate_error: Optional[Exception] = None
        self.failing_endpoints: set = set()
        self.spawn_delay = 0.0
        # job set -> Event the spawn blocks on until set
        self.gates: Dict[frozenset, threading.Event] = {}
        self.spawn_entered = threading.Event()
        self._lock = threading.Lock()

    def allocate_port(self, exclude=()):
        port = self.base_port
        while port in exclude:
            port += 1
        return port

    def spawn(self, job_ids, command=None, port=None, exclude_ports=()):
        with self._lock:
            self.spawn_attempts += 1
        self.spawn_entered.set()
        gate = self.gates.get(frozenset(job_ids))
        if gate is not None:
            gate.wait(5)
        if self.spawn_delay:
            threading.Event().wait(self.spawn_delay)
        if self.spawn_error is not None:
            raise self.spawn_error
        if port is None:
            port = self.allocate_port(exclude_ports)
        with self._lock:
            handle = TensorBoardProcess(
                popen=FakePopen(10000 + len(self.spawned)),
                port=port,
                endpoint=f"http://127.0.0.1:{port}",
                command=[command or "tensorboard", ",".join(sorted(job_ids))],
            )
            self.spawned.append(handle)
        self.calls.append(("spawn", tuple(sorted(job_ids))))
        return handle

    def terminate(self, handle):
        self.calls.append(("terminate", handle.endpoint))
        if self.terminate_error is not None:
            raise self.terminate_error
        if handle.endpoint in self.failing_endpoints:
            raise TerminationError("process refused to exit", details={"pid": handle.pid})
        handle.popen.returncode = -15
        self.terminated.append(handle.endpoint)


class ShutdownRecorder:
    def __init__(self, calls: Optional[List[Any]] = None):
        self.calls = calls if calls is not None else []
        self.count = 0

    async def __call__(self):
        self.count += 1
        self.calls.append("shutdown")


@pytest.fixture
def calls() -> List[Any]:
    """Shared ordered call log across the collaborator doubles."""
    return []


@pytest.fixture
def manager(calls) -> InMemoryManager:
    return InMemoryManager(calls)


@pytest.fixture
def datastore() -> InMemoryDataStore:
    return InMemoryDataStore()


@pytest.fixture
def launcher(calls) -> FakeLauncher:
    return FakeLauncher(calls)


@pytest.fixture
def sessions(launcher) -> TensorBoardSessionManager:
    return TensorBoardSessionManager(launcher=launcher)


@pytest.fixture
def shutdown(calls) -> ShutdownRecorder:
    return ShutdownRecorder(calls)


@pytest.fixture
def gateway_config(tmp_path) -> GatewayConfig:
    return GatewayConfig(
        tensorboard={"host": "127.0.0.1", "log_dir": str(tmp_path / "tb_logs")},
    )


@pytest.fixture(autouse=True)
def set_test_environment():
    """Set environment variables for testing."""
    os.environ["TRIALGATE_LOG_LEVEL"] = "WARNING"  # Reduce log noise during tests
    yield


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that spawn real processes"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
