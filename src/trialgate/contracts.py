"""Typed contracts shared by the gateway and its collaborators."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union, runtime_checkable

STDERR_MARKER_DIR = ".trialgate"
STDERR_FILENAME = "stderr"


class ExperimentMode(str, Enum):
    """How ``POST /experiment`` is interpreted for this gateway process."""

    NEW = "new"
    RESUME = "resume"


class TrialJobStatus(str, Enum):
    WAITING = "WAITING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    USER_CANCELED = "USER_CANCELED"
    SYS_CANCELED = "SYS_CANCELED"
    EARLY_STOPPED = "EARLY_STOPPED"
    UNKNOWN = "UNKNOWN"


_TRIAL_JOB_KEYS = frozenset(
    {"id", "status", "startTime", "endTime", "hyperParameters", "logPath", "finalMetricData", "stderrPath"}
)


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class TrialJobInfo:
    """Trial job record as reported by the orchestration engine.

    ``stderr_path`` is never set by the engine; it is derived per response by
    :func:`with_stderr_path`.
    """

    id: str
    status: TrialJobStatus
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    hyper_parameters: Optional[List[str]] = None
    log_path: Optional[str] = None
    final_metric_data: Optional[str] = None
    stderr_path: Optional[str] = None
    # Engine fields without a typed counterpart, kept verbatim.
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrialJobInfo":
        return cls(
            id=str(data["id"]),
            status=TrialJobStatus(str(data.get("status", TrialJobStatus.UNKNOWN.value))),
            start_time=data.get("startTime"),
            end_time=data.get("endTime"),
            hyper_parameters=data.get("hyperParameters"),
            log_path=data.get("logPath"),
            final_metric_data=data.get("finalMetricData"),
            stderr_path=data.get("stderrPath"),
            extra={k: v for k, v in data.items() if k not in _TRIAL_JOB_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        typed = _drop_none(
            {
                "id": self.id,
                "status": self.status.value,
                "startTime": self.start_time,
                "endTime": self.end_time,
                "hyperParameters": list(self.hyper_parameters)
                if self.hyper_parameters is not None
                else None,
                "logPath": self.log_path,
                "finalMetricData": self.final_metric_data,
                "stderrPath": self.stderr_path,
            }
        )
        return {**self.extra, **typed}


@dataclass(frozen=True)
class MetricDataRecord:
    """Append-only metric record persisted by the datastore."""

    timestamp: int
    trial_job_id: str
    parameter_id: str
    type: str
    sequence: int
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "trialJobId": self.trial_job_id,
            "parameterId": self.parameter_id,
            "type": self.type,
            "sequence": self.sequence,
            "data": self.data,
        }


@dataclass(frozen=True)
class TrialJobStatistics:
    trial_job_status: TrialJobStatus
    trial_job_number: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trialJobStatus": self.trial_job_status.value,
            "trialJobNumber": self.trial_job_number,
        }


@dataclass(frozen=True)
class CleanupReport:
    """Outcome of draining every TensorBoard session."""

    stopped: Tuple[str, ...] = ()
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {"stopped": list(self.stopped), "failures": dict(self.failures)}


def stderr_path_for(log_path: str) -> str:
    """Fixed location of a trial's captured stderr below its log directory."""
    return posixpath.join(log_path, STDERR_MARKER_DIR, STDERR_FILENAME)


def with_stderr_path(job: TrialJobInfo) -> TrialJobInfo:
    """Return a copy of ``job`` whose ``stderr_path`` is derived from status and log path."""
    if job.status == TrialJobStatus.FAILED and job.log_path is not None:
        return replace(job, stderr_path=stderr_path_for(job.log_path))
    if job.stderr_path is not None:
        return replace(job, stderr_path=None)
    return job



def render_trial_job(job: Union[TrialJobInfo, Mapping[str, Any], None]) -> Optional[Dict[str, Any]]:
    """Wire form of an engine job record with ``stderrPath`` derived.

    Mapping records are copied as-is, so fields and status values this module
    does not model pass through untouched. ``None`` stays ``None``.
    """
    if job is None:
        return None
    if isinstance(job, TrialJobInfo):
        return with_stderr_path(job).to_dict()
    record = dict(job)
    record.pop("stderrPath", None)
    log_path = record.get("logPath")
    if record.get("status") == TrialJobStatus.FAILED.value and log_path is not None:
        record["stderrPath"] = stderr_path_for(log_path)
    return record


@runtime_checkable
class Manager(Protocol):
    """Orchestration engine surface consumed by the gateway.

    Implementations raise :class:`trialgate.exceptions.NotFoundError` for
    unresolvable ids; any other exception is treated as a delegated failure.
    """

    async def get_experiment_profile(self) -> Dict[str, Any]: ...

    async def update_experiment_profile(self, profile: Any, update_type: Optional[str]) -> None: ...

    async def start_experiment(self, profile: Any) -> str: ...

    async def resume_experiment(self) -> None: ...

    async def stop_experiment(self) -> None: ...

    async def get_trial_job_statistics(self) -> List[TrialJobStatistics]: ...

    async def set_cluster_metadata(self, key: str, value: str) -> None: ...

    async def get_cluster_metadata(self, key: str) -> str: ...

    async def list_trial_jobs(self, status: Optional[str] = None) -> List[TrialJobInfo]: ...

    async def get_trial_job(self, trial_job_id: str) -> TrialJobInfo: ...

    async def add_customized_trial_job(self, hyper_params: str) -> None: ...

    async def cancel_trial_job_by_user(self, trial_job_id: str) -> None: ...

    async def get_metric_data(
        self, trial_job_id: Optional[str] = None, metric_type: Optional[str] = None
    ) -> List[MetricDataRecord]: ...


@runtime_checkable
class DataStore(Protocol):
    async def init(self) -> None: ...
