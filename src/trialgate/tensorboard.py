"""TensorBoard session lifecycle: launch, endpoint assignment, reuse and teardown."""

from __future__ import annotations

import contextlib
import shlex
import socket
import subprocess
import threading
import time
from concurrent.futures import Future
from concurrent.futures import wait as futures_wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Union

import psutil

from .config import TensorBoardConfig, get_config
from .contracts import CleanupReport
from .exceptions import (
    GatewayError,
    NotFoundError,
    SpawnError,
    TerminationError,
    ValidationError,
    validate_job_id,
)
from .logging import get_logger
from .monitoring import GatewayMetrics

logger = get_logger("tensorboard")
_READY_POLL_INTERVAL_S = 0.1
_LOG_TAIL_BYTES = 2000
_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_job_ids(job_ids: Union[str, Iterable[str]]) -> FrozenSet[str]:
    """Turn ``"a,b"`` or an iterable of ids into the session identity key."""
    if isinstance(job_ids, str):
        job_ids = job_ids.split(",")
    tokens = [validate_job_id(j, "job_ids") for j in job_ids if str(j or "").strip()]
    if not tokens:
        raise ValidationError("at least one trial job id is required", details={"parameter": "job_ids"})
    return frozenset(tokens)


def _port_available(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def _port_accepts(host: str, port: int) -> bool:
    try:
        with socket.create_connection((host, port), timeout=0.5):
            return True
    except OSError:
        return False


def _log_tail(path: Optional[Path]) -> str:
    if path is None or not path.exists():
        return ""
    with path.open("rb") as fh:
        fh.seek(0, 2)
        size = fh.tell()
        fh.seek(max(0, size - _LOG_TAIL_BYTES))
        return fh.read().decode("utf-8", errors="replace").strip()


def _still_running(procs: List[psutil.Process]) -> List[psutil.Process]:
    # Orphaned zombies wait on a reaper we do not control.
    running = []
    for proc in procs:
        try:
            if proc.status() != psutil.STATUS_ZOMBIE:
                running.append(proc)
        except psutil.NoSuchProcess:
            continue
    return running


@dataclass
class TensorBoardProcess:
    """Handle on one spawned TensorBoard process."""

    popen: subprocess.Popen
    port: int
    endpoint: str
    command: List[str]
    log_file: Optional[Path] = None

    @property
    def pid(self) -> int:
        return self.popen.pid


@dataclass
class TensorBoardSession:
    """A live TensorBoard process watching a fixed set of trial jobs."""

    job_ids: FrozenSet[str]
    process: TensorBoardProcess
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def endpoint(self) -> str:
        return self.process.endpoint

    @property
    def port(self) -> int:
        return self.process.port

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endPoint": self.endpoint,
            "jobIds": sorted(self.job_ids),
            "pid": self.process.pid,
            "createdAt": self.created_at.isoformat(),
        }


class TensorBoardLauncher:
    """Spawns and terminates TensorBoard processes on the local host."""

    def __init__(self, config: Optional[TensorBoardConfig] = None):
        self.config = config or get_config().tensorboard

    @property
    def advertise_host(self) -> str:
        if self.config.advertise_host:
            return self.config.advertise_host
        if self.config.host in _WILDCARD_HOSTS:
            return socket.gethostname()
        return self.config.host

    @property
    def probe_host(self) -> str:
        return "127.0.0.1" if self.config.host in _WILDCARD_HOSTS else self.config.host

    def logdir_spec(self, job_ids: Iterable[str]) -> str:
        trials_dir = Path(self.config.trials_dir).expanduser()
        return ",".join(
            f"{job_id}:{(trials_dir / job_id / 'tensorboard').as_posix()}"
            for job_id in sorted(job_ids)
        )

    def build_command(
        self, job_ids: Iterable[str], port: int, command: Optional[str] = None
    ) -> List[str]:
        template = self.config.command
        if command and command.strip():
            override = command.strip()
            if "{" in override:
                template = override
            else:
                # Bare executable: keep the default arguments.
                parts = template.split(None, 1)
                template = f"{override} {parts[1]}" if len(parts) > 1 else override
        try:
            rendered = template.format(
                logdir=shlex.quote(self.logdir_spec(job_ids)),
                port=port,
                host=shlex.quote(self.config.host),
            )
            args = shlex.split(rendered)
        except (KeyError, IndexError, ValueError) as exc:
            raise ValidationError(
                "invalid TensorBoard command template",
                details={"template": template, "error": str(exc)},
            ) from exc
        if not args:
            raise ValidationError("TensorBoard command is empty")
        return args

    def allocate_port(self, exclude: Iterable[int] = ()) -> int:
        excluded = set(exclude)
        for port in range(self.config.port_min, self.config.port_max + 1):
            if port in excluded:
                continue
            if _port_available(self.config.host, port):
                return port
        raise SpawnError(
            "no free port available for TensorBoard",
            details={"range": f"{self.config.port_min}-{self.config.port_max}"},
        )

    def spawn(
        self,
        job_ids: Iterable[str],
        command: Optional[str] = None,
        port: Optional[int] = None,
        exclude_ports: Iterable[int] = (),
    ) -> TensorBoardProcess:
        """Start a process for ``job_ids`` and wait until it serves on its port."""
        key = normalize_job_ids(job_ids)
        if port is None:
            port = self.allocate_port(exclude_ports)
        args = self.build_command(key, port, command)

        log_dir = Path(self.config.log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"tensorboard_{port}_{int(time.time())}.log"

        logger.info("Starting TensorBoard for {} on port {}: {}", sorted(key), port, " ".join(args))
        with log_file.open("ab") as log_fh:
            try:
                popen = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=log_fh,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                raise SpawnError(
                    f"failed to launch TensorBoard: {exc}",
                    details={"command": args[0]},
                ) from exc

        handle = TensorBoardProcess(
            popen=popen,
            port=port,
            endpoint=f"http://{self.advertise_host}:{port}",
            command=args,
            log_file=log_file,
        )
        try:
            self._wait_ready(handle)
        except SpawnError:
            self._discard(handle)
            raise
        return handle

    def _wait_ready(self, handle: TensorBoardProcess) -> None:
        timeout = self.config.spawn_timeout
        deadline = time.monotonic() + timeout
        while True:
            return_code = handle.popen.poll()
            if return_code is not None:
                raise SpawnError(
                    "TensorBoard exited during startup",
                    details={"return_code": return_code, "log_tail": _log_tail(handle.log_file)},
                )
            if not self.config.ready_check or _port_accepts(self.probe_host, handle.port):
                return
            if time.monotonic() >= deadline:
                raise SpawnError(
                    f"TensorBoard did not become ready within {timeout:g}s",
                    details={"port": handle.port},
                )
            time.sleep(_READY_POLL_INTERVAL_S)

    def _discard(self, handle: TensorBoardProcess) -> None:
        try:
            self.terminate(handle)
        except TerminationError as exc:
            logger.error("Could not clean up failed TensorBoard pid {}: {}", handle.pid, exc)

    def terminate(self, handle: TensorBoardProcess) -> None:
        """Terminate the process tree, escalating to kill after ``terminate_timeout``."""
        try:
            self._terminate_tree(handle)
        except psutil.Error as exc:
            raise TerminationError(
                f"{type(exc).__name__} while terminating TensorBoard",
                details={"pid": handle.pid},
            ) from exc

    def _terminate_tree(self, handle: TensorBoardProcess) -> None:
        timeout = self.config.terminate_timeout
        try:
            parent = psutil.Process(handle.pid)
            procs = [parent] + parent.children(recursive=True)
        except psutil.NoSuchProcess:
            handle.popen.poll()
            return

        for proc in procs:
            with contextlib.suppress(psutil.NoSuchProcess):
                proc.terminate()
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        alive = _still_running(alive)

        if alive:
            logger.warning("TensorBoard pid {} ignored SIGTERM, killing", handle.pid)
            for proc in alive:
                with contextlib.suppress(psutil.NoSuchProcess):
                    proc.kill()
            _, alive = psutil.wait_procs(alive, timeout=timeout)
            alive = _still_running(alive)

        handle.popen.poll()
        if alive:
            raise TerminationError(
                f"TensorBoard did not exit within {timeout:g}s",
                details={"pid": handle.pid, "alive": [p.pid for p in alive]},
            )


class TensorBoardSessionManager:
    """Thread-safe registry of live TensorBoard sessions keyed by trial job set.

    At most one session exists per distinct job set. The registry owns every
    process handle and terminates it before dropping the session record.
    The lock guards registry state only; processes start outside it, and
    concurrent starts of one job set share a single pending spawn.
    """

    def __init__(
        self,
        launcher: Optional[TensorBoardLauncher] = None,
        config: Optional[TensorBoardConfig] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self.config = config or (launcher.config if launcher is not None else get_config().tensorboard)
        self.launcher = launcher or TensorBoardLauncher(self.config)
        self.metrics = metrics
        self._sessions: Dict[FrozenSet[str], TensorBoardSession] = {}
        self._pending: Dict[FrozenSet[str], Future] = {}
        self._reserved_ports: Set[int] = set()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def start(self, job_ids: Union[str, Iterable[str]], command: Optional[str] = None) -> str:
        """Return the endpoint of the session watching exactly ``job_ids``, spawning one if needed."""
        key = normalize_job_ids(job_ids)
        if command and not self.config.allow_command_override:
            raise ValidationError("TensorBoard command override is disabled")

        with self._lock:
            existing = self._sessions.get(key)
            if existing is not None:
                logger.info("Reusing TensorBoard {} for {}", existing.endpoint, sorted(key))
                return existing.endpoint
            pending = self._pending.get(key)
            if pending is None:
                exclude = {s.port for s in self._sessions.values()} | self._reserved_ports
                port = self.launcher.allocate_port(exclude)
                self._reserved_ports.add(port)
                future: Future = Future()
                self._pending[key] = future

        if pending is not None:
            logger.info("Waiting for pending TensorBoard start for {}", sorted(key))
            return pending.result()

        try:
            endpoint = self._spawn(key, command, port)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(endpoint)
        finally:
            with self._lock:
                self._reserved_ports.discard(port)
                self._pending.pop(key, None)
        return endpoint

    def _spawn(self, key: FrozenSet[str], command: Optional[str], port: int) -> str:
        timer = self.metrics.time_spawn() if self.metrics else contextlib.nullcontext()
        try:
            with timer:
                handle = self.launcher.spawn(key, command=command, port=port)
        except GatewayError:
            if self.metrics:
                self.metrics.record_spawn_failure()
            raise

        with self._lock:
            if any(s.endpoint == handle.endpoint for s in self._sessions.values()):
                self.launcher.terminate(handle)
                raise SpawnError("endpoint already assigned", details={"endpoint": handle.endpoint})
            self._sessions[key] = TensorBoardSession(job_ids=key, process=handle)
            self._sync_gauge()

        logger.info("TensorBoard for {} serving at {}", sorted(key), handle.endpoint)
        return handle.endpoint

    def stop(self, endpoint: str) -> None:
        """Terminate the session at ``endpoint``. Unknown endpoints raise NotFoundError."""
        with self._lock:
            key = self._key_for_endpoint(endpoint)
            if key is None:
                raise NotFoundError(
                    f"TensorBoard endpoint not found: {endpoint}", details={"endpoint": endpoint}
                )
            session = self._sessions[key]
            try:
                self.launcher.terminate(session.process)
            except TerminationError:
                if self.metrics:
                    self.metrics.record_termination_failure()
                raise
            del self._sessions[key]
            self._sync_gauge()
        logger.info("Stopped TensorBoard {}", endpoint)

    def stop_all(self) -> CleanupReport:
        """Terminate every session and empty the registry, collecting failures.

        Starts already in flight are awaited first so their processes are
        drained too.
        """
        with self._lock:
            in_flight = list(self._pending.values())
        if in_flight:
            futures_wait(in_flight)

        stopped: List[str] = []
        failures: Dict[str, str] = {}
        with self._lock:
            for key in list(self._sessions):
                session = self._sessions[key]
                try:
                    self.launcher.terminate(session.process)
                    stopped.append(session.endpoint)
                except Exception as exc:
                    failures[session.endpoint] = _failure_message(exc)
                    if self.metrics:
                        self.metrics.record_termination_failure()
                    logger.error("Failed to stop TensorBoard {}: {}", session.endpoint, exc)
                del self._sessions[key]
            self._sync_gauge()
        logger.info("Stopped {} TensorBoard session(s), {} failure(s)", len(stopped), len(failures))
        return CleanupReport(stopped=tuple(stopped), failures=failures)

    def find_by_job_ids(self, job_ids: Union[str, Iterable[str]]) -> Optional[str]:
        key = normalize_job_ids(job_ids)
        with self._lock:
            session = self._sessions.get(key)
        return None if session is None else session.endpoint

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        sessions.sort(key=lambda s: s.created_at)
        return [s.to_dict() for s in sessions]

    def _key_for_endpoint(self, endpoint: str) -> Optional[FrozenSet[str]]:
        for key, session in self._sessions.items():
            if session.endpoint == endpoint:
                return key
        return None

    def _sync_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_active_sessions(len(self._sessions))


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, GatewayError):
        return exc.message
    return str(exc) or type(exc).__name__
