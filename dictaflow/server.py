"""
Supervisor for the local whisper.cpp inference server.

Keeps one server process per (model, port) running at 127.0.0.1 and
reuses it whenever that is safe, including across application restarts:
the PID of the last spawned server is persisted to a small text file so
a later run can find and adopt it.

The supervisor is an explicit object owned by the application root and
passed to every provider that needs it.
"""

import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

import psutil
import requests

from .errors import ServerTimeoutError, UnavailableError
from .types import ServerProcessHandle

if TYPE_CHECKING:
    from .metrics import MetricsWriter


# Constants
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8178
HEALTH_POLL_INTERVAL = 1.0   # seconds between health probes while starting
HEALTH_MAX_ATTEMPTS = 30     # 30 probes ~ 30 seconds
HEALTH_PROBE_TIMEOUT = 2.0   # per probe
STOP_GRACE_SECONDS = 5.0     # wait for graceful exit before killing


def default_executable_name() -> str:
    return "whisper-server.exe" if sys.platform == "win32" else "whisper-server"


def _process_stem(name: str) -> str:
    name = Path(name).name.lower()
    return name[:-4] if name.endswith(".exe") else name


class InferenceServerSupervisor:
    """
    Owns the lifecycle of the persistent inference server.

    One lock spans check-existing / kill-orphan / spawn-new, so two
    concurrent ensure_running() calls can never start two servers.

    Usage:
        supervisor = InferenceServerSupervisor(server_dir, pid_file)
        supervisor.ensure_running("base.en", 8178)
        ...
        supervisor.stop_server()
    """

    def __init__(
        self,
        server_dir: Path,
        pid_file: Path,
        log_file: Optional[Path] = None,
        host: str = DEFAULT_HOST,
        use_gpu: bool = True,
        executable_name: Optional[str] = None,
        poll_interval: float = HEALTH_POLL_INTERVAL,
        max_attempts: int = HEALTH_MAX_ATTEMPTS,
        probe_timeout: float = HEALTH_PROBE_TIMEOUT,
        stop_grace: float = STOP_GRACE_SECONDS,
        metrics: Optional["MetricsWriter"] = None,
        sleep=time.sleep,
    ):
        self.server_dir = Path(server_dir)
        self.pid_file = Path(pid_file)
        self.log_file = Path(log_file) if log_file else None
        self.host = host
        self.use_gpu = use_gpu
        self.executable = self.server_dir / (executable_name or default_executable_name())
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.probe_timeout = probe_timeout
        self.stop_grace = stop_grace
        self.metrics = metrics
        self._sleep = sleep

        self._lock = threading.Lock()
        self._handle: Optional[ServerProcessHandle] = None
        self._process: Optional[psutil.Process] = None
        self._known_alive = False
        self._superseded_pid: Optional[int] = None

    # ---- Public state ----

    @property
    def is_available(self) -> bool:
        """True if the server executable is installed."""
        return self.executable.exists()

    @property
    def handle(self) -> Optional[ServerProcessHandle]:
        with self._lock:
            return self._handle

    @property
    def is_known_alive(self) -> bool:
        with self._lock:
            return self._known_alive and self._handle is not None

    def invalidate(self) -> None:
        """Forget that the server is known to be alive. Next ensure_running re-verifies."""
        with self._lock:
            self._known_alive = False

    def is_running_model(self, model: str, port: int) -> bool:
        """Cheap check: known alive with the requested model on the requested port."""
        with self._lock:
            return (
                self._known_alive
                and self._handle is not None
                and self._handle.loaded_model == model
                and self._handle.port == port
            )

    def base_url(self, port: int) -> str:
        return f"http://{self.host}:{port}"

    def model_path(self, model: str) -> Path:
        """Resolve a model name like "base.en" to models/ggml-base.en.bin."""
        name = model
        if not name.startswith("ggml-"):
            name = f"ggml-{name}"
        if not name.endswith(".bin"):
            name = f"{name}.bin"
        return self.server_dir / "models" / name

    def build_args(self, model_path: Path, port: int) -> List[str]:
        args = [
            str(self.executable),
            "-m", str(model_path),
            "--port", str(port),
            "--host", self.host,
        ]
        # GPU is on by default in whisper.cpp
        if not self.use_gpu:
            args.append("--no-gpu")
        return args

    def probe(self, port: int) -> bool:
        """Liveness probe: GET / answers 200 when the server is ready."""
        try:
            response = requests.get(f"{self.base_url(port)}/", timeout=self.probe_timeout)
            return response.status_code == 200
        except requests.RequestException:
            return False

    # ---- Lifecycle ----

    def ensure_running(self, model: str, port: int = DEFAULT_PORT) -> ServerProcessHandle:
        """
        Make sure a server with `model` is answering on `port`.

        Returns:
            Handle of the running (spawned or adopted) server

        Raises:
            UnavailableError: executable or model file missing, or spawn failed
            ServerTimeoutError: server never became healthy
        """
        with self._lock:
            handle = self._reuse_existing_locked(model, port)
            if handle is not None:
                return handle

            handle = self._adopt_or_clean_orphan_locked(model, port)
            if handle is not None:
                return handle

            return self._spawn_locked(model, port)

    def stop_server(self) -> None:
        """Stop the server if we own one. Safe to call repeatedly."""
        with self._lock:
            self._stop_locked()

    # ---- Internals (all called with lock held) ----

    def _reuse_existing_locked(self, model: str, port: int) -> Optional[ServerProcessHandle]:
        handle = self._handle
        process = self._process
        if handle is None or process is None:
            return None

        if not self._is_alive(process):
            print(f"[Supervisor] Server (PID {handle.pid}) is no longer running")
            self._handle = None
            self._process = None
            self._known_alive = False
            return None

        if handle.loaded_model == model and handle.port == port:
            if self._known_alive:
                return handle
            if self.probe(port):
                self._known_alive = True
                return handle
            print(f"[Supervisor] Server (PID {handle.pid}) stopped responding, restarting")
        else:
            print(
                f"[Supervisor] Model change {handle.loaded_model}@{handle.port} -> "
                f"{model}@{port}, restarting server"
            )

        self._superseded_pid = handle.pid
        self._stop_locked()
        return None

    def _adopt_or_clean_orphan_locked(self, model: str, port: int) -> Optional[ServerProcessHandle]:
        pid = self._read_pid_record()
        if pid is None:
            return None

        process = self._lookup(pid)
        ours = process is not None and self._is_our_process(process)

        if process is not None and ours and pid != self._superseded_pid and self.probe(port):
            try:
                started_at = process.create_time()
            except psutil.Error:
                started_at = time.time()

            # Assumed to have the requested model loaded
            self._process = process
            self._handle = ServerProcessHandle(
                pid=pid,
                port=port,
                loaded_model=model,
                started_at=started_at,
                adopted=True,
            )
            self._known_alive = True
            print(f"[Supervisor] Adopted running server (PID {pid}) on port {port}")
            if self.metrics:
                self.metrics.log("server_adopted", pid=pid, port=port, model=model)
            return self._handle

        if process is not None:
            if ours:
                print(f"[Supervisor] Stopping orphaned server (PID {pid})")
                self._terminate(process)
            else:
                # PID was reused by an unrelated program; never touch it
                print(f"[Supervisor] PID {pid} belongs to another program, discarding record")

        self._remove_pid_record()
        return None

    def _spawn_locked(self, model: str, port: int) -> ServerProcessHandle:
        if not self.executable.exists():
            raise UnavailableError(f"Whisper server not found at {self.executable}")

        model_path = self.model_path(model)
        if not model_path.exists():
            raise UnavailableError(f"Whisper model not found: {model_path}")

        args = self.build_args(model_path, port)
        print(f"[Supervisor] Starting whisper server on port {port} (model: {model_path.name})")

        log_handle = None
        try:
            if self.log_file is not None:
                self.log_file.parent.mkdir(parents=True, exist_ok=True)
                log_handle = open(self.log_file, "ab")
            # New session so the server can outlive this application
            process = psutil.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=log_handle or subprocess.DEVNULL,
                stderr=subprocess.STDOUT if log_handle else subprocess.DEVNULL,
                cwd=str(self.executable.parent),
                start_new_session=True,
            )
        except OSError as e:
            raise UnavailableError(f"Failed to start whisper server: {e}") from e
        finally:
            if log_handle is not None:
                log_handle.close()

        self._process = process
        self._handle = ServerProcessHandle(
            pid=process.pid,
            port=port,
            loaded_model=model,
            started_at=time.time(),
        )
        self._known_alive = False
        self._superseded_pid = None
        self._write_pid_record(process.pid)
        print(f"[Supervisor] Server started with PID: {process.pid}")
        if self.metrics:
            self.metrics.log("server_spawned", pid=process.pid, port=port, model=model)

        self._wait_until_healthy_locked(port)
        return self._handle

    def _wait_until_healthy_locked(self, port: int) -> None:
        process = self._process
        for attempt in range(1, self.max_attempts + 1):
            if self.probe(port):
                self._known_alive = True
                print("[Supervisor] Server is ready")
                return

            if process is not None and not self._is_alive(process):
                self._stop_locked()
                raise ServerTimeoutError("Whisper server exited before becoming ready")

            print(f"[Supervisor] Waiting for server... ({attempt}/{self.max_attempts})")
            self._sleep(self.poll_interval)

        self._stop_locked()
        raise ServerTimeoutError(
            f"Whisper server failed to start within {self.max_attempts * self.poll_interval:.0f} seconds"
        )

    def _stop_locked(self) -> None:
        handle = self._handle
        process = self._process
        self._handle = None
        self._process = None
        self._known_alive = False

        if process is None:
            return

        confirmed = self._terminate(process)
        if confirmed:
            self._remove_pid_record(expected_pid=process.pid)
            print(f"[Supervisor] Server stopped (PID {process.pid})")
        else:
            # Keep the record so a later run can still find the live process
            print(f"[Supervisor] Could not confirm server exit (PID {process.pid})")

        if self.metrics and handle is not None:
            self.metrics.log("server_stopped", pid=handle.pid, confirmed=confirmed)

    def _terminate(self, process: psutil.Process) -> bool:
        """Terminate, wait, then kill. Returns True once the exit is confirmed."""
        try:
            if not self._is_alive(process):
                return True
            process.terminate()
            try:
                process.wait(timeout=self.stop_grace)
            except (psutil.TimeoutExpired, subprocess.TimeoutExpired):
                process.kill()
                process.wait(timeout=self.stop_grace)
            return True
        except psutil.NoSuchProcess:
            return True
        except (psutil.Error, subprocess.TimeoutExpired) as e:
            print(f"[Supervisor] Error stopping PID {process.pid}: {e}")
            return False

    def _is_alive(self, process: psutil.Process) -> bool:
        try:
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    def _lookup(self, pid: int) -> Optional[psutil.Process]:
        try:
            process = psutil.Process(pid)
        except psutil.Error:
            return None
        return process if self._is_alive(process) else None

    def _is_our_process(self, process: psutil.Process) -> bool:
        """Heuristic ownership check: the process runs our server executable."""
        expected = _process_stem(self.executable.name)
        try:
            if _process_stem(process.name()) == expected:
                return True
            exe = process.exe()
            return bool(exe) and _process_stem(exe) == expected
        except psutil.Error:
            return False

    # ---- PID record ----

    def _read_pid_record(self) -> Optional[int]:
        try:
            content = self.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            print(f"[Supervisor] Error reading {self.pid_file}: {e}")
            return None

        try:
            return int(content)
        except ValueError:
            print(f"[Supervisor] Ignoring malformed PID record: {content!r}")
            self._remove_pid_record()
            return None

    def _write_pid_record(self, pid: int) -> None:
        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(pid))
        except OSError as e:
            print(f"[Supervisor] Error writing {self.pid_file}: {e}")

    def _remove_pid_record(self, expected_pid: Optional[int] = None) -> None:
        if expected_pid is not None and self._read_pid_record_quiet() not in (None, expected_pid):
            return
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            print(f"[Supervisor] Error removing {self.pid_file}: {e}")

    def _read_pid_record_quiet(self) -> Optional[int]:
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None
