"""
Process supervisor for the gateway.

Owns the lifecycle of the single gateway process in the sandbox: finding an
existing instance, probing its port, launching, terminating and restarting.
The supervisor keeps its own registry of the process it spawned (in memory
and in the database); scanning the OS process table is only the fallback for
reattaching after the supervisor itself was restarted.
"""

import glob
import hmac
import logging
import os
import signal
import socket
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

import psutil

from .config import Config, config
from .exceptions import GatewayLaunchFailed, RestartInProgress, Unauthorized
from .jobs import Job, job_manager
from .models import GatewayRun, db_ready, record_event

logger = logging.getLogger(__name__)


class GatewayState(Enum):
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    UNRESPONSIVE = "unresponsive"
    RESTARTING = "restarting"
    KILLED = "killed"


@dataclass
class GatewayProcess:
    """Handle to the gateway OS process."""

    pid: int
    port: int
    command: list[str]
    started_at: datetime = field(default_factory=datetime.now)
    state: GatewayState = GatewayState.STARTING
    popen: Optional[subprocess.Popen] = None
    run_id: Optional[int] = None

    def is_alive(self) -> bool:
        if self.popen is not None:
            return self.popen.poll() is None
        try:
            proc = psutil.Process(self.pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "port": self.port,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
        }


def _tail(path: Path, lines: int = 20) -> str:
    try:
        with open(path, errors="replace") as f:
            return "".join(deque(f, maxlen=lines)).strip()
    except OSError:
        return ""


class GatewaySupervisor:
    """Keeps exactly one healthy gateway process running."""

    def __init__(self, settings: Config = config):
        self.settings = settings
        self._current: Optional[GatewayProcess] = None
        self._state_lock = threading.Lock()
        # Serializes launch/kill sequences; reentrant so restart can call ensure_running
        self._lock = threading.RLock()
        self._restart_gate = threading.Lock()

    # --- Discovery ---

    @property
    def signature(self) -> str:
        """Command-line fragment that identifies a gateway process."""
        return f"{Path(self.settings.gateway_bin).name} gateway"

    def _matches(self, cmdline: list[str]) -> bool:
        return bool(cmdline) and self.signature in " ".join(cmdline)

    def find_existing(self) -> Optional[GatewayProcess]:
        """Find the gateway process if the OS still has it. Does not probe the port."""
        with self._state_lock:
            current = self._current

        if current is not None:
            if current.is_alive():
                return current
            logger.warning(f"Gateway process {current.pid} has exited")
            self._forget(current, GatewayState.NOT_RUNNING)

        process = self._from_registry() or self._scan_processes()
        if process is not None:
            with self._state_lock:
                self._current = process
        return process

    def _from_registry(self) -> Optional[GatewayProcess]:
        if not db_ready():
            return None
        run = GatewayRun.latest_live()
        if run is None:
            return None
        try:
            proc = psutil.Process(run.pid)
            if proc.status() != psutil.STATUS_ZOMBIE and self._matches(proc.cmdline()):
                logger.info(f"Reattached to gateway process {run.pid} from registry")
                return GatewayProcess(
                    pid=run.pid,
                    port=run.port,
                    command=proc.cmdline(),
                    started_at=run.started_at,
                    state=GatewayState.RUNNING,
                    run_id=run.id,
                )
        except psutil.Error:
            pass
        run.mark_stopped("exited")
        return None

    def _scan_processes(self) -> Optional[GatewayProcess]:
        matches = []
        for proc in psutil.process_iter(["pid", "cmdline", "create_time"]):
            try:
                if proc.info["pid"] == os.getpid() or not self._matches(proc.info["cmdline"]):
                    continue
                matches.append(proc)
            except psutil.Error:
                continue

        if not matches:
            return None
        matches.sort(key=lambda p: p.info["create_time"] or 0)
        if len(matches) > 1:
            logger.warning(
                f"Found {len(matches)} gateway processes: {[p.info['pid'] for p in matches]}"
            )

        proc = matches[0]
        logger.info(f"Discovered running gateway process {proc.info['pid']}")
        process = GatewayProcess(
            pid=proc.info["pid"],
            port=self.settings.gateway_port,
            command=proc.info["cmdline"],
            started_at=(
                datetime.fromtimestamp(proc.info["create_time"])
                if proc.info["create_time"]
                else datetime.now()
            ),
            state=GatewayState.RUNNING,
        )
        self._register(process)
        return process

    # --- Health ---

    def is_healthy(self, process: Optional[GatewayProcess], timeout: float = None) -> bool:
        """TCP-probe the gateway port. Bounded by timeout; any failure means unhealthy."""
        timeout = self.settings.health_timeout if timeout is None else timeout
        port = process.port if process is not None else self.settings.gateway_port
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=timeout):
                healthy = True
        except OSError:
            healthy = False

        if process is not None:
            if healthy and process.state in (GatewayState.STARTING, GatewayState.UNRESPONSIVE):
                self._set_state(process, GatewayState.RUNNING)
            elif not healthy and process.state == GatewayState.RUNNING:
                logger.warning(f"Gateway process {process.pid} is not responding on port {port}")
                self._set_state(process, GatewayState.UNRESPONSIVE)
        return healthy

    def status(self, timeout: float = None) -> dict:
        """Status summary for the control API."""
        try:
            process = self.find_existing()
            if process is None:
                return {"ok": False, "status": "not_running"}
            if self.is_healthy(process, timeout):
                return {"ok": True, "status": "running", "processId": process.pid}
            return {"ok": False, "status": "not_responding", "processId": process.pid}
        except Exception as e:
            logger.error(f"Error checking gateway status: {e}")
            return {"ok": False, "status": "error", "error": str(e)}

    # --- Lifecycle ---

    def build_command(self) -> list[str]:
        cmd = [
            self.settings.gateway_bin,
            "gateway",
            "--port",
            str(self.settings.gateway_port),
            "--verbose",
            "--allow-unconfigured",
            "--bind",
            self.settings.gateway_bind_mode,
        ]
        if self.settings.gateway_token:
            cmd += ["--token", self.settings.gateway_token]
        return cmd

    def ensure_running(self) -> GatewayProcess:
        """Return the healthy gateway, launching or relaunching it if needed."""
        with self._lock:
            existing = self.find_existing()
            if existing is not None:
                if self.is_healthy(existing):
                    return existing
                logger.warning(f"Gateway process {existing.pid} exists but is not responsive, restarting")
                self._set_state(existing, GatewayState.RESTARTING)
                if not self.terminate(existing):
                    logger.error(f"Could not terminate gateway process {existing.pid}, relaunching anyway")
                time.sleep(self.settings.restart_grace)
            return self._launch()

    def _launch(self) -> GatewayProcess:
        self._kill_orphans()
        self._cleanup_lock_files()

        cmd = self.build_command()
        log_dir = self.settings.logs_dir / "gateway"
        log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = log_dir / "stdout.log"
        stderr_path = log_dir / "stderr.log"
        for path in (stdout_path, stderr_path):
            self._rotate_if_large(path)

        if self.settings.gateway_token:
            logger.info("Starting gateway with token auth...")
        else:
            logger.info("Starting gateway with device pairing (no token)...")

        cwd = self.settings.workspace_dir if self.settings.workspace_dir.is_dir() else None
        try:
            # Gateway output goes to files, never to pipes owned by this process
            with open(stdout_path, "ab") as stdout_log, open(stderr_path, "ab") as stderr_log:
                popen = subprocess.Popen(
                    cmd,
                    stdout=stdout_log,
                    stderr=stderr_log,
                    stdin=subprocess.DEVNULL,
                    cwd=cwd,
                    env=os.environ.copy(),
                    start_new_session=True,
                )
        except OSError as e:
            record_event("launch_failed", str(e))
            raise GatewayLaunchFailed(f"Could not start gateway: {e}") from e

        process = GatewayProcess(
            pid=popen.pid,
            port=self.settings.gateway_port,
            command=cmd,
            popen=popen,
        )
        with self._state_lock:
            self._current = process
        self._register(process)
        logger.info(f"Started gateway with PID {popen.pid} on port {process.port}")

        self._wait_until_listening(process, stderr_path)
        record_event("launch", f"Gateway listening on port {process.port}", pid=process.pid)
        return process

    def _wait_until_listening(self, process: GatewayProcess, stderr_path: Path):
        deadline = time.monotonic() + self.settings.startup_timeout
        while time.monotonic() < deadline:
            if not process.is_alive():
                code = process.popen.returncode if process.popen else None
                self._forget(process, GatewayState.NOT_RUNNING)
                detail = _tail(stderr_path)
                message = f"Gateway exited during startup (exit code {code})"
                if detail:
                    message += f": {detail}"
                record_event("launch_failed", message, pid=process.pid)
                raise GatewayLaunchFailed(message)
            if self.is_healthy(process, timeout=1.0):
                return
            time.sleep(0.5)

        self.terminate(process)
        message = (
            f"Gateway did not start listening on port {process.port} "
            f"within {self.settings.startup_timeout:g}s"
        )
        record_event("launch_failed", message, pid=process.pid)
        raise GatewayLaunchFailed(message)

    def terminate(self, process: GatewayProcess) -> bool:
        """SIGTERM the gateway, SIGKILL after the stop timeout. Returns True once it is gone."""
        timeout = self.settings.stop_timeout
        try:
            if process.popen is not None:
                try:
                    os.killpg(os.getpgid(process.pid), signal.SIGTERM)
                except ProcessLookupError:
                    pass
                try:
                    process.popen.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Gateway {process.pid} did not stop gracefully, forcing kill")
                    try:
                        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
                    except ProcessLookupError:
                        pass
                    process.popen.wait(timeout=5)
            else:
                proc = psutil.Process(process.pid)
                procs = [proc] + proc.children(recursive=True)
                for p in procs:
                    p.terminate()
                _, alive = psutil.wait_procs(procs, timeout=timeout)
                if alive:
                    logger.warning(f"Gateway {process.pid} did not stop gracefully, forcing kill")
                    for p in alive:
                        p.kill()
                    _, alive = psutil.wait_procs(alive, timeout=5)
                    if alive:
                        raise TimeoutError(f"processes still alive: {[p.pid for p in alive]}")
        except psutil.NoSuchProcess:
            pass
        except (OSError, psutil.Error, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to terminate gateway process {process.pid}: {e}")
            record_event("kill_failed", str(e), pid=process.pid)
            return False

        self._set_state(process, GatewayState.KILLED)
        self._forget(process, GatewayState.KILLED)
        record_event("kill", "Gateway process terminated", pid=process.pid)
        logger.info(f"Stopped gateway process {process.pid}")
        return True

    # --- Restart ---

    def authorize(self, token: Optional[str]):
        """Raise Unauthorized unless token matches the configured gateway token."""
        expected = self.settings.gateway_token
        if not expected:
            raise Unauthorized("Restart is disabled: no gateway token configured")
        if not token or not hmac.compare_digest(token.encode(), expected.encode()):
            raise Unauthorized("Invalid or missing token")

    def restart(self, token: Optional[str]) -> GatewayProcess:
        """Authorized kill + relaunch, run in the caller's thread."""
        self.authorize(token)
        if not self._restart_gate.acquire(blocking=False):
            raise RestartInProgress("A gateway restart is already in progress")
        try:
            return self._restart_sequence(self.find_existing())
        finally:
            self._restart_gate.release()

    def schedule_restart(self, token: Optional[str]) -> tuple[Optional[int], Job]:
        """Authorize and start a restart in the background.

        Returns the previous process id (if any) and the job tracking the restart.
        """
        self.authorize(token)
        if not self._restart_gate.acquire(blocking=False):
            raise RestartInProgress("A gateway restart is already in progress")

        def run():
            try:
                return self._restart_sequence(existing).to_dict()
            finally:
                self._restart_gate.release()

        try:
            existing = self.find_existing()
            job = job_manager.submit("restart", run)
        except BaseException:
            self._restart_gate.release()
            raise
        return (existing.pid if existing else None), job

    def _restart_sequence(self, existing: Optional[GatewayProcess]) -> GatewayProcess:
        with self._lock:
            record_event("restart", "Gateway restart requested", pid=existing.pid if existing else None)
            if existing is None:
                return self.ensure_running()

            logger.info(f"Killing existing gateway process {existing.pid}")
            self._set_state(existing, GatewayState.RESTARTING)
            killed = self.terminate(existing)
            # Let the OS reclaim the process and release the port and lock files
            time.sleep(self.settings.restart_grace)
            if not killed:
                logger.error(f"Error killing gateway process {existing.pid}, forcing relaunch")
                return self._launch()
            return self.ensure_running()

    @property
    def restart_in_progress(self) -> bool:
        return self._restart_gate.locked()

    def shutdown(self):
        """Called when the supervisor exits."""
        with self._state_lock:
            current = self._current
        if current is not None and self.settings.stop_gateway_on_exit:
            logger.info("Stopping gateway on supervisor exit")
            self.terminate(current)

    # --- Internals ---

    def _set_state(self, process: GatewayProcess, state: GatewayState):
        if process.state == state:
            return
        logger.debug(f"Gateway {process.pid}: {process.state.value} -> {state.value}")
        process.state = state
        if process.run_id is not None and db_ready():
            GatewayRun.update(state=state.value).where(GatewayRun.id == process.run_id).execute()

    def _register(self, process: GatewayProcess):
        if not db_ready():
            return
        run = GatewayRun.create(
            pid=process.pid,
            port=process.port,
            command=" ".join(process.command),
            state=process.state.value,
            started_at=process.started_at,
        )
        process.run_id = run.id

    def _forget(self, process: GatewayProcess, final_state: GatewayState):
        with self._state_lock:
            if self._current is process:
                self._current = None
        process.state = GatewayState.NOT_RUNNING
        if process.run_id is not None and db_ready():
            run = GatewayRun.get_or_none(GatewayRun.id == process.run_id)
            if run is not None and run.stopped_at is None:
                run.mark_stopped(final_state.value)

    def _kill_orphans(self):
        """SIGKILL any gateway process we no longer track; it may still hold the port or lock."""
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                if proc.info["pid"] == os.getpid() or not self._matches(proc.info["cmdline"]):
                    continue
                logger.warning(f"Killing orphan gateway process {proc.info['pid']}")
                proc.kill()
                record_event("kill", "Orphan gateway process killed", pid=proc.info["pid"])
            except psutil.Error:
                continue

    def _cleanup_lock_files(self):
        patterns = list(self.settings.lock_globs) + [str(self.settings.config_dir / "*.lock")]
        for pattern in patterns:
            for path in glob.glob(pattern):
                try:
                    os.unlink(path)
                    logger.debug(f"Removed stale lock file {path}")
                except OSError as e:
                    logger.warning(f"Could not remove lock file {path}: {e}")

    def _rotate_if_large(self, path: Path):
        try:
            if path.stat().st_size > self.settings.log_max_bytes:
                os.replace(path, path.with_name(path.name + ".1"))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not rotate {path}: {e}")


# Global supervisor instance
supervisor = GatewaySupervisor()
