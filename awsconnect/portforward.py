"""
Background SSM port-forward sessions tracked by PID files.

Each database gets <state-dir>/<db-id>.pid (the process id, one line) and
<state-dir>/<db-id>.log (the tunnel's stdout/stderr). The PID file is an
advisory lock: start() checks it and then acts, so two invocations racing on
the same database can still both spawn a tunnel.
"""

import json
import logging
import os
import re
import shutil
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import config
from .core import print_info, print_success, print_warning, subprocess_env, wrap_command
from .errors import (
    AccessDenied,
    InconsistentState,
    PluginMissing,
    PortNotListening,
    SpawnFailed,
    TargetUnreachable,
    UnknownFailure,
)

logger = logging.getLogger(__name__)

# Known tunnel failure signatures, checked in order against the session log.
FAILURE_SIGNATURES = [
    (
        re.compile(r"session-manager-plugin.*not found|command not found|SessionManagerPlugin is not found", re.I),
        lambda log_path: PluginMissing("reported by the tunnel process"),
    ),
    (
        re.compile(r"AccessDenied|UnauthorizedOperation", re.I),
        lambda log_path: AccessDenied(),
    ),
    (
        re.compile(r"TargetNotConnected|InvalidInstanceId", re.I),
        lambda log_path: TargetUnreachable(),
    ),
]


@dataclass
class PortForwardSession:
    db_identifier: str
    pid: int
    pid_path: Path
    log_path: Path
    local_port: Optional[int] = None
    bastion_id: Optional[str] = None
    remote_host: Optional[str] = None
    remote_port: Optional[int] = None
    reused: bool = False


def classify_failure(log_text, log_path=None):
    """
    Map a dead tunnel's log output onto a SessionError.

    Args:
        log_text: Contents of the session log
        log_path: Path shown to the operator for unknown failures

    Returns:
        SessionError instance (not raised)
    """
    for pattern, make_error in FAILURE_SIGNATURES:
        if pattern.search(log_text or ""):
            return make_error(log_path)
    return UnknownFailure(tail_text(log_text), log_path)


def tail_text(text, lines=config.LOG_TAIL_LINES):
    return "\n".join((text or "").strip().splitlines()[-lines:])


def read_log(log_path):
    try:
        return Path(log_path).read_text(errors="replace")
    except OSError:
        return ""


def process_alive(pid):
    """True if a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Exists, owned by someone else
    return True


def port_is_listening(port, host="127.0.0.1"):
    """True if something accepts TCP connections on host:port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(1)
    try:
        return sock.connect_ex((host, port)) == 0
    except OSError as e:
        logger.debug("Port %s check failed: %s", port, e)
        return False
    finally:
        sock.close()


def plugin_installed():
    return shutil.which(config.SESSION_MANAGER_PLUGIN) is not None


def terminate_process(pid, grace=config.TUNNEL_STOP_GRACE, sleep=time.sleep):
    """SIGTERM pid, escalating to SIGKILL if it outlives the grace period."""
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    for _ in range(grace * 2):
        if not process_alive(pid):
            return
        sleep(0.5)
    logger.warning("Process %s ignored SIGTERM, sending SIGKILL", pid)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def terminate_child(process, grace=config.TUNNEL_STOP_GRACE):
    """Stop and reap a Popen child started by this process."""
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s ignored SIGTERM, sending SIGKILL", process.pid)
        process.kill()
        process.wait()


def default_local_port(remote_port):
    """Local port for a database port: 3306→13306, 5432→15432, else 10000+port."""
    remote_port = int(remote_port)
    if remote_port == 3306:
        return 13306
    if remote_port == 5432:
        return 15432
    return 10000 + remote_port


class SessionManager:
    """Starts, finds and stops port-forward tunnels for a credential context."""

    def __init__(self, ctx, state_dir=None, sleep=time.sleep):
        self.ctx = ctx
        self.state_dir = Path(state_dir or config.STATE_DIR)
        self.sleep = sleep

    def pid_path(self, db_identifier):
        return self.state_dir / f"{db_identifier}.pid"

    def log_path(self, db_identifier):
        return self.state_dir / f"{db_identifier}.log"

    def read_pid(self, db_identifier):
        """PID recorded for db_identifier, or None if missing or unreadable."""
        try:
            return int(self.pid_path(db_identifier).read_text().strip())
        except (OSError, ValueError):
            return None

    def _remove_pid_file(self, db_identifier):
        try:
            self.pid_path(db_identifier).unlink()
        except FileNotFoundError:
            pass

    def status(self, db_identifier):
        """
        The live session for db_identifier, or None.

        A PID file pointing at a dead process is removed.
        """
        pid = self.read_pid(db_identifier)
        if pid is None:
            if self.pid_path(db_identifier).exists():
                self._remove_pid_file(db_identifier)
            return None
        if not process_alive(pid):
            logger.debug("Removing stale PID file for %s (PID %s)", db_identifier, pid)
            self._remove_pid_file(db_identifier)
            return None
        return PortForwardSession(
            db_identifier=db_identifier,
            pid=pid,
            pid_path=self.pid_path(db_identifier),
            log_path=self.log_path(db_identifier),
        )

    def list_sessions(self):
        if not self.state_dir.is_dir():
            return []
        sessions = []
        for pid_file in sorted(self.state_dir.glob("*.pid")):
            session = self.status(pid_file.stem)
            if session:
                sessions.append(session)
        return sessions

    def build_command(self, bastion_id, remote_host, remote_port, local_port):
        parameters = {
            "host": [remote_host],
            "portNumber": [str(remote_port)],
            "localPortNumber": [str(local_port)],
        }
        return wrap_command(
            self.ctx,
            [
                "aws", "ssm", "start-session",
                "--target", bastion_id,
                "--document-name", config.PORT_FORWARD_DOCUMENT,
                "--parameters", json.dumps(parameters),
            ],
        )

    def start(self, db_identifier, bastion_id, remote_host, remote_port, local_port,
              replace=False):
        """
        Start (or reuse) the tunnel localhost:local_port → remote_host:remote_port.

        Args:
            replace: Kill a running session for db_identifier instead of reusing it

        Returns:
            PortForwardSession (reused=True when an existing tunnel was kept;
            its local_port is None if the tunnel is not on local_port)

        Raises:
            PluginMissing, SpawnFailed, PortNotListening, AccessDenied,
            TargetUnreachable, UnknownFailure, InconsistentState
        """
        existing = self.status(db_identifier)
        if existing:
            if not replace:
                print_info(f"Port forwarding already running (PID: {existing.pid})")
                existing.reused = True
                if port_is_listening(local_port):
                    existing.local_port = local_port
                else:
                    print_warning(
                        f"The running tunnel is not listening on localhost:{local_port}; "
                        "the port it was started with is unknown."
                    )
                return existing
            print_warning(f"Stopping existing port forwarding (PID: {existing.pid})")
            self.stop(db_identifier)

        if not plugin_installed():
            raise PluginMissing()

        if port_is_listening(local_port):
            raise InconsistentState(
                f"Local port {local_port} is already in use by another process",
                "Free the port or choose another one with --local-port",
            )

        self.state_dir.mkdir(parents=True, exist_ok=True)
        pid_path = self.pid_path(db_identifier)
        log_path = self.log_path(db_identifier)
        cmd = self.build_command(bastion_id, remote_host, remote_port, local_port)

        print_info("Starting port forwarding in background...")
        logger.debug("Tunnel command: %s", cmd)
        logger.debug("Log file: %s", log_path)
        try:
            with open(log_path, "w") as log_file:
                process = subprocess.Popen(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    env=subprocess_env(self.ctx),
                    start_new_session=True,
                )
        except OSError as e:
            raise SpawnFailed(
                f"Failed to start port forwarding: {e}",
                "Make sure the AWS CLI is installed and in PATH",
            ) from e

        try:
            pid_path.write_text(f"{process.pid}\n")
            logger.debug("SSM session started with PID: %s", process.pid)
            self._verify(process, local_port, log_path)
        except BaseException:
            terminate_child(process)
            self._remove_pid_file(db_identifier)
            raise

        print_success(f"Port forwarding established on localhost:{local_port}")
        return PortForwardSession(
            db_identifier=db_identifier,
            pid=process.pid,
            pid_path=pid_path,
            log_path=log_path,
            local_port=local_port,
            bastion_id=bastion_id,
            remote_host=remote_host,
            remote_port=int(remote_port),
        )

    def _verify(self, process, local_port, log_path):
        print_info("Waiting for port forwarding to establish...")
        self.sleep(config.TUNNEL_SETTLE_DELAY)
        if process.poll() is not None:
            raise classify_failure(read_log(log_path), log_path)

        if port_is_listening(local_port):
            return
        print_warning(
            f"Port forwarding process is running but port {local_port} is not listening yet."
        )
        print_info("This may take a few more seconds. Waiting...")
        self.sleep(config.PORT_RECHECK_DELAY)
        if process.poll() is not None:
            raise classify_failure(read_log(log_path), log_path)
        if not port_is_listening(local_port):
            logger.debug("Last lines of %s:\n%s", log_path, tail_text(read_log(log_path)))
            raise PortNotListening(local_port, log_path)

    def stop(self, db_identifier):
        """
        Stop the tunnel for db_identifier. Stopping nothing is not an error.

        Returns:
            bool: True if a running process was terminated
        """
        pid = self.read_pid(db_identifier)
        stopped = False
        if pid is not None and process_alive(pid):
            terminate_process(pid, sleep=self.sleep)
            stopped = True
        self._remove_pid_file(db_identifier)
        return stopped
