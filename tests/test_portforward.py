"""Tests for aws-connect port-forward session management."""

import json
import shutil
import signal
import subprocess
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from awsconnect.core import CredentialContext
from awsconnect.errors import (
    AccessDenied,
    InconsistentState,
    PluginMissing,
    PortNotListening,
    SpawnFailed,
    TargetUnreachable,
    UnknownFailure,
)
from awsconnect.portforward import (
    SessionManager,
    classify_failure,
    default_local_port,
    tail_text,
    terminate_child,
)


def fake_process(pid=4242, exit_code=None):
    process = MagicMock()
    process.pid = pid
    process.poll.return_value = exit_code
    return process


@patch("builtins.print")
class TestSessionManager(unittest.TestCase):
    """Test starting, reusing and stopping tunnels."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.sleeps = []
        self.ctx = CredentialContext(mode="profile", profile="dev", region="eu-west-1")
        self.manager = SessionManager(self.ctx, state_dir=self.temp_dir, sleep=self.sleeps.append)

        patcher = patch("awsconnect.portforward.plugin_installed", return_value=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_pid(self, db_identifier, pid):
        Path(self.temp_dir, f"{db_identifier}.pid").write_text(f"{pid}\n")

    def start(self, **kwargs):
        return self.manager.start("orders-db", "i-0abc", "orders.rds.amazonaws.com", 3306, 13306, **kwargs)

    def test_start_writes_pid_file(self, _print):
        """Test a started tunnel records its pid and runs in its own session."""
        process = fake_process()
        with patch("awsconnect.portforward.subprocess.Popen", return_value=process) as popen, \
                patch("awsconnect.portforward.port_is_listening", side_effect=[False, True]):
            session = self.start()

        self.assertEqual(session.pid, 4242)
        self.assertFalse(session.reused)
        self.assertEqual(session.local_port, 13306)
        self.assertEqual(Path(self.temp_dir, "orders-db.pid").read_text().strip(), "4242")
        kwargs = popen.call_args[1]
        self.assertTrue(kwargs["start_new_session"])
        self.assertEqual(kwargs["env"]["AWS_REGION"], "eu-west-1")

    def test_start_command_parameters(self, _print):
        """Test the start-session command carries the port-forward parameters."""
        cmd = self.manager.build_command("i-0abc", "orders.rds.amazonaws.com", 3306, 13306)
        self.assertEqual(cmd[:3], ["aws", "--profile", "dev"])
        self.assertIn("AWS-StartPortForwardingSessionToRemoteHost", cmd)
        parameters = json.loads(cmd[cmd.index("--parameters") + 1])
        self.assertEqual(
            parameters,
            {
                "host": ["orders.rds.amazonaws.com"],
                "portNumber": ["3306"],
                "localPortNumber": ["13306"],
            },
        )

    def test_running_session_is_reused(self, _print):
        """Test a live tunnel listening on the requested port is kept."""
        self.write_pid("orders-db", 999)
        with patch("awsconnect.portforward.process_alive", return_value=True), \
                patch("awsconnect.portforward.port_is_listening", return_value=True), \
                patch("awsconnect.portforward.subprocess.Popen") as popen:
            session = self.start()
        self.assertTrue(session.reused)
        self.assertEqual(session.pid, 999)
        self.assertEqual(session.local_port, 13306)
        popen.assert_not_called()

    def test_reused_session_on_other_port_has_unknown_port(self, _print):
        """Test a live tunnel not listening on the requested port reports no local port."""
        self.write_pid("orders-db", 999)
        with patch("awsconnect.portforward.process_alive", return_value=True), \
                patch("awsconnect.portforward.port_is_listening", return_value=False), \
                patch("awsconnect.portforward.subprocess.Popen") as popen:
            session = self.start()
        self.assertTrue(session.reused)
        self.assertIsNone(session.local_port)
        popen.assert_not_called()
        printed = " ".join(str(call) for call in _print.call_args_list)
        self.assertIn("not listening on localhost:13306", printed)

    def test_replace_stops_running_session(self, _print):
        """Test replace=True terminates the recorded pid before spawning."""
        self.write_pid("orders-db", 999)
        alive = {999: True}
        process = fake_process()
        with patch("awsconnect.portforward.process_alive", side_effect=lambda pid: alive.get(pid, False)), \
                patch("awsconnect.portforward.terminate_process") as terminate, \
                patch("awsconnect.portforward.subprocess.Popen", return_value=process), \
                patch("awsconnect.portforward.port_is_listening", side_effect=[False, True]):
            session = self.start(replace=True)
        terminate.assert_called_once()
        self.assertEqual(terminate.call_args[0][0], 999)
        self.assertEqual(session.pid, 4242)

    def test_stale_pid_file_is_overwritten(self, _print):
        """Test a PID file naming a dead process does not block a new tunnel."""
        self.write_pid("orders-db", 999)
        process = fake_process()
        with patch("awsconnect.portforward.process_alive", return_value=False), \
                patch("awsconnect.portforward.subprocess.Popen", return_value=process), \
                patch("awsconnect.portforward.port_is_listening", side_effect=[False, True]):
            session = self.start()
        self.assertFalse(session.reused)
        self.assertEqual(Path(self.temp_dir, "orders-db.pid").read_text().strip(), "4242")

    def test_missing_plugin(self, _print):
        """Test a missing session-manager-plugin fails before spawning."""
        with patch("awsconnect.portforward.plugin_installed", return_value=False), \
                patch("awsconnect.portforward.subprocess.Popen") as popen:
            with self.assertRaises(PluginMissing) as ctx:
                self.start()
        self.assertEqual(ctx.exception.exit_code, 6)
        popen.assert_not_called()

    def test_local_port_in_use(self, _print):
        """Test a busy local port fails before spawning."""
        with patch("awsconnect.portforward.port_is_listening", return_value=True), \
                patch("awsconnect.portforward.subprocess.Popen") as popen:
            with self.assertRaises(InconsistentState):
                self.start()
        popen.assert_not_called()

    def test_spawn_failure(self, _print):
        """Test an unstartable aws CLI raises SpawnFailed and leaves no PID file."""
        with patch("awsconnect.portforward.port_is_listening", return_value=False), \
                patch("awsconnect.portforward.subprocess.Popen", side_effect=FileNotFoundError("aws")):
            with self.assertRaises(SpawnFailed):
                self.start()
        self.assertFalse(Path(self.temp_dir, "orders-db.pid").exists())

    def test_port_never_listens_kills_process(self, _print):
        """Test a tunnel whose port never opens is terminated and reaped."""
        process = fake_process()
        with patch("awsconnect.portforward.subprocess.Popen", return_value=process), \
                patch("awsconnect.portforward.port_is_listening", return_value=False):
            with self.assertRaises(PortNotListening) as ctx:
                self.start()
        process.terminate.assert_called_once()
        process.wait.assert_called_once()
        self.assertFalse(Path(self.temp_dir, "orders-db.pid").exists())
        self.assertIn("orders-db.log", ctx.exception.remediation)
        self.assertEqual(self.sleeps, [3, 5])

    def test_pid_file_write_failure_kills_process(self, _print):
        """Test an unwritable PID file terminates the spawned tunnel."""
        process = fake_process()
        with patch("awsconnect.portforward.subprocess.Popen", return_value=process), \
                patch("awsconnect.portforward.port_is_listening", return_value=False), \
                patch.object(Path, "write_text", side_effect=OSError("No space left on device")):
            with self.assertRaises(OSError):
                self.start()
        process.terminate.assert_called_once()
        self.assertFalse(Path(self.temp_dir, "orders-db.pid").exists())

    def test_process_exits_early_is_classified(self, _print):
        """Test a tunnel that dies at once is classified from its log."""
        process = fake_process(exit_code=255)

        def popen(cmd, stdout, **kwargs):
            stdout.write("An error occurred (AccessDeniedException) when calling StartSession\n")
            return process

        with patch("awsconnect.portforward.subprocess.Popen", side_effect=popen), \
                patch("awsconnect.portforward.port_is_listening", return_value=False):
            with self.assertRaises(AccessDenied):
                self.start()
        process.terminate.assert_not_called()
        self.assertFalse(Path(self.temp_dir, "orders-db.pid").exists())

    def test_stop(self, _print):
        """Test stop terminates the recorded process and removes its PID file."""
        self.write_pid("orders-db", 999)
        with patch("awsconnect.portforward.process_alive", return_value=True), \
                patch("awsconnect.portforward.terminate_process") as terminate:
            self.assertTrue(self.manager.stop("orders-db"))
        terminate.assert_called_once()
        self.assertFalse(Path(self.temp_dir, "orders-db.pid").exists())

    def test_stop_is_idempotent(self, _print):
        """Test stopping a database with no tunnel succeeds twice."""
        with patch("awsconnect.portforward.terminate_process") as terminate:
            self.assertFalse(self.manager.stop("orders-db"))
            self.assertFalse(self.manager.stop("orders-db"))
        terminate.assert_not_called()

    def test_stop_stale_pid_removes_file(self, _print):
        """Test stop cleans up a PID file naming a dead process."""
        self.write_pid("orders-db", 999)
        with patch("awsconnect.portforward.process_alive", return_value=False):
            self.assertFalse(self.manager.stop("orders-db"))
        self.assertFalse(Path(self.temp_dir, "orders-db.pid").exists())

    def test_list_sessions_skips_stale(self, _print):
        """Test listing drops stale and unreadable PID files."""
        self.write_pid("orders-db", 100)
        self.write_pid("billing-db", 200)
        self.write_pid("garbage", "not-a-pid")
        with patch("awsconnect.portforward.process_alive", side_effect=lambda pid: pid == 100):
            sessions = self.manager.list_sessions()
        self.assertEqual([session.db_identifier for session in sessions], ["orders-db"])
        self.assertFalse(Path(self.temp_dir, "billing-db.pid").exists())
        self.assertFalse(Path(self.temp_dir, "garbage.pid").exists())


class TestTerminateChild(unittest.TestCase):
    """Test stopping tunnel processes spawned by this process."""

    def test_child_is_reaped_without_kill(self):
        """Test a child that honours SIGTERM is reaped well within the grace period."""
        process = subprocess.Popen(["sleep", "60"])
        started = time.monotonic()
        with patch("awsconnect.portforward.logger") as log:
            terminate_child(process, grace=5)
        self.assertLess(time.monotonic() - started, 4)
        self.assertIsNotNone(process.returncode)
        log.warning.assert_not_called()

    def test_child_ignoring_sigterm_is_killed(self):
        """Test a child that ignores SIGTERM is killed after the grace period."""
        process = subprocess.Popen(["sh", "-c", "trap '' TERM; while :; do sleep 0.1; done"])
        time.sleep(0.2)
        with patch("awsconnect.portforward.logger") as log:
            terminate_child(process, grace=1)
        self.assertEqual(process.returncode, -signal.SIGKILL)
        log.warning.assert_called_once()

    def test_exited_child_is_left_alone(self):
        """Test an already reaped child is not signalled."""
        process = fake_process(exit_code=0)
        terminate_child(process)
        process.terminate.assert_not_called()


class TestFailureClassification(unittest.TestCase):
    """Test mapping tunnel logs to errors."""

    def test_plugin_missing(self):
        """Test the plugin-not-found message maps to PluginMissing."""
        error = classify_failure("SessionManagerPlugin is not found. Please refer to ...")
        self.assertIsInstance(error, PluginMissing)

    def test_access_denied(self):
        """Test AccessDeniedException maps to AccessDenied on ssm:StartSession."""
        error = classify_failure("An error occurred (AccessDeniedException) when calling the StartSession")
        self.assertIsInstance(error, AccessDenied)
        self.assertEqual(error.permission, "ssm:StartSession")

    def test_target_not_connected(self):
        """Test TargetNotConnected maps to TargetUnreachable."""
        error = classify_failure("An error occurred (TargetNotConnected) when calling the StartSession")
        self.assertIsInstance(error, TargetUnreachable)

    def test_unknown_includes_tail(self):
        """Test unknown failures quote the end of the log and its path."""
        log = "\n".join(f"line {n}" for n in range(30))
        error = classify_failure(log, "/tmp/orders-db.log")
        self.assertIsInstance(error, UnknownFailure)
        self.assertIn("line 29", error.message)
        self.assertNotIn("line 9\n", error.message)
        self.assertIn("/tmp/orders-db.log", error.remediation)

    def test_empty_log_lists_likely_causes(self):
        """Test an empty log still suggests the common causes."""
        error = classify_failure("")
        self.assertIsInstance(error, UnknownFailure)
        self.assertIn("ssm:StartSession", error.remediation)

    def test_tail_text(self):
        """Test tail_text keeps the last lines."""
        self.assertEqual(tail_text("a\nb\nc\n", lines=2), "b\nc")


class TestDefaultLocalPort(unittest.TestCase):
    def test_known_ports(self):
        """Test the MySQL, PostgreSQL and fallback local ports."""
        self.assertEqual(default_local_port(3306), 13306)
        self.assertEqual(default_local_port("5432"), 15432)
        self.assertEqual(default_local_port(1521), 11521)


if __name__ == "__main__":
    unittest.main()
