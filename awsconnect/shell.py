"""
Foreground SSM shells, ECS Exec sessions, SSH and database clients.
"""

import logging
import os
import stat
import subprocess

from .core import command_exists, print_error, print_info, print_success, subprocess_env, wrap_command
from .errors import EnvironmentMissing, PluginMissing
from .portforward import plugin_installed
from .secrets import client_command

logger = logging.getLogger(__name__)


def ssm_shell(ctx, instance_id):
    """
    Open an interactive SSM session on an instance.

    Returns:
        int: exit code of `aws ssm start-session`
    """
    if not plugin_installed():
        raise PluginMissing()
    cmd = wrap_command(ctx, ["aws", "ssm", "start-session", "--target", instance_id])
    logger.debug("Running %s", cmd)
    print_info(f"Connecting to instance: {instance_id}")
    print_info("Press Ctrl+D or type 'exit' to disconnect")
    return subprocess.call(cmd, env=subprocess_env(ctx))


def ecs_exec(ctx, cluster, task_arn, container, command="/bin/sh"):
    """
    Run an interactive command in a container via ECS Exec.

    Returns:
        int: exit code of `aws ecs execute-command`
    """
    if not plugin_installed():
        raise PluginMissing()
    cmd = wrap_command(
        ctx,
        [
            "aws", "ecs", "execute-command",
            "--cluster", cluster,
            "--task", task_arn,
            "--container", container,
            "--interactive",
            "--command", command,
        ],
    )
    logger.debug("Running %s", cmd)
    return subprocess.call(cmd, env=subprocess_env(ctx))


def run_client(profile):
    """
    Launch mysql/psql in the foreground for a ConnectionProfile.

    Returns:
        int: the client's exit code

    Raises:
        EnvironmentMissing: If the engine has no supported client or it is not installed
    """
    argv, extra_env = client_command(profile)
    if argv is None:
        raise EnvironmentMissing(f"No command-line client for engine '{profile.engine}'")
    if not command_exists(argv[0]):
        install = "brew install mysql-client" if argv[0] == "mysql" else "brew install postgresql"
        raise EnvironmentMissing(
            f"{argv[0]} client not found",
            f"Install it with: {install}",
        )
    env = dict(os.environ)
    env.update(extra_env)
    print_info(f"Connecting to {profile.engine} database...")
    code = subprocess.call(argv, env=env)
    if code != 0:
        print_error(f"{argv[0]} exited with code {code}")
        print_info("Possible issues:")
        print("  1. Incorrect credentials (check Secrets Manager)")
        print("  2. User doesn't have permission to connect")
        print("  3. Database name is incorrect")
    return code


def ssh_command(host, user, port=22, key_file=None, use_sshpass=False):
    """
    argv for an SSH session.

    With use_sshpass the password is read by sshpass from $SSHPASS, so it
    never appears in argv.
    """
    argv = ["ssh", "-p", str(port)]
    if key_file:
        argv += ["-i", key_file]
    argv.append(f"{user}@{host}")
    if use_sshpass:
        argv = ["sshpass", "-e"] + argv
    return argv


def key_permissions_ok(key_file):
    """True if the private key is readable by its owner only (600 or 400)."""
    return stat.S_IMODE(os.stat(key_file).st_mode) in (0o600, 0o400)


def run_ssh(argv, password=None):
    """
    Run an SSH session in the foreground.

    Returns:
        int: ssh's exit code
    """
    if not command_exists(argv[0]):
        raise EnvironmentMissing(f"{argv[0]} not found")
    env = dict(os.environ)
    if password:
        env["SSHPASS"] = password
    print_info(f"Connecting to {argv[-1]}")
    print_info("Press Ctrl+D or type 'exit' to disconnect")
    code = subprocess.call(argv, env=env)
    if code == 0:
        print_success("SSH session ended successfully")
        return code
    print_error(f"SSH session ended with error code: {code}")
    print_info("Troubleshooting tips:")
    print("  - Verify the IP address is correct and accessible")
    print("  - Check that the SSH service is running on the instance")
    print("  - Verify security group allows inbound SSH")
    print("  - For password auth: ensure PasswordAuthentication is enabled in sshd_config")
    print("  - For key auth: verify the key file is correct and has proper permissions")
    return code
