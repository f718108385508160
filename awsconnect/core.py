"""
Credential handling, session creation and operator output for aws-connect.
"""

import configparser
import json
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import AWS_REGION
from .errors import AwsConnectError, EnvironmentMissing, PermissionDenied

logger = logging.getLogger(__name__)

MODE_ENVIRONMENT = "environment"
MODE_PROFILE = "profile"
MODE_VAULT = "vault"
MODE_MANUAL = "manual"


@dataclass(frozen=True)
class CredentialContext:
    """Which credentials every AWS call and child process should use."""

    mode: str = MODE_ENVIRONMENT
    profile: Optional[str] = None
    region: str = AWS_REGION
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None

    def describe(self):
        if self.mode == MODE_VAULT:
            return f"aws-vault profile '{self.profile}' ({self.region})"
        if self.mode == MODE_PROFILE:
            return f"AWS profile '{self.profile}' ({self.region})"
        if self.mode == MODE_MANUAL:
            return f"manual credentials {self.access_key_id[:10]}*** ({self.region})"
        return f"environment credentials ({self.region})"


def print_info(message):
    print(f"ℹ {message}")


def print_success(message):
    print(f"✓ {message}")


def print_warning(message):
    print(f"⚠ {message}", file=sys.stderr)


def print_error(message):
    print(f"✗ {message}", file=sys.stderr)


def setup_logging(debug):
    """Configure stderr logging; DEBUG level when debug is set."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # boto3 debug output drowns everything else
    for noisy in ("boto3", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def command_exists(name):
    return shutil.which(name) is not None


def get_aws_credentials_path():
    """Get the AWS credentials file path."""
    return os.environ.get("AWS_SHARED_CREDENTIALS_FILE", os.path.expanduser("~/.aws/credentials"))


def get_aws_config_path():
    """Get the AWS config file path."""
    return os.environ.get("AWS_CONFIG_FILE", os.path.expanduser("~/.aws/config"))


def read_aws_config(config_file):
    """
    Read an AWS config or credentials file.

    Args:
        config_file: Path to the file

    Returns:
        ConfigParser object (empty if the file does not exist)
    """
    config = configparser.ConfigParser()
    config.optionxform = str  # Preserve case sensitivity
    if os.path.exists(config_file):
        config.read(config_file)
    return config


def list_profiles():
    """
    List profile names from ~/.aws/credentials and ~/.aws/config.

    Config sections are named "profile NAME" (except "default"); the prefix is
    stripped so both files yield plain profile names.

    Returns:
        list: Sorted unique profile names
    """
    names = set(read_aws_config(get_aws_credentials_path()).sections())
    for section in read_aws_config(get_aws_config_path()).sections():
        if section.startswith("profile "):
            names.add(section[len("profile "):].strip())
        elif section == "default":
            names.add(section)
    return sorted(names)


def list_vault_profiles():
    """
    List profiles known to aws-vault.

    Returns:
        list: Profile names from the first column of `aws-vault list`
    """
    if not command_exists("aws-vault"):
        return []
    result = subprocess.run(
        ["aws-vault", "list"], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
    )
    if result.returncode != 0:
        logger.debug("aws-vault list failed: %s", result.stderr.strip())
        return []
    profiles = []
    for line in result.stdout.splitlines():
        fields = line.split()
        if not fields or fields[0] in ("Profile", "=======") or fields[0].startswith("="):
            continue
        if fields[0] not in profiles:
            profiles.append(fields[0])
    return profiles


def get_vault_credentials(profile):
    """
    Fetch temporary credentials for an aws-vault profile.

    Args:
        profile: aws-vault profile name

    Returns:
        dict with AccessKeyId, SecretAccessKey, SessionToken

    Raises:
        EnvironmentMissing: If aws-vault is not installed
        AwsConnectError: If aws-vault fails or prints something unexpected
    """
    if not command_exists("aws-vault"):
        raise EnvironmentMissing(
            "aws-vault is not installed",
            "macOS: brew install aws-vault\n"
            "Other: https://github.com/99designs/aws-vault#installation",
        )
    result = subprocess.run(
        ["aws-vault", "exec", "--json", profile],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    if result.returncode != 0:
        raise AwsConnectError(
            f"Failed to access AWS with aws-vault profile: {profile}",
            result.stderr.strip() or None,
        )
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise AwsConnectError(f"aws-vault returned unreadable credentials: {e}")


def create_session(ctx):
    """
    Create a boto3 session for a credential context.

    Args:
        ctx: CredentialContext

    Returns:
        boto3.Session bound to ctx.region
    """
    if ctx.mode == MODE_PROFILE:
        return boto3.Session(profile_name=ctx.profile, region_name=ctx.region)
    if ctx.mode == MODE_MANUAL:
        return boto3.Session(
            aws_access_key_id=ctx.access_key_id,
            aws_secret_access_key=ctx.secret_access_key,
            aws_session_token=ctx.session_token or None,
            region_name=ctx.region,
        )
    if ctx.mode == MODE_VAULT:
        creds = get_vault_credentials(ctx.profile)
        return boto3.Session(
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds.get("SessionToken"),
            region_name=ctx.region,
        )
    return boto3.Session(region_name=ctx.region)


def wrap_command(ctx, argv):
    """
    Build the argv for running an `aws` CLI command under ctx.

    aws-vault mode prefixes `aws-vault exec PROFILE --`; profile mode inserts
    `--profile`. `--region` is appended unless already present.
    """
    cmd = list(argv)
    if cmd and cmd[0] == "aws":
        if not any(arg == "--region" or arg.startswith("--region=") for arg in cmd):
            cmd += ["--region", ctx.region]
        if ctx.mode == MODE_PROFILE and ctx.profile:
            cmd[1:1] = ["--profile", ctx.profile]
    if ctx.mode == MODE_VAULT and ctx.profile:
        cmd = ["aws-vault", "exec", ctx.profile, "--"] + cmd
    return cmd


def subprocess_env(ctx):
    """Environment for child processes so they see the same credentials."""
    env = dict(os.environ)
    env["AWS_REGION"] = ctx.region
    env["AWS_DEFAULT_REGION"] = ctx.region
    if ctx.mode == MODE_MANUAL:
        env["AWS_ACCESS_KEY_ID"] = ctx.access_key_id
        env["AWS_SECRET_ACCESS_KEY"] = ctx.secret_access_key
        if ctx.session_token:
            env["AWS_SESSION_TOKEN"] = ctx.session_token
        else:
            env.pop("AWS_SESSION_TOKEN", None)
        env.pop("AWS_PROFILE", None)
    return env


def verify_identity(session):
    """
    Verify credentials with STS GetCallerIdentity.

    Args:
        session: boto3.Session

    Returns:
        dict with Account, Arn, UserId

    Raises:
        PermissionDenied: If the credentials are invalid or expired
        AwsConnectError: If AWS cannot be reached
    """
    try:
        return session.client("sts").get_caller_identity()
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code")
        if error_code in ("InvalidClientTokenId", "ExpiredToken", "SignatureDoesNotMatch"):
            raise PermissionDenied(
                "AWS credentials are invalid or expired",
                remediation=(
                    "This typically means one of:\n"
                    "  1. The access keys were deactivated or deleted\n"
                    "  2. The temporary session credentials have expired\n"
                    "  3. The AWS credentials are incorrect"
                ),
            ) from e
        raise PermissionDenied(
            f"Failed to authenticate with AWS: {e}", permission="sts:GetCallerIdentity"
        ) from e
    except BotoCoreError as e:
        raise AwsConnectError(
            f"AWS connection failed: {e}",
            "Please check your credentials and try again",
        ) from e


def error_code(exc):
    """The AWS error code of a ClientError, or None."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_access_denied(exc):
    code = error_code(exc) or ""
    return code in ("AccessDenied", "AccessDeniedException", "UnauthorizedOperation") or (
        "AccessDenied" in code
    )
