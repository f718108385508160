"""
Database credential lookup in Secrets Manager and connection settings.
"""

import json
import logging
from dataclasses import dataclass, replace

from botocore.exceptions import ClientError

from .core import is_access_denied
from .errors import PermissionDenied

logger = logging.getLogger(__name__)

USERNAME_KEYS = ("username", "user", "masterUsername")
PASSWORD_KEYS = ("password", "masterPassword")

MYSQL_ENGINES = ("mysql", "mariadb", "aurora-mysql")
POSTGRES_ENGINES = ("postgres", "aurora-postgresql")


@dataclass(frozen=True)
class ConnectionProfile:
    """Everything a client needs to connect; never written to disk here."""

    host: str
    port: int
    database: str
    username: str
    password: str
    engine: str = ""

    def for_tunnel(self, local_port):
        """The same profile reached through localhost:local_port."""
        return replace(self, host="127.0.0.1", port=int(local_port))


def secret_name_candidates(db_identifier):
    # Name filters are prefix matches; the RDS-managed prefix is the least specific
    return [db_identifier, f"{db_identifier}-secret", f"rds-{db_identifier}", "rds!db-"]


def find_secret(facade, db_identifier, secret_arn=None):
    """
    Find the Secrets Manager secret holding a database's credentials.

    Args:
        facade: CloudFacade
        db_identifier: RDS instance identifier
        secret_arn: MasterUserSecret ARN from the RDS instance, if any

    Returns:
        tuple: (name, arn) or None if nothing matched
    """
    if secret_arn and secret_arn not in ("None", "null"):
        # arn:aws:secretsmanager:region:account:secret:NAME-suffix
        name = secret_arn.split(":secret:")[-1]
        return name, secret_arn

    for pattern in secret_name_candidates(db_identifier):
        try:
            secrets = facade.list_secrets(name_filter=pattern, limit=1)
        except ClientError as e:
            if is_access_denied(e):
                raise PermissionDenied(
                    "Cannot list secrets", permission="secretsmanager:ListSecrets"
                ) from e
            logger.debug("Secret lookup for %s failed: %s", pattern, e)
            continue
        if secrets:
            return secrets[0]
    return None


def get_secret_value(facade, secret_id):
    """
    Raises:
        PermissionDenied: If secretsmanager:GetSecretValue is denied
    """
    try:
        return facade.get_secret_string(secret_id)
    except ClientError as e:
        if is_access_denied(e):
            raise PermissionDenied(
                f"Could not retrieve secret value for {secret_id}",
                permission="secretsmanager:GetSecretValue",
                remediation=(
                    "Please contact your AWS administrator to grant the following IAM permission:\n"
                    "  - secretsmanager:GetSecretValue\n"
                    f"  - Resource: {secret_id}"
                ),
            ) from e
        raise


def _pick(data, exact_keys, fragment):
    for key in exact_keys:
        value = data.get(key)
        if value:
            return str(value)
    for key, value in data.items():
        if fragment in key.lower() and value:
            return str(value)
    return None


def parse_secret(secret_string):
    """
    Extract (username, password) from a secret string.

    JSON secrets are searched by the usual RDS key names, then by any key
    containing "user" / "pass". Non-JSON secrets are read as key=value lines.

    Returns:
        tuple: (username, password), either may be None
    """
    if not secret_string:
        return None, None
    try:
        data = json.loads(secret_string)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        return _pick(data, USERNAME_KEYS, "user"), _pick(data, PASSWORD_KEYS, "pass")

    pairs = {}
    for line in secret_string.splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            pairs[key.strip()] = value.strip()
    return _pick(pairs, USERNAME_KEYS, "user"), _pick(pairs, PASSWORD_KEYS, "pass")


def client_command(profile):
    """
    argv and extra environment for the engine's command-line client.

    The password goes in MYSQL_PWD / PGPASSWORD, never in argv.

    Returns:
        tuple: (argv, env) or (None, None) for unsupported engines
    """
    if profile.engine in MYSQL_ENGINES:
        argv = ["mysql", "-h", profile.host, "-P", str(profile.port), "-u", profile.username]
        if profile.database:
            argv.append(profile.database)
        return argv, {"MYSQL_PWD": profile.password}
    if profile.engine in POSTGRES_ENGINES:
        argv = ["psql", "-h", profile.host, "-p", str(profile.port), "-U", profile.username]
        if profile.database:
            argv += ["-d", profile.database]
        return argv, {"PGPASSWORD": profile.password}
    return None, None
