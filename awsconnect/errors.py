"""
Exception hierarchy for aws-connect.

Every failure that ends an invocation is an AwsConnectError carrying the
operator-facing message, optional remediation text and the process exit code.
"""


class AwsConnectError(Exception):
    """Base class for all aws-connect failures."""

    exit_code = 1

    def __init__(self, message, remediation=None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def __str__(self):
        return self.message


class PermissionDenied(AwsConnectError):
    """A required AWS action was denied."""

    exit_code = 3

    def __init__(self, message, permission=None, remediation=None):
        if remediation is None and permission:
            remediation = (
                f"Missing permission: {permission}\n"
                f"Please contact your AWS administrator to grant this permission."
            )
        super().__init__(message, remediation)
        self.permission = permission


class NotFound(AwsConnectError):
    """An expected resource (VPC, image, secret, instance) is absent."""

    exit_code = 4


class ReadinessTimeout(AwsConnectError):
    """
    A polling loop ran out of attempts.

    soft=True means the resource is probably still coming up and the caller
    may choose to continue.
    """

    exit_code = 5

    def __init__(self, phase, soft, message=None, remediation=None):
        super().__init__(message or f"Timed out waiting for {phase}", remediation)
        self.phase = phase
        self.soft = soft


class EnvironmentMissing(AwsConnectError):
    """A required local tool or plugin is not installed."""

    exit_code = 6


class InconsistentState(AwsConnectError):
    """Something reported success but is not in the expected state."""

    exit_code = 7


class UserCancelled(AwsConnectError):
    """The operator declined to continue."""

    exit_code = 2


# Bastion provisioning


class PlacementUnresolved(NotFound):
    def __init__(self, db_identifier, detail=None):
        super().__init__(
            f"Could not determine VPC for database '{db_identifier}'"
            + (f": {detail}" if detail else ""),
            "Missing permission: rds:DescribeDBInstances (or the database has no subnet group)",
        )
        self.db_identifier = db_identifier


class ImageNotFound(NotFound):
    def __init__(self, pattern):
        super().__init__(
            f"Could not find an AMI matching '{pattern}'",
            "Missing permission: ec2:DescribeImages",
        )
        self.pattern = pattern


class ResourceCreationDenied(PermissionDenied):
    """Creating one of the bastion's IAM or network resources failed."""

    def __init__(self, resource, permission, detail=None):
        message = f"Failed to create {resource}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(
            message,
            permission=permission,
            remediation=(
                f"Missing permission: {permission}\n"
                f"Please contact your AWS administrator to grant IAM permissions "
                f"or use an existing bastion host."
            ),
        )
        self.resource = resource


class LaunchFailed(AwsConnectError):
    def __init__(self, reason):
        super().__init__(
            f"Failed to create EC2 instance: {reason}",
            "Possible causes:\n"
            "  - Missing permission: ec2:RunInstances\n"
            "  - Missing permission: ec2:CreateTags\n"
            "  - Insufficient instance quota\n"
            "  - Invalid subnet or security group",
        )
        self.reason = reason


class InstanceStateError(InconsistentState):
    """The bastion went into a state it can never come back from."""

    def __init__(self, instance_id, state):
        super().__init__(f"Instance {instance_id} is in unexpected state: {state}")
        self.instance_id = instance_id
        self.state = state


# Port-forward sessions


class SessionError(AwsConnectError):
    """Mixin base for every port-forward failure."""


class PluginMissing(SessionError, EnvironmentMissing):
    def __init__(self, detail=None):
        super().__init__(
            "Session Manager plugin is not installed or not in PATH"
            + (f" ({detail})" if detail else ""),
            "Install it:\n"
            "  macOS: brew install --cask session-manager-plugin\n"
            "  Or download from: https://docs.aws.amazon.com/systems-manager/latest/"
            "userguide/session-manager-working-with-install-plugin.html",
        )


class SpawnFailed(SessionError, InconsistentState):
    pass


class PortNotListening(SessionError, InconsistentState):
    def __init__(self, local_port, log_path):
        super().__init__(
            f"Port {local_port} is still not listening",
            f"Check log: {log_path}",
        )
        self.local_port = local_port
        self.log_path = log_path


class AccessDenied(SessionError, PermissionDenied):
    def __init__(self):
        super().__init__("Port forwarding was denied", permission="ssm:StartSession")


class TargetUnreachable(SessionError, InconsistentState):
    def __init__(self):
        super().__init__(
            "Bastion host is not accessible via SSM",
            "Make sure the bastion host has the SSM agent running and the IAM role attached.",
        )


class UnknownFailure(SessionError, InconsistentState):
    def __init__(self, log_excerpt, log_path=None):
        if log_excerpt:
            message = f"Port forwarding exited unexpectedly:\n{log_excerpt}"
            remediation = f"Please check the log file: {log_path}" if log_path else None
        else:
            message = "Port forwarding exited immediately and wrote nothing to its log"
            remediation = (
                "This usually means:\n"
                "  1. Session Manager plugin is not installed or not in PATH\n"
                "  2. Missing permission: ssm:StartSession\n"
                "  3. Bastion host is not accessible via SSM"
            )
        super().__init__(message, remediation)
        self.log_excerpt = log_excerpt
