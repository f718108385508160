"""
aws-connect: Connect to private RDS databases, EC2 instances and ECS tasks via SSM.

A Python CLI utility that reaches resources inside a VPC without SSH keys or
open inbound ports. It provisions SSM-managed bastion hosts on demand, runs
Session Manager port-forward tunnels in the background, and pulls database
credentials from Secrets Manager.

Key features:
- Create a bastion host for an RDS instance, with rollback on failure
- Background port-forward tunnels tracked by PID files
- Credentials from the environment, AWS profiles, aws-vault or manual entry
- Interactive wizards for RDS, EC2 (SSM shell) and ECS Exec
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .bastion import BastionManager, BastionReadiness, BastionResources, BastionSpec
from .cloud import CloudFacade
from .core import CredentialContext, create_session, subprocess_env, verify_identity, wrap_command
from .errors import AwsConnectError
from .portforward import PortForwardSession, SessionManager, default_local_port
from .secrets import ConnectionProfile, find_secret, parse_secret
from .ssmsetup import SsmSetup

__all__ = [
    # Credentials and sessions
    "CredentialContext",
    "create_session",
    "verify_identity",
    "wrap_command",
    "subprocess_env",
    # AWS calls
    "CloudFacade",
    # Bastion lifecycle
    "BastionManager",
    "BastionSpec",
    "BastionResources",
    "BastionReadiness",
    # Port forwarding
    "SessionManager",
    "PortForwardSession",
    "default_local_port",
    # SSM setup for existing instances
    "SsmSetup",
    # Database credentials
    "ConnectionProfile",
    "find_secret",
    "parse_secret",
    # Errors
    "AwsConnectError",
]
