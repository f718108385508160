"""Configuration settings for aws-connect.

Environment variables:
- AWS_CONNECT_STATE_DIR: Directory for port-forward PID and log files
  (default: ~/.rds-port-forwarding)
- AWS_REGION: AWS region to use (default: "us-east-1")
- AWS_DEFAULT_REGION: Alternative to AWS_REGION (used if AWS_REGION not set)
- AWS_CONNECT_DEBUG / DEBUG: "1" enables debug logging
- AWS_CONNECT_INSTANCE_TYPE: Bastion instance type (default: "t3.micro")
- AWS_CONNECT_AMI_PATTERN: Image name filter for the bastion AMI
  (default: "amzn2-ami-hvm-*-x86_64-gp2")
"""

import os
from pathlib import Path

STATE_DIR = Path(
    os.path.expanduser(os.environ.get("AWS_CONNECT_STATE_DIR", "~/.rds-port-forwarding"))
)
AWS_REGION = os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "us-east-1"))
DEBUG = os.environ.get("AWS_CONNECT_DEBUG", os.environ.get("DEBUG", "0")) == "1"

BASTION_INSTANCE_TYPE = os.environ.get("AWS_CONNECT_INSTANCE_TYPE", "t3.micro")
BASTION_AMI_PATTERN = os.environ.get("AWS_CONNECT_AMI_PATTERN", "amzn2-ami-hvm-*-x86_64-gp2")
BASTION_AMI_OWNER = "amazon"
SSM_MANAGED_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
CREATED_BY_TAG = "aws-connect"

# Polling: (interval seconds, max attempts)
PROFILE_PROPAGATION_INTERVAL = 2
PROFILE_PROPAGATION_ATTEMPTS = 15
INSTANCE_RUNNING_INTERVAL = 10
INSTANCE_RUNNING_ATTEMPTS = 12
SSM_ONLINE_INTERVAL = 10
SSM_ONLINE_ATTEMPTS = 36

# Port-forward supervision, seconds
TUNNEL_SETTLE_DELAY = 3
PORT_RECHECK_DELAY = 5
TUNNEL_STOP_GRACE = 5
LOG_TAIL_LINES = 20

PORT_FORWARD_DOCUMENT = "AWS-StartPortForwardingSessionToRemoteHost"
SESSION_MANAGER_PLUGIN = "session-manager-plugin"

# SSM setup for existing instances
SSM_SETUP_PROPAGATION_INTERVAL = 2
SSM_SETUP_PROPAGATION_ATTEMPTS = 20
DISASSOCIATE_SETTLE_DELAY = 5
ASSOCIATE_RETRY_DELAY = 10
