"""
Bastion host provisioning for private RDS databases.

A bastion is a t3.micro in the database's VPC with an SSM-only instance
profile and a security group without ingress rules. Everything created for
one attempt is pushed onto a RollbackStack so a failure at any step removes
what was created before it, in reverse order.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from botocore.exceptions import ClientError

from . import config
from .cloud import EC2_TRUST_POLICY
from .core import error_code, is_access_denied, print_info, print_success, print_warning
from .errors import (
    ImageNotFound,
    InstanceStateError,
    LaunchFailed,
    PermissionDenied,
    PlacementUnresolved,
    ReadinessTimeout,
    ResourceCreationDenied,
)

logger = logging.getLogger(__name__)

BASTION_PURPOSE = "RDS-Bastion-Host"


@dataclass(frozen=True)
class BastionSpec:
    """Target database and the placement chosen for its bastion."""

    db_identifier: str
    region: str
    vpc_id: str
    subnet_id: str
    ami_id: str
    public_subnet: bool = True


@dataclass
class BastionResources:
    """Identifiers of everything created for one provisioning attempt."""

    role_name: Optional[str] = None
    instance_profile_name: Optional[str] = None
    instance_profile_arn: Optional[str] = None
    security_group_id: Optional[str] = None
    instance_id: Optional[str] = None
    instance_name: Optional[str] = None


@dataclass
class BastionReadiness:
    instance_id: str
    instance_state: Optional[str] = None
    ssm_ping_status: Optional[str] = None

    @property
    def ready(self):
        return self.instance_state == "running" and self.ssm_ping_status == "Online"


@dataclass
class RollbackStack:
    """Undo actions for resources created so far, unwound newest first."""

    actions: list = field(default_factory=list)

    def push(self, description, func, *args):
        self.actions.append((description, func, args))

    def unwind(self):
        """
        Run every undo action in reverse order.

        Failures are logged and skipped so the unwind always finishes and the
        error that triggered it is the one the operator sees.

        Returns:
            list: descriptions of the undo actions that failed
        """
        failed = []
        while self.actions:
            description, func, args = self.actions.pop()
            try:
                func(*args)
                logger.debug("Rollback: %s", description)
            except Exception as e:
                logger.warning("Rollback step failed (%s): %s", description, e)
                failed.append(description)
        return failed

    def clear(self):
        self.actions.clear()

    def __len__(self):
        return len(self.actions)


def poll(check, attempts, interval, sleep=time.sleep, progress=None):
    """
    Call check() until it returns something truthy or attempts run out.

    Args:
        check: Zero-argument callable; may raise to abort polling
        attempts: Maximum number of calls
        interval: Seconds to sleep between calls
        sleep: Sleep function (injected in tests)
        progress: Optional callable(attempt) invoked after each miss

    Returns:
        The last value check() returned
    """
    result = None
    for attempt in range(1, attempts + 1):
        result = check()
        if result:
            return result
        if progress:
            progress(attempt)
        if attempt < attempts:
            sleep(interval)
    return result


def clean_identifier(identifier):
    """Make an identifier safe for IAM/EC2 names (30 chars max)."""
    return re.sub(r"[^a-zA-Z0-9-]", "-", identifier)[:30]


def progress_dot(attempt):
    print(".", end="", flush=True)


class BastionManager:
    """Creates bastion hosts and waits for them to be reachable over SSM."""

    def __init__(self, facade, sleep=time.sleep, clock=datetime.now,
                 instance_type=config.BASTION_INSTANCE_TYPE,
                 ami_pattern=config.BASTION_AMI_PATTERN,
                 ami_owner=config.BASTION_AMI_OWNER):
        self.facade = facade
        self.sleep = sleep
        self.clock = clock
        self.instance_type = instance_type
        self.ami_pattern = ami_pattern
        self.ami_owner = ami_owner
        self.resources = BastionResources()

    def plan(self, db_identifier):
        """
        Resolve where a bastion for db_identifier should go.

        Prefers a subnet in the database's VPC with auto-assigned public IPs,
        falling back to the database's own subnet (SSM-only connectivity).

        Returns:
            BastionSpec

        Raises:
            PlacementUnresolved: If the database VPC cannot be determined
            ImageNotFound: If no AMI matches the configured pattern
            PermissionDenied: If a lookup was denied
        """
        print_info("Gathering information to create bastion host...")
        try:
            network = self.facade.describe_db_network(db_identifier)
        except ClientError as e:
            if is_access_denied(e):
                raise PermissionDenied(
                    f"Could not retrieve RDS VPC information for '{db_identifier}'",
                    permission="rds:DescribeDBInstances",
                ) from e
            raise PlacementUnresolved(db_identifier, str(e)) from e

        vpc_id = network.get("vpc_id")
        if not vpc_id or vpc_id == "None":
            raise PlacementUnresolved(db_identifier)
        print_info(f"RDS VPC: {vpc_id}")
        print_info(f"RDS Subnet: {network.get('subnet_id')}")

        try:
            public_subnets = self.facade.find_public_subnets(vpc_id)
        except ClientError as e:
            logger.warning("Could not list public subnets in %s: %s", vpc_id, e)
            public_subnets = []

        if public_subnets:
            subnet_id = public_subnets[0]
            public = True
            print_info(f"Using public subnet for bastion: {subnet_id}")
        else:
            subnet_id = network.get("subnet_id")
            public = False
            print_warning("No public subnet found. Using private subnet (bastion will need SSM only).")
            if not subnet_id:
                raise PlacementUnresolved(db_identifier, "database subnet group has no subnets")

        print_info("Finding latest Amazon Linux 2 AMI...")
        try:
            ami_id = self.facade.latest_image_id(self.ami_pattern, self.ami_owner)
        except ClientError as e:
            if is_access_denied(e):
                raise PermissionDenied(
                    "Could not search for an AMI", permission="ec2:DescribeImages"
                ) from e
            raise ImageNotFound(self.ami_pattern) from e
        if not ami_id:
            raise ImageNotFound(self.ami_pattern)
        print_info(f"Using AMI: {ami_id}")

        return BastionSpec(
            db_identifier=db_identifier,
            region=self.facade.region,
            vpc_id=vpc_id,
            subnet_id=subnet_id,
            ami_id=ami_id,
            public_subnet=public,
        )

    def _tags(self, spec, name):
        return {
            "Name": name,
            "Purpose": BASTION_PURPOSE,
            "Database": spec.db_identifier,
            "CreatedBy": config.CREATED_BY_TAG,
            "CreatedDate": self.clock().strftime("%Y-%m-%d"),
        }

    def bastion_name(self, db_identifier):
        """
        Name for a new bastion: bastion-for-<db>, or with a timestamp suffix
        when an instance with that name is already alive.
        """
        base = f"bastion-for-{clean_identifier(db_identifier)}"
        suffixed = f"{base}-{self.clock().strftime('%Y%m%d-%H%M%S')}"
        print_info("Checking for existing bastion hosts with the same name...")
        try:
            existing = self.facade.find_instances_by_name(base)
        except ClientError as e:
            logger.warning("Could not check for existing bastions: %s", e)
            return suffixed
        if existing:
            print_warning(f"Instance with name '{base}' already exists (ID: {existing[0]})")
            print_info(f"Using unique name with timestamp: {suffixed}")
            return suffixed
        return base

    def provision(self, spec):
        """
        Create the IAM role, instance profile, security group and instance.

        On any failure every resource created by this call is deleted again
        (newest first) before the error propagates.

        Args:
            spec: BastionSpec from plan()

        Returns:
            str: the new instance id

        Raises:
            ResourceCreationDenied: If an IAM or network resource could not be created
            LaunchFailed: If the instance could not be launched
        """
        self.resources = resources = BastionResources()
        stack = RollbackStack()
        facade = self.facade

        clean_id = clean_identifier(spec.db_identifier)
        stamp = int(self.clock().timestamp())
        role_name = f"rds-bastion-{clean_id}-{stamp}"
        profile_name = f"rds-bastion-profile-{clean_id}-{stamp}"
        sg_name = f"rds-bastion-sg-{clean_id}-{stamp}"

        try:
            print_info(f"Creating IAM role: {role_name}")
            try:
                facade.create_role(
                    role_name,
                    EC2_TRUST_POLICY,
                    self._tags(spec, f"RDS-Bastion-IAM-Role-{clean_id}"),
                    description=f"SSM access for bastion host of {spec.db_identifier}",
                )
            except ClientError as e:
                raise ResourceCreationDenied("IAM role", "iam:CreateRole or iam:TagRole", str(e)) from e
            stack.push(f"delete IAM role {role_name}", facade.delete_role, role_name)
            resources.role_name = role_name
            print_success("IAM role created")

            print_info("Attaching SSM policy to IAM role...")
            try:
                facade.attach_role_policy(role_name, config.SSM_MANAGED_POLICY_ARN)
            except ClientError as e:
                raise ResourceCreationDenied(
                    "SSM policy attachment", "iam:AttachRolePolicy", str(e)
                ) from e
            stack.push(
                f"detach SSM policy from {role_name}",
                facade.detach_role_policy,
                role_name,
                config.SSM_MANAGED_POLICY_ARN,
            )
            print_success("SSM policy attached")

            print_info(f"Creating IAM instance profile: {profile_name}")
            try:
                profile = facade.create_instance_profile(
                    profile_name, self._tags(spec, f"RDS-Bastion-Instance-Profile-{clean_id}")
                )
            except ClientError as e:
                raise ResourceCreationDenied(
                    "instance profile",
                    "iam:CreateInstanceProfile or iam:TagInstanceProfile",
                    str(e),
                ) from e
            stack.push(
                f"delete instance profile {profile_name}",
                facade.delete_instance_profile,
                profile_name,
            )
            resources.instance_profile_name = profile_name
            resources.instance_profile_arn = profile.get("Arn")

            print_info("Adding role to instance profile...")
            try:
                facade.add_role_to_instance_profile(profile_name, role_name)
            except ClientError as e:
                raise ResourceCreationDenied(
                    "instance profile role membership",
                    "iam:AddRoleToInstanceProfile or iam:PassRole",
                    str(e),
                ) from e
            stack.push(
                f"remove {role_name} from {profile_name}",
                facade.remove_role_from_instance_profile,
                profile_name,
                role_name,
            )
            print_success("Instance profile created")

            self._wait_for_profile(profile_name, role_name)

            print_info(f"Creating security group: {sg_name}")
            try:
                sg_id = facade.create_security_group(
                    sg_name,
                    "Security group for RDS bastion host - allows outbound traffic "
                    "for database connections via SSM",
                    spec.vpc_id,
                    self._tags(spec, f"RDS-Bastion-SecurityGroup-{clean_id}"),
                )
            except ClientError as e:
                raise ResourceCreationDenied(
                    "security group", "ec2:CreateSecurityGroup or ec2:CreateTags", str(e)
                ) from e
            stack.push(f"delete security group {sg_id}", facade.delete_security_group, sg_id)
            resources.security_group_id = sg_id
            # Default egress allows all outbound; no ingress is ever opened.
            print_success(f"Security group created: {sg_id}")

            name = self.bastion_name(spec.db_identifier)
            resources.instance_name = name
            resources.instance_id = self._launch(spec, resources, name)
        except BaseException:
            if stack:
                print_warning("Cleaning up resources created for the bastion host...")
            failed = stack.unwind()
            if failed:
                print_warning("Some resources could not be removed: " + ", ".join(failed))
            raise

        stack.clear()
        print_success("Bastion host created successfully!")
        print(f"  Instance ID: {resources.instance_id}")
        print(f"  Name: {resources.instance_name}")
        print(f"  Security Group: {resources.security_group_id}")
        print(f"  IAM Role: {resources.role_name}")
        print(f"  Instance Profile: {resources.instance_profile_name}")
        logger.info("Bastion resources for %s: %s", spec.db_identifier, resources)
        return resources.instance_id

    def _wait_for_profile(self, profile_name, role_name):
        """Wait until the role shows up in the instance profile (IAM propagation)."""
        print_info("Waiting for instance profile to propagate (this may take 15-30 seconds)...")

        def role_visible():
            try:
                return role_name in self.facade.instance_profile_roles(profile_name)
            except ClientError as e:
                logger.debug("Instance profile not readable yet: %s", e)
                return False

        ready = poll(
            role_visible,
            config.PROFILE_PROPAGATION_ATTEMPTS,
            config.PROFILE_PROPAGATION_INTERVAL,
            self.sleep,
            progress_dot,
        )
        print()
        if ready:
            print_success("Instance profile is ready")
        else:
            print_warning("Instance profile may not be fully propagated, but proceeding...")
            print_info("If EC2 launch fails, wait 30 seconds and try again")
        return ready

    def _launch(self, spec, resources, name):
        """Run the instance by profile ARN, retrying once by profile name."""
        print_info(f"Creating EC2 instance: {name}")
        print_info(f"  AMI: {spec.ami_id}")
        print_info(f"  Subnet: {spec.subnet_id}")
        print_info(f"  Security Group: {resources.security_group_id}")
        print_info(f"  Instance Profile: {resources.instance_profile_name}")

        addressing = []
        if resources.instance_profile_arn:
            addressing.append({"Arn": resources.instance_profile_arn})
        addressing.append({"Name": resources.instance_profile_name})

        tags = self._tags(spec, name)
        tags["Description"] = "Bastion host for secure RDS database access via SSM"
        tags["ManagedBy"] = config.CREATED_BY_TAG

        reason = "no launch attempted"
        for instance_profile in addressing:
            logger.debug("Launching bastion with instance profile %s", instance_profile)
            try:
                response = self.facade.run_instance(
                    spec.ami_id,
                    self.instance_type,
                    spec.subnet_id,
                    resources.security_group_id,
                    instance_profile,
                    tags,
                )
            except ClientError as e:
                reason = f"{error_code(e)}: {e}"
                logger.debug("RunInstances failed: %s", reason)
                continue
            instance_id = _instance_id(response)
            if instance_id:
                return instance_id
            reason = f"RunInstances returned no usable instance id: {response!r}"
            logger.debug(reason)
        raise LaunchFailed(reason)

    def create(self, db_identifier):
        """plan() then provision(); returns the new instance id."""
        return self.provision(self.plan(db_identifier))

    def await_ready(self, instance_id):
        """
        Wait for the instance to run, then for its SSM agent to report Online.

        Returns:
            BastionReadiness (ready)

        Raises:
            InstanceStateError: If the instance enters a state other than pending/running
            ReadinessTimeout: phase "instance-running" (hard) or "ssm-online" (soft)
        """
        readiness = BastionReadiness(instance_id)

        print_info("Waiting for instance to be in 'running' state...")

        def instance_running():
            try:
                state = self.facade.instance_state(instance_id)
            except ClientError as e:
                # Freshly launched instances can be invisible for a moment
                if error_code(e) != "InvalidInstanceID.NotFound":
                    raise
                state = None
            readiness.instance_state = state
            if state == "running":
                return True
            if state in ("pending", None):
                return False
            raise InstanceStateError(instance_id, state)

        if not poll(
            instance_running,
            config.INSTANCE_RUNNING_ATTEMPTS,
            config.INSTANCE_RUNNING_INTERVAL,
            self.sleep,
            progress_dot,
        ):
            print()
            raise ReadinessTimeout(
                "instance-running",
                soft=False,
                message=f"Instance is not yet running (current state: {readiness.instance_state})",
            )
        print()
        print_success("Instance is running")

        print_info("Waiting for SSM agent to be ready...")

        def ssm_online():
            try:
                status = self.facade.ssm_ping_status(instance_id)
            except ClientError as e:
                logger.debug("SSM status check failed: %s", e)
                status = None
            readiness.ssm_ping_status = status
            return status == "Online"

        if not poll(
            ssm_online,
            config.SSM_ONLINE_ATTEMPTS,
            config.SSM_ONLINE_INTERVAL,
            self.sleep,
            progress_dot,
        ):
            print()
            raise ReadinessTimeout(
                "ssm-online",
                soft=True,
                message="Bastion is still starting. SSM agent may not be ready yet.",
                remediation="This usually takes 2-3 minutes after the instance starts running.",
            )
        print()
        print_success("Bastion is ready for SSM connections!")
        return readiness


def _instance_id(response):
    instances = (response or {}).get("Instances") or []
    instance_id = instances[0].get("InstanceId") if instances else None
    if instance_id and instance_id.startswith("i-"):
        return instance_id
    return None
