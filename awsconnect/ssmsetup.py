"""
Make an existing EC2 instance reachable over SSM.

The instance needs an instance profile whose role carries the
AmazonSSMManagedInstanceCore policy. An existing role gets the policy
attached in place; otherwise a new role and profile are created and
associated with the instance, replacing whatever profile it had.
"""

import logging
import time
from datetime import datetime

from botocore.exceptions import ClientError

from . import config
from .bastion import RollbackStack, clean_identifier, poll, progress_dot
from .cloud import EC2_TRUST_POLICY
from .core import error_code, is_access_denied, print_info, print_success, print_warning
from .errors import NotFound, PermissionDenied, ReadinessTimeout, ResourceCreationDenied, UserCancelled

logger = logging.getLogger(__name__)

ALREADY_CONFIGURED = "already-configured"
POLICY_ATTACHED = "policy-attached"
PROFILE_ASSOCIATED = "profile-associated"


class SsmSetup:
    """Grants an instance the IAM permissions the SSM agent needs."""

    def __init__(self, facade, sleep=time.sleep, clock=datetime.now):
        self.facade = facade
        self.sleep = sleep
        self.clock = clock

    def configure(self, instance_id, confirm_replace=lambda: True):
        """
        Configure SSM permissions for instance_id.

        Args:
            instance_id: EC2 instance id
            confirm_replace: Called before an unusable existing profile is
                replaced; returning False cancels

        Returns:
            str: ALREADY_CONFIGURED, POLICY_ATTACHED or PROFILE_ASSOCIATED

        Raises:
            NotFound: If the instance does not exist
            UserCancelled: If the operator keeps the existing profile
            ResourceCreationDenied: If an IAM or EC2 step was denied
            ReadinessTimeout: If the new profile never shows its role
        """
        print_info(f"Configuring SSM for instance: {instance_id}")
        try:
            details = self.facade.instance_details(instance_id)
        except ClientError as e:
            if is_access_denied(e):
                raise PermissionDenied(
                    "Could not retrieve instance information", permission="ec2:DescribeInstances"
                ) from e
            raise
        if not details:
            raise NotFound(f"Could not retrieve instance information for {instance_id}")

        existing_arn = details.get("profile_arn")
        if existing_arn:
            print_info(f"Instance already has an IAM instance profile: {existing_arn}")
            outcome = self._use_existing_profile(existing_arn)
            if outcome:
                return outcome
            if not confirm_replace():
                raise UserCancelled("Keeping existing instance profile. SSM configuration cancelled.")

        return self._create_and_associate(instance_id)

    def _use_existing_profile(self, profile_arn):
        """Attach the SSM policy to the profile's role; None if the profile must be replaced."""
        profile_name = profile_arn.split("/")[-1]
        try:
            roles = self.facade.instance_profile_roles(profile_name)
        except ClientError as e:
            logger.debug("Could not read instance profile %s: %s", profile_name, e)
            roles = []
        if not roles:
            print_warning("Could not determine the role associated with the instance profile.")
            return None

        role_name = roles[0]
        print_info(f"Found associated IAM role: {role_name}")
        try:
            attached = self.facade.attached_role_policies(role_name)
        except ClientError as e:
            logger.debug("Could not list policies of %s: %s", role_name, e)
            attached = []
        if config.SSM_MANAGED_POLICY_ARN in attached:
            print_success("Instance already has SSM permissions configured!")
            return ALREADY_CONFIGURED

        print_info("Instance profile exists but doesn't have SSM permissions. Attaching SSM policy to existing role...")
        try:
            self.facade.attach_role_policy(role_name, config.SSM_MANAGED_POLICY_ARN)
        except ClientError as e:
            if error_code(e) == "NoSuchEntity":
                print_warning("The role associated with the instance profile doesn't exist or is inaccessible.")
            else:
                print_warning(f"Could not attach SSM policy to existing role: {e}")
            return None
        print_success(f"SSM policy attached to existing role: {role_name}")
        print_info("The instance should be ready for SSM connections in a few minutes.")
        return POLICY_ATTACHED

    def _create_and_associate(self, instance_id):
        facade = self.facade
        stack = RollbackStack()
        clean_id = clean_identifier(instance_id)
        stamp = int(self.clock().timestamp())
        role_name = f"ec2-ssm-{clean_id}-{stamp}"
        profile_name = f"ec2-ssm-profile-{clean_id}-{stamp}"

        try:
            print_info(f"Creating IAM role: {role_name}")
            try:
                facade.create_role(
                    role_name, EC2_TRUST_POLICY, self._tags(instance_id, f"EC2-SSM-Role-{clean_id}")
                )
            except ClientError as e:
                raise ResourceCreationDenied("IAM role", "iam:CreateRole", str(e)) from e
            stack.push(f"delete IAM role {role_name}", facade.delete_role, role_name)
            print_success("IAM role created")

            print_info("Attaching SSM policy to IAM role...")
            try:
                facade.attach_role_policy(role_name, config.SSM_MANAGED_POLICY_ARN)
            except ClientError as e:
                raise ResourceCreationDenied("SSM policy attachment", "iam:AttachRolePolicy", str(e)) from e
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
                    profile_name, self._tags(instance_id, f"EC2-SSM-Instance-Profile-{clean_id}")
                )
            except ClientError as e:
                raise ResourceCreationDenied("instance profile", "iam:CreateInstanceProfile", str(e)) from e
            stack.push(f"delete instance profile {profile_name}", facade.delete_instance_profile, profile_name)

            print_info("Adding role to instance profile...")
            try:
                facade.add_role_to_instance_profile(profile_name, role_name)
            except ClientError as e:
                raise ResourceCreationDenied(
                    "instance profile role membership", "iam:AddRoleToInstanceProfile", str(e)
                ) from e
            stack.push(
                f"remove {role_name} from {profile_name}",
                facade.remove_role_from_instance_profile,
                profile_name,
                role_name,
            )
            print_success("Instance profile created")

            self._wait_for_profile(profile_name, role_name)
            profile_arn = profile["Arn"]
            print_success(f"Instance profile is ready: {profile_arn}")

            self._replace_association(instance_id, stack)

            print_info("Associating instance profile with EC2 instance...")
            self._associate(instance_id, profile_arn)
        except BaseException:
            if stack:
                print_warning("Cleaning up resources created for SSM configuration...")
            failed = stack.unwind()
            if failed:
                print_warning("Some resources could not be removed: " + ", ".join(failed))
            raise

        stack.clear()
        print_success("Instance profile associated with instance")
        print_info("The SSM agent may take a few minutes to register the new permissions.")
        return PROFILE_ASSOCIATED

    def _tags(self, instance_id, name):
        return {
            "Name": name,
            "Purpose": "SSM-Connection",
            "InstanceId": instance_id,
            "CreatedBy": config.CREATED_BY_TAG,
            "CreatedDate": self.clock().strftime("%Y-%m-%d"),
        }

    def _wait_for_profile(self, profile_name, role_name):
        print_info("Waiting for instance profile to be ready...")

        def role_visible():
            try:
                return role_name in self.facade.instance_profile_roles(profile_name)
            except ClientError as e:
                logger.debug("Instance profile not readable yet: %s", e)
                return False

        ready = poll(
            role_visible,
            config.SSM_SETUP_PROPAGATION_ATTEMPTS,
            config.SSM_SETUP_PROPAGATION_INTERVAL,
            self.sleep,
            progress_dot,
        )
        print()
        if not ready:
            raise ReadinessTimeout(
                "instance-profile",
                soft=False,
                message="Failed to retrieve instance profile or profile not ready",
                remediation="Instance profile may need more time to propagate. Try again in a few minutes.",
            )

    def _replace_association(self, instance_id, stack):
        """Disassociate the instance's current profile; rollback re-associates it."""
        association = self.facade.instance_profile_association(instance_id)
        if not association:
            return
        association_id, old_arn = association
        print_warning(f"Instance already has an instance profile associated: {old_arn}")
        print_info("Replacing with new instance profile...")
        try:
            self.facade.disassociate_iam_instance_profile(association_id)
        except ClientError as e:
            raise ResourceCreationDenied(
                "instance profile replacement", "ec2:DisassociateIamInstanceProfile", str(e)
            ) from e
        if old_arn:
            stack.push(
                f"re-associate {old_arn} with {instance_id}",
                self.facade.associate_iam_instance_profile,
                instance_id,
                old_arn,
            )
        print_success("Existing instance profile disassociated")
        print_info("Waiting for disassociation to complete...")
        self.sleep(config.DISASSOCIATE_SETTLE_DELAY)

    def _associate(self, instance_id, profile_arn):
        """Associate profile_arn, retrying once while a fresh ARN propagates."""
        for attempt in (1, 2):
            try:
                return self.facade.associate_iam_instance_profile(instance_id, profile_arn)
            except ClientError as e:
                if attempt == 1 and error_code(e) == "InvalidParameterValue":
                    print_warning("Instance profile ARN may not be fully propagated yet.")
                    print_info("Waiting a bit longer and retrying...")
                    self.sleep(config.ASSOCIATE_RETRY_DELAY)
                    continue
                raise ResourceCreationDenied(
                    "instance profile association",
                    "ec2:AssociateIamInstanceProfile or iam:PassRole",
                    str(e),
                ) from e
