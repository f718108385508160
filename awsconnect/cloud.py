"""
Thin boto3 facade over the EC2, IAM, RDS, SSM, Secrets Manager and ECS calls
aws-connect needs.

Methods return plain dicts/strings and let botocore's ClientError propagate;
callers decide which failures are fatal and which permission to blame.
"""

import json
import logging

logger = logging.getLogger(__name__)

EC2_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]


def to_tag_list(tags_dict):
    """Convert {key: value} to the [{"Key": k, "Value": v}] shape AWS expects."""
    return [{"Key": k, "Value": v} for k, v in tags_dict.items()]


def tag_value(tags, key):
    for tag in tags or []:
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


class CloudFacade:
    """AWS calls bound to one boto3 session."""

    def __init__(self, session):
        self.session = session
        self._clients = {}

    @property
    def region(self):
        return self.session.region_name

    def client(self, service):
        if service not in self._clients:
            self._clients[service] = self.session.client(service)
        return self._clients[service]

    # RDS

    def describe_db_instance(self, db_identifier):
        response = self.client("rds").describe_db_instances(DBInstanceIdentifier=db_identifier)
        instances = response.get("DBInstances", [])
        return instances[0] if instances else None

    def describe_db_network(self, db_identifier):
        """
        Get the network placement of an RDS instance.

        Returns:
            dict with vpc_id, subnet_id, availability_zone (values may be None)
        """
        db = self.describe_db_instance(db_identifier) or {}
        subnet_group = db.get("DBSubnetGroup") or {}
        subnets = subnet_group.get("Subnets") or []
        first = subnets[0] if subnets else {}
        return {
            "vpc_id": subnet_group.get("VpcId"),
            "subnet_id": first.get("SubnetIdentifier"),
            "availability_zone": (first.get("SubnetAvailabilityZone") or {}).get("Name"),
        }

    def list_db_instances(self):
        """
        List RDS instances with the fields the connection wizard displays.

        Returns:
            list of dicts: identifier, engine, endpoint, port, db_name, status,
            public, secret_arn, vpc_id
        """
        databases = []
        paginator = self.client("rds").get_paginator("describe_db_instances")
        for page in paginator.paginate():
            for db in page.get("DBInstances", []):
                endpoint = db.get("Endpoint") or {}
                databases.append(
                    {
                        "identifier": db["DBInstanceIdentifier"],
                        "engine": db.get("Engine", ""),
                        "endpoint": endpoint.get("Address"),
                        "port": endpoint.get("Port"),
                        "db_name": db.get("DBName") or "",
                        "status": db.get("DBInstanceStatus", ""),
                        "public": bool(db.get("PubliclyAccessible")),
                        "secret_arn": (db.get("MasterUserSecret") or {}).get("SecretArn"),
                        "vpc_id": (db.get("DBSubnetGroup") or {}).get("VpcId"),
                    }
                )
        return databases

    # EC2

    def find_public_subnets(self, vpc_id):
        response = self.client("ec2").describe_subnets(
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "map-public-ip-on-launch", "Values": ["true"]},
            ]
        )
        return [subnet["SubnetId"] for subnet in response.get("Subnets", [])]

    def latest_image_id(self, name_pattern, owner):
        """Newest available image matching name_pattern, or None."""
        response = self.client("ec2").describe_images(
            Owners=[owner],
            Filters=[
                {"Name": "name", "Values": [name_pattern]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = sorted(response.get("Images", []), key=lambda image: image.get("CreationDate", ""))
        return images[-1]["ImageId"] if images else None

    def find_instances_by_name(self, name, states=None):
        response = self.client("ec2").describe_instances(
            Filters=[
                {"Name": "tag:Name", "Values": [name]},
                {"Name": "instance-state-name", "Values": states or LIVE_INSTANCE_STATES},
            ]
        )
        return [
            instance["InstanceId"]
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    def find_bastions(self, vpc_id):
        """Running instances in vpc_id whose Name tag mentions bastion."""
        response = self.client("ec2").describe_instances(
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "instance-state-name", "Values": ["running"]},
                {"Name": "tag:Name", "Values": ["*bastion*", "*Bastion*"]},
            ]
        )
        bastions = []
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                groups = instance.get("SecurityGroups") or [{}]
                bastions.append(
                    {
                        "instance_id": instance["InstanceId"],
                        "name": tag_value(instance.get("Tags"), "Name") or "",
                        "subnet_id": instance.get("SubnetId"),
                        "security_group": groups[0].get("GroupId"),
                    }
                )
        return bastions

    def list_instances(self):
        instances = []
        paginator = self.client("ec2").get_paginator("describe_instances")
        for page in paginator.paginate():
            for reservation in page.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    state = instance.get("State", {}).get("Name", "")
                    if state == "terminated":
                        continue
                    instances.append(
                        {
                            "instance_id": instance["InstanceId"],
                            "name": tag_value(instance.get("Tags"), "Name") or "",
                            "state": state,
                            "platform": instance.get("PlatformDetails", ""),
                            "private_ip": instance.get("PrivateIpAddress", ""),
                        }
                    )
        return instances

    def instance_state(self, instance_id):
        response = self.client("ec2").describe_instances(InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance.get("State", {}).get("Name")
        return None

    def create_security_group(self, name, description, vpc_id, tags):
        response = self.client("ec2").create_security_group(
            GroupName=name,
            Description=description,
            VpcId=vpc_id,
            TagSpecifications=[{"ResourceType": "security-group", "Tags": to_tag_list(tags)}],
        )
        return response["GroupId"]

    def delete_security_group(self, group_id):
        self.client("ec2").delete_security_group(GroupId=group_id)

    def run_instance(self, image_id, instance_type, subnet_id, security_group_id,
                     instance_profile, tags):
        """
        Launch one instance.

        Args:
            instance_profile: {"Arn": ...} or {"Name": ...}

        Returns:
            dict: the raw RunInstances response
        """
        return self.client("ec2").run_instances(
            ImageId=image_id,
            InstanceType=instance_type,
            MinCount=1,
            MaxCount=1,
            SubnetId=subnet_id,
            SecurityGroupIds=[security_group_id],
            IamInstanceProfile=instance_profile,
            TagSpecifications=[{"ResourceType": "instance", "Tags": to_tag_list(tags)}],
        )

    def instance_details(self, instance_id):
        """
        Addressing and IAM details of one instance.

        Returns:
            dict with instance_id, image_id, platform, subnet_id, vpc_id,
            profile_arn, public_ip, private_ip, key_name; or None
        """
        response = self.client("ec2").describe_instances(InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return {
                    "instance_id": instance["InstanceId"],
                    "image_id": instance.get("ImageId"),
                    "platform": instance.get("Platform") or instance.get("PlatformDetails", ""),
                    "subnet_id": instance.get("SubnetId"),
                    "vpc_id": instance.get("VpcId"),
                    "profile_arn": (instance.get("IamInstanceProfile") or {}).get("Arn"),
                    "public_ip": instance.get("PublicIpAddress"),
                    "private_ip": instance.get("PrivateIpAddress"),
                    "key_name": instance.get("KeyName"),
                }
        return None

    def instance_profile_association(self, instance_id):
        """(association_id, instance_profile_arn) for the instance, or None."""
        response = self.client("ec2").describe_iam_instance_profile_associations(
            Filters=[
                {"Name": "instance-id", "Values": [instance_id]},
                {"Name": "state", "Values": ["associating", "associated"]},
            ]
        )
        associations = response.get("IamInstanceProfileAssociations", [])
        if not associations:
            return None
        association = associations[0]
        return association["AssociationId"], association.get("IamInstanceProfile", {}).get("Arn")

    def associate_iam_instance_profile(self, instance_id, profile_arn):
        response = self.client("ec2").associate_iam_instance_profile(
            InstanceId=instance_id, IamInstanceProfile={"Arn": profile_arn}
        )
        return response["IamInstanceProfileAssociation"]["AssociationId"]

    def disassociate_iam_instance_profile(self, association_id):
        self.client("ec2").disassociate_iam_instance_profile(AssociationId=association_id)

    # IAM

    def create_role(self, role_name, trust_policy, tags, description=None):
        params = {
            "RoleName": role_name,
            "AssumeRolePolicyDocument": json.dumps(trust_policy),
            "Tags": to_tag_list(tags),
        }
        if description:
            params["Description"] = description
        return self.client("iam").create_role(**params)["Role"]

    def delete_role(self, role_name):
        self.client("iam").delete_role(RoleName=role_name)

    def attach_role_policy(self, role_name, policy_arn):
        self.client("iam").attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)

    def detach_role_policy(self, role_name, policy_arn):
        self.client("iam").detach_role_policy(RoleName=role_name, PolicyArn=policy_arn)

    def create_instance_profile(self, profile_name, tags):
        response = self.client("iam").create_instance_profile(
            InstanceProfileName=profile_name, Tags=to_tag_list(tags)
        )
        return response["InstanceProfile"]

    def delete_instance_profile(self, profile_name):
        self.client("iam").delete_instance_profile(InstanceProfileName=profile_name)

    def add_role_to_instance_profile(self, profile_name, role_name):
        self.client("iam").add_role_to_instance_profile(
            InstanceProfileName=profile_name, RoleName=role_name
        )

    def remove_role_from_instance_profile(self, profile_name, role_name):
        self.client("iam").remove_role_from_instance_profile(
            InstanceProfileName=profile_name, RoleName=role_name
        )

    def attached_role_policies(self, role_name):
        response = self.client("iam").list_attached_role_policies(RoleName=role_name)
        return [policy["PolicyArn"] for policy in response.get("AttachedPolicies", [])]

    def instance_profile_roles(self, profile_name):
        response = self.client("iam").get_instance_profile(InstanceProfileName=profile_name)
        return [role["RoleName"] for role in response["InstanceProfile"].get("Roles", [])]

    # SSM

    def ssm_instance_info(self, instance_id):
        """SSM registration for an instance (PingStatus, PlatformType...) or None."""
        response = self.client("ssm").describe_instance_information(
            Filters=[{"Key": "InstanceIds", "Values": [instance_id]}]
        )
        info = response.get("InstanceInformationList", [])
        return info[0] if info else None

    def ssm_ping_status(self, instance_id):
        info = self.ssm_instance_info(instance_id)
        return info.get("PingStatus") if info else None

    # Secrets Manager

    def list_secrets(self, name_filter=None, limit=20):
        params = {"MaxResults": limit}
        if name_filter:
            params["Filters"] = [{"Key": "name", "Values": [name_filter]}]
        response = self.client("secretsmanager").list_secrets(**params)
        return [(secret["Name"], secret["ARN"]) for secret in response.get("SecretList", [])]

    def get_secret_string(self, secret_id):
        response = self.client("secretsmanager").get_secret_value(SecretId=secret_id)
        return response.get("SecretString")

    # ECS

    def list_clusters(self):
        arns = self.client("ecs").list_clusters().get("clusterArns", [])
        return [arn.split("/")[-1] for arn in arns]

    def list_services(self, cluster):
        arns = self.client("ecs").list_services(cluster=cluster).get("serviceArns", [])
        return [arn.split("/")[-1] for arn in arns]

    def list_tasks(self, cluster, service=None):
        params = {"cluster": cluster, "desiredStatus": "RUNNING"}
        if service:
            params["serviceName"] = service
        return self.client("ecs").list_tasks(**params).get("taskArns", [])

    def describe_task(self, cluster, task_arn):
        """
        Returns:
            dict with task_arn, task_id, status, exec_enabled, containers
        """
        response = self.client("ecs").describe_tasks(cluster=cluster, tasks=[task_arn])
        tasks = response.get("tasks", [])
        if not tasks:
            return None
        task = tasks[0]
        return {
            "task_arn": task["taskArn"],
            "task_id": task["taskArn"].split("/")[-1],
            "status": task.get("lastStatus", ""),
            "exec_enabled": bool(task.get("enableExecuteCommand")),
            "containers": [container["name"] for container in task.get("containers", [])],
        }
