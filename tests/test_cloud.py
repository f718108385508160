"""Tests for the boto3 facade."""

import unittest
from unittest.mock import MagicMock

from awsconnect.cloud import CloudFacade


class TestCloudFacade(unittest.TestCase):
    """Test response shaping for EC2 and ECS calls."""

    def setUp(self):
        """Set up test fixtures."""
        self.clients = {"ec2": MagicMock(), "ecs": MagicMock()}
        session = MagicMock()
        session.client.side_effect = lambda service: self.clients[service]
        self.facade = CloudFacade(session)

    def test_list_services_returns_names(self):
        """Test service ARNs are reduced to service names."""
        self.clients["ecs"].list_services.return_value = {
            "serviceArns": [
                "arn:aws:ecs:us-east-1:1:service/prod/api",
                "arn:aws:ecs:us-east-1:1:service/prod/worker",
            ]
        }
        self.assertEqual(self.facade.list_services("prod"), ["api", "worker"])

    def test_instance_details(self):
        """Test instance addressing and profile fields are extracted."""
        self.clients["ec2"].describe_instances.return_value = {
            "Reservations": [
                {
                    "Instances": [
                        {
                            "InstanceId": "i-0abc",
                            "PlatformDetails": "Linux/UNIX",
                            "PrivateIpAddress": "10.0.1.5",
                            "KeyName": "app",
                            "IamInstanceProfile": {"Arn": "arn:aws:iam::1:instance-profile/app"},
                        }
                    ]
                }
            ]
        }
        details = self.facade.instance_details("i-0abc")
        self.assertEqual(details["private_ip"], "10.0.1.5")
        self.assertIsNone(details["public_ip"])
        self.assertEqual(details["key_name"], "app")
        self.assertEqual(details["profile_arn"], "arn:aws:iam::1:instance-profile/app")

    def test_instance_details_missing(self):
        """Test an empty reservation list gives None."""
        self.clients["ec2"].describe_instances.return_value = {"Reservations": []}
        self.assertIsNone(self.facade.instance_details("i-0abc"))

    def test_instance_profile_association(self):
        """Test the active association id and profile ARN are returned."""
        ec2 = self.clients["ec2"]
        ec2.describe_iam_instance_profile_associations.return_value = {
            "IamInstanceProfileAssociations": [
                {"AssociationId": "iip-assoc-1", "IamInstanceProfile": {"Arn": "arn:profile"}}
            ]
        }
        self.assertEqual(self.facade.instance_profile_association("i-0abc"), ("iip-assoc-1", "arn:profile"))
        filters = ec2.describe_iam_instance_profile_associations.call_args[1]["Filters"]
        self.assertIn({"Name": "instance-id", "Values": ["i-0abc"]}, filters)

    def test_no_instance_profile_association(self):
        """Test an instance without an association gives None."""
        self.clients["ec2"].describe_iam_instance_profile_associations.return_value = {
            "IamInstanceProfileAssociations": []
        }
        self.assertIsNone(self.facade.instance_profile_association("i-0abc"))

    def test_associate_iam_instance_profile(self):
        """Test association passes the profile by ARN."""
        ec2 = self.clients["ec2"]
        ec2.associate_iam_instance_profile.return_value = {
            "IamInstanceProfileAssociation": {"AssociationId": "iip-assoc-2"}
        }
        self.assertEqual(self.facade.associate_iam_instance_profile("i-0abc", "arn:profile"), "iip-assoc-2")
        ec2.associate_iam_instance_profile.assert_called_once_with(
            InstanceId="i-0abc", IamInstanceProfile={"Arn": "arn:profile"}
        )


if __name__ == "__main__":
    unittest.main()
