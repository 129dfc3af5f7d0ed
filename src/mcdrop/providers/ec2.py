from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from mcdrop.control.ssh import DEFAULT_KEY_PATH, KEY_NAME, ensure_key_pair
from mcdrop.providers.base import (
    ACTIVE,
    INACTIVE,
    PRIVATE,
    PUBLIC,
    InstanceInfo,
    Network,
    ProviderError,
)


class EC2Provider:
    def __init__(self, region: str, ami_id: str, instance_type: str,
                 security_group_id: str, subnet_id: str | None = None,
                 key_name: str = KEY_NAME, key_path: Path = DEFAULT_KEY_PATH,
                 name: str = "mcdrop", on_debug=None):
        self.region = region
        self.ami_id = ami_id
        self.instance_type = instance_type
        self.security_group_id = security_group_id
        self.subnet_id = subnet_id
        self.key_name = key_name
        self.key_path = key_path
        self.name = name
        self.on_debug = on_debug

    @classmethod
    def from_settings(cls, settings) -> "EC2Provider":
        if not settings.ec2_ami_id:
            raise ValueError("MCDROP_EC2_AMI is required for the ec2 provider")
        return cls(
            region=settings.aws_region,
            ami_id=settings.ec2_ami_id,
            instance_type=settings.ec2_instance_type,
            security_group_id=settings.ec2_security_group_id,
            subnet_id=settings.ec2_subnet_id or None,
            key_name=settings.ec2_key_name,
            key_path=settings.ssh_key_path,
            name=settings.instance_name,
        )

    def _client(self):
        return boto3.client("ec2", region_name=self.region)

    def create_instance(self) -> str:
        try:
            ensure_key_pair(self.region, self.key_path, self.key_name, on_debug=self.on_debug)
            kwargs = {
                "ImageId": self.ami_id, "InstanceType": self.instance_type,
                "KeyName": self.key_name, "SecurityGroupIds": [self.security_group_id],
                "MinCount": 1, "MaxCount": 1,
                "TagSpecifications": [{
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": self.name},
                        {"Key": "mcdrop:managed", "Value": "true"},
                    ],
                }],
            }
            if self.subnet_id:
                kwargs["SubnetId"] = self.subnet_id
            response = self._client().run_instances(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Could not launch instance: {e}") from e
        return response["Instances"][0]["InstanceId"]

    def get_instance(self, instance_id: str) -> InstanceInfo:
        try:
            response = self._client().describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Could not describe instance {instance_id}: {e}") from e
        reservations = response.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            raise ProviderError(f"Instance {instance_id} not found")
        instance = reservations[0]["Instances"][0]
        networks = []
        if instance.get("PublicIpAddress"):
            networks.append(Network(address=instance["PublicIpAddress"], scope=PUBLIC))
        if instance.get("PrivateIpAddress"):
            networks.append(Network(address=instance["PrivateIpAddress"], scope=PRIVATE))
        status = ACTIVE if instance["State"]["Name"] == "running" else INACTIVE
        return InstanceInfo(id=instance["InstanceId"], status=status, networks=tuple(networks))

    def delete_instance(self, instance_id: str) -> None:
        try:
            self._client().terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Could not terminate instance {instance_id}: {e}") from e

    def get_balance(self):
        raise ProviderError("Account balance is not available for the ec2 provider")
