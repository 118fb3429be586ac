"""AWS EC2 provider: Ubuntu instances reached over SSH."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from clawforge.config import settings
from clawforge.db.models import Backend
from clawforge.errors import ConfigurationError, ProviderError
from clawforge.execution.ssh import SSHExecutor
from clawforge.provisioning.installer import PackageInstaller
from clawforge.provisioning.steps import StepResult, StepRunner
from clawforge.providers.base import (
    ComputeHandle,
    ComputeProvider,
    install_python_extras,
    random_name,
)

log = structlog.get_logger()

# Ubuntu 22.04 LTS (Canonical) per region
UBUNTU_AMIS: dict[str, str] = {
    "us-east-1": "ami-0c7217cdde317cfec",
    "us-east-2": "ami-05fb0b8c1424f266b",
    "us-west-1": "ami-0ce2cb35386fc22e9",
    "us-west-2": "ami-008fe2fc65df48dac",
    "eu-west-1": "ami-0905a3c97561e0b69",
    "eu-west-2": "ami-0e5f882be1900e43b",
    "eu-central-1": "ami-0faab6bdbac9486fb",
    "ap-south-1": "ami-03f4878755434977f",
    "ap-southeast-1": "ami-078c1149d8ad719a7",
    "ap-southeast-2": "ami-04f5097681773b989",
    "ap-northeast-1": "ami-07c589821f2b353aa",
}

SECURITY_GROUP_NAME = "clawdbot-vm-sg"
ALLOWED_CIDR = "0.0.0.0/0"
INSTANCE_NAME_NOUNS = ("falcon", "eagle", "wolf", "hawk", "bear", "lion", "deer", "raven")
LISTED_STATES = ["pending", "running", "stopping", "stopped"]
NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}
BILLING_MARKERS = ("not eligible for free tier", "free tier")

USER_DATA = """#!/bin/bash
apt-get update -y
apt-get install -y curl git python3 python3-pip openssh-client
touch /tmp/clawdbot-ready
"""


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class AWSProvider(ComputeProvider):
    backend = Backend.AWS

    def __init__(
        self,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        *,
        region: str | None = None,
        instance_type: str | None = None,
        volume_size: int | None = None,
        ssh_user: str | None = None,
        ec2_client: Any | None = None,
    ) -> None:
        self.access_key_id = access_key_id or settings.aws_access_key_id.get_secret_value()
        self.secret_access_key = (
            secret_access_key or settings.aws_secret_access_key.get_secret_value()
        )
        self.region = region or settings.aws_region
        self.instance_type = instance_type or settings.aws_instance_type
        self.volume_size = volume_size or settings.aws_volume_size_gb
        self.ssh_user = ssh_user or settings.aws_ssh_user
        self._ec2 = ec2_client

    @property
    def instance_class(self) -> str:
        return self.instance_type

    @property
    def ec2(self) -> Any:
        if self._ec2 is None:
            kwargs: dict[str, Any] = {"region_name": self.region}
            if self.access_key_id and self.secret_access_key:
                kwargs.update(
                    aws_access_key_id=self.access_key_id,
                    aws_secret_access_key=self.secret_access_key,
                )
            self._ec2 = boto3.client("ec2", **kwargs)
        return self._ec2

    async def validate_credentials(self) -> None:
        if bool(self.access_key_id) != bool(self.secret_access_key):
            raise ConfigurationError("Both AWS access key id and secret access key are required")
        try:
            await asyncio.to_thread(self.ec2.describe_instances, MaxResults=5)
        except ClientError as e:
            code = _error_code(e)
            if code in {"AuthFailure", "UnauthorizedOperation"}:
                raise ConfigurationError("Invalid AWS credentials") from e
            if code == "AccessDenied":
                raise ConfigurationError("Insufficient permissions. Need EC2 access.") from e
            raise ProviderError(str(e)) from e
        except BotoCoreError as e:
            raise ConfigurationError(f"AWS credentials unusable: {e}") from e

    async def create(self, name: str) -> ComputeHandle:
        ami = UBUNTU_AMIS.get(self.region)
        if ami is None:
            raise ProviderError(
                f"No Ubuntu AMI found for region {self.region}. "
                f"Supported regions: {', '.join(UBUNTU_AMIS)}"
            )
        try:
            return await asyncio.to_thread(self._create_instance, name, ami)
        except ClientError as e:
            raise ProviderError(str(e), details={"code": _error_code(e)}) from e
        except BotoCoreError as e:
            raise ProviderError(str(e)) from e

    def _create_instance(self, name: str, ami: str) -> ComputeHandle:
        sg_id = self._ensure_security_group()
        key_name = f"clawdbot-{name}-{int(time.time() * 1000)}"
        private_key = self._create_key_pair(key_name)

        params: dict[str, Any] = {
            "ImageId": ami,
            "InstanceType": self.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": key_name,
            "SecurityGroupIds": [sg_id],
            "UserData": USER_DATA,
            "BlockDeviceMappings": [
                {
                    "DeviceName": "/dev/sda1",
                    "Ebs": {
                        "VolumeSize": self.volume_size,
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": name},
                        {"Key": "CreatedBy", "Value": "Clawdbot"},
                        {"Key": "Project", "Value": "clawdbot-vm"},
                    ],
                }
            ],
        }
        subnet_id = self._default_subnet()
        if subnet_id:
            params["SubnetId"] = subnet_id

        try:
            resp = self.ec2.run_instances(**params)
            instance_id = resp.get("Instances", [{}])[0].get("InstanceId")
            if not instance_id:
                raise ValueError("EC2 did not return an InstanceId.")
        except (ClientError, BotoCoreError, ValueError):
            self._delete_key_pair(key_name)
            raise

        log.info("ec2_instance_launched", instance_id=instance_id, name=name, region=self.region)
        return ComputeHandle(
            id=instance_id,
            name=name,
            status="pending",
            region=self.region,
            instance_class=self.instance_type,
            ssh_private_key=private_key,
        )

    def _ensure_security_group(self) -> str:
        resp = self.ec2.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [SECURITY_GROUP_NAME]}]
        )
        groups = resp.get("SecurityGroups", [])
        if groups:
            return groups[0]["GroupId"]

        vpcs = self.ec2.describe_vpcs(Filters=[{"Name": "is-default", "Values": ["true"]}])
        vpc_id = (vpcs.get("Vpcs") or [{}])[0].get("VpcId")
        if not vpc_id:
            raise ValueError("No default VPC found. Please create one in AWS.")

        sg = self.ec2.create_security_group(
            GroupName=SECURITY_GROUP_NAME,
            Description="Security group for Clawdbot VMs - allows SSH and HTTPS",
            VpcId=vpc_id,
        )
        sg_id = sg["GroupId"]
        ingress_rules = [
            {
                "IpProtocol": "tcp",
                "FromPort": 22,
                "ToPort": 22,
                "IpRanges": [{"CidrIp": ALLOWED_CIDR, "Description": "SSH access"}],
            },
            {
                "IpProtocol": "tcp",
                "FromPort": 443,
                "ToPort": 443,
                "IpRanges": [{"CidrIp": ALLOWED_CIDR, "Description": "HTTPS"}],
            },
        ]
        try:
            self.ec2.authorize_security_group_ingress(GroupId=sg_id, IpPermissions=ingress_rules)
        except ClientError as exc:
            if _error_code(exc) != "InvalidPermission.Duplicate":
                raise
        return sg_id

    def _create_key_pair(self, key_name: str) -> str:
        self._delete_key_pair(key_name)
        resp = self.ec2.create_key_pair(KeyName=key_name, KeyType="ed25519")
        return resp["KeyMaterial"]

    def _delete_key_pair(self, key_name: str) -> None:
        try:
            self.ec2.delete_key_pair(KeyName=key_name)
        except (ClientError, BotoCoreError) as e:
            log.debug("ec2_key_pair_delete_failed", key_name=key_name, error=str(e))

    def _default_subnet(self) -> str | None:
        resp = self.ec2.describe_subnets(Filters=[{"Name": "default-for-az", "Values": ["true"]}])
        subnets = resp.get("Subnets") or []
        return subnets[0].get("SubnetId") if subnets else None

    async def wait_until_addressable(self, handle: ComputeHandle) -> ComputeHandle:
        timeout = settings.aws_running_timeout_seconds
        waiter = self.ec2.get_waiter("instance_running")
        try:
            await asyncio.to_thread(
                waiter.wait,
                InstanceIds=[handle.id],
                WaiterConfig={"Delay": 5, "MaxAttempts": max(1, timeout // 5)},
            )
        except WaiterError as e:
            raise ProviderError(f"Instance {handle.id} did not reach running: {e}") from e

        current = await self.describe(handle.id)
        if current is None or not current.address:
            raise ProviderError(f"Instance {handle.id} has no public address")
        current.ssh_private_key = handle.ssh_private_key
        return current

    async def describe(self, compute_id: str) -> ComputeHandle | None:
        try:
            resp = await asyncio.to_thread(self.ec2.describe_instances, InstanceIds=[compute_id])
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise ProviderError(str(e)) from e
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                handle = self._handle(instance)
                if handle.status in {"terminated", "shutting-down"}:
                    return None
                return handle
        return None

    async def list(self) -> list[ComputeHandle]:
        try:
            resp = await asyncio.to_thread(
                self.ec2.describe_instances,
                Filters=[
                    {"Name": "tag:CreatedBy", "Values": ["Clawdbot"]},
                    {"Name": "instance-state-name", "Values": LISTED_STATES},
                ],
            )
        except ClientError as e:
            raise ProviderError(str(e)) from e
        return [
            self._handle(instance)
            for reservation in resp.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    async def delete(self, compute_id: str) -> None:
        try:
            await asyncio.to_thread(self.ec2.terminate_instances, InstanceIds=[compute_id])
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES or "not found" in str(e).lower():
                log.info("ec2_instance_already_gone", instance_id=compute_id)
                return
            raise ProviderError(str(e)) from e
        log.info("ec2_instance_terminated", instance_id=compute_id)

    async def open_executor(self, handle: ComputeHandle) -> SSHExecutor:
        if not handle.address or not handle.ssh_private_key:
            raise ProviderError(f"Instance {handle.id} is missing its address or SSH key")
        return SSHExecutor(handle.address, self.ssh_user, handle.ssh_private_key)

    async def prepare_system(self, runner: StepRunner) -> StepResult:
        base = await PackageInstaller(runner).install_base_packages()
        if not base.ok:
            return base.with_message(base.message or "Failed to install Python")
        return await install_python_extras(
            runner, "pip3 install anthropic requests Pillow --quiet"
        )

    def is_billing_restriction(self, exc: BaseException) -> bool:
        message = str(exc).lower()
        return any(marker in message for marker in BILLING_MARKERS)

    def is_timeout(self, exc: BaseException) -> bool:
        # The key material only exists in the failed call, so a found instance is unusable
        return False

    def generate_name(self) -> str:
        return random_name("clawdbot-", INSTANCE_NAME_NOUNS)

    def _handle(self, instance: dict[str, Any]) -> ComputeHandle:
        tags = {t.get("Key"): t.get("Value") for t in instance.get("Tags", [])}
        instance_id = instance["InstanceId"]
        return ComputeHandle(
            id=instance_id,
            name=tags.get("Name") or instance_id,
            status=(instance.get("State") or {}).get("Name", "unknown"),
            address=instance.get("PublicIpAddress"),
            region=self.region,
            instance_class=instance.get("InstanceType") or self.instance_type,
        )
