"""
aws_compute
-----------

네트워크, Role, Security Group, 부트 스크립트를 묶어 EC2 인스턴스를 선언한다.
"""

from __future__ import annotations

from typing import Sequence

from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_iam as iam

from .config import StackConfig
from .logging_utils import get_logger


logger = get_logger(__name__)


def build_user_data(commands: Sequence[str]) -> ec2.UserData:
    # for_linux() 가 #!/bin/bash 를 붙인다
    user_data = ec2.UserData.for_linux()
    user_data.add_commands(*commands)
    return user_data


def build_instance(
    scope,  # noqa: ANN001
    cfg: StackConfig,
    *,
    vpc: ec2.IVpc,
    security_group: ec2.ISecurityGroup,
    role: iam.IRole,
    user_data: ec2.UserData,
) -> ec2.Instance:
    key_pair = None
    if cfg.key_pair_name:
        key_pair = ec2.KeyPair.from_key_pair_name(scope, "DevFilesKeyPair", cfg.key_pair_name)

    logger.debug("EC2 인스턴스 선언: type=%s", cfg.instance_type)
    return ec2.Instance(
        scope,
        "DevfilesInstance",
        instance_type=ec2.InstanceType(cfg.instance_type),
        machine_image=ec2.MachineImage.latest_amazon_linux2(),
        vpc=vpc,
        vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        security_group=security_group,
        role=role,
        user_data=user_data,
        # 부트 스크립트는 최초 부팅 때만 실행되므로, 스크립트가 바뀌면 인스턴스를 교체한다
        user_data_causes_replacement=True,
        require_imdsv2=True,
        key_pair=key_pair,
        block_devices=[
            ec2.BlockDevice(
                device_name="/dev/xvda",
                volume=ec2.BlockDeviceVolume.ebs(
                    cfg.root_volume_gib,
                    volume_type=ec2.EbsDeviceVolumeType.GP3,
                    encrypted=True,
                ),
            ),
        ],
    )
