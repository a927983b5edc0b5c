"""
stack
-----

DevFiles EC2 스택. 각 aws_* 모듈의 리소스를 하나의 CloudFormation 스택으로 묶는다.
"""

from __future__ import annotations

from aws_cdk import CfnOutput, Stack
from constructs import Construct

from . import aws_compute, aws_iam, aws_network, aws_s3, aws_secrets
from .boot_script import build_boot_script, referenced_secrets
from .config import StackConfig
from .logging_utils import get_logger


logger = get_logger(__name__)


class DevFilesStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, *, config: StackConfig, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.config = config

        self.vpc = aws_network.build_vpc(self)
        self.security_group = aws_network.build_security_group(self, self.vpc, config)
        self.role = aws_iam.build_instance_role(self)
        self.bucket = aws_s3.build_bucket(self, config)

        catalog = aws_secrets.secret_catalog(config)
        self.secrets = aws_secrets.declare_secrets(self, catalog)

        # 스크립트가 읽는 secret 과 Role 이 읽을 수 있는 secret 은 같은 목록에서 나온다
        referenced = referenced_secrets(config)
        missing = aws_secrets.missing_secrets(referenced, self.secrets.keys())
        if missing:
            raise ValueError("선언되지 않은 secret 을 참조합니다: " + ", ".join(missing))

        aws_iam.grant_secret_read(self.role, [self.secrets[name] for name in referenced])

        secret_ids = {
            name: aws_secrets.secret_id_for(catalog[name], self.secrets[name])
            for name in referenced
        }
        self.boot_script = build_boot_script(config, secret_ids, region=self.region)

        self.instance = aws_compute.build_instance(
            self,
            config,
            vpc=self.vpc,
            security_group=self.security_group,
            role=self.role,
            user_data=aws_compute.build_user_data(self.boot_script.commands()),
        )

        CfnOutput(
            self,
            "InstancePublicIp",
            value=self.instance.instance_public_ip,
            description="Public ip address of the EC2 instance",
        )
        CfnOutput(
            self,
            "InstancePublicDns",
            value=self.instance.instance_public_dns_name,
            description="Public DNS of the EC2 instance",
        )
        CfnOutput(
            self,
            "InstanceId",
            value=self.instance.instance_id,
            description="EC2 instance id (SSM Session Manager 접속용)",
        )
        CfnOutput(
            self,
            "BucketName",
            value=self.bucket.bucket_name,
            description="Content bucket name",
        )

        logger.debug("스택 구성 완료: %s (secrets=%d)", construct_id, len(referenced))
