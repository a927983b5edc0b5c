"""
aws_iam
-------

EC2 인스턴스용 IAM Role 과 secret 읽기 권한을 구성하는 모듈.
Secret 권한은 부트 스크립트가 실제로 읽는 secret ARN 목록으로만 부여한다.
"""

from __future__ import annotations

from typing import Iterable

from aws_cdk import aws_iam as iam
from aws_cdk import aws_secretsmanager as secretsmanager

from .logging_utils import get_logger


logger = get_logger(__name__)

MANAGED_POLICIES = (
    "AmazonSSMManagedInstanceCore",
    # 로그 에이전트(amazon-cloudwatch-agent)용
    "CloudWatchAgentServerPolicy",
)


def build_instance_role(scope) -> iam.Role:  # noqa: ANN001
    return iam.Role(
        scope,
        "DevFilesEc2Role",
        assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
        managed_policies=[
            iam.ManagedPolicy.from_aws_managed_policy_name(name) for name in MANAGED_POLICIES
        ],
    )


def policy_arn_for(secret: secretsmanager.ISecret) -> str:
    """
    IAM resource 에 넣을 secret ARN.
    이름으로 가져온 secret 은 secret_arn 에 랜덤 접미사가 없으므로 '-??????' 를 붙여야 매칭된다.
    """
    if secret.secret_full_arn:
        return secret.secret_full_arn
    return f"{secret.secret_arn}-??????"


def grant_secret_read(role: iam.Role, secrets: Iterable[secretsmanager.ISecret]) -> iam.PolicyStatement:
    arns = [policy_arn_for(s) for s in secrets]
    if not arns:
        raise ValueError("읽기 권한을 부여할 secret 이 없습니다.")

    statement = iam.PolicyStatement(
        actions=["secretsmanager:GetSecretValue"],
        resources=arns,
    )
    role.add_to_policy(statement)
    logger.debug("secret 읽기 권한 %d 건 부여", len(arns))
    return statement
