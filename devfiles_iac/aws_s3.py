"""
aws_s3
------

콘텐츠용 S3 버킷 선언 및 버킷 이름 사용 가능 여부 확인을 담당하는 모듈.
"""

from __future__ import annotations

import boto3
from aws_cdk import RemovalPolicy
from aws_cdk import aws_s3 as s3
from botocore.exceptions import BotoCoreError, ClientError

from .config import StackConfig
from .logging_utils import get_logger


logger = get_logger(__name__)


def build_bucket(scope, cfg: StackConfig) -> s3.Bucket:  # noqa: ANN001
    """
    스택 삭제 시 객체까지 함께 지워지는 버킷을 선언한다.
    """
    logger.debug("S3 버킷 선언: %s", cfg.bucket_name)
    return s3.Bucket(
        scope,
        "DevFilesBucket",
        bucket_name=cfg.bucket_name,
        removal_policy=RemovalPolicy.DESTROY,
        auto_delete_objects=True,
        block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
        enforce_ssl=True,
    )


def check_bucket(cfg: StackConfig) -> str:
    """
    버킷 존재 여부를 확인만 하고, 생성하지 않는다.
    S3 버킷 이름은 전역이므로 다른 계정 소유(403)면 배포가 실패한다.
    """
    client = boto3.client("s3", region_name=cfg.aws_region)
    try:
        client.head_bucket(Bucket=cfg.bucket_name)
    except ClientError as e:
        code = str(e.response.get("Error", {}).get("Code", ""))
        if code in {"404", "NoSuchBucket", "NotFound"}:
            return f"S3: 버킷 없음 (배포 시 생성됨) ({cfg.bucket_name})"
        if code in {"403", "AccessDenied", "Forbidden"}:
            return f"S3: 다른 계정 소유 버킷 (이름 사용 불가) ({cfg.bucket_name})"
        logger.debug("head_bucket 실패: %s", e)
        return f"S3: 확인 불가 ({cfg.bucket_name}): {code}"
    except BotoCoreError as e:
        return f"S3: 확인 불가 ({cfg.bucket_name}): {e}"

    return f"S3: 버킷 존재함 ({cfg.bucket_name})"
