"""
aws_secrets
-----------

Secrets Manager 에 둘 credential 목록(catalog)을 정의하고,
CDK 리소스로 선언하거나 외부(사전 생성) secret 의 존재 여부를 확인하는 모듈.

- 생성형 secret: 스택과 함께 생성되고 스택 삭제 시 함께 삭제된다.
- 외부 secret: 이름으로 조회만 하며, 이 스택이 생성/삭제하지 않는다.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

import boto3
from aws_cdk import RemovalPolicy
from aws_cdk import aws_secretsmanager as secretsmanager
from botocore.exceptions import BotoCoreError, ClientError

from .config import StackConfig
from .logging_utils import get_logger


logger = get_logger(__name__)

# 쉘/JDBC URL 에서 문제를 일으키는 문자
DEFAULT_EXCLUDE_CHARACTERS = "@/\"' \\"


@dataclass(frozen=True)
class SecretSpec:
    """Secret 하나의 선언. external_name 이 있으면 외부 secret."""

    construct_id: str
    length: int = 16
    exclude_characters: str = DEFAULT_EXCLUDE_CHARACTERS
    template_fields: Optional[Mapping[str, str]] = None
    generate_key: Optional[str] = None
    external_name: Optional[str] = None

    @property
    def is_external(self) -> bool:
        return self.external_name is not None

    def secret_string_template(self) -> Optional[str]:
        """
        템플릿 필드에 generate_key 를 빈 문자열로 추가한 compact JSON.
        예: {"username":"devfiles","password":""}
        """
        if self.generate_key is None:
            return None
        fields = dict(self.template_fields or {})
        fields[self.generate_key] = ""
        return json.dumps(fields, separators=(",", ":"))


def _user_password(construct_id: str, username: str) -> SecretSpec:
    return SecretSpec(
        construct_id=construct_id,
        template_fields={"username": username},
        generate_key="password",
    )


def secret_catalog(cfg: StackConfig) -> Dict[str, SecretSpec]:
    """논리 이름 -> SecretSpec. 부트 스크립트는 이 논리 이름으로 secret 을 참조한다."""
    catalog: Dict[str, SecretSpec] = {
        "postgres": _user_password("DevFilesPostgresPassword", "devfiles"),
        "rabbitmq_default": _user_password("DevFilesRabbitMQDefaultPassword", "devfiles"),
        "rabbitmq_notification": _user_password(
            "DevFilesRabbitMQNotificationPassword", "notification"
        ),
        "rabbitmq_erlang_cookie": _user_password("DevFilesRabbitMQErlangCookie", "notification"),
        "jwt": SecretSpec("DevFilesJWTSecretKey", length=32),
        "ai_service_key": SecretSpec(
            "DevFilesAIServiceKey",
            length=32,
            template_fields={},
            generate_key="key",
        ),
        "redis": SecretSpec("DevFilesRedisPassword"),
        "mail_password": SecretSpec("DevFilesMailPassword"),
        "aws_access_key_id": SecretSpec(
            "DevFilesAWSAccessKeyId", external_name=cfg.aws_access_key_id_secret_name
        ),
        "aws_secret_access_key": SecretSpec(
            "DevFilesAWSSecretAccessKey", external_name=cfg.aws_secret_access_key_secret_name
        ),
        "mail_sender": SecretSpec(
            "DevFilesMailSender", external_name=cfg.mail_sender_secret_name
        ),
    }
    if cfg.github_deploy_key_secret_name:
        catalog["github_deploy_key"] = SecretSpec(
            "DevFilesGitHubDeployKey", external_name=cfg.github_deploy_key_secret_name
        )
    return catalog


def missing_secrets(referenced: Iterable[str], declared: Iterable[str]) -> List[str]:
    """부트 스크립트가 참조하지만 선언되지 않은 secret 이름 목록."""
    declared_set = set(declared)
    return sorted({name for name in referenced if name not in declared_set})


def declare_secrets(scope, specs: Mapping[str, SecretSpec]) -> Dict[str, secretsmanager.ISecret]:  # noqa: ANN001
    """
    catalog 를 CDK Secret 리소스로 선언한다.
    생성형은 RemovalPolicy.DESTROY, 외부 secret 은 from_secret_name_v2 로 참조만 한다.
    """
    secrets: Dict[str, secretsmanager.ISecret] = {}
    for name, spec in specs.items():
        if spec.is_external:
            secrets[name] = secretsmanager.Secret.from_secret_name_v2(
                scope, spec.construct_id, spec.external_name
            )
            continue

        template = spec.secret_string_template()
        generator = secretsmanager.SecretStringGenerator(
            password_length=spec.length,
            exclude_characters=spec.exclude_characters,
            secret_string_template=template,
            generate_string_key=spec.generate_key if template is not None else None,
        )
        secrets[name] = secretsmanager.Secret(
            scope,
            spec.construct_id,
            generate_secret_string=generator,
            removal_policy=RemovalPolicy.DESTROY,
        )
    return secrets


def secret_id_for(spec: SecretSpec, secret: secretsmanager.ISecret) -> str:
    """
    부트 스크립트의 --secret-id 에 넣을 식별자.
    이름으로 가져온 외부 secret 은 secret_arn 에 랜덤 접미사가 없어 실제 ARN 과 다르므로 이름을 쓴다.
    """
    if spec.is_external:
        return secret.secret_name
    return secret.secret_arn


def check_external_secrets(cfg: StackConfig) -> List[str]:
    """
    외부 secret 들이 Secrets Manager 에 존재하는지 확인한다.
    (없어도 생성하지 않고, 상태만 리턴)
    """
    client = boto3.client("secretsmanager", region_name=cfg.aws_region)

    results: List[str] = []
    for name, spec in sorted(secret_catalog(cfg).items()):
        if not spec.is_external:
            continue
        try:
            client.describe_secret(SecretId=spec.external_name)
            results.append(f"Secrets: 존재함 ({spec.external_name})")
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "ResourceNotFoundException":
                results.append(f"Secrets: 없음 (사전 생성 필요) ({spec.external_name})")
            else:
                logger.debug("describe_secret 실패: %s", e)
                results.append(f"Secrets: 확인 불가 ({spec.external_name}): {code}")
        except BotoCoreError as e:
            results.append(f"Secrets: 확인 불가 ({spec.external_name}): {e}")

    return results
