from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv


ENV_FILES_DEFAULT_ORDER = [".env", ".env.infra"]

DEFAULT_SERVICE_DIRS = (
    "dev-files-api",
    "dev-files-notification",
    "dev-files-ai-service",
)

# git@github.com:org/repo.git 또는 ssh://git@github.com/org/repo.git
_SCP_LIKE_URL = re.compile(r"^[\w.-]+@(?P<host>[\w.-]+):(?P<path>.+)$")
_SSH_URL = re.compile(r"^ssh://(?:[\w.-]+@)?(?P<host>[\w.-]+)(?::\d+)?/(?P<path>.+)$")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def ssh_host_of(repo_url: str) -> str:
    """
    SSH 형태의 git URL 에서 호스트명을 추출한다.
    SSH 가 아닌 URL(https 등)은 인증된 전송이 아니므로 ValueError.
    """
    for pattern in (_SCP_LIKE_URL, _SSH_URL):
        m = pattern.match(repo_url.strip())
        if m:
            return m.group("host")
    raise ValueError(
        f"GITHUB_REPO_URL 은 SSH 형식이어야 합니다 (git@host:org/repo.git): {repo_url}"
    )


def _get_int(name: str, default: int, errors: List[str]) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{name}={raw!r} (정수가 아닙니다)")
        return default


def _get_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass
class StackConfig:
    # 필수
    github_repo_url: str

    stack_name: str = "DevFilesEc2Stack"
    aws_account_id: Optional[str] = None
    aws_region: Optional[str] = None

    # 리소스
    bucket_name: str = "dev-files-bucket"
    instance_type: str = "t3.2xlarge"
    root_volume_gib: int = 30
    key_pair_name: Optional[str] = None
    ingress_cidr: str = "0.0.0.0/0"
    log_group_name: str = "/devfiles/ec2"

    # 부트 스크립트
    app_dir: str = "/home/ec2-user/devfiles-monorepo"
    service_dirs: Tuple[str, ...] = field(default=DEFAULT_SERVICE_DIRS)
    compose_version: str = "v2.24.5"
    github_deploy_key_secret_name: Optional[str] = None

    # 외부(사전 생성) secret 이름
    aws_access_key_id_secret_name: str = "DevFilesAWSAccessKeyIdSecretName"
    aws_secret_access_key_secret_name: str = "DevFilesAWSSecretAccessKeySecretName"
    mail_sender_secret_name: str = "DevFilesMailSenderSecretName"

    # .env 정적 값
    spring_profile: str = "prd"
    service_port: int = 8080
    mail_host: str = "smtp.sendgrid.net"
    mail_port: int = 587
    mail_username: str = "apikey"

    @property
    def repo_host(self) -> str:
        return ssh_host_of(self.github_repo_url)

    @classmethod
    def from_env(cls) -> "StackConfig":
        missing: List[str] = []
        invalid: List[str] = []

        def req(name: str) -> str:
            val = os.getenv(name)
            if not val:
                missing.append(name)
            return val or ""

        def opt(name: str, default: str) -> str:
            return os.getenv(name) or default

        cfg = cls(
            github_repo_url=req("GITHUB_REPO_URL"),
            stack_name=opt("STACK_NAME", "DevFilesEc2Stack"),
            aws_account_id=os.getenv("AWS_ACCOUNT_ID") or os.getenv("CDK_DEFAULT_ACCOUNT"),
            aws_region=os.getenv("AWS_REGION") or os.getenv("CDK_DEFAULT_REGION"),
            bucket_name=opt("BUCKET_NAME", "dev-files-bucket"),
            instance_type=opt("INSTANCE_TYPE", "t3.2xlarge"),
            root_volume_gib=_get_int("ROOT_VOLUME_GIB", 30, invalid),
            key_pair_name=os.getenv("KEY_PAIR_NAME") or None,
            ingress_cidr=opt("INGRESS_CIDR", "0.0.0.0/0"),
            log_group_name=opt("LOG_GROUP_NAME", "/devfiles/ec2"),
            app_dir=opt("APP_DIR", "/home/ec2-user/devfiles-monorepo"),
            service_dirs=_get_list("SERVICE_DIRS", DEFAULT_SERVICE_DIRS),
            compose_version=opt("COMPOSE_VERSION", "v2.24.5"),
            github_deploy_key_secret_name=os.getenv("GITHUB_DEPLOY_KEY_SECRET_NAME") or None,
            aws_access_key_id_secret_name=opt(
                "AWS_ACCESS_KEY_ID_SECRET_NAME", "DevFilesAWSAccessKeyIdSecretName"
            ),
            aws_secret_access_key_secret_name=opt(
                "AWS_SECRET_ACCESS_KEY_SECRET_NAME", "DevFilesAWSSecretAccessKeySecretName"
            ),
            mail_sender_secret_name=opt("MAIL_SENDER_SECRET_NAME", "DevFilesMailSenderSecretName"),
            spring_profile=opt("SPRING_PROFILE", "prd"),
            service_port=_get_int("SERVICE_PORT", 8080, invalid),
            mail_host=opt("MAIL_HOST", "smtp.sendgrid.net"),
            mail_port=_get_int("MAIL_PORT", 587, invalid),
            mail_username=opt("MAIL_USERNAME", "apikey"),
        )

        if missing:
            raise ValueError(
                "필수 환경변수가 누락되었습니다: " + ", ".join(sorted(set(missing)))
            )
        if invalid:
            raise ValueError("잘못된 환경변수 값: " + ", ".join(invalid))

        # URL 형식 검증 (https 등은 거부)
        ssh_host_of(cfg.github_repo_url)

        return cfg
