"""
boot_script
-----------

EC2 최초 부팅 시 실행되는 user data 쉘 스크립트를 생성하는 모듈.

스크립트는 `set -euo pipefail` 로 시작하므로 어느 명령이든 실패하거나
정의되지 않은 변수를 참조하면 즉시 중단된다. 재시도/롤백은 없다.

단계 순서:
    packages -> docker -> log-agent -> clone -> secrets -> env-file -> compose

CDK 에 의존하지 않으므로 secret 식별자 자리에 CDK 토큰 문자열을 넣어도 되고
(스택 합성 시), 임의의 문자열을 넣어도 된다(미리보기/테스트).
"""

from __future__ import annotations

import json
import shlex
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .aws_secrets import missing_secrets, secret_catalog
from .config import StackConfig
from .logging_utils import get_logger


logger = get_logger(__name__)

COMPOSE_PLUGIN_DIR = "/usr/local/lib/docker/cli-plugins"
CWAGENT_CONFIG_PATH = "/opt/aws/amazon-cloudwatch-agent/etc/devfiles.json"
CWAGENT_CTL = "/opt/aws/amazon-cloudwatch-agent/bin/amazon-cloudwatch-agent-ctl"
DEPLOY_KEY_PATH = "/root/.ssh/devfiles_deploy_key"

LOG_PATHS: Tuple[str, ...] = (
    "/var/log/cloud-init-output.log",
    "/var/log/messages",
    "/var/lib/docker/containers/*/*.log",
)

ENV_FILE_TERMINATOR = "EOF_ENV"


@dataclass(frozen=True)
class SecretBinding:
    """.env 키 하나가 어떤 secret 의 어떤 필드에서 오는지. field 가 None 이면 문자열 전체."""

    env_key: str
    secret: str
    field: Optional[str] = None

    @property
    def shell_var(self) -> str:
        return f"{self.env_key}_VAL"


ENV_SECRET_BINDINGS: Tuple[SecretBinding, ...] = (
    SecretBinding("POSTGRES_USER", "postgres", "username"),
    SecretBinding("POSTGRES_PASSWORD", "postgres", "password"),
    SecretBinding("RABBITMQ_ERLANG_COOKIE", "rabbitmq_erlang_cookie", "password"),
    SecretBinding("RABBITMQ_DEFAULT_USER", "rabbitmq_default", "username"),
    SecretBinding("RABBITMQ_DEFAULT_PASS", "rabbitmq_default", "password"),
    SecretBinding("JWT_SECRET_KEY", "jwt"),
    SecretBinding("REDIS_PASSWORD", "redis"),
    SecretBinding("AWS_ACCESS_KEY_ID", "aws_access_key_id", "AccessKeyId"),
    SecretBinding("AWS_SECRET_ACCESS_KEY", "aws_secret_access_key", "SecretAccessKey"),
    SecretBinding("AI_SERVICE_KEY", "ai_service_key", "key"),
    SecretBinding("NOTIFICATION_SERVICE_USER", "rabbitmq_notification", "username"),
    SecretBinding("NOTIFICATION_SERVICE_PASS", "rabbitmq_notification", "password"),
    SecretBinding("MAIL_SENDER_EMAIL", "mail_sender", "email"),
    SecretBinding("MAIL_PASSWORD", "mail_password"),
)

# 컨테이너 스택 내부 서비스 주소 (docker compose 서비스명 기준)
POSTGRES_DB = "devfiles"
POSTGRES_URL = "jdbc:postgresql://devfiles-postgres:5432/devfiles"
AI_SERVICE_PORT = 5000
AI_SERVICE_URL = f"http://ai-service:{AI_SERVICE_PORT}"
OLLAMA_LLM_BASE_URL = "http://ollama_llm:11434"
OLLAMA_EMBEDDING_BASE_URL = "http://ollama_embedding:11435"
CHROMA_DB_HOST = "chroma_db"
CHROMA_DB_PORT = 8000


@dataclass(frozen=True)
class BootStage:
    name: str
    commands: Tuple[str, ...]


@dataclass(frozen=True)
class BootScript:
    stages: Tuple[BootStage, ...]
    secrets: Tuple[str, ...]

    def commands(self) -> List[str]:
        """UserData.add_commands 에 그대로 넘길 명령 목록 (shebang 제외)."""
        out: List[str] = []
        for stage in self.stages:
            out.append(f"# --- {stage.name}")
            out.extend(stage.commands)
        return out

    def stage(self, name: str) -> BootStage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def render(self) -> str:
        return "\n".join(["#!/bin/bash", *self.commands()]) + "\n"


def _q(value: str) -> str:
    return shlex.quote(str(value))


def _secret_var(secret: str) -> str:
    return f"{secret.upper()}_SECRET"


def _get_secret_value(secret_id: str, region: str) -> str:
    return (
        "aws secretsmanager get-secret-value"
        f" --region {_q(region)}"
        f" --secret-id {_q(secret_id)}"
        " --query SecretString --output text"
    )


def referenced_secrets(cfg: StackConfig) -> List[str]:
    """스크립트가 조회하는 secret 논리 이름 (중복 없이, 등장 순서대로)."""
    names: List[str] = []
    if cfg.github_deploy_key_secret_name:
        names.append("github_deploy_key")
    for b in ENV_SECRET_BINDINGS:
        if b.secret not in names:
            names.append(b.secret)
    return names


def env_file_sections(cfg: StackConfig) -> List[Tuple[str, List[Tuple[str, str]]]]:
    """
    .env 파일 내용을 (섹션 주석, [(KEY, VALUE)]) 목록으로 반환한다.
    secret 에서 오는 값은 ${KEY_VAL} 형태로 남겨서 쉘이 치환하게 한다.
    """
    bound = {b.env_key: b for b in ENV_SECRET_BINDINGS}

    def s(key: str) -> Tuple[str, str]:
        return key, "${" + bound[key].shell_var + "}"

    return [
        ("", [("SPRING_PROFILES_ACTIVE", cfg.spring_profile)]),
        ("PostgreSQL", [
            ("POSTGRES_DB", POSTGRES_DB),
            s("POSTGRES_USER"),
            s("POSTGRES_PASSWORD"),
            ("POSTGRES_URL", POSTGRES_URL),
        ]),
        ("RabbitMQ", [
            s("RABBITMQ_ERLANG_COOKIE"),
            s("RABBITMQ_DEFAULT_USER"),
            s("RABBITMQ_DEFAULT_PASS"),
        ]),
        ("JWT", [s("JWT_SECRET_KEY")]),
        ("Redis", [s("REDIS_PASSWORD")]),
        ("AWS", [
            s("AWS_ACCESS_KEY_ID"),
            s("AWS_SECRET_ACCESS_KEY"),
            ("AWS_BUCKET_NAME", cfg.bucket_name),
        ]),
        ("AI Service", [
            ("AI_SERVICE_URL", AI_SERVICE_URL),
            s("AI_SERVICE_KEY"),
            ("AI_SERVICE_PORT", str(AI_SERVICE_PORT)),
            ("OLLAMA_LLM_BASE_URL", OLLAMA_LLM_BASE_URL),
            ("OLLAMA_EMBEDDING_BASE_URL", OLLAMA_EMBEDDING_BASE_URL),
            ("CHROMA_DB_HOST", CHROMA_DB_HOST),
            ("CHROMA_DB_PORT", str(CHROMA_DB_PORT)),
        ]),
        ("Notification Service", [
            s("NOTIFICATION_SERVICE_USER"),
            s("NOTIFICATION_SERVICE_PASS"),
            s("MAIL_SENDER_EMAIL"),
            ("MAIL_HOST", cfg.mail_host),
            ("MAIL_PORT", str(cfg.mail_port)),
            ("MAIL_USERNAME", cfg.mail_username),
            s("MAIL_PASSWORD"),
        ]),
        ("DevFiles Service", [("DEV_FILES_SERVICE_PORT", str(cfg.service_port))]),
    ]


def env_file_keys(cfg: StackConfig) -> List[str]:
    return [key for _, entries in env_file_sections(cfg) for key, _ in entries]


def _packages_stage() -> BootStage:
    return BootStage("packages", (
        "yum update -y",
        "amazon-linux-extras install docker -y",
        "yum install -y git jq amazon-cloudwatch-agent",
    ))


def _docker_stage(cfg: StackConfig) -> BootStage:
    plugin = f"{COMPOSE_PLUGIN_DIR}/docker-compose"
    url = (
        "https://github.com/docker/compose/releases/download/"
        f"{cfg.compose_version}/docker-compose-linux-$(uname -m)"
    )
    return BootStage("docker", (
        "systemctl enable --now docker",
        "usermod -a -G docker ec2-user",
        f"mkdir -p {COMPOSE_PLUGIN_DIR}",
        f'curl -fsSL "{url}" -o {plugin}',
        f"chmod +x {plugin}",
        "docker compose version",
    ))


def cwagent_config(cfg: StackConfig) -> Dict:
    return {
        "logs": {
            "logs_collected": {
                "files": {
                    "collect_list": [
                        {
                            "file_path": path,
                            "log_group_name": cfg.log_group_name,
                            "log_stream_name": "{instance_id}/" + path.strip("/").replace("*", "_"),
                        }
                        for path in LOG_PATHS
                    ],
                },
            },
        },
    }


def _log_agent_stage(cfg: StackConfig) -> BootStage:
    # 변수 치환이 필요 없으므로 terminator 를 따옴표로 감싼다
    return BootStage("log-agent", (
        f"mkdir -p {CWAGENT_CONFIG_PATH.rsplit('/', 1)[0]}",
        f"cat <<'EOF_CWAGENT' > {CWAGENT_CONFIG_PATH}",
        json.dumps(cwagent_config(cfg), sort_keys=True),
        "EOF_CWAGENT",
        f"{CWAGENT_CTL} -a fetch-config -m ec2 -s -c file:{CWAGENT_CONFIG_PATH}",
    ))


def _clone_stage(cfg: StackConfig, secret_ids: Mapping[str, str], region: str) -> BootStage:
    cmds: List[str] = [
        "mkdir -p /root/.ssh",
        "chmod 700 /root/.ssh",
        f"ssh-keyscan -H {_q(cfg.repo_host)} >> /root/.ssh/known_hosts",
    ]
    if cfg.github_deploy_key_secret_name:
        cmds += [
            f"{_get_secret_value(secret_ids['github_deploy_key'], region)} > {DEPLOY_KEY_PATH}",
            f"chmod 600 {DEPLOY_KEY_PATH}",
            f'export GIT_SSH_COMMAND="ssh -i {DEPLOY_KEY_PATH} -o IdentitiesOnly=yes"',
        ]
    cmds += [
        f"git clone --recurse-submodules {_q(cfg.github_repo_url)} {_q(cfg.app_dir)}",
        f"cd {_q(cfg.app_dir)}",
    ]
    return BootStage("clone", tuple(cmds))


def _secrets_stage(secret_ids: Mapping[str, str], region: str) -> BootStage:
    cmds: List[str] = []
    fetched: List[str] = []
    for b in ENV_SECRET_BINDINGS:
        if b.secret not in fetched:
            cmds.append(f"{_secret_var(b.secret)}=$({_get_secret_value(secret_ids[b.secret], region)})")
            fetched.append(b.secret)
        if b.field is None:
            cmds.append(f'{b.shell_var}="${{{_secret_var(b.secret)}}}"')
        else:
            # -e: 필드가 없으면(null) 0 이 아닌 종료코드로 스크립트 중단
            cmds.append(
                f'{b.shell_var}=$(printf \'%s\' "${{{_secret_var(b.secret)}}}" | jq -er {_q("." + b.field)})'
            )
    return BootStage("secrets", tuple(cmds))


def _env_file_stage(cfg: StackConfig) -> BootStage:
    env_path = f"{cfg.app_dir}/.env"
    cmds: List[str] = [
        "umask 077",
        # terminator 를 따옴표로 감싸지 않아야 ${..._VAL} 이 치환된다
        f"cat <<{ENV_FILE_TERMINATOR} > {_q(env_path)}",
    ]
    for comment, entries in env_file_sections(cfg):
        if comment:
            cmds.append(f"# {comment}")
        cmds.extend(f"{key}={value}" for key, value in entries)
    cmds.append(ENV_FILE_TERMINATOR)
    return BootStage("env-file", tuple(cmds))


def _compose_stage(cfg: StackConfig) -> BootStage:
    env_path = f"{cfg.app_dir}/.env"
    cmds: List[str] = [
        f"cp {_q(env_path)} {_q(f'{cfg.app_dir}/{folder}/.env')}"
        for folder in cfg.service_dirs
    ]
    cmds += [
        f"chown -R ec2-user:ec2-user {_q(cfg.app_dir)}",
        f"cd {_q(cfg.app_dir)}",
        "docker compose up -d",
    ]
    return BootStage("compose", tuple(cmds))


def build_boot_script(cfg: StackConfig, secret_ids: Mapping[str, str], region: str) -> BootScript:
    """
    secret_ids: secret 논리 이름 -> --secret-id 에 들어갈 값 (ARN 또는 이름)
    """
    secrets = referenced_secrets(cfg)
    missing = missing_secrets(secrets, secret_ids.keys())
    if missing:
        raise ValueError(
            "부트 스크립트가 참조하는 secret 의 식별자가 없습니다: " + ", ".join(missing)
        )

    stages: Sequence[BootStage] = (
        BootStage("shell", ("set -euo pipefail", 'export HOME="${HOME:-/root}"')),
        _packages_stage(),
        _docker_stage(cfg),
        _log_agent_stage(cfg),
        _clone_stage(cfg, secret_ids, region),
        _secrets_stage(secret_ids, region),
        _env_file_stage(cfg),
        _compose_stage(cfg),
    )
    logger.debug("부트 스크립트 생성: stages=%s", [s.name for s in stages])
    return BootScript(stages=tuple(stages), secrets=tuple(secrets))


def placeholder_secret_ids(cfg: StackConfig) -> Dict[str, str]:
    """미리보기용 secret 식별자: 외부 secret 은 이름, 생성형은 <ConstructId> 자리표시자."""
    return {
        name: spec.external_name if spec.is_external else f"<{spec.construct_id}>"
        for name, spec in secret_catalog(cfg).items()
    }
