"""
cdk_cli
-------

CDK 툴킷(`cdk` 바이너리) 호출 래퍼. 실제 CloudFormation 변경은 툴킷이 수행한다.
"""

from __future__ import annotations

import os
from typing import Dict, List

from .config import StackConfig
from .logging_utils import get_logger
from .subprocess_utils import RunResult, run_command


logger = get_logger(__name__)

CDK_BIN = "cdk"


def _cdk_env(cfg: StackConfig) -> Dict[str, str]:
    env = dict(os.environ)
    if cfg.aws_account_id:
        env["CDK_DEFAULT_ACCOUNT"] = cfg.aws_account_id
    if cfg.aws_region:
        env["CDK_DEFAULT_REGION"] = cfg.aws_region
        env.setdefault("AWS_REGION", cfg.aws_region)
    return env


def build_cdk_command(cfg: StackConfig, action: str, *, approve: bool = False) -> List[str]:
    cmd = [CDK_BIN, action, cfg.stack_name]
    if action == "deploy" and approve:
        cmd += ["--require-approval", "never"]
    if action == "destroy" and approve:
        cmd.append("--force")
    return cmd


def synth(cfg: StackConfig, base_dir: str = ".") -> RunResult:
    # 템플릿 본문은 cdk.out 에 남으므로 stdout 은 출력하지 않는다
    return run_command(build_cdk_command(cfg, "synth") + ["--quiet"],
                       cwd=base_dir, env=_cdk_env(cfg))


def deploy(cfg: StackConfig, base_dir: str = ".", approve: bool = False) -> RunResult:
    return run_command(
        build_cdk_command(cfg, "deploy", approve=approve),
        cwd=base_dir,
        env=_cdk_env(cfg),
        stream_output=True,
    )


def destroy(cfg: StackConfig, base_dir: str = ".", approve: bool = False) -> RunResult:
    logger.warning("스택을 삭제합니다. 생성형 secret 과 버킷 객체도 함께 삭제됩니다: %s", cfg.stack_name)
    return run_command(
        build_cdk_command(cfg, "destroy", approve=approve),
        cwd=base_dir,
        env=_cdk_env(cfg),
        stream_output=True,
    )
