"""
aws_cloudformation
------------------

배포된 스택의 상태와 Output(퍼블릭 IP/DNS 등)을 조회하는 모듈.
"""

from __future__ import annotations

from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import StackConfig
from .logging_utils import get_logger


logger = get_logger(__name__)


def _describe_stack(cfg: StackConfig) -> Optional[dict]:
    client = boto3.client("cloudformation", region_name=cfg.aws_region)
    try:
        resp = client.describe_stacks(StackName=cfg.stack_name)
    except ClientError as e:
        message = e.response.get("Error", {}).get("Message", "")
        if "does not exist" in message:
            return None
        raise RuntimeError(f"스택 조회 실패: {cfg.stack_name}: {message}") from e
    except BotoCoreError as e:
        raise RuntimeError(f"스택 조회 실패: {cfg.stack_name}: {e}") from e

    stacks = resp.get("Stacks", [])
    return stacks[0] if stacks else None


def fetch_stack_outputs(cfg: StackConfig) -> Dict[str, str]:
    """
    OutputKey -> OutputValue. 스택이 없으면 RuntimeError.
    """
    stack = _describe_stack(cfg)
    if stack is None:
        raise RuntimeError(f"스택이 존재하지 않습니다: {cfg.stack_name}")

    outputs = {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}
    logger.debug("스택 output: %s", sorted(outputs))
    return outputs


def check_stack_status(cfg: StackConfig) -> str:
    try:
        stack = _describe_stack(cfg)
    except RuntimeError as e:
        return f"Stack: 확인 불가 ({e})"

    if stack is None:
        return f"Stack: 아직 배포되지 않음 ({cfg.stack_name})"

    status = stack.get("StackStatus", "UNKNOWN")
    if status.endswith("_FAILED") or status == "ROLLBACK_COMPLETE":
        return f"Stack: 실패 상태 ({cfg.stack_name}: {status})"
    return f"Stack: 배포됨 ({cfg.stack_name}: {status})"
