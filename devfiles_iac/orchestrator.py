from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Tuple

from .config import StackConfig
from .logging_utils import get_logger
from . import (
    aws_cloudformation,
    aws_network,
    aws_s3,
    aws_secrets,
    boot_script,
    cdk_cli,
)


logger = get_logger(__name__)

# CLI 등에서 사용할 수 있도록 섹션 이름을 상수로 노출 (실행 순서)
ALL_SECTIONS: List[str] = [
    "check",
    "synth",
    "deploy",
    "outputs",
]


def _filter_sections(only_sections: Optional[Iterable[str]]) -> List[str]:
    if only_sections:
        requested = set(only_sections)
        return [s for s in ALL_SECTIONS if s in requested]
    return list(ALL_SECTIONS)


def _bullets(items: Iterable[str]) -> List[str]:
    items = list(items)
    if not items:
        return ["- (none)"]
    return [f"- {i}" for i in items]


def plan_all(cfg: StackConfig) -> str:
    """
    현재 설정으로 선언될 리소스 요약 텍스트를 리턴한다. 실제 AWS 호출은 하지 않는다.
    """
    catalog = aws_secrets.secret_catalog(cfg)
    referenced = boot_script.referenced_secrets(cfg)

    lines: List[str] = []
    lines.append("# Stack plan")
    lines.append(f"- stack: {cfg.stack_name}")
    lines.append(f"- account: {cfg.aws_account_id or '(CLI 기본값)'}")
    lines.append(f"- region: {cfg.aws_region or '(CLI 기본값)'}")
    lines.append("")

    lines.append("## Config summary")
    lines.append(f"- github_repo_url: {cfg.github_repo_url}")
    lines.append(f"- instance_type: {cfg.instance_type}")
    lines.append(f"- root_volume_gib: {cfg.root_volume_gib}")
    lines.append(f"- bucket_name: {cfg.bucket_name}")
    lines.append(f"- app_dir: {cfg.app_dir}")
    lines.append(f"- service_dirs: {', '.join(cfg.service_dirs) or '(none)'}")
    lines.append(f"- deploy_key_secret: {cfg.github_deploy_key_secret_name or '(not set)'}")
    lines.append("")

    lines.append("## Network")
    lines.append(f"- vpc: {aws_network.VPC_CIDR} (public subnet x1, NAT 0)")
    for rule in aws_network.FIREWALL_RULES:
        lines.append(f"- ingress tcp/{rule.port} from {cfg.ingress_cidr}: {rule.description}")
    lines.append("")

    lines.append("## Secrets")
    for name in referenced:
        spec = catalog[name]
        if spec.is_external:
            lines.append(f"- {name}: EXTERNAL ({spec.external_name})")
        else:
            lines.append(f"- {name}: GENERATED ({spec.construct_id}, length={spec.length})")
    lines.append("")

    lines.append("## Sections")
    for name in ALL_SECTIONS:
        lines.append(f"- {name}")

    return "\n".join(lines)


def _run_section(name: str, cfg: StackConfig, base_dir: str, approve: bool) -> Optional[str]:
    if name == "check":
        _, critical, _, _ = _collect_checks(cfg)
        if critical:
            raise RuntimeError("사전 체크 크리티컬 이슈: " + "; ".join(critical))
    elif name == "synth":
        cdk_cli.synth(cfg, base_dir=base_dir)
    elif name == "deploy":
        cdk_cli.deploy(cfg, base_dir=base_dir, approve=approve)
    elif name == "outputs":
        outputs = aws_cloudformation.fetch_stack_outputs(cfg)
        return "\n".join(f"- {k}: {v}" for k, v in sorted(outputs.items()))
    return None


def apply_all(cfg: StackConfig,
              only_sections: Optional[Iterable[str]] = None,
              base_dir: str = ".",
              approve: bool = False) -> tuple[str, bool]:
    """
    섹션을 순서대로 실행한다. 한 섹션이 실패하면 이후 섹션은 건너뛴다.

    Returns:
        summary: 사람이 읽기 좋은 텍스트 요약
        has_failures: 하나 이상의 섹션에서 예외가 발생했는지 여부
    """
    executed: List[str] = []
    skipped: List[str] = []
    failed: List[str] = []
    outputs_text: Optional[str] = None

    sections = _filter_sections(only_sections)
    logger.info("적용 대상 섹션: %s", sections)

    for name in ALL_SECTIONS:
        if name not in sections or failed:
            skipped.append(name)
            continue

        logger.info("섹션 실행: %s", name)
        try:
            result = _run_section(name, cfg, base_dir, approve)
        except Exception:  # noqa: BLE001
            failed.append(name)
            logger.exception("섹션 실행 실패: %s", name)
            continue

        if name == "outputs":
            outputs_text = result
        executed.append(name)

    lines: List[str] = []
    lines.append("# Deploy summary")
    lines.append(f"- stack: {cfg.stack_name}")
    lines.append("")
    lines.append("## Executed sections")
    lines.extend(_bullets(executed))
    lines.append("")
    lines.append("## Skipped sections")
    lines.extend(_bullets(skipped))
    lines.append("")
    lines.append("## Failed sections")
    lines.extend(_bullets(failed))

    if outputs_text is not None:
        lines.append("")
        lines.append("## Outputs")
        lines.append(outputs_text or "- (none)")

    return "\n".join(lines), bool(failed)


def check_secret_coverage(cfg: StackConfig) -> List[str]:
    """
    부트 스크립트가 읽는 secret 이 모두 선언되어 있는지 확인한다.
    (Role 권한은 같은 목록으로 부여되므로 선언만 확인하면 된다)
    """
    referenced = boot_script.referenced_secrets(cfg)
    declared = aws_secrets.secret_catalog(cfg).keys()
    missing = aws_secrets.missing_secrets(referenced, declared)
    if missing:
        return [f"Coverage: 선언되지 않은 secret 참조 ({m}), 부팅 시 조회가 실패합니다" for m in missing]
    return [f"Coverage: 부트 스크립트 secret {len(referenced)}개 모두 선언/권한 부여됨"]


def _classify(results: Iterable[str],
              critical: List[str],
              warnings: List[str],
              critical_markers: Tuple[str, ...],
              warning_markers: Tuple[str, ...] = ()) -> None:
    for r in results:
        if any(m in r for m in critical_markers):
            critical.append(r)
        elif any(m in r for m in warning_markers):
            warnings.append(r)


def _collect_checks(cfg: StackConfig) -> tuple[List[str], List[str], List[str], List[str]]:
    """
    Returns:
        lines: 섹션별 상세 결과 (show_all 용)
        critical: 배포 전 반드시 해결해야 하는 이슈
        warnings: 확인이 필요한 이슈
        notices: 정보성 안내
    """
    lines: List[str] = []
    critical: List[str] = []
    warnings: List[str] = []
    notices: List[str] = []

    checks: List[Tuple[str, Callable[[], List[str]], Tuple[str, ...], Tuple[str, ...]]] = [
        # (제목, 체크 함수, 크리티컬 마커, 경고 마커)
        ("Secret coverage", lambda: check_secret_coverage(cfg), ("선언되지 않은",), ()),
        ("External secrets", lambda: aws_secrets.check_external_secrets(cfg),
         ("없음", "확인 불가"), ()),
        ("S3", lambda: [aws_s3.check_bucket(cfg)],
         ("다른 계정 소유", "확인 불가"), ("버킷 존재함",)),
        ("Stack", lambda: [aws_cloudformation.check_stack_status(cfg)],
         ("확인 불가",), ("실패 상태",)),
    ]

    for title, fn, critical_markers, warning_markers in checks:
        lines.append(f"## {title}")
        try:
            results = fn()
        except Exception as e:  # noqa: BLE001
            results = [f"{title}: 체크 중 예외 발생: {e}"]
            critical.extend(results)
        else:
            _classify(results, critical, warnings, critical_markers, warning_markers)
        lines.extend(f"- {r}" for r in results)
        lines.append("")

    exposure = aws_network.exposure_notes(cfg)
    notices.extend(exposure)
    lines.append("## Firewall")
    lines.extend(_bullets(exposure))
    lines.append("")

    return lines, critical, warnings, notices


def check_all(cfg: StackConfig, show_all: bool = False) -> tuple[str, bool]:
    """
    실제 리소스 생성 없이, 현재 설정과 AWS 리소스 상태를 종합적으로 점검한다.

    Returns:
        summary: 사람이 읽기 좋은 텍스트 요약
        has_issues: 크리티컬 이슈(외부 secret 없음, 버킷 이름 사용 불가 등)가 있는지 여부
    """
    detail, critical, warnings, notices = _collect_checks(cfg)

    lines: List[str] = []
    lines.append("# Stack pre-check")
    lines.append(f"- stack: {cfg.stack_name}")
    lines.append(f"- region: {cfg.aws_region or '(CLI 기본값)'}")
    lines.append("")

    if show_all:
        lines.extend(detail)

    lines.append("## Summary")
    if critical:
        lines.append("- 상태: 크리티컬 이슈가 있습니다. 배포 전 반드시 해결해야 합니다.")
    elif warnings:
        lines.append("- 상태: 경고가 있습니다. 배포 전 확인하세요.")
    else:
        lines.append("- 상태: 주요 이슈 없음 (배포 가능 상태로 보입니다)")

    if show_all or critical:
        lines.append("")
        lines.append("### Critical issues")
        lines.extend(_bullets(critical))

    if show_all or warnings:
        lines.append("")
        lines.append("### Warnings")
        lines.extend(_bullets(warnings))

    if notices:
        lines.append("")
        lines.append("### Notices")
        lines.extend(_bullets(notices))

    if not show_all:
        lines.append("")
        lines.append("자세한 상태를 보려면 `devfiles-iac check -a` 를 실행하세요.")

    return "\n".join(lines), bool(critical)
