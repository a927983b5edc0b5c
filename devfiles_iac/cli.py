import sys
from typing import Optional

import click
from dotenv import dotenv_values

from . import aws_cloudformation, cdk_cli
from .boot_script import build_boot_script, placeholder_secret_ids
from .config import load_env_files, StackConfig
from .logging_utils import setup_logging, get_logger
from .orchestrator import ALL_SECTIONS, apply_all, plan_all, check_all


logger = get_logger(__name__)


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (cdk.json 이 있는 곳, 기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다. (-vv 는 AWS SDK 로그까지)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """DevFiles EC2 스택(VPC/EC2/S3/Secrets Manager) 배포용 CLI"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> StackConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = StackConfig.from_env()
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _load_config_or_exit(ctx: click.Context) -> StackConfig:
    try:
        return _load_config_from_ctx(ctx)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)


def _build_env_dump(base_dir: str) -> str:
    """
    .env / .env.infra 의 내용을 그대로 덤프한다. (주석/빈 줄은 제외)
    """
    lines: list[str] = []
    for filename in (".env", ".env.infra"):
        lines.append(f"## {filename}")
        path_values = dotenv_values(dotenv_path=f"{base_dir}/{filename}")
        if not path_values:
            lines.append("- (파일이 없거나 비어 있습니다)")
        else:
            for k, v in sorted(path_values.items()):
                # None 은 dotenv 에서 값이 없는 키를 의미하므로 스킵
                if v is None:
                    continue
                lines.append(f"- {k}={v}")
        lines.append("")
    return "\n".join(lines).rstrip()


@main.command()
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help=".env/.env.infra 에서 설정한 모든 환경설정을 함께 출력합니다.",
)
@click.pass_context
def plan(ctx: click.Context, show_all: bool) -> None:
    """현재 설정으로 선언될 리소스(네트워크/방화벽/secret)를 요약 출력"""
    cfg = _load_config_or_exit(ctx)

    report = plan_all(cfg)

    if show_all:
        base_dir: str = ctx.obj["chdir"]
        report = report + "\n\n" + "## Raw env from files\n" + _build_env_dump(base_dir)

    click.echo(report)


@main.command(name="render-user-data")
@click.pass_context
def render_user_data(ctx: click.Context) -> None:
    """부트 스크립트를 출력 (생성형 secret ARN 은 자리표시자로 표시)"""
    cfg = _load_config_or_exit(ctx)
    script = build_boot_script(
        cfg,
        placeholder_secret_ids(cfg),
        region=cfg.aws_region or "<region>",
    )
    click.echo(script.render(), nl=False)


@main.command(name="deploy")
@click.option(
    "--only",
    "only",
    type=str,
    default="",
    help="쉼표로 구분된 섹션 이름(check,synth,deploy,outputs). 기본은 전체 순서대로 실행.",
)
@click.option("-y", "--yes", is_flag=True, help="확인 없이 바로 배포합니다.")
@click.pass_context
def deploy(ctx: click.Context, only: str, yes: bool) -> None:
    """사전 체크 -> cdk synth -> cdk deploy -> output 조회"""
    cfg = _load_config_or_exit(ctx)

    only_list: Optional[list[str]] = None
    if only.strip():
        only_list = [p.strip() for p in only.split(",") if p.strip()]

        # --only 섹션 이름 검증
        invalid = sorted({s for s in only_list if s not in ALL_SECTIONS})
        if invalid:
            click.echo(
                "[ERROR] 잘못된 섹션 이름이 있습니다: "
                + ", ".join(invalid)
                + f"\n허용되는 섹션: {', '.join(ALL_SECTIONS)}",
                err=True,
            )
            sys.exit(1)

    if not yes and "deploy" in (only_list or ALL_SECTIONS):
        click.echo(plan_all(cfg))
        if not click.confirm(f"{cfg.stack_name} 스택을 배포할까요?", default=False):
            click.echo("배포를 취소했습니다.")
            return

    try:
        summary, has_failures = apply_all(
            cfg,
            only_sections=only_list,
            base_dir=ctx.obj["chdir"],
            approve=True,
        )
    except Exception as e:  # noqa: BLE001
        logger.exception("배포 중 오류 발생")
        click.echo(f"[ERROR] 배포 실패: {e}", err=True)
        sys.exit(1)

    click.echo(summary)

    # 섹션 단위 실패가 있었다면 전체 명령은 실패(exit 1)로 간주
    if has_failures:
        sys.exit(1)


@main.command()
@click.option("-y", "--yes", is_flag=True, help="확인 없이 바로 삭제합니다.")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """스택 삭제 (생성형 secret, 버킷과 객체 포함. 외부 secret 은 유지)"""
    cfg = _load_config_or_exit(ctx)

    if not yes and not click.confirm(
        f"{cfg.stack_name} 스택과 생성형 secret/버킷 데이터를 삭제할까요?", default=False
    ):
        click.echo("삭제를 취소했습니다.")
        return

    try:
        cdk_cli.destroy(cfg, base_dir=ctx.obj["chdir"], approve=True)
    except Exception as e:  # noqa: BLE001
        logger.exception("삭제 중 오류 발생")
        click.echo(f"[ERROR] 삭제 실패: {e}", err=True)
        sys.exit(1)

    click.echo(f"{cfg.stack_name} 스택을 삭제했습니다.")


@main.command()
@click.pass_context
def outputs(ctx: click.Context) -> None:
    """배포된 스택의 Output(퍼블릭 IP/DNS 등) 출력"""
    cfg = _load_config_or_exit(ctx)

    try:
        values = aws_cloudformation.fetch_stack_outputs(cfg)
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] output 조회 실패: {e}", err=True)
        sys.exit(1)

    for key, value in sorted(values.items()):
        click.echo(f"{key}={value}")


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """
    현재 디렉토리에 env 템플릿(env.infra.example)을 복사하는 초기화.
    """
    import os
    from importlib import resources

    base_dir: str = ctx.obj["chdir"]

    for name in ("env.infra.example",):
        target = os.path.join(base_dir, name)
        if os.path.exists(target):
            click.echo(f"{name} 이(가) 이미 존재하여 건너뜀")
            continue
        try:
            with resources.files("devfiles_iac").joinpath("examples").joinpath(name).open("r", encoding="utf-8") as src, open(
                target, "w", encoding="utf-8"
            ) as dst:
                dst.write(src.read())
            click.echo(f"{name} 템플릿을 생성했습니다. .env.infra 로 복사해 값을 채우세요.")
        except FileNotFoundError:
            click.echo(f"템플릿 {name} 을(를) 패키지에서 찾을 수 없습니다.", err=True)


@main.command()
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help="모든 체크 항목의 상세 상태를 출력합니다. (기본은 이슈만 요약)",
)
@click.pass_context
def check(ctx: click.Context, show_all: bool) -> None:
    """
    배포 전에 외부 secret/버킷 이름/스택 상태와 secret 권한 일관성을 점검한다.
    (실제 리소스 생성/변경은 하지 않는다)
    """
    cfg = _load_config_or_exit(ctx)

    try:
        report, has_issues = check_all(cfg, show_all=show_all)
    except Exception as e:  # noqa: BLE001
        logger.exception("사전 체크 중 오류 발생")
        click.echo(f"[ERROR] 체크 실패: {e}", err=True)
        sys.exit(1)

    click.echo(report)

    # 치명적인 이슈가 있으면 exit 1 로 종료하여 CI 등에서 감지 가능하게 한다.
    if has_issues:
        sys.exit(1)
