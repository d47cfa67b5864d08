import os
import sys
from typing import Optional

import click
from dotenv import dotenv_values

from .config import ENV_FILES_DEFAULT_ORDER, DeployConfig, load_env_files
from .environment import BranchMapping
from .errors import UnmappedReferenceError
from .git_ops import GitRepo
from .logging_utils import setup_logging, get_logger
from .orchestrator import OPTIONAL_STEPS, check_all, format_summary, plan_run, run_deploy
from .subprocess_utils import CommandError, configure_cli_progress


logger = get_logger(__name__)

TEMPLATE_FILES = ("env.deploy.example", "env.secrets.example")


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다. (-v 가 많을수록 더 자세한 로그)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """브랜치 기반 이미지 빌드/푸시 + GitOps 매니페스트 갱신 CLI"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = os.path.abspath(chdir)
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> DeployConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = DeployConfig.from_env()
    if not os.path.isabs(cfg.manifest_repo_dir):
        cfg.manifest_repo_dir = os.path.join(base_dir, cfg.manifest_repo_dir)
    configure_cli_progress(
        show_progress=cfg.cli_show_progress,
        idle_seconds=cfg.cli_progress_idle_seconds,
        style=cfg.cli_progress_style,
    )
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _config_or_exit(ctx: click.Context) -> DeployConfig:
    try:
        return _load_config_from_ctx(ctx)
    except ValueError as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)


def detect_ref(base_dir: str) -> str:
    """
    GITHUB_REF_NAME > GITHUB_REF > 현재 git 브랜치 순으로 ref 를 찾는다.
    """
    for name in ("GITHUB_REF_NAME", "GITHUB_REF"):
        value = os.getenv(name)
        if value:
            return value
    return GitRepo(base_dir).current_branch()


def detect_commit(base_dir: str) -> str:
    value = os.getenv("GITHUB_SHA")
    if value:
        return value
    return GitRepo(base_dir).head_commit()


def _ref_and_commit(ctx: click.Context, ref: Optional[str], commit: Optional[str]) -> tuple[str, str]:
    base_dir: str = ctx.obj["chdir"]
    try:
        return (ref or detect_ref(base_dir), commit or detect_commit(base_dir))
    except CommandError as e:
        click.echo(f"[ERROR] ref/commit 을 git 에서 찾지 못했습니다. --ref/--commit 을 지정하세요: {e}", err=True)
        sys.exit(1)


def _parse_only(only: str) -> Optional[list[str]]:
    if not only.strip():
        return None
    only_list = [p.strip() for p in only.split(",") if p.strip()]
    invalid = sorted({s for s in only_list if s not in OPTIONAL_STEPS})
    if invalid:
        click.echo(
            "[ERROR] 잘못된 단계 이름이 있습니다: "
            + ", ".join(invalid)
            + f"\n허용되는 단계: {', '.join(OPTIONAL_STEPS)}",
            err=True,
        )
        sys.exit(1)
    return only_list


def _build_env_dump(base_dir: str) -> str:
    """
    .env / .env.deploy / .env.secrets 의 키를 덤프한다.
    .env.secrets 의 값은 출력하지 않는다.
    """
    lines: list[str] = []
    for filename in ENV_FILES_DEFAULT_ORDER:
        lines.append(f"## {filename}")
        path_values = dotenv_values(dotenv_path=os.path.join(base_dir, filename))
        if not path_values:
            lines.append("- (파일이 없거나 비어 있습니다)")
        else:
            for k, v in sorted(path_values.items()):
                # None 은 dotenv 에서 값이 없는 키를 의미하므로 스킵
                if v is None:
                    continue
                shown = "***" if filename == ".env.secrets" else v
                lines.append(f"- {k}={shown}")
        lines.append("")
    return "\n".join(lines).rstrip()


_only_option = click.option(
    "--only",
    "only",
    type=str,
    default="",
    help="쉼표로 구분된 단계 이름(build,manifest,mirror). 기본은 모두 실행. "
    "ref 해석과 알림은 항상 실행됩니다.",
)
_ref_option = click.option("--ref", "ref", type=str, default=None, help="배포할 브랜치/ref (기본: CI 환경변수 또는 현재 브랜치)")
_commit_option = click.option("--commit", "commit", type=str, default=None, help="이미지 태그로 쓸 커밋 ID (기본: GITHUB_SHA 또는 HEAD)")


@main.command()
@click.argument("ref")
@click.pass_context
def resolve(ctx: click.Context, ref: str) -> None:
    """REF 가 매핑되는 배포 환경 이름을 출력"""
    cfg = _config_or_exit(ctx)
    try:
        click.echo(BranchMapping(cfg.branch_environments).resolve(ref))
    except UnmappedReferenceError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)


@main.command()
@_ref_option
@_commit_option
@_only_option
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help=".env / .env.deploy / .env.secrets 에서 읽은 설정을 함께 출력합니다.",
)
@click.pass_context
def plan(ctx: click.Context, ref: Optional[str], commit: Optional[str], only: str, show_all: bool) -> None:
    """ref 해석 결과, 푸시될 이미지, 단계별 ENABLED/SKIPPED 상태를 출력 (외부 호출 없음)"""
    cfg = _config_or_exit(ctx)
    only_list = _parse_only(only)
    ref, commit = _ref_and_commit(ctx, ref, commit)

    report = plan_run(cfg, ref, commit, only_steps=only_list)

    if show_all:
        env_dump = _build_env_dump(ctx.obj["chdir"])
        report = report + "\n\n" + "## Raw env from files\n" + env_dump

    click.echo(report)


@main.command(name="deploy")
@_ref_option
@_commit_option
@_only_option
@click.pass_context
def deploy(ctx: click.Context, ref: Optional[str], commit: Optional[str], only: str) -> None:
    """이미지 빌드/푸시, 매니페스트 갱신, (프로덕션) 미러링, 알림을 실행"""
    cfg = _config_or_exit(ctx)
    only_list = _parse_only(only)
    ref, commit = _ref_and_commit(ctx, ref, commit)

    try:
        report = run_deploy(cfg, ref, commit, base_dir=ctx.obj["chdir"], only_steps=only_list)
    except Exception as e:  # noqa: BLE001
        logger.exception("배포 중 오류 발생")
        click.echo(f"[ERROR] 배포 실패: {e}", err=True)
        sys.exit(1)

    click.echo(format_summary(report))

    # 치명적 오류가 있었다면 전체 명령은 실패(exit 1). 매니페스트 no-op 은 성공으로 본다.
    if report.failed:
        sys.exit(1)


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """
    현재 디렉토리에 env 템플릿(env.deploy.example, env.secrets.example)을 복사하는 초기화.
    """
    from importlib import resources

    base_dir: str = ctx.obj["chdir"]

    for name in TEMPLATE_FILES:
        target = os.path.join(base_dir, name)
        if os.path.exists(target):
            click.echo(f"{name} 이(가) 이미 존재하여 건너뜀")
            continue
        try:
            with resources.files("gitops_deploy.examples").joinpath(name).open("r", encoding="utf-8") as src, open(
                target, "w", encoding="utf-8"
            ) as dst:
                dst.write(src.read())
            click.echo(f"{name} 템플릿을 생성했습니다.")
        except FileNotFoundError:
            click.echo(f"템플릿 {name} 을(를) 패키지에서 찾을 수 없습니다.", err=True)


@main.command()
@click.option("--ref", "ref", type=str, default=None, help="이 ref 의 환경만 점검 (기본: 매핑된 모든 환경)")
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help="모든 체크 항목의 상세 상태를 출력합니다. (기본은 이슈만 요약)",
)
@click.pass_context
def check(ctx: click.Context, ref: Optional[str], show_all: bool) -> None:
    """
    배포 전에 도구/빌드 정의/레지스트리/매니페스트/미러/알림 설정을 점검한다.
    (실제 리소스 생성/커밋은 하지 않는다)
    """
    cfg = _config_or_exit(ctx)
    base_dir: str = ctx.obj["chdir"]

    try:
        report, has_issues = check_all(cfg, base_dir=base_dir, ref=ref, show_all=show_all)
    except Exception as e:  # noqa: BLE001
        logger.exception("사전 체크 중 오류 발생")
        click.echo(f"[ERROR] 체크 실패: {e}", err=True)
        sys.exit(1)

    click.echo(report)

    # 이슈가 있으면 exit 1 로 종료하여 CI 등에서 감지 가능하게 한다.
    if has_issues:
        sys.exit(1)
