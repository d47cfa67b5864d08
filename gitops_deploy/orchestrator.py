from __future__ import annotations

import shutil
from typing import Iterable, List, Optional

from . import gcp_artifact_registry, gcp_gcs, images, manifest, mirror, notifier
from .config import DeployConfig
from .environment import BranchMapping, normalize_ref
from .errors import (
    BuildDefinitionError,
    DeployError,
    MirrorError,
    NotificationError,
    UnmappedReferenceError,
)
from .logging_utils import get_logger, redact
from .models import (
    STEP_EXECUTED,
    STEP_FAILED,
    STEP_NOOP,
    STEP_SKIPPED,
    RunReport,
    load_projects,
)


logger = get_logger(__name__)

# 실행 순서. resolve / notify 는 항상 실행되고 나머지는 --only 로 고를 수 있다.
ALL_STEPS: List[str] = [
    "resolve",
    "build",
    "manifest",
    "mirror",
    "notify",
]
OPTIONAL_STEPS: List[str] = ["build", "manifest", "mirror"]


def _selected_steps(only_steps: Optional[Iterable[str]]) -> set[str]:
    if only_steps:
        return {s for s in only_steps if s in OPTIONAL_STEPS}
    return set(OPTIONAL_STEPS)


def _mirror_skip_reason(cfg: DeployConfig, environment: Optional[str]) -> Optional[str]:
    if not mirror.is_mirror_environment(cfg, environment):
        return f"프로덕션({cfg.production_environment}) 환경이 아님"
    if cfg.mirror_mode == "none":
        return "MIRROR_MODE=none"
    return None


def _execute(cfg: DeployConfig, report: RunReport, base_dir: str, selected: set[str]) -> None:
    mapping = BranchMapping(cfg.branch_environments)
    environment = mapping.resolve(report.ref)
    report.environment = environment
    report.record("resolve", STEP_EXECUTED, environment)

    tag = report.commit
    if "build" in selected:
        logger.info("단계 실행: build")
        report.images = images.build_and_push_all(cfg, environment, tag, base_dir=base_dir)
        report.record("build", STEP_EXECUTED, f"{len(report.images)} images")
    else:
        report.images = images.resolve_images(cfg, environment, tag)
        report.record("build", STEP_SKIPPED, "--only")

    if "manifest" in selected:
        logger.info("단계 실행: manifest")
        branch = cfg.manifest_branch or normalize_ref(report.ref)
        result = manifest.update_manifest(cfg, environment, branch, report.images)
        report.manifest = result
        if result.changed:
            report.record("manifest", STEP_EXECUTED, result.commit or "")
        else:
            report.record("manifest", STEP_NOOP, "변경 없음")
    else:
        report.record("manifest", STEP_SKIPPED, "--only")

    reason = "--only" if "mirror" not in selected else _mirror_skip_reason(cfg, environment)
    if reason:
        report.record("mirror", STEP_SKIPPED, reason)
        return

    logger.info("단계 실행: mirror")
    try:
        report.mirror = mirror.mirror_repository(cfg, tag, repo_dir=base_dir)
        report.record("mirror", STEP_EXECUTED, report.mirror.target)
    except Exception as e:  # noqa: BLE001
        # 미러 실패는 배포 결과에 영향을 주지 않는다.
        message = str(e) if isinstance(e, MirrorError) else redact(f"{type(e).__name__}: {e}")
        logger.error("미러링 실패 (배포는 계속 성공으로 간주): %s", message)
        report.record("mirror", STEP_FAILED, message)


def _notify(cfg: DeployConfig, report: RunReport) -> None:
    try:
        sent = notifier.send_notification(cfg, report)
    except NotificationError as e:
        logger.error("알림 전송 실패 (무시): %s", e)
        report.record("notify", STEP_FAILED, str(e))
        return
    except Exception as e:  # noqa: BLE001
        # finally 에서 호출되므로 원래 결과/예외를 가리지 않게 한다.
        logger.exception("알림 처리 중 예상하지 못한 오류 (무시)")
        report.record("notify", STEP_FAILED, redact(f"{type(e).__name__}: {e}"))
        return
    report.notified = sent
    report.record("notify", STEP_EXECUTED if sent else STEP_SKIPPED, "" if sent else "webhook 미설정")


def run_deploy(
    cfg: DeployConfig,
    ref: str,
    commit: str,
    *,
    base_dir: str = ".",
    only_steps: Optional[Iterable[str]] = None,
) -> RunReport:
    """
    ref 하나에 대한 배포 실행.

    치명적 오류는 남은 단계를 건너뛰게 하지만, 알림은 결과와 무관하게 정확히 한 번 보낸다.
    예상하지 못한 예외는 알림 후 그대로 다시 올린다.
    """
    report = RunReport(ref=ref, commit=commit)
    selected = _selected_steps(only_steps)
    logger.info("배포 시작: ref=%s commit=%s steps=%s", ref, commit, sorted(selected))

    try:
        _execute(cfg, report, base_dir, selected)
    except Exception as e:  # noqa: BLE001
        report.error = str(e)
        failed_step = next((s for s in ALL_STEPS if s not in report.steps), "resolve")
        report.record(failed_step, STEP_FAILED, str(e))
        for s in ALL_STEPS[:-1]:
            if s not in report.steps:
                report.record(s, STEP_SKIPPED, "이전 단계 실패")
        if isinstance(e, (DeployError, ValueError)):
            logger.error("배포 실패 (%s): %s", failed_step, e)
        else:
            logger.exception("배포 중 예상하지 못한 오류 (%s)", failed_step)
            raise
    finally:
        _notify(cfg, report)

    return report


def format_summary(report: RunReport) -> str:
    lines: List[str] = []
    lines.append("# Deploy summary")
    lines.append(f"- ref: {report.ref}")
    lines.append(f"- commit: {report.commit}")
    lines.append(f"- environment: {report.environment or '(unmapped)'}")
    lines.append(f"- status: {report.status}")
    lines.append("")

    for title, status in (
        ("Executed steps", STEP_EXECUTED),
        ("No-op steps", STEP_NOOP),
        ("Skipped steps", STEP_SKIPPED),
        ("Failed steps", STEP_FAILED),
    ):
        lines.append(f"## {title}")
        names = report.steps_with(status)
        if names:
            for name in names:
                detail = report.steps[name].detail
                lines.append(f"- {name}" + (f" ({detail})" if detail else ""))
        else:
            lines.append("- (none)")
        lines.append("")

    lines.append("## Images")
    if report.images:
        for image in report.images:
            lines.append(f"- {image.url}")
    else:
        lines.append("- (none)")

    if report.error:
        lines.append("")
        lines.append("## Error")
        lines.append(report.error)

    return "\n".join(lines)


def plan_run(cfg: DeployConfig, ref: str, commit: str, *, only_steps: Optional[Iterable[str]] = None) -> str:
    """
    실제 빌드/git/네트워크 호출 없이 이번 ref 로 무엇이 실행될지 요약한다.
    """
    selected = _selected_steps(only_steps)
    lines: List[str] = []
    lines.append("# Deploy plan")
    lines.append(f"- project: {cfg.gcp_project_id}")
    lines.append(f"- region: {cfg.gcp_region}")
    lines.append(f"- ref: {ref}")
    lines.append(f"- commit: {commit}")

    mapping = BranchMapping(cfg.branch_environments)
    try:
        environment = mapping.resolve(ref)
    except UnmappedReferenceError as e:
        lines.append("- environment: (unmapped)")
        lines.append("")
        lines.append(f"[ERROR] {e}")
        return "\n".join(lines)
    lines.append(f"- environment: {environment}")
    lines.append("")

    lines.append("## Config summary")
    lines.append(f"- build_mode: {cfg.build_mode}")
    lines.append(f"- build_parallelism: {cfg.build_parallelism}")
    lines.append(f"- manifest_editor: {cfg.manifest_editor}")
    lines.append(f"- manifest_path: {cfg.manifest_path(environment)}")
    lines.append(f"- manifest_branch: {cfg.manifest_branch or normalize_ref(ref)}")
    lines.append(f"- mirror_mode: {cfg.mirror_mode}")
    lines.append(f"- notify_webhook: {'set' if cfg.notify_webhook_url else '(not set)'}")
    lines.append("")

    lines.append("## Images")
    try:
        for image in images.resolve_images(cfg, environment, commit):
            lines.append(f"- {image.project}: {image.url}")
    except ValueError as e:
        lines.append(f"- [ERROR] {e}")
    lines.append("")

    lines.append("## Steps")
    mirror_reason = _mirror_skip_reason(cfg, environment)
    for name in ALL_STEPS:
        if name in ("resolve", "notify"):
            status = "ENABLED"
        elif name not in selected:
            status = "SKIPPED (--only)"
        elif name == "mirror" and mirror_reason:
            status = f"SKIPPED ({mirror_reason})"
        else:
            status = "ENABLED"
        lines.append(f"- {name}: {status}")

    return "\n".join(lines)


def _required_tools(cfg: DeployConfig) -> List[str]:
    tools = ["git", "gcloud"]
    if cfg.build_mode == "local_docker":
        tools.append("docker")
    if cfg.manifest_editor == "kustomize":
        tools.append(cfg.kustomize_bin)
    return tools


def check_all(
    cfg: DeployConfig,
    base_dir: str = ".",
    ref: Optional[str] = None,
    show_all: bool = False,
) -> tuple[str, bool]:
    """
    실제 리소스 생성/커밋 없이, 현재 설정과 외부 상태를 종합적으로 점검한다.

    Returns:
        summary: 사람이 읽기 좋은 텍스트 요약
        has_issues: 크리티컬 또는 경고가 하나라도 있는지 여부
    """
    lines: List[str] = []
    critical: List[str] = []
    warnings: List[str] = []

    def note(msg: str, level: Optional[str] = None) -> None:
        if show_all:
            lines.append(f"- {msg}")
        if level == "critical":
            critical.append(msg)
        elif level == "warning":
            warnings.append(msg)

    lines.append("# Deploy pre-check")
    lines.append(f"- project: {cfg.gcp_project_id}")
    lines.append(f"- region: {cfg.gcp_region}")
    lines.append("")

    # 1) 도구
    lines.append("## Tools")
    for tool in _required_tools(cfg):
        if shutil.which(tool):
            note(f"Tool: 설치됨 ({tool})")
        else:
            note(f"Tool: 찾을 수 없음 ({tool})", "critical")
    lines.append("")

    # 2) 환경
    lines.append("## Environments")
    environments: List[str] = list(cfg.environments)
    if ref:
        try:
            environments = [BranchMapping(cfg.branch_environments).resolve(ref)]
            note(f"Ref: {ref} -> {environments[0]}")
        except UnmappedReferenceError as e:
            note(f"Ref: {e}", "critical")
            environments = []
    else:
        for branch, env in cfg.branch_environments.items():
            note(f"Branch: {branch} -> {env}")
    lines.append("")

    # 3) 빌드 정의
    lines.append("## Build definitions")
    for project in load_projects(cfg):
        for env in environments:
            try:
                path = project.build_definition(env, base_dir)
                note(f"Build: {project.name}@{env} ({path})")
            except BuildDefinitionError as e:
                note(f"Build: {e}", "critical")
    lines.append("")

    # 4) Artifact Registry
    lines.append("## Artifact Registry")
    repositories: List[str] = []
    for env in environments:
        for image in images.resolve_images(cfg, env, "check"):
            if image.repository not in repositories:
                repositories.append(image.repository)
    for repository in repositories:
        try:
            status = gcp_artifact_registry.check_repository(cfg, repository)
        except Exception as e:  # noqa: BLE001
            note(f"Artifact Registry: 체크 중 예외 발생: {e}", "critical")
            continue
        if "리포지토리 없음" in status:
            # 배포 시 생성 가능 → 경고
            note(status, "warning")
        elif "확인 불가" in status or "실패" in status:
            note(status, "critical")
        else:
            note(status)
    lines.append("")

    # 5) Manifest
    lines.append("## Manifest")
    for env in environments:
        try:
            for r in manifest.check_manifest(cfg, env):
                level = "critical" if ("없음" in r or "아닙니다" in r) else None
                note(r, level)
        except Exception as e:  # noqa: BLE001
            note(f"Manifest: 체크 중 예외 발생: {e}", "critical")
    lines.append("")

    # 6) Mirror
    lines.append("## Mirror")
    if cfg.production_environment not in environments:
        note("Mirror: 프로덕션 환경이 점검 대상이 아님 (건너뜀)")
    elif cfg.mirror_mode == "none":
        note("Mirror: MIRROR_MODE=none (프로덕션 배포 시 미러링하지 않음)", "warning")
    elif cfg.mirror_mode == "gcs":
        try:
            status = gcp_gcs.check_bucket(cfg, cfg.mirror_gcs_bucket or "")
        except Exception as e:  # noqa: BLE001
            status = f"GCS: 체크 중 예외 발생: {e}"
        note(status, None if "존재함" in status else "critical")
    else:
        url = cfg.mirror_remote_url or ""
        if url.startswith("http") and not (cfg.mirror_token or cfg.mirror_token_secret):
            note("Mirror: https 원격인데 MIRROR_TOKEN / MIRROR_TOKEN_SECRET 이 없습니다.", "warning")
        else:
            note(f"Mirror: git push --mirror ({url})")
    lines.append("")

    # 7) Notify
    lines.append("## Notification")
    if cfg.notify_webhook_url:
        note("Notify: webhook 설정됨")
    else:
        note("Notify: NOTIFY_WEBHOOK_URL 이 없어 알림을 보내지 않습니다.", "warning")
    lines.append("")

    lines.append("## Summary")
    if critical:
        lines.append("- 상태: 크리티컬 이슈가 있습니다. 배포 전 반드시 해결해야 합니다.")
    elif warnings:
        lines.append("- 상태: 경고만 있습니다.")
    else:
        lines.append("- 상태: 주요 이슈 없음 (배포 가능 상태로 보입니다)")

    if show_all or critical:
        lines.append("")
        lines.append("### Critical issues")
        for i in critical or ["(none)"]:
            lines.append(f"- {i}")

    if show_all or warnings:
        lines.append("")
        lines.append("### Warnings")
        for i in warnings or ["(none)"]:
            lines.append(f"- {i}")

    if not show_all:
        lines.append("")
        lines.append("자세한 상태를 보려면 `gitops-deploy check -a` 를 실행하세요.")

    return "\n".join(lines), bool(critical or warnings)
