"""
gcp_artifact_registry
---------------------

Artifact Registry 리포지토리 존재 여부 확인/생성 및
이미지 빌드/태그/푸시를 담당하는 모듈.
"""

from __future__ import annotations

import os
import tempfile
import threading

import yaml

from .config import DeployConfig
from .errors import BuildError, PushError, RegistryError
from .logging_utils import get_logger
from .models import ImageReference
from .subprocess_utils import CommandError, RunResult, run_command


logger = get_logger(__name__)

_NOT_FOUND_MARKERS = ("NOT_FOUND", "not found")
_ALREADY_EXISTS_MARKERS = ("ALREADY_EXISTS", "already exists")

# 한 프로세스 안에서 이미 확인한 리포지토리는 다시 describe 하지 않는다.
_known_repositories: set[tuple[str, str, str]] = set()
_repo_lock = threading.Lock()


def _run(cmd: list[str], *, timeout: float = 900.0, stream_output: bool = False) -> RunResult:
    return run_command(cmd, timeout=timeout, stream_output=stream_output)


def _mentions(err: CommandError, markers: tuple[str, ...]) -> bool:
    text = err.output
    return any(m in text for m in markers)


def _repo_key(cfg: DeployConfig, repository: str) -> tuple[str, str, str]:
    return (cfg.gcp_project_id, cfg.gcp_region, repository)


def forget_known_repositories() -> None:
    with _repo_lock:
        _known_repositories.clear()


def ensure_repository(cfg: DeployConfig, repository: str) -> bool:
    """
    Artifact Registry 리포가 존재하는지 확인하고, 없으면 생성한다.

    Returns:
        이번 호출에서 새로 생성했으면 True
    """
    key = _repo_key(cfg, repository)
    with _repo_lock:
        if key in _known_repositories:
            return False

    logger.info("Artifact Registry 리포 확인: %s", repository)
    describe_cmd = [
        "gcloud",
        "artifacts",
        "repositories",
        "describe",
        repository,
        f"--location={cfg.gcp_region}",
        f"--project={cfg.gcp_project_id}",
        "--quiet",
    ]
    try:
        _run(describe_cmd, timeout=cfg.command_timeout)
        logger.info("기존 Artifact Registry 리포를 사용합니다: %s", repository)
        with _repo_lock:
            _known_repositories.add(key)
        return False
    except CommandError as e:
        if not _mentions(e, _NOT_FOUND_MARKERS):
            raise RegistryError(f"리포지토리 조회 실패: {repository}: {e}") from e
        logger.info("리포지토리가 없어 생성합니다: %s", repository)

    create_cmd = [
        "gcloud",
        "artifacts",
        "repositories",
        "create",
        repository,
        "--repository-format=docker",
        f"--location={cfg.gcp_region}",
        f"--project={cfg.gcp_project_id}",
        "--quiet",
    ]
    created = True
    try:
        _run(create_cmd, timeout=cfg.command_timeout)
        logger.info("Artifact Registry 리포를 생성했습니다: %s", repository)
    except CommandError as e:
        # 병렬 빌드 중 다른 프로젝트가 먼저 만든 경우
        if not _mentions(e, _ALREADY_EXISTS_MARKERS):
            raise RegistryError(f"리포지토리 생성 실패: {repository}: {e}") from e
        logger.info("리포지토리가 이미 생성되어 있습니다: %s", repository)
        created = False

    with _repo_lock:
        _known_repositories.add(key)
    return created


def check_repository(cfg: DeployConfig, repository: str) -> str:
    """
    Artifact Registry 리포지토리 존재 여부를 확인만 하고, 생성하지 않는다.
    """
    describe_cmd = [
        "gcloud",
        "artifacts",
        "repositories",
        "describe",
        repository,
        f"--location={cfg.gcp_region}",
        f"--project={cfg.gcp_project_id}",
        "--quiet",
    ]
    try:
        _run(describe_cmd, timeout=cfg.command_timeout)
        return f"Artifact Registry: 리포지토리 존재함 ({repository})"
    except CommandError as e:
        if e.reason == "not_found":
            return "Artifact Registry: gcloud 명령을 찾을 수 없어 상태 확인 불가"
        if _mentions(e, _NOT_FOUND_MARKERS):
            return f"Artifact Registry: 리포지토리 없음 (생성이 필요함) ({repository})"
        return f"Artifact Registry: 조회 실패 ({repository}, exit={e.returncode})"


def _cloudbuild_config(image: ImageReference, dockerfile: str, context_dir: str) -> dict:
    return {
        "steps": [
            {
                "name": "gcr.io/cloud-builders/docker",
                "args": [
                    "build",
                    "-f",
                    os.path.relpath(dockerfile, context_dir),
                    "-t",
                    image.url,
                    ".",
                ],
            }
        ],
        "images": [image.url],
    }


def build_image(cfg: DeployConfig, image: ImageReference, dockerfile: str, context_dir: str) -> None:
    """로컬 docker 로 이미지를 빌드하고 image.url 로 태그한다."""
    cmd = ["docker", "build", "-f", dockerfile, "-t", image.url, context_dir]
    try:
        _run(cmd, timeout=cfg.command_timeout, stream_output=True)
    except CommandError as e:
        raise BuildError(f"{image.project} 이미지 빌드 실패: {e}") from e


def push_image(cfg: DeployConfig, image: ImageReference) -> None:
    # 같은 태그를 다시 푸시해도 레지스트리 입장에서는 같은 manifest 이므로 오류가 아니다.
    try:
        _run(["docker", "push", image.url], timeout=cfg.command_timeout, stream_output=True)
    except CommandError as e:
        raise PushError(f"{image.project} 이미지 푸시 실패: {e}") from e


def submit_cloud_build(cfg: DeployConfig, image: ImageReference, dockerfile: str, context_dir: str) -> None:
    """
    Cloud Build 로 빌드+푸시를 한 번에 수행한다.
    환경별 Dockerfile 을 지정하기 위해 임시 cloudbuild.yaml 을 만들어 --config 로 넘긴다.
    """
    config = _cloudbuild_config(image, dockerfile, context_dir)
    fd, config_path = tempfile.mkstemp(prefix="cloudbuild-", suffix=".yaml")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(config, f, sort_keys=False)
        cmd = [
            "gcloud",
            "builds",
            "submit",
            context_dir,
            f"--config={config_path}",
            f"--project={cfg.gcp_project_id}",
        ]
        try:
            _run(cmd, timeout=cfg.command_timeout, stream_output=True)
        except CommandError as e:
            raise BuildError(f"{image.project} Cloud Build 실패: {e}") from e
    finally:
        os.unlink(config_path)


def build_and_push_image(cfg: DeployConfig, image: ImageReference, dockerfile: str, context_dir: str = ".") -> str:
    """
    도커 이미지를 빌드하고 Artifact Registry 에 푸시한 뒤,
    최종 이미지 URL 을 반환한다.

    빌드 방식은 cfg.build_mode 에 따라 동작한다.
    """
    mode = (cfg.build_mode or "local_docker").lower()
    logger.info("이미지 빌드 모드: %s (%s)", mode, image.url)

    if mode == "local_docker":
        build_image(cfg, image, dockerfile, context_dir)
        push_image(cfg, image)
    elif mode == "cloud_build":
        submit_cloud_build(cfg, image, dockerfile, context_dir)
    else:
        raise ValueError(f"알 수 없는 BUILD_MODE 값입니다: {cfg.build_mode!r} (local_docker | cloud_build 중 하나)")

    logger.info("이미지 빌드/푸시 완료: %s", image.url)
    return image.url
