"""
images
------

선언된 모든 프로젝트에 대해 레지스트리 경로를 계산하고,
리포지토리 준비 → 빌드 → 태그 → 푸시를 수행한다.

하나라도 실패하면 남은 프로젝트는 취소하고 예외를 그대로 올린다 (fail-fast).
"""

from __future__ import annotations

import os
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import List, Optional, Sequence

from . import gcp_artifact_registry
from .config import DeployConfig
from .logging_utils import get_logger
from .models import ImageReference, ProjectSpec, load_projects


logger = get_logger(__name__)


@dataclass(frozen=True)
class BuildPlan:
    project: ProjectSpec
    image: ImageReference
    dockerfile: str
    context_dir: str


def resolve_images(cfg: DeployConfig, environment: str, tag: str,
                   projects: Optional[Sequence[ProjectSpec]] = None) -> List[ImageReference]:
    """빌드 없이 이번 실행에서 푸시될 이미지 참조만 계산한다."""
    specs = projects if projects is not None else load_projects(cfg)
    return [ImageReference.for_project(cfg, environment, p.name, tag) for p in specs]


def plan_builds(cfg: DeployConfig, environment: str, tag: str, *, base_dir: str = ".",
                projects: Optional[Sequence[ProjectSpec]] = None) -> List[BuildPlan]:
    """
    모든 프로젝트의 빌드 정의를 먼저 확인한다.
    하나라도 없으면 BuildDefinitionError 로 실패하며, 이 시점에는 아무것도 빌드되지 않았다.
    """
    specs = projects if projects is not None else load_projects(cfg)
    plans: List[BuildPlan] = []
    for spec in specs:
        dockerfile = spec.build_definition(environment, base_dir)
        plans.append(
            BuildPlan(
                project=spec,
                image=ImageReference.for_project(cfg, environment, spec.name, tag),
                dockerfile=dockerfile,
                context_dir=os.path.join(base_dir, spec.context_dir),
            )
        )
    return plans


def _build_one(cfg: DeployConfig, plan: BuildPlan) -> ImageReference:
    logger.info("프로젝트 처리 시작: %s -> %s", plan.project.name, plan.image.url)
    gcp_artifact_registry.ensure_repository(cfg, plan.image.repository)
    gcp_artifact_registry.build_and_push_image(
        cfg,
        plan.image,
        dockerfile=plan.dockerfile,
        context_dir=plan.context_dir,
    )
    return plan.image


def build_and_push_all(cfg: DeployConfig, environment: str, tag: str, *, base_dir: str = ".",
                       projects: Optional[Sequence[ProjectSpec]] = None) -> List[ImageReference]:
    """
    Returns:
        PROJECTS 순서대로 푸시된 이미지 참조 목록
    """
    plans = plan_builds(cfg, environment, tag, base_dir=base_dir, projects=projects)
    workers = max(1, min(cfg.build_parallelism, len(plans)))

    if workers == 1:
        return [_build_one(cfg, plan) for plan in plans]

    logger.info("프로젝트 %d개를 최대 %d개 병렬로 빌드합니다.", len(plans), workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="build") as pool:
        futures = [pool.submit(_build_one, cfg, plan) for plan in plans]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [f for f in done if f.exception() is not None]
        if failed:
            for f in pending:
                f.cancel()
            # 실행 중이던 빌드가 끝날 때까지 기다린 뒤 첫 번째 실패를 올린다.
            wait(pending)
            first = next(f for f in futures if f in failed)
            raise first.exception()  # type: ignore[misc]

    return [f.result() for f in futures]
