"""
models
------

배포 실행에서 주고받는 값 객체들.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .config import DeployConfig
from .errors import BuildDefinitionError


# OCI distribution spec 의 tag 규칙
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")

STATUS_SUCCESS = "success"
STATUS_NOOP = "noop"
STATUS_FAILURE = "failure"

STEP_EXECUTED = "executed"
STEP_SKIPPED = "skipped"
STEP_NOOP = "noop"
STEP_FAILED = "failed"


def registry_host(cfg: DeployConfig) -> str:
    return f"{cfg.gcp_region}-docker.pkg.dev"


@dataclass(frozen=True)
class ProjectSpec:
    """
    배포 대상 프로젝트 하나.

    build_definitions 는 환경 이름 → Dockerfile 경로(base_dir 기준 상대경로).
    """

    name: str
    context_dir: str
    build_definitions: Mapping[str, str]

    @classmethod
    def from_config(cls, cfg: DeployConfig, name: str) -> "ProjectSpec":
        definitions: Dict[str, str] = {}
        for env in cfg.environments:
            override = cfg.dockerfile_overrides.get((name, env))
            definitions[env] = override or cfg.dockerfile_template.format(project=name, environment=env)
        return cls(
            name=name,
            context_dir=cfg.build_context_template.format(project=name),
            build_definitions=definitions,
        )

    def build_definition(self, environment: str, base_dir: str = ".") -> str:
        """
        활성 환경의 Dockerfile 경로를 돌려준다. 정의가 없거나 파일이 없으면 BuildDefinitionError.
        """
        rel = self.build_definitions.get(environment)
        if not rel:
            raise BuildDefinitionError(
                f"프로젝트 {self.name!r} 에 환경 {environment!r} 용 빌드 정의가 없습니다."
            )
        path = os.path.join(base_dir, rel)
        if not os.path.isfile(path):
            raise BuildDefinitionError(
                f"프로젝트 {self.name!r} 의 빌드 정의 파일을 찾을 수 없습니다: {path}"
            )
        return path


def load_projects(cfg: DeployConfig) -> List[ProjectSpec]:
    return [ProjectSpec.from_config(cfg, name) for name in cfg.projects]


@dataclass(frozen=True)
class ImageReference:
    registry_path: str
    environment: str
    project: str
    tag: str

    def __post_init__(self) -> None:
        if not _TAG_RE.match(self.tag or ""):
            raise ValueError(f"유효하지 않은 이미지 태그입니다: {self.tag!r}")

    @classmethod
    def for_project(cls, cfg: DeployConfig, environment: str, project: str, tag: str) -> "ImageReference":
        repository = cfg.artifact_registry_repo.format(environment=environment, project=project)
        image = cfg.image_name_template.format(environment=environment, project=project)
        path = f"{registry_host(cfg)}/{cfg.gcp_project_id}/{repository}/{image}"
        return cls(registry_path=path, environment=environment, project=project, tag=tag)

    @property
    def url(self) -> str:
        return f"{self.registry_path}:{self.tag}"

    @property
    def repository(self) -> str:
        """Artifact Registry 리포지토리 이름 (registry_path 의 세 번째 요소)."""
        return self.registry_path.split("/")[2]


@dataclass
class StepOutcome:
    status: str
    detail: str = ""


@dataclass(frozen=True)
class ManifestResult:
    changed: bool
    path: str
    commit: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class MirrorResult:
    mode: str
    target: str


@dataclass
class RunReport:
    ref: str
    commit: str
    environment: Optional[str] = None
    steps: Dict[str, StepOutcome] = field(default_factory=dict)
    images: List[ImageReference] = field(default_factory=list)
    manifest: Optional[ManifestResult] = None
    mirror: Optional[MirrorResult] = None
    error: Optional[str] = None
    notified: bool = False

    def record(self, step: str, status: str, detail: str = "") -> None:
        self.steps[step] = StepOutcome(status=status, detail=detail)

    def steps_with(self, status: str) -> List[str]:
        return [name for name, o in self.steps.items() if o.status == status]

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def status(self) -> str:
        if self.failed:
            return STATUS_FAILURE
        if self.manifest is not None and not self.manifest.changed:
            return STATUS_NOOP
        return STATUS_SUCCESS
