from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv


ENV_FILES_DEFAULT_ORDER = [".env", ".env.deploy", ".env.secrets"]

BUILD_MODES = ("local_docker", "cloud_build")
MANIFEST_EDITORS = ("kustomize", "yaml")
MIRROR_MODES = ("none", "git", "gcs")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y"}


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} 는 숫자여야 합니다: {raw!r}") from e


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} 는 정수여야 합니다: {raw!r}") from e


def parse_pairs(raw: str, *, sep: str = ",", name: str = "") -> List[Tuple[str, str]]:
    """
    "a=b,c=d" 형태의 문자열을 (key, value) 목록으로 파싱한다.
    순서를 보존하며, 중복 키 검사는 호출 측에서 한다.
    """
    pairs: List[Tuple[str, str]] = []
    for chunk in raw.split(sep):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "=" not in chunk:
            raise ValueError(f"{name or '설정'} 항목은 key=value 형식이어야 합니다: {chunk!r}")
        key, value = chunk.split("=", 1)
        key, value = key.strip(), value.strip()
        if not key or not value:
            raise ValueError(f"{name or '설정'} 항목의 key/value 가 비어 있습니다: {chunk!r}")
        pairs.append((key, value))
    return pairs


def parse_branch_environments(raw: str) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for branch, env in parse_pairs(raw, name="BRANCH_ENVIRONMENTS"):
        if branch in mapping:
            raise ValueError(f"BRANCH_ENVIRONMENTS 에 중복된 브랜치가 있습니다: {branch}")
        mapping[branch] = env
    return mapping


def parse_dockerfile_overrides(raw: str) -> Dict[Tuple[str, str], str]:
    """
    "alpha@production=alpha/Dockerfile.prod;beta@staging=beta/Dockerfile"
    """
    overrides: Dict[Tuple[str, str], str] = {}
    for key, path in parse_pairs(raw, sep=";", name="DOCKERFILE_OVERRIDES"):
        if "@" not in key:
            raise ValueError(f"DOCKERFILE_OVERRIDES 키는 project@environment 형식이어야 합니다: {key!r}")
        project, env = (p.strip() for p in key.split("@", 1))
        overrides[(project, env)] = path
    return overrides


def _split_list(raw: str) -> List[str]:
    items: List[str] = []
    for p in raw.split(","):
        p = p.strip()
        if p and p not in items:
            items.append(p)
    return items


@dataclass
class DeployConfig:
    # 필수 공통
    gcp_project_id: str
    gcp_region: str
    branch_environments: Dict[str, str]
    projects: List[str]

    # 레지스트리 / 빌드
    artifact_registry_repo: str = "{environment}"
    image_name_template: str = "{project}"
    build_mode: str = "local_docker"
    build_context_template: str = "{project}"
    dockerfile_template: str = "{project}/Dockerfile.{environment}"
    dockerfile_overrides: Dict[Tuple[str, str], str] = field(default_factory=dict)
    build_parallelism: int = 1

    # 매니페스트 (GitOps)
    manifest_repo_dir: str = "."
    manifest_path_template: str = "k8s/overlays/{environment}"
    manifest_editor: str = "kustomize"
    kustomize_bin: str = "kustomize"
    manifest_image_name_template: str = "{project}"
    manifest_remote: str = "origin"
    manifest_branch: Optional[str] = None
    commit_message_template: str = "deploy({environment}): update images to {tag}"
    git_author_name: str = "gitops-deploy"
    git_author_email: str = "gitops-deploy@localhost"

    # 미러/백업
    production_environment: str = "production"
    mirror_mode: str = "none"
    mirror_remote_url: Optional[str] = None
    mirror_token: Optional[str] = None
    mirror_token_secret: Optional[str] = None
    mirror_gcs_bucket: Optional[str] = None
    mirror_gcs_prefix: str = "mirrors"

    # 알림
    notify_webhook_url: Optional[str] = None
    notify_channel: Optional[str] = None
    notify_username: str = "gitops-deploy"
    notify_timeout: float = 10.0

    # 실행
    command_timeout: float = 900.0
    cli_show_progress: bool = True
    cli_progress_idle_seconds: float = 2.0
    cli_progress_style: str = "braille"

    @classmethod
    def from_env(cls) -> "DeployConfig":
        # 필수값
        missing: List[str] = []
        def req(name: str) -> str:
            val = os.getenv(name)
            if not val:
                missing.append(name)
            return val or ""

        gcp_project_id = req("GCP_PROJECT_ID")
        gcp_region = req("GCP_REGION")
        branch_raw = req("BRANCH_ENVIRONMENTS")
        projects_raw = req("PROJECTS")

        if missing:
            raise ValueError(
                "필수 환경변수가 누락되었습니다: " + ", ".join(sorted(set(missing)))
            )

        cfg = cls(
            gcp_project_id=gcp_project_id,
            gcp_region=gcp_region,
            branch_environments=parse_branch_environments(branch_raw),
            projects=_split_list(projects_raw),
            artifact_registry_repo=os.getenv("ARTIFACT_REGISTRY_REPO", "{environment}"),
            image_name_template=os.getenv("IMAGE_NAME_TEMPLATE", "{project}"),
            build_mode=os.getenv("BUILD_MODE", "local_docker").lower(),
            build_context_template=os.getenv("BUILD_CONTEXT_TEMPLATE", "{project}"),
            dockerfile_template=os.getenv("DOCKERFILE_TEMPLATE", "{project}/Dockerfile.{environment}"),
            dockerfile_overrides=parse_dockerfile_overrides(os.getenv("DOCKERFILE_OVERRIDES", "")),
            build_parallelism=_get_int("BUILD_PARALLELISM", 1),
            manifest_repo_dir=os.getenv("MANIFEST_REPO_DIR", "."),
            manifest_path_template=os.getenv("MANIFEST_PATH_TEMPLATE", "k8s/overlays/{environment}"),
            manifest_editor=os.getenv("MANIFEST_EDITOR", "kustomize").lower(),
            kustomize_bin=os.getenv("KUSTOMIZE_BIN", "kustomize"),
            manifest_image_name_template=os.getenv("MANIFEST_IMAGE_NAME_TEMPLATE", "{project}"),
            manifest_remote=os.getenv("MANIFEST_REMOTE", "origin"),
            manifest_branch=os.getenv("MANIFEST_BRANCH") or None,
            commit_message_template=os.getenv(
                "COMMIT_MESSAGE_TEMPLATE", "deploy({environment}): update images to {tag}"
            ),
            git_author_name=os.getenv("GIT_AUTHOR_NAME", "gitops-deploy"),
            git_author_email=os.getenv("GIT_AUTHOR_EMAIL", "gitops-deploy@localhost"),
            production_environment=os.getenv("PRODUCTION_ENVIRONMENT", "production"),
            mirror_mode=os.getenv("MIRROR_MODE", "none").lower(),
            mirror_remote_url=os.getenv("MIRROR_REMOTE_URL") or None,
            mirror_token=os.getenv("MIRROR_TOKEN") or None,
            mirror_token_secret=os.getenv("MIRROR_TOKEN_SECRET") or None,
            mirror_gcs_bucket=os.getenv("MIRROR_GCS_BUCKET") or None,
            mirror_gcs_prefix=os.getenv("MIRROR_GCS_PREFIX", "mirrors"),
            notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL") or None,
            notify_channel=os.getenv("NOTIFY_CHANNEL") or None,
            notify_username=os.getenv("NOTIFY_USERNAME", "gitops-deploy"),
            notify_timeout=_get_float("NOTIFY_TIMEOUT_SECONDS", 10.0),
            command_timeout=_get_float("COMMAND_TIMEOUT_SECONDS", 900.0),
            cli_show_progress=_get_bool("CLI_SHOW_PROGRESS", True),
            cli_progress_idle_seconds=_get_float("CLI_PROGRESS_IDLE_SECONDS", 2.0),
            cli_progress_style=os.getenv("CLI_PROGRESS_STYLE", "braille"),
        )

        cfg.validate()
        return cfg

    def validate(self) -> None:
        """
        토글 조합 검증. 잘못된 값은 ValueError 로 한 번에 보고한다.
        """
        problems: List[str] = []

        if not self.branch_environments:
            problems.append("BRANCH_ENVIRONMENTS 에 매핑이 하나도 없습니다.")
        if not self.projects:
            problems.append("PROJECTS 에 프로젝트가 하나도 없습니다.")
        if self.build_mode not in BUILD_MODES:
            problems.append(
                f"알 수 없는 BUILD_MODE 값입니다: {self.build_mode!r} ({' | '.join(BUILD_MODES)} 중 하나)"
            )
        if self.manifest_editor not in MANIFEST_EDITORS:
            problems.append(
                f"알 수 없는 MANIFEST_EDITOR 값입니다: {self.manifest_editor!r} ({' | '.join(MANIFEST_EDITORS)} 중 하나)"
            )
        if self.mirror_mode not in MIRROR_MODES:
            problems.append(
                f"알 수 없는 MIRROR_MODE 값입니다: {self.mirror_mode!r} ({' | '.join(MIRROR_MODES)} 중 하나)"
            )
        if self.mirror_mode == "git" and not self.mirror_remote_url:
            problems.append("MIRROR_MODE=git 이면 MIRROR_REMOTE_URL 환경변수가 필요합니다.")
        if self.mirror_mode == "gcs" and not self.mirror_gcs_bucket:
            problems.append("MIRROR_MODE=gcs 이면 MIRROR_GCS_BUCKET 환경변수가 필요합니다.")
        if self.build_parallelism < 1:
            problems.append("BUILD_PARALLELISM 은 1 이상이어야 합니다.")

        unknown = sorted({p for p, _ in self.dockerfile_overrides} - set(self.projects))
        if unknown:
            problems.append(
                "DOCKERFILE_OVERRIDES 에 PROJECTS 에 없는 프로젝트가 있습니다: " + ", ".join(unknown)
            )

        if problems:
            raise ValueError("\n".join(problems))

    @property
    def environments(self) -> List[str]:
        seen: List[str] = []
        for env in self.branch_environments.values():
            if env not in seen:
                seen.append(env)
        return seen

    def manifest_path(self, environment: str) -> str:
        """manifest_repo_dir 기준 상대 경로."""
        return self.manifest_path_template.format(environment=environment)
