"""
pytest 설정:

로컬 작업 환경에 설치된 다른 버전의 gitops_deploy 패키지가 존재할 때,
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.
또한 개발자 셸에 export 된 배포 설정 환경변수가 테스트에 섞이지 않도록 매번 지운다.
"""

from __future__ import annotations

import os
import sys

import pytest


_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_ENV_KEYS = (
    "GCP_PROJECT_ID",
    "GCP_REGION",
    "BRANCH_ENVIRONMENTS",
    "PROJECTS",
    "ARTIFACT_REGISTRY_REPO",
    "IMAGE_NAME_TEMPLATE",
    "BUILD_MODE",
    "BUILD_CONTEXT_TEMPLATE",
    "DOCKERFILE_TEMPLATE",
    "DOCKERFILE_OVERRIDES",
    "BUILD_PARALLELISM",
    "MANIFEST_REPO_DIR",
    "MANIFEST_PATH_TEMPLATE",
    "MANIFEST_EDITOR",
    "MANIFEST_BRANCH",
    "MIRROR_MODE",
    "MIRROR_REMOTE_URL",
    "MIRROR_TOKEN",
    "MIRROR_TOKEN_SECRET",
    "MIRROR_GCS_BUCKET",
    "NOTIFY_WEBHOOK_URL",
    "NOTIFY_CHANNEL",
    "NOTIFY_TIMEOUT_SECONDS",
    "COMMAND_TIMEOUT_SECONDS",
    "CLI_SHOW_PROGRESS",
    "CLI_PROGRESS_IDLE_SECONDS",
    "CLI_PROGRESS_STYLE",
    "GITHUB_REF_NAME",
    "GITHUB_REF",
    "GITHUB_SHA",
)


def pytest_configure() -> None:
    if _REPO_ROOT not in sys.path:
        sys.path.insert(0, _REPO_ROOT)


@pytest.fixture(autouse=True)
def _clean_deploy_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in CONFIG_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_registry_cache():
    from gitops_deploy import gcp_artifact_registry

    gcp_artifact_registry.forget_known_repositories()
    yield
    gcp_artifact_registry.forget_known_repositories()
