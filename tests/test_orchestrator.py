from typing import List

import pytest
from google.auth.exceptions import DefaultCredentialsError

from gitops_deploy import gcp_gcs, orchestrator
from gitops_deploy.config import DeployConfig
from gitops_deploy.errors import (
    BuildError,
    MirrorError,
    NotificationError,
    ReconciliationConflictError,
)
from gitops_deploy.git_ops import GitRepo
from gitops_deploy.models import (
    STATUS_FAILURE,
    STATUS_NOOP,
    STATUS_SUCCESS,
    STEP_EXECUTED,
    STEP_FAILED,
    STEP_NOOP,
    STEP_SKIPPED,
    ImageReference,
    ManifestResult,
    MirrorResult,
)


def _minimal_cfg(**overrides) -> DeployConfig:
    values = dict(
        gcp_project_id="test-project",
        gcp_region="us-central1",
        branch_environments={"master": "production", "develop": "development"},
        projects=["alpha", "beta"],
        mirror_mode="git",
        mirror_remote_url="git@backup.example.com:app.git",
    )
    values.update(overrides)
    return DeployConfig(**values)


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> List[str]:
    """모든 외부 단계를 기록만 하는 가짜로 바꾼다."""
    log: List[str] = []

    def fake_build(cfg, environment, tag, *, base_dir=".", projects=None):  # noqa: ANN001
        log.append("build")
        return [ImageReference.for_project(cfg, environment, p, tag) for p in cfg.projects]

    def fake_manifest(cfg, environment, branch, images):  # noqa: ANN001
        log.append("manifest")
        return ManifestResult(changed=True, path=f"k8s/overlays/{environment}", commit="f00d")

    def fake_mirror(cfg, tag, *, repo_dir=None):  # noqa: ANN001
        log.append("mirror")
        return MirrorResult(mode="git", target=cfg.mirror_remote_url)

    def fake_notify(cfg, report):  # noqa: ANN001
        log.append("notify")
        return True

    monkeypatch.setattr(orchestrator.images, "build_and_push_all", fake_build)
    monkeypatch.setattr(orchestrator.manifest, "update_manifest", fake_manifest)
    monkeypatch.setattr(orchestrator.mirror, "mirror_repository", fake_mirror)
    monkeypatch.setattr(orchestrator.notifier, "send_notification", fake_notify)
    return log


def test_production_scenario_success(calls: List[str]) -> None:
    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_SUCCESS
    assert report.environment == "production"
    assert [i.url for i in report.images] == [
        "us-central1-docker.pkg.dev/test-project/production/alpha:abc123",
        "us-central1-docker.pkg.dev/test-project/production/beta:abc123",
    ]
    assert calls == ["build", "manifest", "mirror", "notify"]
    assert report.notified is True

    summary = orchestrator.format_summary(report)
    assert "- status: success" in summary
    assert "- mirror (git@backup.example.com:app.git)" in summary


def test_unmapped_reference_aborts_before_build(calls: List[str]) -> None:
    report = orchestrator.run_deploy(_minimal_cfg(), "feature/x", "abc123")

    assert report.status == STATUS_FAILURE
    assert report.steps["resolve"].status == STEP_FAILED
    assert report.steps["build"].status == STEP_SKIPPED
    assert calls == ["notify"]


def test_non_production_skips_mirror(calls: List[str]) -> None:
    report = orchestrator.run_deploy(_minimal_cfg(), "develop", "abc123")

    assert report.status == STATUS_SUCCESS
    assert report.steps["mirror"].status == STEP_SKIPPED
    assert "mirror" not in calls


def test_mirror_mode_none_skips_mirror(calls: List[str]) -> None:
    report = orchestrator.run_deploy(_minimal_cfg(mirror_mode="none"), "master", "abc123")

    assert report.steps["mirror"].status == STEP_SKIPPED
    assert "mirror" not in calls


def test_build_failure_skips_rest_but_notifies_once(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_build(cfg, environment, tag, *, base_dir=".", projects=None):  # noqa: ANN001
        calls.append("build")
        raise BuildError("alpha 이미지 빌드 실패")

    monkeypatch.setattr(orchestrator.images, "build_and_push_all", failing_build)

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_FAILURE
    assert report.steps["build"].status == STEP_FAILED
    assert report.steps["manifest"].status == STEP_SKIPPED
    assert report.steps["mirror"].status == STEP_SKIPPED
    assert calls == ["build", "notify"]
    assert "alpha 이미지 빌드 실패" in orchestrator.format_summary(report)


def test_conflict_is_fatal(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def conflict(cfg, environment, branch, images):  # noqa: ANN001
        raise ReconciliationConflictError("diverged")

    monkeypatch.setattr(orchestrator.manifest, "update_manifest", conflict)

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_FAILURE
    assert report.steps["manifest"].status == STEP_FAILED
    assert calls == ["build", "notify"]


def test_manifest_noop_is_not_failure(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        orchestrator.manifest,
        "update_manifest",
        lambda cfg, environment, branch, images: ManifestResult(changed=False, path="k8s/overlays/production"),
    )

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_NOOP
    assert not report.failed
    assert report.steps["manifest"].status == STEP_NOOP
    assert calls == ["build", "mirror", "notify"]


def test_mirror_failure_is_not_fatal(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_mirror(cfg, tag, *, repo_dir=None):  # noqa: ANN001
        raise MirrorError("unreachable")

    monkeypatch.setattr(orchestrator.mirror, "mirror_repository", failing_mirror)

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_SUCCESS
    assert report.steps["mirror"].status == STEP_FAILED
    assert calls == ["build", "manifest", "notify"]


def test_mirror_client_error_is_not_fatal(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def credentials_missing(cfg, tag, *, repo_dir=None):  # noqa: ANN001
        raise DefaultCredentialsError("File /nonexistent.json was not found.")

    monkeypatch.setattr(orchestrator.mirror, "mirror_repository", credentials_missing)

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_SUCCESS
    assert not report.failed
    assert report.steps["mirror"].status == STEP_FAILED
    assert "DefaultCredentialsError" in report.steps["mirror"].detail
    assert calls == ["build", "manifest", "notify"]


def test_gcs_mirror_without_credentials_keeps_deploy_successful(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(orchestrator.images, "build_and_push_all", lambda cfg, env, tag, **kw: [])
    monkeypatch.setattr(
        orchestrator.manifest,
        "update_manifest",
        lambda cfg, environment, branch, images: ManifestResult(changed=True, path="k8s", commit="f00d"),
    )
    monkeypatch.setattr(orchestrator.notifier, "send_notification", lambda cfg, report: False)
    monkeypatch.setattr(GitRepo, "bundle_all", lambda self, dest: open(dest, "wb").close())

    def no_credentials(*args, **kwargs):  # noqa: ANN002, ANN003
        raise DefaultCredentialsError("File /nonexistent.json was not found.")

    monkeypatch.setattr(gcp_gcs.storage, "Client", no_credentials)
    cfg = _minimal_cfg(mirror_mode="gcs", mirror_gcs_bucket="backups", mirror_remote_url=None)

    report = orchestrator.run_deploy(cfg, "master", "abc123", base_dir=str(tmp_path))

    assert report.status == STATUS_SUCCESS
    assert report.steps["mirror"].status == STEP_FAILED


def test_unexpected_notifier_error_does_not_fail_run(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_notify(cfg, report):  # noqa: ANN001
        calls.append("notify")
        raise TypeError("payload")

    monkeypatch.setattr(orchestrator.notifier, "send_notification", broken_notify)

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_SUCCESS
    assert report.steps["notify"].status == STEP_FAILED
    assert calls.count("notify") == 1


def test_unexpected_notifier_error_keeps_original_failure(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_build(cfg, environment, tag, *, base_dir=".", projects=None):  # noqa: ANN001
        raise BuildError("alpha 이미지 빌드 실패")

    def broken_notify(cfg, report):  # noqa: ANN001
        raise TypeError("payload")

    monkeypatch.setattr(orchestrator.images, "build_and_push_all", failing_build)
    monkeypatch.setattr(orchestrator.notifier, "send_notification", broken_notify)

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_FAILURE
    assert report.error == "alpha 이미지 빌드 실패"
    assert report.steps["notify"].status == STEP_FAILED


def test_notification_failure_is_not_fatal(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_notify(cfg, report):  # noqa: ANN001
        calls.append("notify")
        raise NotificationError("timeout")

    monkeypatch.setattr(orchestrator.notifier, "send_notification", failing_notify)

    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert report.status == STATUS_SUCCESS
    assert report.steps["notify"].status == STEP_FAILED
    assert calls.count("notify") == 1


def test_unexpected_error_is_reraised_after_notify(calls: List[str], monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(cfg, environment, tag, *, base_dir=".", projects=None):  # noqa: ANN001
        raise KeyError("boom")

    monkeypatch.setattr(orchestrator.images, "build_and_push_all", broken)

    with pytest.raises(KeyError):
        orchestrator.run_deploy(_minimal_cfg(), "master", "abc123")

    assert calls == ["notify"]


def test_only_manifest_skips_build_but_uses_commit_tags(calls: List[str]) -> None:
    report = orchestrator.run_deploy(_minimal_cfg(), "master", "abc123", only_steps=["manifest"])

    assert report.steps["build"].status == STEP_SKIPPED
    assert report.steps["manifest"].status == STEP_EXECUTED
    assert report.steps["mirror"].status == STEP_SKIPPED
    assert report.images[0].tag == "abc123"
    assert calls == ["manifest", "notify"]


def test_plan_run_lists_images_and_steps() -> None:
    plan = orchestrator.plan_run(_minimal_cfg(), "develop", "abc123")

    assert "- environment: development" in plan
    assert "- alpha: us-central1-docker.pkg.dev/test-project/development/alpha:abc123" in plan
    assert "- mirror: SKIPPED" in plan
    assert "- notify: ENABLED" in plan


def test_plan_run_unmapped() -> None:
    plan = orchestrator.plan_run(_minimal_cfg(), "feature/x", "abc123")

    assert "(unmapped)" in plan
    assert "[ERROR]" in plan
