"""
manifest
--------

GitOps 매니페스트(kustomization)의 이미지 참조를 새 태그로 바꾸고,
변경이 있을 때만 커밋 후 fast-forward 전용으로 원격과 동기화한다.

- 편집기: `kustomize edit set image` (kustomize) 또는 kustomization.yaml 직접 편집 (yaml)
- 작업 트리 변경이 없으면 커밋/푸시 없이 no-op 결과를 돌려준다.
- 원격이 갈라져 있으면 ReconciliationConflictError. merge/force push 는 하지 않는다.
"""

from __future__ import annotations

import copy
import os
import tempfile
import threading
from typing import Dict, List, Optional, Protocol, Sequence

import yaml

from .config import DeployConfig
from .errors import ManifestError, ReconciliationConflictError
from .git_ops import GitRepo, is_push_rejection
from .logging_utils import get_logger
from .models import ImageReference, ManifestResult
from .subprocess_utils import CommandError, run_command


logger = get_logger(__name__)

KUSTOMIZATION_FILENAMES = ("kustomization.yaml", "kustomization.yml", "Kustomization")

_locks_guard = threading.Lock()
_repo_locks: Dict[str, threading.Lock] = {}


def _lock_for(path: str) -> threading.Lock:
    key = os.path.realpath(path)
    with _locks_guard:
        lock = _repo_locks.get(key)
        if lock is None:
            lock = _repo_locks[key] = threading.Lock()
        return lock


def find_kustomization(directory: str) -> Optional[str]:
    for name in KUSTOMIZATION_FILENAMES:
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return path
    return None


class ImageEditor(Protocol):
    def set_images(self, directory: str, images: Dict[str, ImageReference]) -> None:
        ...


class KustomizeEditor:
    """`kustomize edit set image name=newName:tag` 를 실행한다."""

    def __init__(self, binary: str = "kustomize", *, timeout: float = 120.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def set_images(self, directory: str, images: Dict[str, ImageReference]) -> None:
        specs = [f"{name}={image.url}" for name, image in images.items()]
        cmd = [self.binary, "edit", "set", "image", *specs]
        try:
            run_command(cmd, cwd=directory, timeout=self.timeout, show_progress=False)
        except CommandError as e:
            raise ManifestError(f"kustomize 이미지 설정 실패: {e}") from e


class YamlKustomizationEditor:
    """
    kustomization 파일의 `images:` 목록을 직접 수정한다.
    kustomize 바이너리 없이 같은 결과(name/newName/newTag)를 만든다.

    이미지 값이 이미 같으면 파일을 건드리지 않는다. 값이 바뀌면 파일 전체를 다시
    직렬화하므로 주석은 남지 않는다. 기존 항목 순서는 유지하고 새 항목은 끝에 붙인다.
    파일은 같은 디렉토리의 임시 파일에 쓴 뒤 교체하므로 중간 상태로 남지 않는다.
    """

    def set_images(self, directory: str, images: Dict[str, ImageReference]) -> None:
        path = find_kustomization(directory)
        if path is None:
            raise ManifestError(f"kustomization 파일을 찾을 수 없습니다: {directory}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                doc = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ManifestError(f"kustomization 파싱 실패: {path}: {e}") from e
        if not isinstance(doc, dict):
            raise ManifestError(f"kustomization 최상위가 매핑이 아닙니다: {path}")

        original = doc.get("images") or []
        entries: List[dict] = copy.deepcopy(list(original))
        for name, image in images.items():
            entry = next((e for e in entries if isinstance(e, dict) and e.get("name") == name), None)
            if entry is None:
                entry = {"name": name}
                entries.append(entry)
            entry["newName"] = image.registry_path
            entry["newTag"] = image.tag
            entry.pop("digest", None)

        if entries == list(original):
            logger.debug("kustomization 이미지 변경 없음: %s", path)
            return
        doc["images"] = entries

        rendered = yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
        _write_atomic(path, rendered)


def _write_atomic(path: str, text: str) -> None:
    directory = os.path.dirname(path) or "."
    tmp = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=directory, prefix=".kustomization-", suffix=".tmp", delete=False
    )
    try:
        with tmp:
            tmp.write(text)
        os.replace(tmp.name, path)
    except OSError as e:
        if os.path.exists(tmp.name):
            os.unlink(tmp.name)
        raise ManifestError(f"kustomization 쓰기 실패: {path}: {e}") from e


def make_editor(cfg: DeployConfig) -> ImageEditor:
    if cfg.manifest_editor == "kustomize":
        return KustomizeEditor(cfg.kustomize_bin, timeout=cfg.command_timeout)
    if cfg.manifest_editor == "yaml":
        return YamlKustomizationEditor()
    raise ValueError(f"알 수 없는 MANIFEST_EDITOR 값입니다: {cfg.manifest_editor!r} (kustomize | yaml 중 하나)")


def commit_message(cfg: DeployConfig, environment: str, tag: str) -> str:
    return cfg.commit_message_template.format(environment=environment, tag=tag)


class ManifestUpdater:
    def __init__(
        self,
        cfg: DeployConfig,
        *,
        repo: Optional[GitRepo] = None,
        editor: Optional[ImageEditor] = None,
    ) -> None:
        self.cfg = cfg
        self.repo = repo or GitRepo(cfg.manifest_repo_dir, timeout=cfg.command_timeout)
        self.editor = editor or make_editor(cfg)

    def _sync(self, remote: str, branch: str) -> None:
        try:
            self.repo.fetch(remote, branch)
        except CommandError as e:
            raise ManifestError(f"원격 브랜치 fetch 실패: {remote}/{branch}: {e}") from e
        try:
            self.repo.fast_forward(remote, branch)
        except CommandError as e:
            raise ReconciliationConflictError(
                f"{remote}/{branch} 로 fast-forward 할 수 없습니다 (원격 이력이 갈라졌습니다)"
            ) from e

    def update(self, environment: str, branch: str, images: Sequence[ImageReference]) -> ManifestResult:
        cfg = self.cfg
        rel_path = cfg.manifest_path(environment)
        directory = os.path.join(self.repo.path, rel_path)
        if not os.path.isdir(directory):
            raise ManifestError(f"매니페스트 디렉토리가 없습니다: {directory}")

        tag = images[0].tag if images else ""
        by_name = {
            cfg.manifest_image_name_template.format(project=i.project, environment=environment): i
            for i in images
        }
        remote = cfg.manifest_remote

        with _lock_for(self.repo.path):
            self._sync(remote, branch)

            logger.info("매니페스트 이미지 갱신: %s (%d개)", rel_path, len(by_name))
            self.editor.set_images(directory, by_name)

            try:
                changes = self.repo.status_porcelain([rel_path])
            except CommandError as e:
                raise ManifestError(f"git status 실패: {e}") from e
            if not changes:
                logger.info("매니페스트 변경 없음, 커밋/푸시를 건너뜁니다: %s", rel_path)
                return ManifestResult(changed=False, path=rel_path, message="no changes")

            message = commit_message(cfg, environment, tag)
            try:
                self.repo.add([rel_path])
                sha = self.repo.commit(
                    message,
                    author_name=cfg.git_author_name,
                    author_email=cfg.git_author_email,
                )
            except CommandError as e:
                raise ManifestError(f"매니페스트 커밋 실패: {e}") from e
            logger.info("매니페스트 커밋: %s (%s)", sha, message)

            # 커밋 사이에 원격이 움직였으면 여기서 갈라짐이 드러난다.
            self._sync(remote, branch)

            try:
                self.repo.push(remote, branch)
            except CommandError as e:
                if is_push_rejection(e):
                    raise ReconciliationConflictError(
                        f"{remote}/{branch} 푸시가 거부되었습니다 (동시 갱신). force push 는 하지 않습니다."
                    ) from e
                raise ManifestError(f"매니페스트 푸시 실패: {e}") from e

        logger.info("매니페스트 푸시 완료: %s -> %s/%s", sha, remote, branch)
        return ManifestResult(changed=True, path=rel_path, commit=sha, message=message)


def update_manifest(cfg: DeployConfig, environment: str, branch: str,
                    images: Sequence[ImageReference]) -> ManifestResult:
    return ManifestUpdater(cfg).update(environment, branch, images)


def check_manifest(cfg: DeployConfig, environment: str) -> List[str]:
    """매니페스트 디렉토리/kustomization/git 작업 트리 상태만 확인한다."""
    results: List[str] = []
    repo = GitRepo(cfg.manifest_repo_dir, timeout=cfg.command_timeout)
    directory = os.path.join(repo.path, cfg.manifest_path(environment))

    if not os.path.isdir(directory):
        results.append(f"Manifest: 디렉토리 없음 ({directory})")
        return results
    if find_kustomization(directory) is None:
        results.append(f"Manifest: kustomization 파일 없음 ({directory})")
    else:
        results.append(f"Manifest: kustomization 존재함 ({directory})")

    if repo.is_repo():
        results.append(f"Manifest: git 작업 트리 ({repo.path})")
    else:
        results.append(f"Manifest: git 저장소가 아닙니다 ({repo.path})")
    return results
