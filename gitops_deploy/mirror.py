"""
mirror
------

프로덕션 배포 시에만 저장소 전체(모든 ref/이력)를 보조 저장소로 복제한다.

- git : `git push --mirror` 로 다른 원격에 복제
- gcs : `git bundle create --all` 결과를 GCS 에 업로드

실패는 MirrorError 로 올라가며, 오케스트레이터는 이를 기록만 하고 배포를 실패시키지 않는다.
"""

from __future__ import annotations

import os
import tempfile
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

from . import gcp_gcs, gcp_secrets
from .config import DeployConfig
from .errors import MirrorError
from .git_ops import GitRepo
from .logging_utils import get_logger, redact, register_secret
from .models import MirrorResult
from .subprocess_utils import CommandError


logger = get_logger(__name__)


def is_mirror_environment(cfg: DeployConfig, environment: Optional[str]) -> bool:
    return environment is not None and environment == cfg.production_environment


def authenticated_url(url: str, token: Optional[str]) -> str:
    """
    https 원격 URL 에 토큰을 넣는다. ssh/파일 경로 등은 그대로 둔다.
    """
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"x-access-token:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _mirror_git(cfg: DeployConfig, repo: GitRepo) -> MirrorResult:
    url = cfg.mirror_remote_url or ""
    try:
        token = gcp_secrets.resolve_mirror_token(cfg)
    except (ValueError, RuntimeError) as e:
        raise MirrorError(f"미러 토큰을 가져오지 못했습니다: {e}") from e

    target = authenticated_url(url, token)
    if target != url:
        register_secret(target)
    logger.info("저장소 미러링: %s -> %s", repo.path, url)
    try:
        repo.push_mirror(target)
    except CommandError as e:
        raise MirrorError(redact(f"git push --mirror 실패: {e}")) from e
    return MirrorResult(mode="git", target=url)


def _mirror_gcs(cfg: DeployConfig, repo: GitRepo, tag: str) -> MirrorResult:
    bucket = cfg.mirror_gcs_bucket or ""
    repo_name = os.path.basename(repo.path.rstrip(os.sep)) or "repository"
    name = gcp_gcs.blob_name(cfg.mirror_gcs_prefix, f"{repo_name}-{tag}.bundle")

    with tempfile.TemporaryDirectory(prefix="gitops-mirror-") as tmp:
        bundle_path = os.path.join(tmp, f"{repo_name}.bundle")
        try:
            repo.bundle_all(bundle_path)
        except CommandError as e:
            raise MirrorError(f"git bundle 생성 실패: {e}") from e
        try:
            uri = gcp_gcs.upload_file(cfg, bucket, name, bundle_path)
        except RuntimeError as e:
            raise MirrorError(str(e)) from e
    return MirrorResult(mode="gcs", target=uri)


def mirror_repository(cfg: DeployConfig, tag: str, *, repo_dir: Optional[str] = None) -> MirrorResult:
    """
    실패는 원인과 무관하게 MirrorError 로 올린다 (인증/전송 오류 포함).
    """
    repo = GitRepo(repo_dir or cfg.manifest_repo_dir, timeout=cfg.command_timeout)
    mode = cfg.mirror_mode
    try:
        if mode == "git":
            return _mirror_git(cfg, repo)
        if mode == "gcs":
            return _mirror_gcs(cfg, repo, tag)
    except MirrorError:
        raise
    except Exception as e:  # noqa: BLE001
        raise MirrorError(redact(f"미러링 중 예외 발생 ({mode}): {type(e).__name__}: {e}")) from e
    raise MirrorError(f"미러 모드가 설정되지 않았습니다: MIRROR_MODE={mode!r}")
