"""
gcp_secrets
-----------

Secret Manager 에 저장된 값(미러 저장소 토큰 등)을 읽어오는 모듈.
"""

from __future__ import annotations

from typing import Optional

from google.api_core.exceptions import GoogleAPICallError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import secretmanager

from .config import DeployConfig
from .logging_utils import get_logger, register_secret


logger = get_logger(__name__)


def secret_version_name(cfg: DeployConfig, secret_id: str, version: str = "latest") -> str:
    # 이미 전체 리소스 이름이면 그대로 사용
    if secret_id.startswith("projects/"):
        return secret_id if "/versions/" in secret_id else f"{secret_id}/versions/{version}"
    return f"projects/{cfg.gcp_project_id}/secrets/{secret_id}/versions/{version}"


def access_secret(cfg: DeployConfig, secret_id: str) -> str:
    """
    Secret 의 최신 버전 값을 문자열로 돌려준다.
    읽어온 값은 로그에서 가려지도록 등록한다.
    """
    name = secret_version_name(cfg, secret_id)
    logger.info("Secret 조회: %s", name)

    try:
        client = secretmanager.SecretManagerServiceClient()
        response = client.access_secret_version(name=name)
    except NotFound as e:
        raise ValueError(f"Secret 이 없습니다: {name}") from e
    except (GoogleAPICallError, GoogleAuthError) as e:
        raise RuntimeError(f"Secret 조회 실패: {name}: {e}") from e

    value = response.payload.data.decode("utf-8").strip()
    register_secret(value)
    return value


def resolve_mirror_token(cfg: DeployConfig) -> Optional[str]:
    """
    MIRROR_TOKEN 이 있으면 그대로, 없으면 MIRROR_TOKEN_SECRET 으로 Secret Manager 에서 읽는다.
    """
    if cfg.mirror_token:
        register_secret(cfg.mirror_token)
        return cfg.mirror_token
    if cfg.mirror_token_secret:
        return access_secret(cfg, cfg.mirror_token_secret)
    return None
