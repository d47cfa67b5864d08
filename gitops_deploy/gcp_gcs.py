"""
gcp_gcs
-------

미러/백업 번들을 GCS 버킷에 업로드하는 모듈.
"""

from __future__ import annotations

from google.api_core.exceptions import GoogleAPICallError
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

from .config import DeployConfig
from .logging_utils import get_logger


logger = get_logger(__name__)


def blob_name(prefix: str, filename: str) -> str:
    prefix = (prefix or "").strip("/")
    return f"{prefix}/{filename}" if prefix else filename


def upload_file(cfg: DeployConfig, bucket_name: str, name: str, path: str) -> str:
    """
    로컬 파일을 gs://bucket/name 으로 업로드하고 URI 를 돌려준다.
    버킷은 미리 존재해야 한다 (생성하지 않는다).
    """
    uri = f"gs://{bucket_name}/{name}"
    logger.info("GCS 업로드: %s -> %s", path, uri)
    try:
        client = storage.Client(project=cfg.gcp_project_id)
        blob = client.bucket(bucket_name).blob(name)
        blob.upload_from_filename(path)
    except (GoogleAPICallError, GoogleAuthError, OSError) as e:
        raise RuntimeError(f"GCS 업로드 실패: {uri}: {e}") from e
    return uri


def check_bucket(cfg: DeployConfig, bucket_name: str) -> str:
    """
    GCS 버킷 존재 여부를 확인만 한다.
    """
    client = storage.Client(project=cfg.gcp_project_id)
    bucket = client.bucket(bucket_name)
    try:
        exists = bucket.exists()
    except GoogleAPICallError as e:
        return f"GCS: 버킷 상태 확인 실패 ({bucket_name}): {e}"

    if exists:
        return f"GCS: 버킷 존재함 ({bucket_name})"
    return f"GCS: 버킷 없음 ({bucket_name})"
