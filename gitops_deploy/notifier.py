"""
notifier
--------

실행 결과를 채팅 채널(Slack 호환 incoming webhook)로 한 번 보낸다.

재시도하지 않는다. 실패는 NotificationError 로 올라가며 오케스트레이터가 로그로만 남긴다.
"""

from __future__ import annotations

from typing import Any, Dict, List

import requests

from .config import DeployConfig
from .errors import NotificationError
from .logging_utils import get_logger, redact, register_secret
from .models import STATUS_FAILURE, STATUS_NOOP, STATUS_SUCCESS, RunReport


logger = get_logger(__name__)

_COLORS = {
    STATUS_SUCCESS: "good",
    STATUS_NOOP: "#439FE0",
    STATUS_FAILURE: "danger",
}


def build_payload(cfg: DeployConfig, report: RunReport) -> Dict[str, Any]:
    status = report.status
    env = report.environment or "(unmapped)"
    text = f"[{status.upper()}] {env} 배포 ({report.ref} @ {report.commit})"

    fields: List[Dict[str, Any]] = [
        {"title": "Environment", "value": env, "short": True},
        {"title": "Ref", "value": report.ref, "short": True},
        {"title": "Commit", "value": report.commit, "short": True},
        {"title": "Status", "value": status, "short": True},
    ]
    if report.images:
        fields.append(
            {"title": "Images", "value": "\n".join(i.url for i in report.images), "short": False}
        )
    if report.steps:
        steps = "\n".join(f"{name}: {o.status}" for name, o in report.steps.items())
        fields.append({"title": "Steps", "value": steps, "short": False})
    if report.error:
        fields.append({"title": "Error", "value": report.error[:1500], "short": False})

    payload: Dict[str, Any] = {
        "text": text,
        "username": cfg.notify_username,
        "attachments": [
            {
                "color": _COLORS.get(status, "warning"),
                "fallback": text,
                "fields": fields,
            }
        ],
    }
    if cfg.notify_channel:
        payload["channel"] = cfg.notify_channel
    return payload


def send_notification(cfg: DeployConfig, report: RunReport) -> bool:
    """
    Returns:
        실제로 전송했으면 True, webhook 이 설정되지 않아 건너뛰었으면 False
    """
    if not cfg.notify_webhook_url:
        logger.info("NOTIFY_WEBHOOK_URL 이 없어 알림을 건너뜁니다.")
        return False

    register_secret(cfg.notify_webhook_url)
    payload = build_payload(cfg, report)
    logger.info("배포 알림 전송: status=%s", report.status)
    try:
        response = requests.post(
            cfg.notify_webhook_url,
            json=payload,
            timeout=cfg.notify_timeout,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        raise NotificationError(redact(f"알림 전송 실패: {e}")) from e
    return True
