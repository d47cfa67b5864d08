"""
gitops_deploy
-------------

브랜치 → 환경 매핑, 프로젝트별 이미지 빌드/푸시, GitOps 매니페스트 갱신,
프로덕션 미러링, 채팅 알림까지 하나의 실행(run)으로 묶어 처리하는 배포 CLI 패키지.
"""

__all__ = [
    "config",
    "orchestrator",
]

__version__ = "0.1.0"
