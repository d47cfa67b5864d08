"""
errors
------

배포 실행 중 발생하는 예외 계층.

치명적(fatal) 오류는 남은 빌드/매니페스트 단계를 중단시키고,
MirrorError / NotificationError 는 로그로만 남기고 실행을 실패시키지 않는다.
"""

from __future__ import annotations


class DeployError(RuntimeError):
    """모든 배포 오류의 기반 클래스."""

    fatal: bool = True


class UnmappedReferenceError(DeployError):
    """브랜치(ref)가 환경 매핑 테이블에 없을 때."""

    def __init__(self, ref: str, known: list[str] | None = None) -> None:
        self.ref = ref
        self.known = sorted(known or [])
        hint = f" (매핑된 브랜치: {', '.join(self.known)})" if self.known else ""
        super().__init__(f"환경 매핑이 없는 ref 입니다: {ref!r}{hint}")


class BuildError(DeployError):
    """이미지 빌드 실패."""


class BuildDefinitionError(BuildError):
    """활성 환경용 빌드 정의(Dockerfile)를 찾을 수 없을 때."""


class PushError(DeployError):
    """이미지 푸시 실패."""


class RegistryError(PushError):
    """레지스트리 리포지토리 조회/생성 실패."""


class ManifestError(DeployError):
    """매니페스트 편집 또는 git 커밋/푸시 실패."""


class ReconciliationConflictError(ManifestError):
    """원격이 갈라져(diverged) fast-forward 가 불가능할 때."""


class MirrorError(DeployError):
    """미러/백업 실패. 배포 자체는 실패시키지 않는다."""

    fatal = False


class NotificationError(DeployError):
    """알림 전송 실패. 배포 자체는 실패시키지 않는다."""

    fatal = False
