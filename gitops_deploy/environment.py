"""
environment
-----------

source-control ref(브랜치 이름)를 배포 환경 이름으로 변환하는 모듈.

매핑에 없는 ref 는 기본값으로 대체하지 않고 UnmappedReferenceError 로 실패한다.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Dict

from .config import parse_branch_environments
from .errors import UnmappedReferenceError
from .logging_utils import get_logger


logger = get_logger(__name__)

_REF_PREFIXES = ("refs/heads/", "refs/tags/", "origin/")


def normalize_ref(ref: str) -> str:
    """
    "refs/heads/master" / "origin/master" 같은 전체 ref 를 "master" 로 줄인다.
    """
    ref = (ref or "").strip()
    for prefix in _REF_PREFIXES:
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


class BranchMapping(Mapping[str, str]):
    """브랜치 → 환경 이름의 읽기 전용 매핑."""

    def __init__(self, table: Mapping[str, str]) -> None:
        cleaned: Dict[str, str] = {}
        for branch, env in table.items():
            key = normalize_ref(branch)
            if key in cleaned:
                raise ValueError(f"중복된 브랜치 매핑입니다: {key}")
            cleaned[key] = env
        self._table = MappingProxyType(cleaned)

    @classmethod
    def parse(cls, raw: str) -> "BranchMapping":
        return cls(parse_branch_environments(raw))

    def __getitem__(self, key: str) -> str:
        return self._table[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def resolve(self, ref: str) -> str:
        branch = normalize_ref(ref)
        try:
            env = self._table[branch]
        except KeyError:
            raise UnmappedReferenceError(ref, list(self._table)) from None
        logger.info("ref %s -> 환경 %s", ref, env)
        return env

    def branches_for(self, environment: str) -> list[str]:
        return [b for b, e in self._table.items() if e == environment]
