"""1ファイル分のアップロード状態と、その遷移を行う純粋関数群。

状態は不変の ``UploadState`` で表し、遷移関数は常に新しい値を返す。
非同期の駆動は ``upload_pipeline`` が担当し、ここでは扱わない。

    Pending -> Validating -> Compressing -> Uploading -> Success
                   |             |              |
                   +-------------+--------------+--> Error -> (retry) -> Pending
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from .errors import InvalidTransitionError

PROGRESS_VALIDATING = 5
PROGRESS_COMPRESSING = 10
PROGRESS_COMPRESSED = 60
PROGRESS_DONE = 100


class UploadStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


IN_FLIGHT_STATUSES = frozenset(
    {UploadStatus.VALIDATING, UploadStatus.COMPRESSING, UploadStatus.UPLOADING}
)
RUNNABLE_STATUSES = frozenset({UploadStatus.PENDING, UploadStatus.ERROR})


@dataclass(frozen=True)
class UploadState:
    status: UploadStatus = UploadStatus.PENDING
    progress: int = 0
    error: Optional[str] = None

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def is_runnable(self) -> bool:
        return self.status in RUNNABLE_STATUSES


def initial_state() -> UploadState:
    return UploadState()


def _require(state: UploadState, allowed: frozenset, action: str) -> None:
    if state.status not in allowed:
        raise InvalidTransitionError(state.status.value, action)


def _advance(state: UploadState, status: UploadStatus, progress: int) -> UploadState:
    # 同一試行内で進捗は減らない
    return replace(state, status=status, progress=max(state.progress, progress), error=None)


def begin_validation(state: UploadState) -> UploadState:
    _require(state, frozenset({UploadStatus.PENDING}), "検証を開始")
    return _advance(state, UploadStatus.VALIDATING, PROGRESS_VALIDATING)


def begin_compression(state: UploadState) -> UploadState:
    _require(state, frozenset({UploadStatus.VALIDATING}), "縮小を開始")
    return _advance(state, UploadStatus.COMPRESSING, PROGRESS_COMPRESSING)


def finish_compression(state: UploadState) -> UploadState:
    """サムネイルとプレビューの両方が揃った時点で呼ぶ。"""
    _require(state, frozenset({UploadStatus.COMPRESSING}), "縮小を完了")
    return _advance(state, UploadStatus.COMPRESSING, PROGRESS_COMPRESSED)


def begin_upload(state: UploadState) -> UploadState:
    _require(state, frozenset({UploadStatus.COMPRESSING}), "送信を開始")
    return _advance(state, UploadStatus.UPLOADING, PROGRESS_COMPRESSED)


def succeed(state: UploadState) -> UploadState:
    _require(state, frozenset({UploadStatus.UPLOADING}), "成功に遷移")
    return _advance(state, UploadStatus.SUCCESS, PROGRESS_DONE)


def fail(state: UploadState, message: str) -> UploadState:
    _require(state, IN_FLIGHT_STATUSES, "エラーに遷移")
    return UploadState(status=UploadStatus.ERROR, progress=0, error=message)


def reset_for_retry(state: UploadState) -> UploadState:
    _require(state, frozenset({UploadStatus.ERROR}), "再試行")
    return initial_state()
