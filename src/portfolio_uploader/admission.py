"""バッチへの受け入れ判定（形式・サイズ・枚数上限）。"""

from __future__ import annotations

from typing import Iterable, Optional

from .models import (
    AdmissionRejection,
    AdmissionResult,
    QuotaUsage,
    RejectionReason,
    SourceFile,
    UploadableFile,
    UploadLimits,
)
from .text_presenter import (
    build_batch_limit_text,
    build_quota_limit_text,
    build_size_rejection_text,
    build_type_rejection_text,
)

# image/jpg と image/pjpeg は一部の環境が付ける非標準のMIMEタイプ
JPEG_CONTENT_TYPES = frozenset({"image/jpeg", "image/jpg", "image/pjpeg"})
JPEG_EXTENSIONS = frozenset({".jpg", ".jpeg"})


def is_jpeg_source(source: SourceFile) -> bool:
    content_type = (source.content_type or "").split(";")[0].strip().lower()
    return content_type in JPEG_CONTENT_TYPES or source.suffix in JPEG_EXTENSIONS


def admit_files(
    files: Iterable[SourceFile],
    *,
    limits: UploadLimits,
    usage: QuotaUsage,
    already_queued: int = 0,
    quota_reserved: Optional[int] = None,
) -> AdmissionResult:
    """受け入れ可能なファイルを選び、残りを理由付きで返す。

    形式とサイズで除外したあと、残ったものを入力順に
    「1バッチの上限 - キュー済み件数」と「アカウントの残り枠 - 予約済み件数」の
    小さい方まで受け入れる。形式・サイズで除外されたファイルは枠を消費しない。

    ``quota_reserved`` はまだ利用状況に反映されていない件数
    （省略時は ``already_queued`` と同じ）。
    """
    if quota_reserved is None:
        quota_reserved = already_queued
    result = AdmissionResult()
    candidates: list[SourceFile] = []

    for source in files:
        if not is_jpeg_source(source):
            result.rejected.append(
                AdmissionRejection(
                    filename=source.name,
                    reason=RejectionReason.TYPE,
                    message=build_type_rejection_text(source.content_type),
                )
            )
        elif source.size > limits.max_file_size_bytes:
            result.rejected.append(
                AdmissionRejection(
                    filename=source.name,
                    reason=RejectionReason.SIZE,
                    message=build_size_rejection_text(source.size, limits.max_file_size_bytes),
                )
            )
        else:
            candidates.append(source)

    batch_slots = max(0, limits.max_files_per_batch - already_queued)
    quota_slots = max(0, usage.photo_limit - usage.current_photo_count - quota_reserved)
    slots = min(batch_slots, quota_slots)

    for source in candidates[:slots]:
        result.admitted.append(UploadableFile(source=source))

    # 先に尽きた方の上限を理由として示す
    limit_message = (
        build_quota_limit_text(usage.photo_limit)
        if quota_slots <= batch_slots
        else build_batch_limit_text(limits.max_files_per_batch)
    )
    for source in candidates[slots:]:
        result.rejected.append(
            AdmissionRejection(filename=source.name, reason=RejectionReason.LIMIT, message=limit_message)
        )

    return result
