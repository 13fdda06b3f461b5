"""Pure text builders for user-facing upload messages."""

from __future__ import annotations

from typing import Sequence

from .models import AdmissionRejection, BatchCounts, UploadableFile
from .upload_state import UploadStatus

STATUS_LABELS = {
    UploadStatus.PENDING: "待機中",
    UploadStatus.VALIDATING: "検証中",
    UploadStatus.COMPRESSING: "縮小中",
    UploadStatus.UPLOADING: "送信中",
    UploadStatus.SUCCESS: "完了",
    UploadStatus.ERROR: "エラー",
}


def format_file_size(size_in_bytes: float) -> str:
    """ファイルサイズを読みやすい形式に変換します（例: 1.2 MB）"""
    unit = "B"
    for unit in ["B", "KB", "MB", "GB"]:
        if size_in_bytes < 1024.0 or unit == "GB":
            break
        size_in_bytes /= 1024.0
    return f"{size_in_bytes:.1f} {unit}"


def build_type_rejection_text(content_type: str | None) -> str:
    return f"JPEGファイルのみアップロードできます（形式: {content_type or 'なし'}）"


def build_size_rejection_text(size_in_bytes: int, max_bytes: int) -> str:
    return f"ファイルが大きすぎます（{format_file_size(size_in_bytes)}、上限 {format_file_size(max_bytes)}）"


def build_batch_limit_text(max_files: int) -> str:
    return f"一度に追加できるのは{max_files}枚までです"


def build_quota_limit_text(photo_limit: int) -> str:
    return f"写真の上限（{photo_limit}枚）に達しています"


def build_rejections_text(rejections: Sequence[AdmissionRejection], max_items: int = 5) -> str:
    """除外されたファイルの一覧を1行にまとめる。多い場合は残り件数で省略する。"""
    parts = [f"{r.filename}: {r.message}" for r in rejections[:max_items]]
    text = ", ".join(parts)
    remaining = len(rejections) - max_items
    if remaining > 0:
        text += f" … 他{remaining}件"
    return text


def build_batch_summary_text(counts: BatchCounts) -> str:
    """成功件数と失敗件数を分けて表示する。"""
    if counts.total == 0:
        return "アップロード対象のファイルがありません"
    if counts.succeeded == 0:
        return f"写真をアップロードできませんでした（{counts.failed}件失敗）"
    if counts.failed == 0:
        return f"{counts.succeeded}件の写真をアップロードしました"
    return f"{counts.succeeded}件アップロード、{counts.failed}件失敗"


def build_progress_line(upload_file: UploadableFile) -> str:
    label = STATUS_LABELS[upload_file.status]
    line = f"{upload_file.filename} [{label}] {upload_file.progress_percent:3d}%"
    if upload_file.error_message:
        line += f" - {upload_file.error_message}"
    return line


def build_remaining_slots_text(remaining: int, photo_limit: int) -> str:
    return f"残り枠: {max(0, remaining)} / {photo_limit}"
