from __future__ import annotations

from portfolio_uploader import upload_state
from portfolio_uploader.models import AdmissionRejection, BatchCounts, RejectionReason, SourceFile, UploadableFile
from portfolio_uploader.text_presenter import (
    build_batch_summary_text,
    build_progress_line,
    build_rejections_text,
    build_remaining_slots_text,
    build_size_rejection_text,
    build_type_rejection_text,
    format_file_size,
)


def test_build_batch_summary_text_states() -> None:
    assert build_batch_summary_text(BatchCounts(0, 0, 0)) == "アップロード対象のファイルがありません"
    assert build_batch_summary_text(BatchCounts(3, 3, 0)) == "3件の写真をアップロードしました"
    assert build_batch_summary_text(BatchCounts(2, 0, 2)) == "写真をアップロードできませんでした（2件失敗）"
    assert build_batch_summary_text(BatchCounts(3, 2, 1)) == "2件アップロード、1件失敗"


def test_format_file_size() -> None:
    assert format_file_size(512) == "512.0 B"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(50 * 1024 * 1024) == "50.0 MB"


def test_rejection_texts() -> None:
    assert build_type_rejection_text("image/png") == "JPEGファイルのみアップロードできます（形式: image/png）"
    assert build_type_rejection_text(None) == "JPEGファイルのみアップロードできます（形式: なし）"
    assert "上限 50.0 MB" in build_size_rejection_text(51 * 1024 * 1024, 50 * 1024 * 1024)


def test_build_rejections_text_truncates() -> None:
    rejections = [
        AdmissionRejection(filename=f"{i}.png", reason=RejectionReason.TYPE, message="JPEGのみ") for i in range(7)
    ]

    text = build_rejections_text(rejections, max_items=2)

    assert text == "0.png: JPEGのみ, 1.png: JPEGのみ … 他5件"


def test_build_progress_line_includes_error() -> None:
    upload_file = UploadableFile(source=SourceFile(name="a.jpg", data=b"x"))
    assert build_progress_line(upload_file) == "a.jpg [待機中]   0%"

    state = upload_state.begin_validation(upload_file.state)
    upload_file.state = upload_state.fail(state, "Photo limit reached")
    assert build_progress_line(upload_file) == "a.jpg [エラー]   0% - Photo limit reached"


def test_build_remaining_slots_text() -> None:
    assert build_remaining_slots_text(5, 200) == "残り枠: 5 / 200"
    assert build_remaining_slots_text(-3, 200) == "残り枠: 0 / 200"
