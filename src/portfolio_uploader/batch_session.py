"""アップロード待ちファイルの集合と、その一括処理。

- 受け入れ時に枚数上限・残り枠を適用する（送信時には再判定しない）
- ``run()`` は Pending / Error のファイルを1件ずつ順番に処理する
- 実行中の ``run()`` の二重起動は無視する。バッチと個別再試行も同時には走らせない
- Success 済みのファイルは再実行しても送信しない
- 1件の失敗でバッチは中断せず、成功と失敗を両方集計する
"""

from __future__ import annotations

import asyncio
import base64
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from .admission import admit_files
from .models import (
    AdmissionResult,
    BatchResult,
    FailedUpload,
    QuotaUsage,
    SourceFile,
    UploadableFile,
    UploadedPhoto,
    UploadLimits,
    UploadSettings,
)
from .photo_api import PhotoSubmitter, QuotaSource
from .upload_pipeline import FileOutcome, PhotoUploadPipeline
from .upload_state import UploadStatus
from .variants import VariantDeriver

BATCH_EVENTS = ("on_file_change", "on_batch_start", "on_batch_complete")


def build_preview_data_url(source: SourceFile) -> str:
    content_type = source.content_type or "image/jpeg"
    encoded = base64.b64encode(source.read_bytes()).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


class BatchSession:
    """アップロードセッション（ファイル一覧と共通設定）"""

    def __init__(
        self,
        deriver: VariantDeriver,
        submitter: PhotoSubmitter,
        *,
        quota_source: Optional[QuotaSource] = None,
        limits: Optional[UploadLimits] = None,
        usage: Optional[QuotaUsage] = None,
        settings: Optional[UploadSettings] = None,
    ) -> None:
        self.limits = limits or UploadLimits()
        self.usage = usage or QuotaUsage(photo_limit=self.limits.photo_limit)
        self.settings = settings or UploadSettings()
        self.quota_source = quota_source
        self.files: List[UploadableFile] = []
        self.is_submitting = False
        self.pipeline = PhotoUploadPipeline(deriver, submitter, on_change=self._on_file_change)
        self.callbacks: Dict[str, List[Callable]] = {event: [] for event in BATCH_EVENTS}
        self._active_ids: set[str] = set()
        self._uploaded_since_refresh = 0

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------
    def register_callback(self, event: str, callback: Callable) -> None:
        if event not in self.callbacks:
            raise ValueError(f"未知のイベントです: {event}")
        self.callbacks[event].append(callback)

    def _trigger_callbacks(self, event: str, *args) -> None:
        for callback in self.callbacks.get(event, []):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"コールバックエラー ({event})")

    def _on_file_change(self, upload_file: UploadableFile) -> None:
        self._trigger_callbacks("on_file_change", upload_file)

    # ------------------------------------------------------------------
    # 一覧の操作
    # ------------------------------------------------------------------
    @property
    def quota_reserved(self) -> int:
        """利用状況にまだ反映されていない件数"""
        queued = sum(1 for f in self.files if f.status is not UploadStatus.SUCCESS)
        return queued + self._uploaded_since_refresh

    @property
    def remaining_slots(self) -> int:
        return max(0, self.usage.photo_limit - self.usage.current_photo_count - self.quota_reserved)

    @property
    def can_upload(self) -> bool:
        return not self.is_submitting and not self._active_ids and any(f.state.is_runnable for f in self.files)

    def get(self, file_id: str) -> Optional[UploadableFile]:
        for upload_file in self.files:
            if upload_file.id == file_id:
                return upload_file
        return None

    def add_files(self, files: Iterable[SourceFile]) -> AdmissionResult:
        result = admit_files(
            files,
            limits=self.limits,
            usage=self.usage,
            already_queued=len(self.files),
            quota_reserved=self.quota_reserved,
        )
        self.files.extend(result.admitted)
        if result.rejected:
            logger.info(f"{len(result.rejected)}件のファイルを除外しました")
        logger.debug(f"{len(result.admitted)}件を追加（合計 {len(self.files)}件）")
        return result

    def remove(self, file_id: str) -> bool:
        """未処理のファイルを一覧から外す。処理中のファイルは外せない。"""
        upload_file = self.get(file_id)
        if upload_file is None:
            return False
        if file_id in self._active_ids or upload_file.state.is_in_flight:
            logger.warning(f"処理中のファイルは削除できません: {upload_file.filename}")
            return False
        self.files.remove(upload_file)
        return True

    def clear(self) -> bool:
        if self.is_submitting or self._active_ids:
            logger.warning("アップロード中は一覧をクリアできません")
            return False
        self.files.clear()
        return True

    async def render_previews(self) -> int:
        """プレビュー用のdata URLが未作成のファイルに作成する。"""
        targets = [f for f in self.files if f.preview_data_url is None]
        if not targets:
            return 0
        urls = await asyncio.gather(
            *(asyncio.to_thread(build_preview_data_url, f.source) for f in targets)
        )
        for upload_file, url in zip(targets, urls):
            upload_file.preview_data_url = url
        return len(targets)

    # ------------------------------------------------------------------
    # 実行
    # ------------------------------------------------------------------
    async def refresh_usage(self) -> QuotaUsage:
        """利用状況をAPIから取り直す。取得失敗時の例外はそのまま送出する。"""
        if self.quota_source is None:
            return self.usage
        self.usage = await self.quota_source.refresh()
        self._uploaded_since_refresh = 0
        return self.usage

    async def run(self) -> Optional[BatchResult]:
        """Pending / Error のファイルを順番に処理し、集計結果を返す。

        実行中に呼ばれた場合は何もせず ``None`` を返す。
        """
        if self.is_submitting:
            logger.warning("アップロードは既に実行中です")
            return None
        if self._active_ids:
            logger.warning("再試行中のファイルがあるため開始できません")
            return None

        self.is_submitting = True
        try:
            settings = self.settings
            targets = [f for f in self.files if f.state.is_runnable]
            result = BatchResult()
            logger.info(f"バッチアップロード開始: {len(targets)}件")
            self._trigger_callbacks("on_batch_start", list(targets))

            for upload_file in targets:
                # 実行中に一覧から外されたものは飛ばす
                if self.get(upload_file.id) is None or not upload_file.state.is_runnable:
                    continue
                outcome = await self._process(upload_file, settings)
                self._record(result, outcome)

            if result.counts.total > 0:
                await self._refresh_after_run()

            counts = result.counts
            logger.info(
                f"バッチアップロード終了: 成功 {counts.succeeded} / 失敗 {counts.failed} / 合計 {counts.total}"
            )
            self._trigger_callbacks("on_batch_complete", result)
            return result
        finally:
            self.is_submitting = False

    async def retry(self, file_id: str) -> Optional[FileOutcome]:
        """1ファイルだけを最初から処理し直す。

        バッチ実行中は受け付けない（Error のファイルは実行中のバッチが処理する）。
        """
        if self.is_submitting:
            logger.warning(f"バッチ実行中は個別に再試行できません: {file_id}")
            return None
        upload_file = self.get(file_id)
        if upload_file is None:
            logger.warning(f"再試行対象が見つかりません: {file_id}")
            return None
        if file_id in self._active_ids or not upload_file.state.is_runnable:
            logger.debug(f"再試行できない状態です: {upload_file.filename} ({upload_file.status.value})")
            return None
        return await self._process(upload_file, self.settings)

    async def _process(self, upload_file: UploadableFile, settings: UploadSettings) -> FileOutcome:
        self._active_ids.add(upload_file.id)
        try:
            outcome = await self.pipeline.process(upload_file, settings)
        finally:
            self._active_ids.discard(upload_file.id)
        if outcome.succeeded:
            self._uploaded_since_refresh += 1
        return outcome

    @staticmethod
    def _record(result: BatchResult, outcome: FileOutcome) -> None:
        if outcome.record is not None:
            result.succeeded.append(
                UploadedPhoto(
                    file_id=outcome.file_id,
                    remote_id=outcome.record.id,
                    thumbnail_url=outcome.record.thumbnail_url,
                    preview_url=outcome.record.preview_url,
                )
            )
        else:
            result.failed.append(
                FailedUpload(
                    file_id=outcome.file_id,
                    filename=outcome.filename,
                    reason=outcome.error or "",
                )
            )

    async def _refresh_after_run(self) -> None:
        try:
            await self.refresh_usage()
        except Exception as e:
            logger.warning(f"利用状況の更新に失敗しました: {e}")
