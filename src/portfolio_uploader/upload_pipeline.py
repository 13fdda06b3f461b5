"""1ファイル分の処理（検証 → 縮小 → 送信）を非同期で駆動する。

状態の計算は ``upload_state`` の純粋関数に任せ、ここでは待ち合わせと
例外の捕捉だけを行う。どの段階で失敗してもファイルは Error 状態になり、
例外は呼び出し元に伝播しない。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from . import upload_state
from .errors import InvalidTransitionError, describe_error
from .models import PhotoMetadata, PhotoRecord, UploadableFile, UploadSettings, title_from_filename
from .photo_api import PhotoSubmitter
from .upload_state import UploadState, UploadStatus
from .variants import ImageDimensions, VariantDeriver

ChangeListener = Callable[[UploadableFile], None]


@dataclass(frozen=True)
class FileOutcome:
    file_id: str
    filename: str
    record: Optional[PhotoRecord] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.record is not None


def build_metadata(
    upload_file: UploadableFile,
    dimensions: ImageDimensions,
    settings: UploadSettings,
) -> PhotoMetadata:
    return PhotoMetadata(
        title=title_from_filename(upload_file.filename),
        category_id=settings.target_category_id,
        is_published=settings.publish_immediately,
        original_width=dimensions.width,
        original_height=dimensions.height,
        file_size_bytes=upload_file.source.size,
    )


class PhotoUploadPipeline:
    def __init__(
        self,
        deriver: VariantDeriver,
        submitter: PhotoSubmitter,
        on_change: Optional[ChangeListener] = None,
    ) -> None:
        self.deriver = deriver
        self.submitter = submitter
        self.on_change = on_change

    async def process(self, upload_file: UploadableFile, settings: UploadSettings) -> FileOutcome:
        """ファイルを最初の段階から処理し、結果を返す。

        Error 状態のファイルは再試行として Pending に戻してから始める。
        縮小結果はキャッシュしないため、途中の段階からの再開はしない。
        """
        if upload_file.status is UploadStatus.ERROR:
            self._transition(upload_file, upload_state.reset_for_retry(upload_file.state))
        if upload_file.status is not UploadStatus.PENDING:
            raise InvalidTransitionError(upload_file.status.value, "処理を開始")

        source = upload_file.source
        try:
            self._transition(upload_file, upload_state.begin_validation(upload_file.state))
            dimensions = await self.deriver.read_dimensions(source)

            self._transition(upload_file, upload_state.begin_compression(upload_file.state))
            thumbnail, preview = await asyncio.gather(
                self.deriver.derive_thumbnail(source),
                self.deriver.derive_preview(source),
            )
            self._transition(upload_file, upload_state.finish_compression(upload_file.state))

            metadata = build_metadata(upload_file, dimensions, settings)
            self._transition(upload_file, upload_state.begin_upload(upload_file.state))
            record = await self.submitter.submit_photo(metadata, thumbnail, preview)

            self._transition(upload_file, upload_state.succeed(upload_file.state))
        except Exception as e:
            message = describe_error(e)
            logger.warning(f"アップロード失敗: {upload_file.filename}: {message}")
            logger.opt(exception=e).debug("失敗の詳細")
            self._transition(upload_file, upload_state.fail(upload_file.state, message))
            return FileOutcome(file_id=upload_file.id, filename=upload_file.filename, error=message)

        logger.info(f"アップロード完了: {upload_file.filename} → {record.id}")
        return FileOutcome(file_id=upload_file.id, filename=upload_file.filename, record=record)

    def _transition(self, upload_file: UploadableFile, new_state: UploadState) -> None:
        logger.debug(
            f"{upload_file.filename}: {upload_file.status.value} → {new_state.status.value}"
            f" ({new_state.progress}%)"
        )
        upload_file.state = new_state
        if self.on_change is None:
            return
        try:
            self.on_change(upload_file)
        except Exception:
            logger.exception(f"状態通知コールバックでエラー: {upload_file.filename}")
