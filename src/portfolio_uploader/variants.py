"""サムネイル・プレビューの2種類の派生画像を作る。"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ResizeError
from .models import SourceFile
from .resampler import Resampler, ResizeOptions, ResizeOutcome

# サムネイルは縮小率が大きいのでシャープを強めにする
THUMBNAIL_PRESET = ResizeOptions(
    max_dimension=400,
    quality=0.85,
    unsharp_amount=80,
    unsharp_radius=0.6,
    unsharp_threshold=2,
)
PREVIEW_PRESET = ResizeOptions(
    max_dimension=1200,
    quality=0.90,
    unsharp_amount=60,
    unsharp_radius=0.5,
    unsharp_threshold=2,
)


@dataclass(frozen=True)
class ImageDimensions:
    width: int
    height: int


class VariantDeriver:
    def __init__(
        self,
        resampler: Resampler,
        *,
        thumbnail_options: ResizeOptions = THUMBNAIL_PRESET,
        preview_options: ResizeOptions = PREVIEW_PRESET,
    ) -> None:
        self.resampler = resampler
        self.thumbnail_options = thumbnail_options
        self.preview_options = preview_options

    async def derive_thumbnail(self, source: SourceFile) -> ResizeOutcome:
        try:
            return await self.resampler.resize(source, self.thumbnail_options)
        except ResizeError as e:
            raise ResizeError(f"サムネイルの作成に失敗しました（{e.message}）", variant="thumbnail") from e

    async def derive_preview(self, source: SourceFile) -> ResizeOutcome:
        try:
            return await self.resampler.resize(source, self.preview_options)
        except ResizeError as e:
            raise ResizeError(f"プレビューの作成に失敗しました（{e.message}）", variant="preview") from e

    async def read_dimensions(self, source: SourceFile) -> ImageDimensions:
        """元画像の寸法を返す（縮小結果ではなくメタデータ用）。"""
        width, height = await self.resampler.measure(source)
        return ImageDimensions(width=width, height=height)
