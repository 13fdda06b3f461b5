"""高品質な縮小処理（Lanczos3 + アンシャープマスク）。

アップロードやバッチの概念は持たない。入力は ``SourceFile``、出力は
JPEGにエンコード済みのバイト列と出力サイズ。

処理の流れ:
    1. 画像を読み込み、作業キャンバス上限（既定8192px）を超える場合は
       先に比率を保ったまま縮める（JPEGはデコード時に縮小する）
    2. 長辺が ``max_dimension`` に収まるよう目標サイズを決める
       （収まっている場合は元のバイト列をそのまま返す）
    3. Lanczos3で縮小し、アンシャープマスクで縮小時のぼけを補正する
    4. ベースラインJPEGとしてエンコードする
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass, field
from typing import Tuple

from loguru import logger
from PIL import ExifTags, Image, ImageFilter, ImageOps

from .errors import ResizeError
from .models import SourceFile

MAX_CANVAS_DIMENSION = 8192
MAX_SOURCE_PIXELS = 400_000_000
OUTPUT_CONTENT_TYPE = "image/jpeg"

# EXIFの向きのうち、縦横が入れ替わるもの
_ROTATED_ORIENTATIONS = frozenset({5, 6, 7, 8})

# Pillowの既定の画素数上限（約179MPでエラー）をこのツールの上限まで引き上げる。
# 上限の判定は Resampler._open で行う。
if Image.MAX_IMAGE_PIXELS is not None and Image.MAX_IMAGE_PIXELS < MAX_SOURCE_PIXELS:
    Image.MAX_IMAGE_PIXELS = MAX_SOURCE_PIXELS


@dataclass(frozen=True)
class ResizeOptions:
    """縮小パラメータ

    Attributes:
        max_dimension: 出力の長辺の最大ピクセル数
        quality: JPEG品質 0-1
        unsharp_amount: アンシャープマスクの強さ（%、0で無効）
        unsharp_radius: アンシャープマスクの半径（px）
        unsharp_threshold: この値未満の輝度差は強調しない（ノイズ・粒状感対策）
    """

    max_dimension: int
    quality: float = 0.85
    unsharp_amount: float = 80
    unsharp_radius: float = 0.6
    unsharp_threshold: int = 2

    def __post_init__(self) -> None:
        if self.max_dimension <= 0:
            raise ValueError(f"max_dimension は正の値にしてください: {self.max_dimension}")
        if not 0 < self.quality <= 1:
            raise ValueError(f"quality は0より大きく1以下にしてください: {self.quality}")

    @property
    def jpeg_quality(self) -> int:
        return max(1, min(100, int(round(self.quality * 100))))


@dataclass(frozen=True)
class ResizeOutcome:
    encoded_bytes: bytes = field(repr=False)
    width: int
    height: int
    filename: str
    content_type: str = OUTPUT_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.encoded_bytes)


@dataclass(frozen=True)
class CanvasClamp:
    width: int
    height: int
    scale: float


def clamp_to_canvas_limits(
    width: int, height: int, max_canvas: int = MAX_CANVAS_DIMENSION
) -> CanvasClamp:
    """キャンバス上限を超える寸法を比率を保って縮める。"""
    scale = 1.0
    if width > max_canvas or height > max_canvas:
        scale = min(max_canvas / width, max_canvas / height)
    return CanvasClamp(
        width=max(1, int(round(width * scale))),
        height=max(1, int(round(height * scale))),
        scale=scale,
    )


def calculate_target_dimensions(width: int, height: int, max_size: int) -> Tuple[int, int]:
    """長辺を ``max_size`` に合わせた出力サイズを返す。拡大はしない。"""
    if width <= max_size and height <= max_size:
        return width, height

    if width > height:
        return max_size, max(1, int(round(height * max_size / width)))
    return max(1, int(round(width * max_size / height))), max_size


class Resampler:
    """縮小エンジン。1インスタンスを生成して ``VariantDeriver`` に渡して使う。"""

    def __init__(
        self,
        max_canvas_dimension: int = MAX_CANVAS_DIMENSION,
        max_source_pixels: int = MAX_SOURCE_PIXELS,
    ) -> None:
        self.max_canvas_dimension = max_canvas_dimension
        self.max_source_pixels = max_source_pixels

    async def resize(self, source: SourceFile, options: ResizeOptions) -> ResizeOutcome:
        """``resize_sync`` をワーカースレッドで実行する。"""
        return await asyncio.to_thread(self.resize_sync, source, options)

    async def measure(self, source: SourceFile) -> Tuple[int, int]:
        return await asyncio.to_thread(self.measure_sync, source)

    def measure_sync(self, source: SourceFile) -> Tuple[int, int]:
        """元画像のピクセル寸法（向き補正後）を返す。画素データはデコードしない。"""
        with self._open(source, self._read(source)) as img:
            width, height = img.size
            if img.getexif().get(ExifTags.Base.Orientation) in _ROTATED_ORIENTATIONS:
                return height, width
            return width, height

    def resize_sync(self, source: SourceFile, options: ResizeOptions) -> ResizeOutcome:
        data = self._read(source)
        img, reduced = self._load(source, data)
        try:
            logger.debug(f"画像読み込み: {source.name} {img.width}x{img.height}")

            clamp = clamp_to_canvas_limits(img.width, img.height, self.max_canvas_dimension)
            if clamp.scale < 1:
                logger.debug(f"キャンバス上限を超えるため {clamp.width}x{clamp.height} に縮小します")

            target = calculate_target_dimensions(clamp.width, clamp.height, options.max_dimension)
            logger.debug(f"目標サイズ: {target[0]}x{target[1]}")

            # 受け入れ時にJPEGと判定済みなので、元のバイト列もJPEGとして扱う
            if not reduced and clamp.scale == 1 and target == img.size:
                return ResizeOutcome(
                    encoded_bytes=data,
                    width=img.width,
                    height=img.height,
                    filename=source.name,
                )

            resized = self._render(img, clamp, target, options)
        finally:
            img.close()

        encoded = self._encode(resized, options)
        logger.debug(f"エンコード完了: {source.name} {len(encoded)} bytes")
        return ResizeOutcome(
            encoded_bytes=encoded,
            width=resized.width,
            height=resized.height,
            filename=source.name,
        )

    @staticmethod
    def _read(source: SourceFile) -> bytes:
        try:
            return source.read_bytes()
        except OSError as e:
            logger.error(f"ファイル読み込みエラー ({source.name}): {e}")
            raise ResizeError("画像ファイルを読み込めませんでした") from e

    def _open(self, source: SourceFile, data: bytes) -> Image.Image:
        """ヘッダーだけを読む。画素数が上限を超える画像はここで弾く。"""
        try:
            img = Image.open(io.BytesIO(data))
        except Exception as e:
            logger.error(f"画像読み込みエラー ({source.name}): {e}")
            raise ResizeError("画像を読み込めませんでした") from e

        width, height = img.size
        if width * height > self.max_source_pixels:
            img.close()
            logger.error(f"画素数が上限を超えています ({source.name}): {width}x{height}")
            raise ResizeError(f"画像の画素数が多すぎます（{width}x{height}）")
        return img

    def _load(self, source: SourceFile, data: bytes) -> Tuple[Image.Image, bool]:
        """画像をデコードし、デコード時に縮小したかどうかも返す。

        キャンバス上限を超えるJPEGは ``draft`` で 1/2〜1/8 に縮小しながら
        デコードする（縮小後もキャンバス上限以上の大きさは残る）。
        """
        img = self._open(source, data)
        original_size = img.size
        try:
            clamp = clamp_to_canvas_limits(img.width, img.height, self.max_canvas_dimension)
            if clamp.scale < 1:
                img.draft(img.mode, (clamp.width, clamp.height))
            img.load()
            transposed = ImageOps.exif_transpose(img)
        except Exception as e:
            img.close()
            logger.error(f"画像読み込みエラー ({source.name}): {e}")
            raise ResizeError("画像を読み込めませんでした") from e

        reduced = img.size != original_size
        if reduced:
            logger.debug(
                f"縮小デコード: {original_size[0]}x{original_size[1]} → {img.width}x{img.height}"
            )
        if transposed is not img:
            img.close()
        return transposed, reduced

    def _render(
        self,
        img: Image.Image,
        clamp: CanvasClamp,
        target: Tuple[int, int],
        options: ResizeOptions,
    ) -> Image.Image:
        try:
            work = img if img.mode in ("RGB", "L") else img.convert("RGB")
            if clamp.scale < 1:
                work = work.resize((clamp.width, clamp.height), Image.Resampling.LANCZOS)
            resized = work.resize(target, Image.Resampling.LANCZOS)
            if options.unsharp_amount > 0:
                resized = resized.filter(
                    ImageFilter.UnsharpMask(
                        radius=options.unsharp_radius,
                        percent=int(round(options.unsharp_amount)),
                        threshold=int(options.unsharp_threshold),
                    )
                )
            return resized
        except Exception as e:
            logger.error(f"縮小処理エラー: {e}")
            raise ResizeError("画像の縮小に失敗しました") from e

    @staticmethod
    def _encode(img: Image.Image, options: ResizeOptions) -> bytes:
        buffer = io.BytesIO()
        try:
            img.save(
                buffer,
                format="JPEG",
                quality=options.jpeg_quality,
                optimize=True,
                progressive=False,
            )
        except Exception as e:
            logger.error(f"JPEGエンコードエラー: {e}")
            raise ResizeError("画像のエンコードに失敗しました") from e
        return buffer.getvalue()
