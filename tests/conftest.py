#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
pytest設定ファイル
共通のフィクスチャやテスト用の差し替え部品を定義
"""

import asyncio
import io
from typing import Callable, Optional

import pytest
from PIL import Image

from portfolio_uploader.errors import ResizeError, SubmitError
from portfolio_uploader.models import PhotoMetadata, PhotoRecord, QuotaUsage, SourceFile
from portfolio_uploader.resampler import Resampler, ResizeOutcome
from portfolio_uploader.variants import ImageDimensions, VariantDeriver


def encode_jpeg(width: int, height: int, quality: int = 90) -> bytes:
    """グラデーション入りのJPEGを作る（単色だとシャープ処理の差が出ないため）"""
    img = Image.linear_gradient("L").resize((width, height)).convert("RGB")
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


@pytest.fixture
def make_jpeg() -> Callable[..., SourceFile]:
    def _make(
        width: int = 64,
        height: int = 48,
        name: str = "photo.jpg",
        content_type: Optional[str] = "image/jpeg",
    ) -> SourceFile:
        return SourceFile(name=name, data=encode_jpeg(width, height), content_type=content_type)

    return _make


@pytest.fixture
def deriver() -> VariantDeriver:
    return VariantDeriver(Resampler())


class FakeSubmitter:
    """送信呼び出しを記録する。ファイル名（タイトル）単位で失敗・遅延を指定できる。"""

    def __init__(self, fail_titles=(), delays=None, events=None):
        self.fail_titles = set(fail_titles)
        self.delays = dict(delays or {})
        self.events = events if events is not None else []
        self.calls: list[PhotoMetadata] = []

    async def submit_photo(
        self,
        metadata: PhotoMetadata,
        thumbnail: ResizeOutcome,
        preview: ResizeOutcome,
    ) -> PhotoRecord:
        self.calls.append(metadata)
        self.events.append(("submit-start", metadata.title))
        await asyncio.sleep(self.delays.get(metadata.title, 0))
        self.events.append(("submit-end", metadata.title))
        if metadata.title in self.fail_titles:
            raise SubmitError("Photo limit reached", status=409, code="LIMIT_REACHED")
        index = len(self.calls)
        return PhotoRecord(
            id=f"remote-{index}",
            thumbnail_url=f"https://cdn.example.com/{index}/thumb.jpg",
            preview_url=f"https://cdn.example.com/{index}/preview.jpg",
            title=metadata.title,
        )


class FakeQuotaSource:
    def __init__(self, usage: QuotaUsage, fail: bool = False):
        self.usage = usage
        self.fail = fail
        self.calls = 0

    async def refresh(self) -> QuotaUsage:
        self.calls += 1
        if self.fail:
            raise SubmitError("利用状況を取得できませんでした", status=500)
        return self.usage


class RecordingDeriver(VariantDeriver):
    """派生処理の開始/終了順を記録する差し替え"""

    def __init__(self, events: list, fail_variant: Optional[str] = None):
        super().__init__(Resampler())
        self.events = events
        self.fail_variant = fail_variant

    async def read_dimensions(self, source: SourceFile) -> ImageDimensions:
        self.events.append(("dimensions", source.name))
        return ImageDimensions(width=4000, height=3000)

    async def _fake(self, variant: str, source: SourceFile, size: int) -> ResizeOutcome:
        self.events.append((f"{variant}-start", source.name))
        await asyncio.sleep(0.01)
        self.events.append((f"{variant}-end", source.name))
        if variant == self.fail_variant:
            raise ResizeError(f"{variant} failed", variant=variant)
        return ResizeOutcome(encoded_bytes=b"jpeg", width=size, height=size * 3 // 4, filename=source.name)

    async def derive_thumbnail(self, source: SourceFile) -> ResizeOutcome:
        return await self._fake("thumbnail", source, 400)

    async def derive_preview(self, source: SourceFile) -> ResizeOutcome:
        return await self._fake("preview", source, 1200)


@pytest.fixture
def fake_submitter() -> FakeSubmitter:
    return FakeSubmitter()
