"""ポートフォリオAPIとの通信（写真の登録と利用状況の取得）。

- aiohttp による非同期HTTP
- 失敗時は ``{"error": {"code", "message"}}`` 形式の本文からメッセージを取り出す
- 本文が読めない場合は汎用メッセージにフォールバック
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional, Protocol

import aiohttp
from loguru import logger

from .errors import GENERIC_SUBMIT_MESSAGE, SubmitError
from .models import PhotoMetadata, PhotoRecord, QuotaUsage
from .resampler import ResizeOutcome

PHOTOS_ENDPOINT = "/api/photos"
STATS_ENDPOINT = "/api/stats"
DEFAULT_TIMEOUT_SECONDS = 120.0


class PhotoSubmitter(Protocol):
    async def submit_photo(
        self,
        metadata: PhotoMetadata,
        thumbnail: ResizeOutcome,
        preview: ResizeOutcome,
    ) -> PhotoRecord: ...


class QuotaSource(Protocol):
    async def refresh(self) -> QuotaUsage: ...


def extract_error_message(payload: Any, fallback: str = GENERIC_SUBMIT_MESSAGE) -> tuple[Optional[str], str]:
    """エラー本文から (code, message) を取り出す。"""
    if not isinstance(payload, dict):
        return None, fallback
    error = payload.get("error")
    if not isinstance(error, dict):
        return None, fallback
    code = error.get("code")
    message = error.get("message")
    if not isinstance(message, str) or not message.strip():
        message = fallback
    return (code if isinstance(code, str) else None), message


def parse_usage(payload: Any) -> QuotaUsage:
    """``/api/stats`` の本文から写真の利用状況を読む。"""
    photos = payload.get("photos") if isinstance(payload, dict) else None
    if not isinstance(photos, dict):
        raise SubmitError("利用状況の形式が不正です")
    return QuotaUsage(
        current_photo_count=int(photos.get("count", 0) or 0),
        photo_limit=int(photos.get("limit", 0) or 0),
    )


def build_photo_form(
    metadata: PhotoMetadata,
    thumbnail: ResizeOutcome,
    preview: ResizeOutcome,
) -> aiohttp.FormData:
    form = aiohttp.FormData()
    form.add_field(
        "thumbnail",
        thumbnail.encoded_bytes,
        filename=thumbnail.filename,
        content_type=thumbnail.content_type,
    )
    form.add_field(
        "preview",
        preview.encoded_bytes,
        filename=preview.filename,
        content_type=preview.content_type,
    )
    for name, value in metadata.to_form_fields().items():
        form.add_field(name, value)
    return form


class PhotoApiClient:
    """写真登録APIのクライアント。``PhotoSubmitter`` と ``QuotaSource`` を兼ねる。

    ``async with`` で使うとセッションを使い回す。そうでなければ
    リクエストごとにセッションを作る。
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token or None
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def __aenter__(self) -> "PhotoApiClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def submit_photo(
        self,
        metadata: PhotoMetadata,
        thumbnail: ResizeOutcome,
        preview: ResizeOutcome,
    ) -> PhotoRecord:
        url = f"{self.base_url}{PHOTOS_ENDPOINT}"
        form = build_photo_form(metadata, thumbnail, preview)
        logger.debug(f"写真を送信: {url} title={metadata.title!r}")
        payload = await self._request("POST", url, data=form)
        try:
            return PhotoRecord.from_dict(payload)
        except (KeyError, TypeError) as e:
            raise SubmitError("サーバーの応答が不正です") from e

    async def refresh(self) -> QuotaUsage:
        url = f"{self.base_url}{STATS_ENDPOINT}"
        payload = await self._request("GET", url, fallback="利用状況を取得できませんでした")
        usage = parse_usage(payload)
        logger.debug(f"利用状況: {usage.current_photo_count}/{usage.photo_limit}")
        return usage

    async def _request(
        self,
        method: str,
        url: str,
        *,
        fallback: str = GENERIC_SUBMIT_MESSAGE,
        **kwargs: Any,
    ) -> Any:
        if self._session is not None:
            return await self._send(self._session, method, url, fallback, **kwargs)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await self._send(session, method, url, fallback, **kwargs)

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        fallback: str,
        **kwargs: Any,
    ) -> Any:
        try:
            async with session.request(method, url, headers=self.headers, **kwargs) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None

                if response.status >= 400:
                    code, message = extract_error_message(payload, fallback)
                    logger.warning(f"APIエラー {response.status} ({code}): {message}")
                    raise SubmitError(message, status=response.status, code=code)
                return payload
        except asyncio.TimeoutError as e:
            raise SubmitError("通信がタイムアウトしました") from e
        except aiohttp.ClientError as e:
            logger.error(f"通信エラー ({url}): {e}")
            raise SubmitError(f"サーバーに接続できませんでした: {e}") from e


class DryRunSubmitter:
    """送信せずに架空のレコードを返す（ドライラン用）"""

    def __init__(self) -> None:
        self.submitted: list[PhotoMetadata] = []

    async def submit_photo(
        self,
        metadata: PhotoMetadata,
        thumbnail: ResizeOutcome,
        preview: ResizeOutcome,
    ) -> PhotoRecord:
        self.submitted.append(metadata)
        record_id = f"dry-run-{uuid.uuid4().hex[:12]}"
        logger.info(
            f"[dry-run] {metadata.title}: サムネイル {thumbnail.width}x{thumbnail.height}"
            f" / プレビュー {preview.width}x{preview.height}"
        )
        return PhotoRecord(
            id=record_id,
            thumbnail_url="",
            preview_url="",
            title=metadata.title,
            category_id=metadata.category_id,
            is_published=metadata.is_published,
            original_width=metadata.original_width,
            original_height=metadata.original_height,
            file_size_bytes=metadata.file_size_bytes,
        )
