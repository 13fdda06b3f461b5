"""アップロード対象・設定・結果を表すデータクラス。"""

from __future__ import annotations

import mimetypes
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from .upload_state import UploadState, UploadStatus, initial_state

MEGABYTE = 1024 * 1024
DEFAULT_MAX_FILE_SIZE_BYTES = 50 * MEGABYTE
DEFAULT_MAX_FILES_PER_BATCH = 100
DEFAULT_PHOTO_LIMIT = 200
MAX_TITLE_LENGTH = 200

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


@dataclass(frozen=True)
class SourceFile:
    """利用者から渡された元ファイル（内容は加工しない）

    ``data`` を持たずに ``path`` だけを持つこともできる。その場合、内容は
    ``read_bytes()`` が呼ばれるまで読まない（受け入れ判定はサイズだけで行う）。
    """

    name: str
    data: Optional[bytes] = field(default=None, repr=False)
    content_type: Optional[str] = None
    path: Optional[Path] = None
    byte_size: Optional[int] = None

    def __post_init__(self) -> None:
        if self.data is None and self.path is None:
            raise ValueError(f"data か path のどちらかが必要です: {self.name}")

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.byte_size is not None:
            return self.byte_size
        return self.path.stat().st_size

    @property
    def suffix(self) -> str:
        return Path(self.name).suffix.lower()

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        return self.path.read_bytes()

    @classmethod
    def from_path(cls, path: Path) -> "SourceFile":
        path = Path(path)
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(name=path.name, content_type=content_type, path=path, byte_size=path.stat().st_size)


@dataclass
class UploadableFile:
    """バッチに受け入れられた1ファイル。状態はパイプラインだけが書き換える。"""

    source: SourceFile
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: UploadState = field(default_factory=initial_state)
    preview_data_url: Optional[str] = field(default=None, repr=False)

    @property
    def filename(self) -> str:
        return self.source.name

    @property
    def status(self) -> UploadStatus:
        return self.state.status

    @property
    def progress_percent(self) -> int:
        return self.state.progress

    @property
    def error_message(self) -> Optional[str]:
        return self.state.error


@dataclass(frozen=True)
class UploadSettings:
    """バッチ内の全ファイルに共通で適用する設定"""

    target_category_id: Optional[str] = None
    publish_immediately: bool = False


@dataclass(frozen=True)
class UploadLimits:
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES
    max_files_per_batch: int = DEFAULT_MAX_FILES_PER_BATCH
    photo_limit: int = DEFAULT_PHOTO_LIMIT


@dataclass(frozen=True)
class QuotaUsage:
    current_photo_count: int = 0
    photo_limit: int = DEFAULT_PHOTO_LIMIT

    @property
    def remaining(self) -> int:
        return max(0, self.photo_limit - self.current_photo_count)


def title_from_filename(filename: str) -> Optional[str]:
    """ファイル名から最後の拡張子を除いてタイトルにする。"""
    title = _EXTENSION_RE.sub("", filename)[:MAX_TITLE_LENGTH]
    return title or None


@dataclass(frozen=True)
class PhotoMetadata:
    title: Optional[str]
    category_id: Optional[str]
    is_published: bool
    original_width: int
    original_height: int
    file_size_bytes: int

    def to_form_fields(self) -> dict[str, str]:
        fields = {
            "original_width": str(self.original_width),
            "original_height": str(self.original_height),
            "file_size_bytes": str(self.file_size_bytes),
            "title": self.title or "",
            "is_published": "true" if self.is_published else "false",
        }
        if self.category_id:
            fields["category_id"] = self.category_id
        return fields


@dataclass(frozen=True)
class PhotoRecord:
    """登録APIが返した写真レコード"""

    id: str
    thumbnail_url: str
    preview_url: str
    title: Optional[str] = None
    category_id: Optional[str] = None
    is_published: bool = False
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    file_size_bytes: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PhotoRecord":
        return cls(
            id=str(data["id"]),
            thumbnail_url=str(data.get("thumbnail_url", "")),
            preview_url=str(data.get("preview_url", "")),
            title=data.get("title"),
            category_id=data.get("category_id"),
            is_published=bool(data.get("is_published", False)),
            original_width=data.get("original_width"),
            original_height=data.get("original_height"),
            file_size_bytes=data.get("file_size_bytes"),
        )


class RejectionReason(str, Enum):
    TYPE = "type"
    SIZE = "size"
    LIMIT = "limit"


@dataclass(frozen=True)
class AdmissionRejection:
    filename: str
    reason: RejectionReason
    message: str


@dataclass
class AdmissionResult:
    admitted: list[UploadableFile] = field(default_factory=list)
    rejected: list[AdmissionRejection] = field(default_factory=list)


@dataclass(frozen=True)
class UploadedPhoto:
    file_id: str
    remote_id: str
    thumbnail_url: str
    preview_url: str


@dataclass(frozen=True)
class FailedUpload:
    file_id: str
    filename: str
    reason: str


@dataclass(frozen=True)
class BatchCounts:
    total: int
    succeeded: int
    failed: int


@dataclass
class BatchResult:
    """1回のバッチ実行の集計結果"""

    succeeded: list[UploadedPhoto] = field(default_factory=list)
    failed: list[FailedUpload] = field(default_factory=list)

    @property
    def counts(self) -> BatchCounts:
        return BatchCounts(
            total=len(self.succeeded) + len(self.failed),
            succeeded=len(self.succeeded),
            failed=len(self.failed),
        )

    def to_dict(self) -> dict[str, Any]:
        counts = self.counts
        return {
            "uploaded": [
                {
                    "file_id": item.file_id,
                    "id": item.remote_id,
                    "thumbnail_url": item.thumbnail_url,
                    "preview_url": item.preview_url,
                }
                for item in self.succeeded
            ],
            "failed": [
                {"file_id": item.file_id, "filename": item.filename, "error": item.reason}
                for item in self.failed
            ],
            "summary": {
                "total": counts.total,
                "successful": counts.succeeded,
                "failed": counts.failed,
            },
        }
