"""アップローダー設定の永続化ストア。

設定は1つのJSONファイルに保存する。APIの接続先とトークンは環境変数でも
上書きでき、CLIの引数はさらにその上に重なる。
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from loguru import logger

from .models import MEGABYTE, UploadLimits, UploadSettings

SCHEMA_VERSION = 1
SETTINGS_FILENAME = "settings.json"
ENV_API_URL = "PORTFOLIO_API_URL"
ENV_API_TOKEN = "PORTFOLIO_API_TOKEN"

_WINDOWS_DIR_NAME = "PortfolioUploader"
_POSIX_DIR_NAME = "portfolio-uploader"


def default_settings() -> Dict[str, Any]:
    """設定のデフォルト値を返す。"""
    return {
        "schema_version": SCHEMA_VERSION,
        "api_base_url": "http://localhost:4321",
        "api_token": "",
        "max_file_size_mb": 50,
        "max_files_per_batch": 100,
        "photo_limit": 200,
        "request_timeout_seconds": 120,
        "default_category_id": "",
        "publish_immediately": False,
        "console_log_level": "INFO",
    }


def default_settings_path(
    *,
    os_name: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    env = os.environ if env is None else env
    home = home or Path.home()

    if (os_name or os.name) == "nt":
        base = env.get("APPDATA")
        directory = Path(base) / _WINDOWS_DIR_NAME if base else home / f".{_POSIX_DIR_NAME}"
    elif env.get("XDG_CONFIG_HOME"):
        directory = Path(env["XDG_CONFIG_HOME"]) / _POSIX_DIR_NAME
    else:
        directory = home / ".config" / _POSIX_DIR_NAME
    return directory / SETTINGS_FILENAME


def apply_env_overrides(
    settings: Mapping[str, Any], env: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    env = os.environ if env is None else env
    merged = dict(settings)
    if env.get(ENV_API_URL):
        merged["api_base_url"] = env[ENV_API_URL]
    if env.get(ENV_API_TOKEN):
        merged["api_token"] = env[ENV_API_TOKEN]
    return merged


def _positive_int(value: Any, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


def limits_from_settings(settings: Mapping[str, Any]) -> UploadLimits:
    """設定値から上限値を組み立てる。不正な値はデフォルトに戻す。"""
    defaults = default_settings()
    return UploadLimits(
        max_file_size_bytes=_positive_int(settings.get("max_file_size_mb"), defaults["max_file_size_mb"]) * MEGABYTE,
        max_files_per_batch=_positive_int(settings.get("max_files_per_batch"), defaults["max_files_per_batch"]),
        photo_limit=_positive_int(settings.get("photo_limit"), defaults["photo_limit"]),
    )


def upload_settings_from_settings(settings: Mapping[str, Any]) -> UploadSettings:
    category_id = str(settings.get("default_category_id") or "").strip()
    return UploadSettings(
        target_category_id=category_id or None,
        publish_immediately=bool(settings.get("publish_immediately", False)),
    )


def _merge_known_keys(base: Dict[str, Any], loaded: Mapping[str, Any]) -> Dict[str, Any]:
    """既知のキーだけを、デフォルトと同じ型の値に限って取り込む。"""
    merged = dict(base)
    for key, default in base.items():
        if key not in loaded:
            continue
        value = loaded[key]
        # bool は int のサブクラスなので先に判定する
        if isinstance(default, bool):
            accepted = isinstance(value, bool)
        elif isinstance(default, int):
            accepted = isinstance(value, (int, float)) and not isinstance(value, bool)
        else:
            accepted = isinstance(value, type(default))
        if accepted:
            merged[key] = value
        else:
            logger.warning(f"設定値 {key} の型が不正なため既定値を使います: {value!r}")
    return merged


class UploaderSettingsStore:
    """設定のロード/保存を行う。"""

    def __init__(self, settings_path: Optional[Path] = None) -> None:
        self.settings_path = Path(settings_path) if settings_path else default_settings_path()

    def load(self) -> Dict[str, Any]:
        """設定を読み込む。ファイルが無い・壊れている場合はデフォルトを返す。"""
        settings = default_settings()
        if not self.settings_path.is_file():
            return settings
        try:
            loaded = json.loads(self.settings_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"設定ファイルを読み込めませんでした（既定値を使います）: {self.settings_path}: {e}")
            return settings
        if not isinstance(loaded, dict):
            logger.warning(f"設定ファイルの形式が不正です（既定値を使います）: {self.settings_path}")
            return settings
        settings = _merge_known_keys(settings, loaded)
        settings["schema_version"] = SCHEMA_VERSION
        return settings

    def save(self, settings: Mapping[str, Any]) -> None:
        """設定を保存する。書き込みは一時ファイル経由で置き換える。"""
        payload = _merge_known_keys(default_settings(), settings)
        payload["schema_version"] = SCHEMA_VERSION

        self.settings_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.settings_path.with_name(self.settings_path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.settings_path)
        logger.debug(f"設定を保存しました: {self.settings_path}")
