"""アップロードパイプラインで使う例外と、ユーザー向けメッセージへの変換。"""

from __future__ import annotations

from typing import Optional

from PIL import UnidentifiedImageError

GENERIC_SUBMIT_MESSAGE = "写真のアップロードに失敗しました"
UNKNOWN_ERROR_MESSAGE = "不明なエラーが発生しました"


class PortfolioUploaderError(Exception):
    """パッケージ共通の基底例外"""


class ResizeError(PortfolioUploaderError):
    """画像の読み込み・縮小・エンコードのいずれかに失敗した"""

    def __init__(self, message: str, *, variant: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.variant = variant


class SubmitError(PortfolioUploaderError):
    """写真の登録APIが失敗を返した、または通信できなかった"""

    def __init__(
        self,
        message: str = GENERIC_SUBMIT_MESSAGE,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class InvalidTransitionError(PortfolioUploaderError):
    """許可されていない状態遷移を要求された"""

    def __init__(self, current: str, action: str) -> None:
        super().__init__(f"状態 {current} からは {action} できません")
        self.current = current
        self.action = action


def describe_error(error: BaseException) -> str:
    """例外から画面に出せる日本語メッセージを作る。

    ResizeError / SubmitError は生成時点で利用者向けの文言を持っているので
    そのまま返す。それ以外は例外の種類から文言を組み立てる。
    """
    if isinstance(error, (ResizeError, SubmitError)):
        return error.message or UNKNOWN_ERROR_MESSAGE

    error_msg = str(error)

    if isinstance(error, UnidentifiedImageError):
        return f"画像ファイルとして認識できません: {error_msg}"
    if type(error).__name__ == "DecompressionBombError":
        return f"画像が大きすぎます（圧縮爆弾の可能性）: {error_msg}"
    if isinstance(error, MemoryError):
        return "メモリ不足エラー: 画像が大きすぎるか、使用可能なメモリが不足しています"
    if isinstance(error, FileNotFoundError):
        return f"ファイルが見つかりません: {error_msg}"
    if isinstance(error, PermissionError):
        return f"アクセス権限がありません: {error_msg}"
    if isinstance(error, TimeoutError):
        return "通信がタイムアウトしました"
    if isinstance(error, OSError):
        return f"システムエラー: {error_msg}"
    if isinstance(error, ValueError):
        return f"無効な値: {error_msg}"

    if not error_msg:
        return UNKNOWN_ERROR_MESSAGE
    return f"予期しないエラー: {error_msg}"
