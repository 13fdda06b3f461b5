"""ロギング設定と、アップロード実行ごとのログ・集計ファイル。

1回の ``portfolio-upload`` 実行につき ``run_<ID>.log`` と
``run_<ID>_summary.json`` の2ファイルを作る。古い実行は2ファイルまとめて消す。
"""

from __future__ import annotations

import json
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from loguru import logger

ENV_LOG_DIR = "PORTFOLIO_UPLOADER_LOG_DIR"
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_RUNS = 50
RUN_ID_FORMAT = "%Y%m%d_%H%M%S"

_WINDOWS_DIR_NAME = "PortfolioUploader"
_POSIX_DIR_NAME = "portfolio-uploader"
_RUN_FILE_RE = re.compile(r"^run_(?P<run_id>\d{8}_\d{6})(?:\.log|_summary\.json)$")

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{function}</cyan>: <white>{message}</white>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}: {message}"


@dataclass(frozen=True)
class RunLogArtifacts:
    run_id: str
    log_dir: Path
    run_log_path: Path
    summary_path: Path

    @classmethod
    def for_run(cls, log_dir: Path, run_id: str) -> "RunLogArtifacts":
        return cls(
            run_id=run_id,
            log_dir=log_dir,
            run_log_path=log_dir / f"run_{run_id}.log",
            summary_path=log_dir / f"run_{run_id}_summary.json",
        )


def setup_logging(
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """ロギングの設定を行います"""
    logger.remove()
    logger.add(sys.stderr, format=_CONSOLE_FORMAT, colorize=True, level=console_level)
    if log_file is not None:
        logger.add(str(log_file), format=_FILE_FORMAT, rotation="1 day", encoding="utf-8", level=file_level)


def get_default_log_dir(
    *,
    os_name: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """ログの保存先。``PORTFOLIO_UPLOADER_LOG_DIR`` があればそれを使う。"""
    env = os.environ if env is None else env
    home = home or Path.home()

    if env.get(ENV_LOG_DIR):
        return Path(env[ENV_LOG_DIR])

    if (os_name or os.name) == "nt":
        base = env.get("LOCALAPPDATA") or env.get("APPDATA")
        return Path(base) / _WINDOWS_DIR_NAME / "logs" if base else home / f".{_POSIX_DIR_NAME}" / "logs"

    if env.get("XDG_STATE_HOME"):
        return Path(env["XDG_STATE_HOME"]) / _POSIX_DIR_NAME / "logs"
    return home / ".local" / "state" / _POSIX_DIR_NAME / "logs"


def start_run(
    *,
    log_dir: Optional[Path] = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    max_runs: int = DEFAULT_MAX_RUNS,
    now: Optional[datetime] = None,
) -> RunLogArtifacts:
    """今回の実行用のパスを決め、ついでに古い実行を片付ける。"""
    now = now or datetime.now()
    log_dir = log_dir or get_default_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    prune_runs(log_dir, retention_days=retention_days, max_runs=max_runs, now=now)
    return RunLogArtifacts.for_run(log_dir, now.strftime(RUN_ID_FORMAT))


def prune_runs(
    log_dir: Path,
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    max_runs: int = DEFAULT_MAX_RUNS,
    now: Optional[datetime] = None,
) -> List[Path]:
    """保持日数を過ぎた実行と、件数上限からあふれた古い実行を削除する。

    実行IDが同じログとsummaryは1件として数え、まとめて削除する。
    新旧は実行IDの日時で判定する（ファイルの更新日時は見ない）。
    """
    cutoff = (now or datetime.now()) - timedelta(days=max(0, retention_days))
    runs = sorted(_group_runs(log_dir).items())

    expired = [paths for run_id, paths in runs if datetime.strptime(run_id, RUN_ID_FORMAT) < cutoff]
    kept = runs[len(expired):]
    if max_runs > 0 and len(kept) > max_runs:
        expired += [paths for _, paths in kept[: len(kept) - max_runs]]

    removed: List[Path] = []
    for paths in expired:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"古いログを削除できませんでした: {path}: {e}")
                continue
            removed.append(path)
    if removed:
        logger.debug(f"古い実行ログを{len(removed)}件削除しました")
    return removed


def write_run_summary(summary_path: Path, payload: Dict[str, Any]) -> None:
    """集計JSONを書き込む。途中で落ちても壊れたファイルを残さない。"""
    summary_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = summary_path.with_name(summary_path.name + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp_path, summary_path)


def _group_runs(log_dir: Path) -> Dict[str, List[Path]]:
    runs: Dict[str, List[Path]] = {}
    try:
        entries = list(log_dir.iterdir())
    except OSError:
        return runs
    for path in entries:
        match = _RUN_FILE_RE.match(path.name)
        if match is None or not path.is_file():
            continue
        try:
            datetime.strptime(match["run_id"], RUN_ID_FORMAT)
        except ValueError:
            continue
        runs.setdefault(match["run_id"], []).append(path)
    return runs
