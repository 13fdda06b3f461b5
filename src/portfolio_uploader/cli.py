"""コマンドラインから写真を一括アップロードする。"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from .admission import JPEG_EXTENSIONS
from .batch_session import BatchSession
from .errors import SubmitError
from .models import AdmissionRejection, BatchResult, SourceFile, UploadableFile, UploadSettings
from .photo_api import DryRunSubmitter, PhotoApiClient
from .resampler import Resampler
from .runtime_logging import setup_logging, start_run, write_run_summary
from .settings_store import (
    UploaderSettingsStore,
    apply_env_overrides,
    limits_from_settings,
    upload_settings_from_settings,
)
from .text_presenter import (
    build_batch_summary_text,
    build_progress_line,
    build_rejections_text,
    build_remaining_slots_text,
)
from .upload_state import UploadStatus
from .variants import VariantDeriver

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOTHING_ADMITTED = 2

# (結果, 除外されたファイル, 実行後の残り枠)
_UploadOutcome = Tuple[Optional[BatchResult], List[AdmissionRejection], int]


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="portfolio-upload",
        description="JPEG写真をサムネイル/プレビューに縮小してポートフォリオに一括アップロードする",
    )
    p.add_argument("paths", nargs="+", help="アップロードするファイル、またはフォルダー")
    p.add_argument("--category", default=None, help="登録先カテゴリID")
    p.add_argument("--publish", action="store_true", default=None, help="すぐに公開する")
    p.add_argument("--api-url", default=None, help="APIのベースURL")
    p.add_argument("--token", default=None, help="APIアクセストークン")
    p.add_argument("--settings", type=Path, default=None, help="設定ファイルのパス")
    p.add_argument("--dry-run", action="store_true", help="縮小のみ行い、送信しない")
    p.add_argument("--json", action="store_true", help="結果をJSONで標準出力に出す")
    p.add_argument("--verbose", "-v", action="count", default=0, help="詳細ログを増やす (重ね掛け可)")
    return p


def collect_sources(paths: Iterable[Path]) -> list[SourceFile]:
    """ファイルはそのまま、フォルダーは直下のJPEGを名前順に集める。"""
    sources: list[SourceFile] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            for child in sorted(path.iterdir()):
                if child.is_file() and child.suffix.lower() in JPEG_EXTENSIONS:
                    sources.append(SourceFile.from_path(child))
        elif path.is_file():
            sources.append(SourceFile.from_path(path))
        else:
            logger.error(f"ファイルが見つかりません: {path}")
    return sources


def _resolve_upload_settings(args: argparse.Namespace, settings: dict[str, Any]) -> UploadSettings:
    defaults = upload_settings_from_settings(settings)
    return UploadSettings(
        target_category_id=args.category or defaults.target_category_id,
        publish_immediately=defaults.publish_immediately if args.publish is None else bool(args.publish),
    )


def _build_cli_summary(
    *,
    status: str,
    result: Optional[BatchResult],
    rejected: Sequence[AdmissionRejection],
    dry_run: bool,
    elapsed_seconds: float,
    message: str,
    remaining_slots: Optional[int] = None,
) -> dict[str, Any]:
    payload = result.to_dict() if result is not None else BatchResult().to_dict()
    payload.update(
        {
            "status": status,
            "message": message,
            "dry_run": dry_run,
            "rejected": [
                {"filename": r.filename, "reason": r.reason.value, "message": r.message}
                for r in rejected
            ],
            "elapsed_seconds": round(elapsed_seconds, 3),
            "remaining_slots": remaining_slots,
        }
    )
    return payload


def _exit_code_for(result: Optional[BatchResult]) -> int:
    if result is None or result.counts.total == 0:
        return EXIT_NOTHING_ADMITTED
    if result.counts.failed > 0:
        return EXIT_FAILED
    return EXIT_OK


def _status_for(result: Optional[BatchResult]) -> str:
    if result is None or result.counts.total == 0:
        return "empty"
    if result.counts.failed == 0:
        return "success"
    return "partial" if result.succeeded else "failed"


def _log_file_change(upload_file: UploadableFile) -> None:
    line = build_progress_line(upload_file)
    if upload_file.status in (UploadStatus.SUCCESS, UploadStatus.ERROR):
        logger.info(line)
    else:
        logger.debug(line)


async def _upload(
    args: argparse.Namespace,
    settings: dict[str, Any],
    sources: list[SourceFile],
) -> _UploadOutcome:
    deriver = VariantDeriver(Resampler())
    limits = limits_from_settings(settings)
    upload_settings = _resolve_upload_settings(args, settings)

    if args.dry_run:
        session = BatchSession(deriver, DryRunSubmitter(), limits=limits, settings=upload_settings)
        return await _admit_and_run(session, sources)

    client = PhotoApiClient(
        settings["api_base_url"],
        token=settings.get("api_token"),
        timeout_seconds=float(settings.get("request_timeout_seconds") or 120),
    )
    async with client:
        session = BatchSession(
            deriver,
            client,
            quota_source=client,
            limits=limits,
            settings=upload_settings,
        )
        try:
            await session.refresh_usage()
        except SubmitError as e:
            logger.warning(f"利用状況を取得できないため設定値の上限で判定します: {e.message}")
        return await _admit_and_run(session, sources)


async def _admit_and_run(
    session: BatchSession, sources: list[SourceFile]
) -> _UploadOutcome:
    session.register_callback("on_file_change", _log_file_change)
    admission = session.add_files(sources)
    if admission.rejected:
        logger.warning(f"除外されたファイル: {build_rejections_text(admission.rejected)}")
    result = await session.run() if admission.admitted else None
    logger.info(build_remaining_slots_text(session.remaining_slots, session.usage.photo_limit))
    return result, admission.rejected, session.remaining_slots


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    store = UploaderSettingsStore(args.settings)
    settings = apply_env_overrides(store.load())
    if args.api_url:
        settings["api_base_url"] = args.api_url
    if args.token:
        settings["api_token"] = args.token

    console_level = str(settings.get("console_log_level") or "INFO")
    if args.verbose == 1:
        console_level = "DEBUG"
    elif args.verbose >= 2:
        console_level = "TRACE"

    artifacts = start_run()
    setup_logging(console_level=console_level, log_file=artifacts.run_log_path)

    sources = collect_sources(Path(p) for p in args.paths)
    started = time.perf_counter()
    result, rejected, remaining_slots = asyncio.run(_upload(args, settings, sources))
    elapsed = time.perf_counter() - started

    exit_code = _exit_code_for(result)
    message = build_batch_summary_text((result or BatchResult()).counts)
    status = _status_for(result)
    summary = _build_cli_summary(
        status=status,
        result=result,
        rejected=rejected,
        dry_run=args.dry_run,
        elapsed_seconds=elapsed,
        message=message,
        remaining_slots=remaining_slots,
    )
    write_run_summary(artifacts.summary_path, summary)

    if args.json:
        print(json.dumps(summary, ensure_ascii=False, indent=2))
    elif exit_code == EXIT_OK:
        logger.success(message)
    else:
        logger.warning(message)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
