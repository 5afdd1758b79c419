from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from dhims_upload.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config
from dhims_upload.logging.init import log_summary, setup_logging
from dhims_upload.services.pipeline import ProcessingError, UploadPipeline
from dhims_upload.services.summary import render_summary_line

"""CLI entrypoint.

Flow:
- Load .env (overrides the process environment) and config/upload.yml
- Read the sheet, clean + validate every record, write the validation report
- Upload valid records one by one (skipped with --dry-run, or with --strict
  when any record is invalid)
- Print the SUMMARY line

Ctrl-C requests a cooperative cancel: the record in flight finishes, the rest
are reported as pending.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv.

    override=True により .env の値で既存環境変数を上書き (セッションIDの差し替えを優先)。
    """
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Excel -> DHIMS2 health record uploader")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to upload.yml")
    p.add_argument("--input", type=Path, default=None, help="Workbook (.xlsx) or .csv to upload")
    p.add_argument("--sheet", default=None, help="Sheet name (default: first sheet)")
    p.add_argument("--dry-run", action="store_true", help="Validate and write payload preview only")
    p.add_argument("--strict", action="store_true", help="Do not upload anything if any record is invalid")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def _install_cancel_handler(pipeline: UploadPipeline):
    def _handler(signum, frame):  # pragma: no cover (signal delivery)
        pipeline.cancel()

    try:
        return signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # main スレッド以外からの呼び出し (テスト等) ではハンドラを設定できない
        return None


def main(argv: list[str] | None = None) -> int:
    # NOTE: 空リスト [] が与えられた場合に sys.argv[1:] を読まないよう None のときのみ参照
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    logger = setup_logging(debug=args.debug)
    if args.debug:
        logger.debug("debug mode enabled")

    _load_env_file(Path(".env"), override=True)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    try:
        pipeline = UploadPipeline(cfg)
    except ProcessingError as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL

    logger.info(f"endpoint: {cfg.context.endpoint_url}")
    previous = _install_cancel_handler(pipeline)
    try:
        result = pipeline.run(
            input_path=args.input,
            sheet=args.sheet,
            dry_run=args.dry_run,
            strict=args.strict,
        )
    except ProcessingError as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    for name, path in result.report_paths.items():
        logger.info(f"{name}: {path}")

    summary_line = render_summary_line(result)
    # log_summary が "SUMMARY " を付与するため先頭を除去
    log_summary(summary_line[len("SUMMARY "):])

    if result.has_problems:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
