"""Structured logging for the hook processes."""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import structlog

DEFAULT_LOG_DIR = Path.home() / ".cctg" / "logs"

_VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# long-poll のたびにリクエストログを出すロガー
_NOISY_LOGGERS = ("httpx", "httpcore")


def _resolve_level(log_level: str) -> int:
    """ログレベル名を数値に変換する. 不正な名前は INFO として扱う."""
    name = log_level.upper()
    if name not in _VALID_LEVELS:
        print(
            f"Warning: Invalid log level '{log_level}', defaulting to INFO",
            file=sys.stderr,
        )
        name = "INFO"
    return getattr(logging, name)  # type: ignore[no-any-return]


def _reset_handlers(root_logger: logging.Logger) -> None:
    """既存のハンドラーを閉じてから取り外す."""
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()


def _rotating_handler(
    path: Path,
    level: int,
    backup_count: int,
    formatter: logging.Formatter,
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str | Path | None = DEFAULT_LOG_DIR,
    log_backup_count: int = 7,
) -> None:
    """
    構造化ロギングを設定する.

    フックはエージェントの作業ディレクトリで起動されるため、ログは常に
    log_dir（既定は ~/.cctg/logs）に書き出し、カレントディレクトリには書かない.

    出力先:
    - コンソール (stderr): ERROR以上（stdout はフックの判定結果専用）
    - <log_dir>/latest.log: log_level 以上
    - <log_dir>/error.log: WARNING以上

    再設定時は既存のハンドラーを閉じてから差し替える.

    Args:
        log_level: ログレベル（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: ログ出力ディレクトリ（None ならコンソールのみ）
        log_backup_count: ログローテーションの保持日数
    """
    level = _resolve_level(log_level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    json_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    _reset_handlers(root_logger)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.ERROR)
    console_handler.setFormatter(json_formatter)
    root_logger.addHandler(console_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_dir is None:
        return

    log_path = Path(log_dir).expanduser()
    try:
        log_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    root_logger.addHandler(
        _rotating_handler(
            log_path / "latest.log", level, log_backup_count, json_formatter
        )
    )
    root_logger.addHandler(
        _rotating_handler(
            log_path / "error.log", logging.WARNING, log_backup_count, json_formatter
        )
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得する.

    Args:
        name: ロガー名（通常は __name__ を指定）

    Returns:
        構造化ロガー
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
