"""structlog ベースのロガー設定

エンジンのログは標準 logging の "featureflag_engine" ロガー配下に出力する。
ルートロガーには手を加えないため、組み込み先アプリケーションのログ設定と
共存できる。
"""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog

from .config import LogSection

LOGGER_NAME = "featureflag_engine"

_HANDLER_NAME = "featureflag_engine.default"


def _drop_empty_fields(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    # 匿名コンテキストでは user_id / tenant_id が None になる
    for key in [k for k, v in event_dict.items() if v is None]:
        del event_dict[key]
    return event_dict


def _install_handler(level: int, stream: Any) -> None:
    stdlib_logger = logging.getLogger(LOGGER_NAME)
    stdlib_logger.setLevel(level)
    for handler in list(stdlib_logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            stdlib_logger.removeHandler(handler)
    handler = logging.StreamHandler(stream)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(message)s"))
    stdlib_logger.addHandler(handler)


def configure_logging(section: LogSection) -> structlog.stdlib.BoundLogger:
    """LogSection から structlog を設定し、エンジン用のロガーを返す。

    何度呼び出しても "featureflag_engine" ロガーのハンドラは 1 つに保たれる。
    """
    log_level = getattr(logging, section.level.upper(), logging.INFO)
    _install_handler(log_level, sys.stderr if section.stream == "stderr" else sys.stdout)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _drop_empty_fields,
    ]
    if section.format == "json":
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger(LOGGER_NAME)


def new_logger(level: str = "INFO", format: str = "json") -> structlog.stdlib.BoundLogger:
    """レベルと出力形式だけを指定してロガーを設定する。"""
    return configure_logging(LogSection(level=level, format=format))  # type: ignore[arg-type]
