"""日志初始化：JSON 行写入本地文件，错误同步到 stderr，凭据统一脱敏。"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from bes_runner.config import Settings
from bes_runner.infra.logging.context import get_log_context

LOG_FILE_NAME = "bes-runner.jsonl"

_listener: QueueListener | None = None

# API key 走 Bearer 头；存储凭据出现在连接串、SAS 查询串与结果引用中。
_CREDENTIAL_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)[^\s,;\"']+"), r"\1***"),
    (re.compile(r"(?i)(accountkey\s*=\s*)[^\s;\"']+"), r"\1***"),
    (re.compile(r"(?i)([?&]sig=)[^&\s\"']+"), r"\1***"),
    (re.compile(r"(?i)(sasblobtoken\"?\s*[:=]\s*\"?)[^\s,;\"']+"), r"\1***"),
)
_STRICT_PATTERN = re.compile(r"(?i)(connectionstring|api_key|token)([^,\s}]*)")

# 记录上的可选结构化字段，按输出顺序排列。
_RECORD_FIELDS = ("event", "external_service", "op", "duration_ms", "status_code", "error_type")


def redact_text(value: str | None, mode: str) -> str | None:
    """按模式脱敏：off 原样输出，standard 遮盖凭据取值，strict 额外遮盖连接串与 token 字段。"""
    if value is None:
        return None
    text = str(value)
    mode = mode.lower()
    if mode == "off":
        return text
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        text = pattern.sub(replacement, text)
    if mode == "strict":
        text = _STRICT_PATTERN.sub(r"\1=***", text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    if payload is None:
        return None
    serialized = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False, default=str)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) > max_chars:
        return f"{redacted[:max_chars]}...(truncated)"
    return redacted


class ContextInjectionFilter(logging.Filter):
    """入队前把 run_id/job_id 写入 record，监听线程中读不到调用方的 contextvars。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class StructuredJsonFormatter(logging.Formatter):
    def __init__(self, *, service: str, redaction_mode: str, payload_preview_chars: int) -> None:
        super().__init__()
        self._service = service
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self._service,
            "module": record.name,
            "run_id": getattr(record, "run_id", None) or ctx["run_id"],
            "job_id": getattr(record, "job_id", None) or ctx["job_id"],
            "message": redact_text(record.getMessage(), self._redaction_mode),
        }
        for name in _RECORD_FIELDS:
            entry[name] = getattr(record, name, None)
        if isinstance(entry["status_code"], str) and entry["status_code"].isdigit():
            entry["status_code"] = int(entry["status_code"])

        error = getattr(record, "error", None)
        if error is None and record.exc_info:
            error = self.formatException(record.exc_info)
        entry["error"] = redact_text(error, self._redaction_mode)
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(settings: Settings) -> Path:
    """初始化全局日志，返回 JSONL 日志文件路径。"""
    global _listener
    shutdown_logging()

    log_dir = settings.log_dir if settings.log_dir.is_absolute() else (Path.cwd() / settings.log_dir).resolve()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    records: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {"queue": {"class": "logging.handlers.QueueHandler", "queue": records}},
            "root": {"level": getattr(logging, settings.log_level.upper(), logging.INFO), "handlers": ["queue"]},
            # 第三方库只保留告警以上。
            "loggers": {name: {"level": "WARNING"} for name in ("httpx", "httpcore", "azure", "urllib3")},
        }
    )
    queue_handler = next(item for item in logging.getLogger().handlers if isinstance(item, QueueHandler))
    queue_handler.addFilter(ContextInjectionFilter())

    formatter = StructuredJsonFormatter(
        service="bes-runner",
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    _listener = QueueListener(records, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()
    return log_file


def shutdown_logging() -> None:
    """停止监听线程并关闭文件句柄，剩余日志在此之前写完。"""
    global _listener
    if _listener is None:
        return
    listener, _listener = _listener, None
    listener.stop()
    for handler in listener.handlers:
        handler.close()
