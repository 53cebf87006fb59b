"""控制台输出：面向操作员打印步骤进度、作业状态与结果位置。"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TextIO

from bes_runner.domain.errors import RemoteRequestFailedError
from bes_runner.domain.models import JobStatus


class ResultReporter:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream)

    def step(self, text: str) -> None:
        self._print(text)

    def job_id(self, job_id: str) -> None:
        self._print(f"Job ID: {job_id}")

    def not_started(self, job_id: str) -> None:
        self._print(f"Job {job_id} not yet started...")

    def running(self, job_id: str) -> None:
        self._print(f"Job {job_id} running...")

    def failed(self, job_id: str, details: str | None) -> None:
        self._print(f"Job {job_id} failed!")
        self._print(f"Error details: {details or ''}")

    def cancelled(self, job_id: str) -> None:
        self._print(f"Job {job_id} cancelled!")

    def finished(self, job_id: str) -> None:
        self._print(f"Job {job_id} finished!")

    def timed_out(self, job_id: str) -> None:
        self._print(f"Timed out. Deleting job {job_id} ...")

    def request_failed(self, error: RemoteRequestFailedError) -> None:
        """打印失败请求的状态码、响应头与响应体；响应头含请求 ID 与时间戳，便于排查。"""
        self._print(f"The request failed with status code: {error.status_code}")
        for name, value in error.headers.items():
            self._print(f"{name}: {value}")
        self._print(error.body)

    def error(self, text: str) -> None:
        self._print(text)

    def downloaded(self, name: str, path: Path) -> None:
        self._print(f"The result '{name}' was downloaded to {path}")

    def report_results(self, status: JobStatus) -> None:
        """按映射顺序打印每个输出的存储位置字段。"""
        for name, location in (status.results or {}).items():
            self._print(f"The result '{name}' is available at the following Azure Storage location:")
            self._print(f"BaseLocation: {location.base_location or ''}")
            self._print(f"RelativeLocation: {location.relative_location or ''}")
            self._print(f"SasBlobToken: {location.sas_blob_token or ''}")
            self._print()
