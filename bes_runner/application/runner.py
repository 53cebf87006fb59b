"""作业运行器：上传输入、提交并启动批处理作业、轮询状态直至终态或超时。"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, assert_never
from uuid import uuid4

from azure.core.exceptions import AzureError

from bes_runner.application.reporter import ResultReporter
from bes_runner.config import Settings
from bes_runner.domain.enums import BatchStatusCode, RunState
from bes_runner.domain.errors import (
    JobTimeoutError,
    LocalFileNotFoundError,
    LocalFileUnreadableError,
    RemoteJobCancelledError,
    RemoteJobFailedError,
    RemoteRequestFailedError,
    RemoteResponseInvalidError,
)
from bes_runner.domain.models import BlobReference, ExecutionRequest, JobStatus, PollOutcome
from bes_runner.infra.batch.client import BatchExecutionClient
from bes_runner.infra.logging.context import bind_log_context
from bes_runner.infra.storage.blob import BlobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunReport:
    """一次运行的结果摘要。"""
    state: RunState
    job_id: str | None = None
    status: JobStatus | None = None
    downloads: dict[str, Path] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return 0 if self.state is RunState.succeeded else 1


class JobRunner:
    def __init__(
        self,
        *,
        settings: Settings,
        batch_client: BatchExecutionClient,
        blob_store: BlobStore,
        reporter: ResultReporter,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._batch_client = batch_client
        self._blob_store = blob_store
        self._reporter = reporter
        self._clock = clock
        self._sleep = sleep

    def upload_input(self, local_path: Path, blob_name: str, container_name: str) -> None:
        """上传本地输入文件；文件不存在时在任何网络调用之前失败。"""
        if not local_path.is_file():
            raise LocalFileNotFoundError(str(local_path))

        self._reporter.step("Uploading the input to blob storage...")
        self._blob_store.ensure_container(container_name)
        try:
            self._blob_store.upload_file(local_path, blob_name, container_name)
        except OSError as exc:
            raise LocalFileUnreadableError(str(local_path), exc.strerror or str(exc)) from exc

    def build_request(self) -> ExecutionRequest:
        """根据配置构造提交请求；配置了 SAS 时输入输出均改用 SAS 寻址。"""
        settings = self._settings
        container = settings.container_name

        def reference(blob_name: str, *, leading_slash: bool) -> BlobReference:
            if settings.uses_sas():
                return BlobReference.from_sas(
                    base_location=settings.storage_sas_base_url or "",
                    relative_location=f"{container}/{blob_name}",
                    sas_blob_token=settings.storage_sas_token or "",
                )
            prefix = "/" if leading_slash else ""
            return BlobReference.from_connection_string(
                settings.storage_connection_string,
                f"{prefix}{container}/{blob_name}",
            )

        return ExecutionRequest(
            inputs={settings.input_name: reference(settings.remote_blob_name, leading_slash=False)},
            outputs={
                name: reference(blob_name, leading_slash=True)
                for name, blob_name in settings.output_blobs().items()
            },
            global_parameters=settings.global_parameters,
        )

    def submit_job(self, request: ExecutionRequest) -> str:
        self._reporter.step("Submitting the job...")
        job_id = self._batch_client.submit_job(request)
        self._reporter.job_id(job_id)
        return job_id

    def start_job(self, job_id: str) -> None:
        self._reporter.step("Starting the job...")
        self._batch_client.start_job(job_id)

    def poll_until_terminal(self, job_id: str) -> PollOutcome:
        """固定间隔轮询作业状态。

        超时判断位于拿到状态之后、按状态分派之前：超时则尽力删除作业并结束循环，
        但同一轮拿到的终态仍按正常分支输出。
        """
        started = self._clock()
        timeout = self._settings.timeout_seconds
        while True:
            self._reporter.step("Checking the job status...")
            status = self._batch_client.get_job_status(job_id)
            code = status.status_code
            timed_out = self._clock() - started > timeout

            if timed_out:
                self._reporter.timed_out(job_id)
                logger.warning(
                    "job poll timed out",
                    extra={"event": "job.poll.timeout", "payload_preview": {"timeout_seconds": timeout}},
                )
                self._batch_client.delete_job(job_id)

            match code:
                case BatchStatusCode.not_started:
                    self._reporter.not_started(job_id)
                case BatchStatusCode.running:
                    self._reporter.running(job_id)
                case BatchStatusCode.failed:
                    self._reporter.failed(job_id, status.details)
                case BatchStatusCode.cancelled:
                    self._reporter.cancelled(job_id)
                case BatchStatusCode.finished:
                    self._reporter.finished(job_id)
                    self._check_declared_outputs(status)
                    self._reporter.report_results(status)
                case _:
                    assert_never(code)

            logger.debug(
                "job status polled",
                extra={"event": "job.poll.status", "payload_preview": {"status_code": code.value}},
            )
            if timed_out or code.is_terminal:
                return PollOutcome(status=status, timed_out=timed_out)
            self._sleep(self._settings.poll_interval_seconds)

    def _check_declared_outputs(self, status: JobStatus) -> None:
        missing = sorted(set(self._settings.output_blobs()) - set(status.results or {}))
        if missing:
            logger.warning(
                "finished job is missing declared outputs",
                extra={"event": "job.results.incomplete", "payload_preview": {"missing": missing}},
            )

    def _raise_for_outcome(self, job_id: str, outcome: PollOutcome) -> None:
        # 同一轮出现的终态优先于超时。
        code = outcome.status.status_code
        if code is BatchStatusCode.finished:
            return
        if code is BatchStatusCode.failed:
            raise RemoteJobFailedError(job_id, outcome.status.details)
        if code is BatchStatusCode.cancelled:
            raise RemoteJobCancelledError(job_id)
        if outcome.timed_out:
            raise JobTimeoutError(job_id, self._settings.timeout_seconds)
        raise AssertionError(f"poll loop ended on non-terminal status: {code!r}")

    def download_results(self, status: JobStatus, download_dir: Path) -> dict[str, Path]:
        """将 Finished 状态中的结果 blob 下载到本地目录。"""
        downloads: dict[str, Path] = {}
        for name, reference in (status.results or {}).items():
            if not reference.relative_location:
                continue
            destination = download_dir / Path(reference.relative_location).name
            # 不同容器下的同名 blob 以输出名作前缀区分。
            if destination in downloads.values():
                destination = download_dir / f"{name}_{destination.name}"
            downloads[name] = self._blob_store.download(reference, destination)
            self._reporter.downloaded(name, destination)
        return downloads

    def run(self) -> RunReport:
        """按顺序执行上传、提交、启动、轮询与结果输出，并返回最终状态。"""
        settings = self._settings
        job_id: str | None = None
        with bind_log_context(run_id=uuid4().hex):
            logger.info(
                "run started",
                extra={
                    "event": "run.started",
                    "payload_preview": {
                        "input": str(settings.local_input_path),
                        "container": settings.container_name,
                        "blob": settings.remote_blob_name,
                    },
                },
            )
            try:
                self.upload_input(settings.local_input_path, settings.remote_blob_name, settings.container_name)
                request = self.build_request()
                job_id = self.submit_job(request)
                with bind_log_context(job_id=job_id):
                    self.start_job(job_id)
                    outcome = self.poll_until_terminal(job_id)
                    self._raise_for_outcome(job_id, outcome)
                    report = RunReport(state=RunState.succeeded, job_id=job_id, status=outcome.status)
                    if settings.download_dir is not None:
                        try:
                            report.downloads = self.download_results(outcome.status, settings.download_dir)
                        except (AzureError, OSError, ValueError) as exc:
                            self._reporter.error(f"Downloading results failed: {exc}")
                            report.state = RunState.failed
                            logger.error(
                                "result download failed",
                                extra={
                                    "event": "job.results.download.failed",
                                    "external_service": "blob",
                                    "error_type": type(exc).__name__,
                                    "error": str(exc),
                                },
                            )
            except LocalFileNotFoundError as exc:
                self._reporter.error(str(exc))
                report = self._failed_report(RunState.input_missing, job_id, exc)
            except LocalFileUnreadableError as exc:
                self._reporter.error(str(exc))
                report = self._failed_report(RunState.input_unreadable, job_id, exc)
            except RemoteRequestFailedError as exc:
                self._reporter.request_failed(exc)
                report = self._failed_report(RunState.request_failed, job_id, exc)
            except RemoteResponseInvalidError as exc:
                self._reporter.error(str(exc))
                report = self._failed_report(RunState.invalid_response, job_id, exc)
            except RemoteJobFailedError as exc:
                report = self._failed_report(RunState.failed, job_id, exc)
            except RemoteJobCancelledError as exc:
                report = self._failed_report(RunState.cancelled, job_id, exc)
            except JobTimeoutError as exc:
                report = self._failed_report(RunState.timed_out, job_id, exc)
            except Exception as exc:
                logger.exception(
                    "run aborted",
                    extra={"event": "run.aborted", "error_type": type(exc).__name__, "error": str(exc)},
                )
                raise

            logger.info(
                "run finished",
                extra={"event": "run.finished", "job_id": job_id, "payload_preview": {"state": report.state.value}},
            )
            return report

    @staticmethod
    def _failed_report(state: RunState, job_id: str | None, exc: Exception) -> RunReport:
        logger.error(
            "run failed",
            extra={
                "event": "run.failed",
                "job_id": job_id,
                "error_type": type(exc).__name__,
                "error": str(exc),
                "payload_preview": {"state": state.value},
            },
        )
        return RunReport(state=state, job_id=job_id)
