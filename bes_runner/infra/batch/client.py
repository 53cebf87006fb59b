"""批处理执行服务 HTTP 客户端：封装提交、启动、状态查询与删除接口。"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from pydantic import ValidationError

from bes_runner.domain.errors import RemoteRequestFailedError, RemoteResponseInvalidError
from bes_runner.domain.models import ExecutionRequest, JobStatus

logger = logging.getLogger(__name__)


class BatchExecutionClient:
    """Batch Execution Service 同步 HTTP 客户端封装。"""
    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        api_version: str = "2.0",
        timeout_seconds: int = 30,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._api_version = api_version
        self._closed = False
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    def _client_or_raise(self) -> httpx.Client:
        """返回可用客户端；若已关闭则抛出异常。"""
        if self._closed:
            raise RuntimeError("BatchExecutionClient is already closed")
        return self._client

    def _url(self, *segments: str) -> str:
        return "/".join([self._endpoint, *segments])

    def close(self) -> None:
        """关闭底层 HTTP 客户端连接池。"""
        if self._closed:
            return
        self._client.close()
        self._closed = True

    def _request(
        self,
        *,
        method: str,
        url: str,
        op: str,
        json_body: dict[str, Any] | None = None,
        payload_preview: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """发送 HTTP 请求并记录结构化日志；非 2xx 响应转换为 RemoteRequestFailedError。"""
        started = time.perf_counter()
        try:
            response = self._client_or_raise().request(
                method,
                url,
                params={"api-version": self._api_version},
                json=json_body,
            )
        except httpx.HTTPError as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.error(
                "batch request transport error",
                extra={
                    "event": "batch.request.failed",
                    "external_service": "batch",
                    "op": op,
                    "duration_ms": duration_ms,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "payload_preview": payload_preview,
                },
            )
            raise
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        if not response.is_success:
            logger.error(
                "batch request failed",
                extra={
                    "event": "batch.request.failed",
                    "external_service": "batch",
                    "op": op,
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "payload_preview": payload_preview,
                },
            )
            raise RemoteRequestFailedError(
                op=op,
                status_code=response.status_code,
                headers=response.headers,
                body=response.text,
            )
        logger.info(
            "batch request completed",
            extra={
                "event": "batch.request.completed",
                "external_service": "batch",
                "op": op,
                "duration_ms": duration_ms,
                "status_code": response.status_code,
            },
        )
        return response

    @staticmethod
    def _invalid_response(op: str, response: httpx.Response, exc: Exception) -> RemoteResponseInvalidError:
        logger.error(
            "batch response could not be decoded",
            extra={
                "event": "batch.response.invalid",
                "external_service": "batch",
                "op": op,
                "status_code": response.status_code,
                "error_type": type(exc).__name__,
            },
        )
        return RemoteResponseInvalidError(op=op, body=response.text, reason=str(exc).splitlines()[0])

    def submit_job(self, request: ExecutionRequest) -> str:
        """提交批处理作业并返回服务端分配的作业 ID。"""
        response = self._request(
            method="POST",
            url=self._url(),
            op="job.submit",
            json_body=request.to_wire(),
            payload_preview={
                "inputs": list(request.inputs),
                "outputs": list(request.outputs),
                "global_parameters": sorted(request.global_parameters),
            },
        )
        # 响应体为 JSON 字符串形式的作业 ID，格式不做校验。
        try:
            return str(response.json())
        except ValueError as exc:
            raise self._invalid_response("job.submit", response, exc) from exc

    def start_job(self, job_id: str) -> None:
        self._request(
            method="POST",
            url=self._url(job_id, "start"),
            op="job.start",
            payload_preview={"job_id": job_id},
        )

    def get_job_status(self, job_id: str) -> JobStatus:
        response = self._request(
            method="GET",
            url=self._url(job_id),
            op="job.status",
            payload_preview={"job_id": job_id},
        )
        try:
            return JobStatus.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise self._invalid_response("job.status", response, exc) from exc

    def delete_job(self, job_id: str) -> None:
        """尽力删除作业：响应状态与传输异常都只记录日志，不向上抛出。"""
        try:
            self._request(
                method="DELETE",
                url=self._url(job_id),
                op="job.delete",
                payload_preview={"job_id": job_id},
            )
        except (RemoteRequestFailedError, httpx.HTTPError) as exc:
            logger.warning(
                "best-effort job delete failed",
                extra={
                    "event": "batch.job.delete.ignored",
                    "external_service": "batch",
                    "op": "job.delete",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
