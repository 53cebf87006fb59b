"""运行错误类型：每一种均为本次运行的终止原因，不做重试。"""

from __future__ import annotations

from collections.abc import Mapping


class RunnerError(RuntimeError):
    pass


class LocalFileNotFoundError(RunnerError, FileNotFoundError):
    def __init__(self, path: str) -> None:
        super().__init__(f"File {path} doesn't exist on local computer.")
        self.path = path


class RemoteRequestFailedError(RunnerError):
    """批处理服务返回非 2xx 响应，保留状态码、响应头与响应体用于诊断。"""

    def __init__(self, *, op: str, status_code: int, headers: Mapping[str, str], body: str) -> None:
        super().__init__(f"{op} failed with status code {status_code}")
        self.op = op
        self.status_code = status_code
        self.headers = dict(headers)
        self.body = body


class RemoteJobFailedError(RunnerError):
    def __init__(self, job_id: str, details: str | None) -> None:
        super().__init__(f"job {job_id} failed: {details}")
        self.job_id = job_id
        self.details = details


class RemoteJobCancelledError(RunnerError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} cancelled")
        self.job_id = job_id


class JobTimeoutError(RunnerError, TimeoutError):
    def __init__(self, job_id: str, timeout_seconds: float) -> None:
        super().__init__(f"job {job_id} timed out after {timeout_seconds}s")
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds


class LocalFileUnreadableError(RunnerError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"File {path} can't be read: {reason}")
        self.path = path


class RemoteResponseInvalidError(RunnerError):
    """2xx 响应体无法解码为约定结构（非 JSON 或未知状态码）。"""

    def __init__(self, *, op: str, body: str, reason: str) -> None:
        super().__init__(f"{op} returned an unreadable response: {reason}")
        self.op = op
        self.body = body
