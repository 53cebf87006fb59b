"""测试公共夹具：内存 Blob 存储桩、批处理服务 MockTransport 与可控时钟。"""

from __future__ import annotations

import io
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError

from bes_runner.application.reporter import ResultReporter
from bes_runner.application.runner import JobRunner
from bes_runner.config import Settings
from bes_runner.infra.batch.client import BatchExecutionClient
from bes_runner.infra.storage.blob import BlobStore

ENDPOINT = "https://bes.example.net/workspaces/ws1/services/svc1/jobs"
CONNECTION_STRING = "DefaultEndpointsProtocol=https;AccountName=acct;AccountKey=secretkey=="


class _FakeDownload:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def readinto(self, stream: Any) -> int:
        stream.write(self._data)
        return len(self._data)


class FakeBlobClient:
    def __init__(self, store: "FakeBlobService", container: str, blob: str) -> None:
        self._store = store
        self._container = container
        self._blob = blob
        self.closed = False

    def download_blob(self) -> _FakeDownload:
        try:
            return _FakeDownload(self._store.containers[self._container][self._blob])
        except KeyError as exc:
            raise ResourceNotFoundError(message=f"{self._container}/{self._blob} not found") from exc

    def close(self) -> None:
        self.closed = True


class FakeContainerClient:
    def __init__(self, store: "FakeBlobService", name: str) -> None:
        self._store = store
        self._name = name

    def create_container(self) -> None:
        self._store.calls.append(("create_container", self._name))
        if self._name in self._store.containers:
            raise ResourceExistsError(message="ContainerAlreadyExists")
        self._store.containers[self._name] = {}

    def upload_blob(self, name: str, data: Any, overwrite: bool = False) -> None:
        self._store.calls.append(("upload_blob", f"{self._name}/{name}"))
        blobs = self._store.containers[self._name]
        if name in blobs and not overwrite:
            raise ResourceExistsError(message="BlobAlreadyExists")
        blobs[name] = data.read()


class FakeBlobService:
    """内存版 BlobServiceClient，只实现运行器用到的方法。"""

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, bytes]] = {}
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    def get_container_client(self, name: str) -> FakeContainerClient:
        return FakeContainerClient(self, name)

    def get_blob_client(self, container: str, blob: str) -> FakeBlobClient:
        return FakeBlobClient(self, container, blob)

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """可控单调时钟；sleep 推进时间而不真正等待。"""

    def __init__(self, step: float = 0.0) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._step = step

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds + self._step


@dataclass
class BatchServiceStub:
    """按顺序返回状态响应的批处理服务桩，记录收到的全部请求。"""
    statuses: list[dict[str, Any]] = field(default_factory=list)
    job_id: str = "job-42"
    submit_response: httpx.Response | None = None
    start_response: httpx.Response | None = None
    status_error: httpx.Response | None = None
    requests: list[httpx.Request] = field(default_factory=list)

    def methods(self) -> list[tuple[str, str]]:
        return [(item.method, item.url.path.rsplit("/jobs", 1)[-1]) for item in self.requests]

    def count(self, method: str) -> int:
        return sum(1 for item in self.requests if item.method == method)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        suffix = request.url.path.rsplit("/jobs", 1)[-1]
        if request.method == "POST" and suffix == "":
            return self.submit_response or httpx.Response(200, json=self.job_id)
        if request.method == "POST" and suffix == f"/{self.job_id}/start":
            return self.start_response or httpx.Response(200)
        if request.method == "GET" and suffix == f"/{self.job_id}":
            if self.status_error is not None:
                return self.status_error
            payload = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=payload)
        if request.method == "DELETE" and suffix == f"/{self.job_id}":
            return httpx.Response(200)
        return httpx.Response(404, text="unexpected request")

    def client(self) -> BatchExecutionClient:
        return BatchExecutionClient(ENDPOINT, "abc123", transport=httpx.MockTransport(self.handler))


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    input_path = tmp_path / "newdata.csv"
    if not input_path.exists():
        input_path.write_text("a,b\n1,2\n", encoding="utf-8")
    values: dict[str, Any] = {
        "endpoint": ENDPOINT,
        "api_key": "abc123",
        "storage_connection_string": CONNECTION_STRING,
        "container_name": "mycontainer",
        "local_input_path": input_path,
        "remote_blob_name": "newdatablob.csv",
        "timeout_seconds": 120.0,
        "poll_interval_seconds": 1.0,
        "log_dir": tmp_path / "logs",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@dataclass
class RunnerHarness:
    runner: JobRunner
    service: BatchServiceStub
    blobs: FakeBlobService
    clock: FakeClock
    output: io.StringIO

    @property
    def printed(self) -> str:
        return self.output.getvalue()


@pytest.fixture
def build_runner(tmp_path: Path) -> Callable[..., RunnerHarness]:
    def _build(
        service: BatchServiceStub,
        *,
        clock: FakeClock | None = None,
        service_factory: Callable[[str], Any] | None = None,
        **overrides: Any,
    ) -> RunnerHarness:
        settings = make_settings(tmp_path, **overrides)
        blobs = FakeBlobService()
        clock = clock or FakeClock()
        output = io.StringIO()
        runner = JobRunner(
            settings=settings,
            batch_client=service.client(),
            blob_store=BlobStore(
                settings.storage_connection_string,
                service_factory=service_factory or (lambda _conn: blobs),
            ),
            reporter=ResultReporter(output),
            clock=clock,
            sleep=clock.sleep,
        )
        return RunnerHarness(runner=runner, service=service, blobs=blobs, clock=clock, output=output)

    return _build


def finished_payload() -> dict[str, Any]:
    return {
        "StatusCode": "Finished",
        "Results": {
            "trainedmodel": {
                "ConnectionString": None,
                "RelativeLocation": "/mycontainer/trainedmodelresults.ilearner",
                "BaseLocation": "https://acct.blob.core.windows.net/",
                "SasBlobToken": "?sv=2015&sig=abc",
            },
            "evaluationresult": {
                "ConnectionString": None,
                "RelativeLocation": "/mycontainer/evaluationresultresults.csv",
                "BaseLocation": "https://acct.blob.core.windows.net/",
                "SasBlobToken": "?sv=2015&sig=def",
            },
        },
        "Details": None,
    }


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))
