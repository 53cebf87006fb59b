"""依赖装配模块：按配置创建批处理客户端、Blob 存储与作业运行器，并保证资源释放。"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from bes_runner.application.reporter import ResultReporter
from bes_runner.application.runner import JobRunner
from bes_runner.config import Settings
from bes_runner.infra.batch.client import BatchExecutionClient
from bes_runner.infra.storage.blob import BlobStore

logger = logging.getLogger(__name__)


def build_batch_client(settings: Settings) -> BatchExecutionClient:
    return BatchExecutionClient(
        endpoint=settings.endpoint,
        api_key=settings.api_key,
        api_version=settings.api_version,
        timeout_seconds=settings.request_timeout_seconds,
    )


def build_blob_store(settings: Settings) -> BlobStore:
    return BlobStore(settings.storage_connection_string)


@contextmanager
def job_runner_scope(
    settings: Settings,
    *,
    reporter: ResultReporter | None = None,
    batch_client: BatchExecutionClient | None = None,
    blob_store: BlobStore | None = None,
) -> Iterator[JobRunner]:
    """构建运行器；无论成功、失败还是超时退出，都会关闭 HTTP 客户端与存储客户端。"""
    batch_client = batch_client or build_batch_client(settings)
    blob_store = blob_store or build_blob_store(settings)
    try:
        yield JobRunner(
            settings=settings,
            batch_client=batch_client,
            blob_store=blob_store,
            reporter=reporter or ResultReporter(),
        )
    finally:
        batch_client.close()
        blob_store.close()
        logger.debug("runner resources released", extra={"event": "run.resources.closed"})
