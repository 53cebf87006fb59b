"""Azure Blob 存储封装：确保容器存在、上传输入文件与下载结果。"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import BlobClient, BlobServiceClient

from bes_runner.domain.models import BlobReference

logger = logging.getLogger(__name__)


def _build_service_client(connection_string: str) -> BlobServiceClient:
    return BlobServiceClient.from_connection_string(connection_string)


def _build_blob_client_from_url(url: str) -> BlobClient:
    return BlobClient.from_blob_url(url)


def split_relative_location(relative_location: str) -> tuple[str, str]:
    """将 `/container/path/to/blob` 拆分为容器名与 blob 名。"""
    container, _, blob_name = relative_location.strip("/").partition("/")
    if not container or not blob_name:
        raise ValueError(f"relative location has no container/blob parts: {relative_location!r}")
    return container, blob_name


def sas_blob_url(reference: BlobReference) -> str:
    base = (reference.base_location or "").rstrip("/")
    relative = (reference.relative_location or "").lstrip("/")
    token = (reference.sas_blob_token or "").lstrip("?")
    return f"{base}/{relative}?{token}"


class BlobStore:
    """Blob 存储适配器；客户端工厂可注入以便测试替换。"""

    def __init__(
        self,
        connection_string: str,
        *,
        service_factory: Callable[[str], Any] = _build_service_client,
        url_client_factory: Callable[[str], Any] = _build_blob_client_from_url,
    ) -> None:
        self._connection_string = connection_string
        self._service_factory = service_factory
        self._url_client_factory = url_client_factory
        self._service: Any | None = None

    def _service_client(self) -> Any:
        # 延迟创建：本地文件检查失败时不应构建任何网络客户端。
        if self._service is None:
            self._service = self._service_factory(self._connection_string)
        return self._service

    def ensure_container(self, container_name: str) -> None:
        """幂等创建容器，已存在不视为错误。"""
        container = self._service_client().get_container_client(container_name)
        try:
            container.create_container()
            logger.info(
                "blob container created",
                extra={"event": "blob.container.created", "external_service": "blob", "op": "container.create",
                       "payload_preview": {"container": container_name}},
            )
        except ResourceExistsError:
            logger.debug(
                "blob container already exists",
                extra={"event": "blob.container.exists", "external_service": "blob", "op": "container.create",
                       "payload_preview": {"container": container_name}},
            )

    def upload_file(self, local_path: Path, blob_name: str, container_name: str) -> None:
        """上传本地文件到指定 blob，同名 blob 直接覆盖。"""
        started = time.perf_counter()
        container = self._service_client().get_container_client(container_name)
        with local_path.open("rb") as data:
            container.upload_blob(name=blob_name, data=data, overwrite=True)
        logger.info(
            "blob uploaded",
            extra={
                "event": "blob.upload.succeeded",
                "external_service": "blob",
                "op": "blob.upload",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "payload_preview": {
                    "container": container_name,
                    "blob": blob_name,
                    "size_bytes": local_path.stat().st_size,
                },
            },
        )

    def _blob_client(self, reference: BlobReference) -> tuple[Any, Any | None]:
        """返回 blob 客户端以及需要随之关闭的临时客户端。"""
        if reference.uses_sas:
            blob = self._url_client_factory(sas_blob_url(reference))
            return blob, blob
        container_name, blob_name = split_relative_location(reference.relative_location or "")
        connection_string = reference.connection_string or self._connection_string
        if connection_string == self._connection_string:
            return self._service_client().get_blob_client(container=container_name, blob=blob_name), None
        # 结果引用自带的连接串可能指向其他存储账户。
        service = self._service_factory(connection_string)
        return service.get_blob_client(container=container_name, blob=blob_name), service

    def download(self, reference: BlobReference, destination: Path) -> Path:
        """按引用的寻址方式下载 blob；先写入同目录临时文件，成功后再替换目标文件。"""
        blob, owned = self._blob_client(reference)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(f"{destination.name}.part")
        try:
            with partial.open("wb") as handle:
                blob.download_blob().readinto(handle)
            partial.replace(destination)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        finally:
            if owned is not None:
                owned.close()
        logger.info(
            "blob downloaded",
            extra={
                "event": "blob.download.succeeded",
                "external_service": "blob",
                "op": "blob.download",
                "payload_preview": {"relative_location": reference.relative_location, "path": str(destination)},
            },
        )
        return destination

    def close(self) -> None:
        if self._service is not None:
            self._service.close()
            self._service = None
