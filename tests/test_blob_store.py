"""Blob 存储适配器测试：容器幂等创建、覆盖上传与 SAS 下载地址拼接。"""

from __future__ import annotations

from pathlib import Path

import pytest
from azure.core.exceptions import ResourceNotFoundError

from bes_runner.domain.models import BlobReference
from bes_runner.infra.storage.blob import BlobStore, sas_blob_url, split_relative_location
from conftest import CONNECTION_STRING, FakeBlobService


def test_ensure_container_is_idempotent() -> None:
    service = FakeBlobService()
    store = BlobStore(CONNECTION_STRING, service_factory=lambda _conn: service)

    store.ensure_container("mycontainer")
    store.ensure_container("mycontainer")

    assert service.calls == [("create_container", "mycontainer"), ("create_container", "mycontainer")]
    assert service.containers == {"mycontainer": {}}


def test_service_client_built_lazily_and_closed() -> None:
    built: list[str] = []
    service = FakeBlobService()

    def factory(conn: str) -> FakeBlobService:
        built.append(conn)
        return service

    store = BlobStore(CONNECTION_STRING, service_factory=factory)
    assert built == []

    store.ensure_container("c")
    store.ensure_container("c")
    store.close()

    assert built == [CONNECTION_STRING]
    assert service.closed is True


def test_sas_download_uses_composed_url(tmp_path: Path) -> None:
    service = FakeBlobService()
    service.containers["results"] = {"scored.csv": b"id,score\n1,0.7\n"}
    urls: list[str] = []

    def url_factory(url: str):
        urls.append(url)
        return service.get_blob_client("results", "scored.csv")

    store = BlobStore(CONNECTION_STRING, service_factory=lambda _conn: service, url_client_factory=url_factory)
    reference = BlobReference.from_sas("https://acct.blob.core.windows.net/", "/results/scored.csv", "?sv=1&sig=s")

    target = store.download(reference, tmp_path / "dl" / "scored.csv")

    assert urls == ["https://acct.blob.core.windows.net/results/scored.csv?sv=1&sig=s"]
    assert target.read_bytes() == b"id,score\n1,0.7\n"


def test_sas_blob_url_normalizes_separators() -> None:
    reference = BlobReference.from_sas("https://acct.blob.core.windows.net", "c/b.csv", "sig=abc")
    assert sas_blob_url(reference) == "https://acct.blob.core.windows.net/c/b.csv?sig=abc"


def test_split_relative_location() -> None:
    assert split_relative_location("/mycontainer/dir/out.csv") == ("mycontainer", "dir/out.csv")
    with pytest.raises(ValueError):
        split_relative_location("/onlycontainer")


def test_download_uses_connection_string_of_reference(tmp_path: Path) -> None:
    """结果引用自带连接串时按该串建客户端，用完即关闭，不影响已配置的客户端。"""
    services: dict[str, FakeBlobService] = {}

    def factory(conn: str) -> FakeBlobService:
        return services.setdefault(conn, FakeBlobService())

    other = "DefaultEndpointsProtocol=https;AccountName=other;AccountKey=k2=="
    factory(other).containers["results"] = {"model.ilearner": b"weights"}
    store = BlobStore(CONNECTION_STRING, service_factory=factory)

    target = store.download(
        BlobReference.from_connection_string(other, "/results/model.ilearner"), tmp_path / "model.ilearner"
    )

    assert target.read_bytes() == b"weights"
    assert services[other].closed is True
    assert CONNECTION_STRING not in services


def test_failed_download_keeps_existing_file_and_leaves_no_partial(tmp_path: Path) -> None:
    service = FakeBlobService()
    service.containers["results"] = {}
    store = BlobStore(CONNECTION_STRING, service_factory=lambda _conn: service)
    destination = tmp_path / "scored.csv"
    destination.write_bytes(b"previous run")

    with pytest.raises(ResourceNotFoundError):
        store.download(BlobReference.from_connection_string(CONNECTION_STRING, "/results/scored.csv"), destination)

    assert destination.read_bytes() == b"previous run"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["scored.csv"]
