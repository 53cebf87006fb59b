"""领域数据结构定义：Blob 引用、批处理请求与作业状态等值对象。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bes_runner.domain.enums import BatchStatusCode


class BlobReference(BaseModel):
    """Azure Blob 引用：连接串寻址或 BaseLocation + SAS token 寻址。"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    connection_string: str | None = Field(default=None, alias="ConnectionString")
    relative_location: str | None = Field(default=None, alias="RelativeLocation")
    base_location: str | None = Field(default=None, alias="BaseLocation")
    sas_blob_token: str | None = Field(default=None, alias="SasBlobToken")

    @classmethod
    def from_connection_string(cls, connection_string: str, relative_location: str) -> "BlobReference":
        return cls(connection_string=connection_string, relative_location=relative_location)

    @classmethod
    def from_sas(cls, base_location: str, relative_location: str, sas_blob_token: str) -> "BlobReference":
        return cls(base_location=base_location, relative_location=relative_location, sas_blob_token=sas_blob_token)

    @property
    def uses_sas(self) -> bool:
        return bool(self.sas_blob_token)

    def validate_addressing(self) -> "BlobReference":
        """校验恰好使用一种寻址方式；仅用于请求构造，服务端返回值不做此约束。"""
        has_connection = bool(self.connection_string)
        has_sas = bool(self.base_location or self.sas_blob_token)
        if has_connection == has_sas:
            raise ValueError("blob reference must use either a connection string or base location + SAS token")
        if has_sas and not (self.base_location and self.sas_blob_token):
            raise ValueError("SAS addressing requires both BaseLocation and SasBlobToken")
        if not self.relative_location:
            raise ValueError("RelativeLocation is required")
        return self

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExecutionRequest(BaseModel):
    """批处理提交请求体。"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    inputs: dict[str, BlobReference] = Field(default_factory=dict, alias="Inputs")
    outputs: dict[str, BlobReference] = Field(default_factory=dict, alias="Outputs")
    global_parameters: dict[str, str] = Field(default_factory=dict, alias="GlobalParameters")

    @field_validator("inputs", "outputs")
    @classmethod
    def _single_addressing_mode(cls, value: dict[str, BlobReference]) -> dict[str, BlobReference]:
        for reference in value.values():
            reference.validate_addressing()
        return value

    def to_wire(self) -> dict[str, Any]:
        return {
            "Inputs": {name: ref.to_wire() for name, ref in self.inputs.items()},
            "Outputs": {name: ref.to_wire() for name, ref in self.outputs.items()},
            "GlobalParameters": dict(self.global_parameters),
        }


class JobStatus(BaseModel):
    """一次轮询得到的作业状态快照，每次轮询整体替换。"""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    status_code: BatchStatusCode = Field(alias="StatusCode")
    results: dict[str, BlobReference] | None = Field(default=None, alias="Results")
    details: str | None = Field(default=None, alias="Details")

    @field_validator("status_code", mode="before")
    @classmethod
    def _parse_status_code(cls, value: Any) -> BatchStatusCode:
        return BatchStatusCode.parse(value)


@dataclass(slots=True)
class PollOutcome:
    """轮询结束时的最后状态与是否超时。"""
    status: JobStatus
    timed_out: bool
