"""全局配置模块：从环境变量与 .env 构建运行参数。"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


def _pairs_to_dict(value: str) -> dict[str, str]:
    """将 `name=blob,name=blob` 形式解析为有序字典。"""
    result: dict[str, str] = {}
    for item in _csv_to_list(value):
        name, sep, blob = item.partition("=")
        if not sep or not name.strip() or not blob.strip():
            raise ValueError(f"invalid output mapping entry: {item!r}")
        result[name.strip()] = blob.strip()
    return result


class Settings(BaseSettings):
    """运行配置对象，从 BES_ 前缀环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(
        env_prefix="BES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    endpoint: str = ""
    api_key: str = ""
    api_version: str = "2.0"
    request_timeout_seconds: int = 30

    storage_account_name: str = ""
    storage_account_key: str = ""
    storage_connection_string: str = ""
    # 同时配置 base url 与 token 时改用 SAS 寻址。
    storage_sas_base_url: str | None = None
    storage_sas_token: str | None = None
    container_name: str = ""

    local_input_path: Path = Field(default=Path("input.csv"))
    remote_blob_name: str = "inputblob.csv"
    input_name: str = "newdata"
    outputs: str = "trainedmodel=trainedmodelresults.ilearner,evaluationresult=evaluationresultresults.csv"
    global_parameters: dict[str, str] = Field(default_factory=dict)

    poll_interval_seconds: float = 1.0
    timeout_seconds: float = 120.0
    download_dir: Path | None = None

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_redaction_mode: str = "standard"
    log_payload_preview_chars: int = 2000
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    @field_validator("global_parameters", mode="before")
    @classmethod
    def _parse_global_parameters(cls, value: object) -> object:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        if isinstance(value, dict):
            return {str(key): str(item) for key, item in value.items()}
        return value

    @field_validator("poll_interval_seconds", "timeout_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _derive_connection_string(self) -> "Settings":
        if not self.storage_connection_string and self.storage_account_name and self.storage_account_key:
            self.storage_connection_string = (
                "DefaultEndpointsProtocol=https;"
                f"AccountName={self.storage_account_name};AccountKey={self.storage_account_key}"
            )
        _pairs_to_dict(self.outputs)
        return self

    def output_blobs(self) -> dict[str, str]:
        return _pairs_to_dict(self.outputs)

    def uses_sas(self) -> bool:
        return bool(self.storage_sas_base_url and self.storage_sas_token)

    def missing_required(self) -> list[str]:
        """返回缺失的必填项名称，供入口在联网前统一校验。"""
        missing = [name for name in ("endpoint", "api_key", "container_name") if not getattr(self, name)]
        if not self.storage_connection_string:
            missing.append("storage_connection_string")
        return missing

