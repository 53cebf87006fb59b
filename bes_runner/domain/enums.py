"""领域枚举定义：批处理作业状态码与运行终态取值。"""

from __future__ import annotations

from enum import Enum


class BatchStatusCode(str, Enum):
    """远端批处理作业状态码，取值集合封闭。"""
    not_started = "NotStarted"
    running = "Running"
    failed = "Failed"
    cancelled = "Cancelled"
    finished = "Finished"

    @classmethod
    def parse(cls, value: object) -> "BatchStatusCode":
        """兼容服务端以名称或序号两种方式编码状态码。"""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"unknown status code: {value!r}")
        if isinstance(value, int):
            members = list(cls)
            if 0 <= value < len(members):
                return members[value]
            raise ValueError(f"unknown status code: {value!r}")
        text = str(value).strip()
        if text.isdigit():
            return cls.parse(int(text))
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        raise ValueError(f"unknown status code: {value!r}")

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({BatchStatusCode.failed, BatchStatusCode.cancelled, BatchStatusCode.finished})


class RunState(str, Enum):
    """一次运行的最终状态。"""
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"
    timed_out = "timed_out"
    request_failed = "request_failed"
    input_missing = "input_missing"
    input_unreadable = "input_unreadable"
    invalid_response = "invalid_response"
