"""
生图服务商统一契约：submit 提交任务，poll 查询状态。

同步出图的服务商在 submit 内完成生成，poll 直接返回终态，
这样编排层的状态机对所有服务商保持一致。
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

# submit 失败类型
AUTH_FAILED = "AuthFailed"
INSUFFICIENT_BALANCE = "InsufficientBalance"
RATE_LIMITED = "RateLimited"
INVALID_INPUT = "InvalidInput"
UNAVAILABLE = "Unavailable"

SUBMIT_ERROR_KINDS = {
    AUTH_FAILED,
    INSUFFICIENT_BALANCE,
    RATE_LIMITED,
    INVALID_INPUT,
    UNAVAILABLE,
}

JOB_PENDING = "pending"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"


class ProviderError(Exception):
    def __init__(self, kind: str, detail: str = ""):
        self.kind = kind if kind in SUBMIT_ERROR_KINDS else UNAVAILABLE
        self.detail = str(detail or "")
        super().__init__(f"{self.kind}: {self.detail}")


@dataclass(frozen=True)
class JobStatus:
    state: str
    result_url: str = ""
    reason: str = ""

    @classmethod
    def pending(cls) -> "JobStatus":
        return cls(state=JOB_PENDING)

    @classmethod
    def succeeded(cls, result_url: str) -> "JobStatus":
        return cls(state=JOB_SUCCEEDED, result_url=result_url)

    @classmethod
    def failed(cls, reason: str) -> "JobStatus":
        return cls(state=JOB_FAILED, reason=str(reason or "unknown error"))

    @property
    def is_terminal(self) -> bool:
        return self.state in (JOB_SUCCEEDED, JOB_FAILED)


class ImageProvider:
    """服务商适配器基类"""

    name = ""
    default_prompt = ""

    def __init__(self, settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(getattr(self.settings, "api_key", ""))

    def resolve_prompt(self, prompt: Optional[str]) -> str:
        text = str(prompt or "").strip()
        return text or self.default_prompt

    def submit(self, artifact_url: str, prompt: str = "", options: Optional[Dict[str, Any]] = None) -> str:
        raise NotImplementedError

    def poll(self, job_id: str) -> JobStatus:
        raise NotImplementedError
