"""
OpenAI Images 同步生图适配器

接口一次返回结果，submit 内完成生成并缓存终态，poll 直接取回。
"""

import json
import threading
import uuid
from typing import Any, Dict, Optional

import requests

from .base import (
    ImageProvider,
    JobStatus,
    ProviderError,
    AUTH_FAILED,
    INSUFFICIENT_BALANCE,
    RATE_LIMITED,
    INVALID_INPUT,
    UNAVAILABLE,
)

DEFAULT_PROMPT = (
    "Create a professional YouTube thumbnail cover based on this collage. "
    "Make it visually appealing, modern, and optimized for video thumbnails. "
    "Ensure high quality and attention-grabbing design."
)

_HTTP_STATUS_KINDS = {
    400: INVALID_INPUT,
    401: AUTH_FAILED,
    402: INSUFFICIENT_BALANCE,
    429: RATE_LIMITED,
}


class OpenAIImageProvider(ImageProvider):
    name = "openai"
    default_prompt = DEFAULT_PROMPT

    def __init__(self, settings):
        super().__init__(settings)
        self._results: Dict[str, JobStatus] = {}
        self._lock = threading.Lock()

    def _generate(self, prompt: str, options: Dict[str, Any]) -> JobStatus:
        body = {
            "model": options.get("model") or self.settings.model or "dall-e-3",
            "prompt": self.resolve_prompt(prompt),
            "n": 1,
            "size": options.get("size") or self.settings.image_size or "1024x1024",
        }
        endpoint = f"{str(self.settings.base_url or 'https://api.openai.com/v1').rstrip('/')}/images/generations"
        try:
            resp = requests.post(
                endpoint,
                data=json.dumps(body),
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.settings.api_key}",
                },
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as e:
            raise ProviderError(UNAVAILABLE, f"failed to send request: {e}") from e

        if resp.status_code != 200:
            kind = _HTTP_STATUS_KINDS.get(resp.status_code, UNAVAILABLE)
            raise ProviderError(kind, f"OpenAI API error: {resp.text[:300]} (status: {resp.status_code})")

        try:
            payload = resp.json()
        except ValueError as e:
            raise ProviderError(UNAVAILABLE, f"failed to unmarshal response: {e}") from e
        if not isinstance(payload, dict):
            raise ProviderError(UNAVAILABLE, "unexpected response body")

        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else ""
            return JobStatus.failed(f"OpenAI API error: {message or error}")
        data = payload.get("data") or []
        if not isinstance(data, list) or not data or not isinstance(data[0], dict) or not data[0].get("url"):
            return JobStatus.failed("no image URL in response")
        return JobStatus.succeeded(str(data[0]["url"]))

    def submit(self, artifact_url: str, prompt: str = "", options: Optional[Dict[str, Any]] = None) -> str:
        # 该接口只接收文本提示词，artifact_url 不会被服务商读取
        status = self._generate(prompt, options or {})
        job_id = f"openai-{uuid.uuid4().hex}"
        with self._lock:
            self._results[job_id] = status
        return job_id

    def poll(self, job_id: str) -> JobStatus:
        with self._lock:
            status = self._results.pop(job_id, None)
        if status is None:
            return JobStatus.failed(f"unknown job: {job_id}")
        return status
