"""
Nano Banana（kie.ai jobs API）异步生图适配器

- createTask 提交任务，传入暂存区的公网图片 URL
- recordInfo 轮询任务状态：waiting / success / fail
"""

import json
from typing import Any, Dict, Optional

import requests

from core.log import get_logger
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

logger = get_logger(__name__)

DEFAULT_PROMPT = (
    "Transform this collage into a professional YouTube thumbnail cover. "
    "Make it visually striking, modern, and optimized for video thumbnails. "
    "Ensure high quality, attention-grabbing design with good contrast and readable text. "
    "Maintain the key elements from the collage but enhance them professionally. "
    "Use 16:9 aspect ratio suitable for YouTube thumbnails."
)

_HTTP_STATUS_KINDS = {
    401: (AUTH_FAILED, "authentication failed: check your NANO_BANANA_API_KEY"),
    402: (INSUFFICIENT_BALANCE, "insufficient account balance"),
    429: (RATE_LIMITED, "rate limit exceeded, please try again later"),
}

_BODY_CODE_KINDS = {
    400: (INVALID_INPUT, "invalid request parameters"),
    401: (AUTH_FAILED, "authentication failed"),
    402: (INSUFFICIENT_BALANCE, "insufficient account balance"),
    422: (INVALID_INPUT, "parameter validation failed"),
    429: (RATE_LIMITED, "rate limit exceeded"),
    500: (UNAVAILABLE, "internal server error"),
}


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_result_url(result_json: str) -> str:
    if not result_json:
        raise ValueError("empty result JSON in response")
    payload = json.loads(result_json)
    if not isinstance(payload, dict):
        raise ValueError("unexpected result JSON in response")
    urls = payload.get("resultUrls") or []
    if not urls:
        raise ValueError("no result URLs in response")
    return str(urls[0])


class NanoBananaProvider(ImageProvider):
    name = "nanobanana"
    default_prompt = DEFAULT_PROMPT

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.api_key}",
        }

    def _endpoint(self, path: str) -> str:
        base = str(self.settings.base_url or "https://api.kie.ai").rstrip("/")
        return f"{base}{path}"

    def build_task_body(self, artifact_url: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        opts = options or {}
        return {
            "model": opts.get("model") or self.settings.model or "google/nano-banana-edit",
            "input": {
                "prompt": self.resolve_prompt(prompt),
                "image_urls": [artifact_url],
                "output_format": opts.get("output_format") or self.settings.output_format or "png",
                "image_size": opts.get("image_size") or self.settings.image_size or "16:9",
            },
        }

    def submit(self, artifact_url: str, prompt: str = "", options: Optional[Dict[str, Any]] = None) -> str:
        body = self.build_task_body(artifact_url, prompt, options)
        try:
            resp = requests.post(
                self._endpoint("/api/v1/jobs/createTask"),
                data=json.dumps(body),
                headers=self._headers(),
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as e:
            raise ProviderError(UNAVAILABLE, f"failed to send request: {e}") from e

        if resp.status_code in _HTTP_STATUS_KINDS:
            kind, message = _HTTP_STATUS_KINDS[resp.status_code]
            raise ProviderError(kind, message)
        if resp.status_code != 200:
            raise ProviderError(UNAVAILABLE, f"nano banana API error: {resp.text[:300]} (status: {resp.status_code})")

        try:
            payload = resp.json()
        except ValueError as e:
            raise ProviderError(UNAVAILABLE, f"failed to unmarshal response: {e}") from e
        if not isinstance(payload, dict):
            raise ProviderError(UNAVAILABLE, "unexpected response body")

        code = _to_int(payload.get("code"), 0)
        if code != 200:
            msg = str(payload.get("msg") or "")
            kind, prefix = _BODY_CODE_KINDS.get(code, (UNAVAILABLE, ""))
            detail = f"{prefix}: {msg}" if prefix else msg
            raise ProviderError(kind, f"nano banana API error: {detail} (code: {code})")

        data = payload.get("data")
        task_id = str((data.get("taskId") if isinstance(data, dict) else "") or "")
        if not task_id:
            raise ProviderError(UNAVAILABLE, "no task ID in response")
        return task_id

    def poll(self, job_id: str) -> JobStatus:
        try:
            resp = requests.get(
                self._endpoint("/api/v1/jobs/recordInfo"),
                params={"taskId": job_id},
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
                timeout=self.settings.poll_timeout_seconds,
            )
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            # 单次查询失败不终止任务，下一轮继续
            logger.warning("Nano Banana 查询失败，稍后重试 task_id=%s: %s", job_id, e)
            return JobStatus.pending()
        if not isinstance(payload, dict):
            logger.warning("Nano Banana 返回格式异常，稍后重试 task_id=%s", job_id)
            return JobStatus.pending()

        code = _to_int(payload.get("code"), 0)
        if code != 200:
            return JobStatus.failed(f"nano banana API error: {payload.get('msg') or ''} (code: {code})")

        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        state = str(data.get("state") or "")
        if state == "success":
            try:
                url = _parse_result_url(str(data.get("resultJson") or ""))
            except ValueError as e:
                return JobStatus.failed(str(e))
            cost = _to_int(data.get("costTime"), 0)
            if cost > 0:
                logger.info("Nano Banana 任务完成 task_id=%s cost=%sms", job_id, cost)
            return JobStatus.succeeded(url)
        if state == "fail":
            fail_msg = str(data.get("failMsg") or "unknown error")
            return JobStatus.failed(f"task failed: {fail_msg} (failCode: {data.get('failCode') or ''})")
        return JobStatus.pending()
