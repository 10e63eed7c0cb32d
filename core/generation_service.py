"""
封面生成编排

Gating -> Staging -> Submitting -> Polling -> Persisting -> Settling -> Done

- 额度校验不通过直接失败（NoCredits），不暂存、不调用服务商
- 暂存图片在进入 Persisting 前移除；任何失败路径同样移除
- 结果落盘失败时回退到服务商 URL（degraded），不算失败
- 只有在 Settling 成功扣减后才写 GenerationRecord；扣减时发现余额已被并发请求用完，
  结果仍返回给调用方，但不记录扣减（settlement_race）
"""

import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from core.log import get_logger
from core.events import log_event, E
from core.image_service import ImageService, InvalidImage, inspect_image
from core.ledger_service import InsufficientCredit, check_eligibility, settle_one_credit
from core.models.generation import GenerationRecord
from core.providers import (
    ImageProvider,
    ProviderError,
    ProviderNotConfigured,
    UnknownProvider,
    JOB_SUCCEEDED,
    AUTH_FAILED,
    INSUFFICIENT_BALANCE,
    RATE_LIMITED,
    INVALID_INPUT,
    UNAVAILABLE,
    get_provider,
    normalize_provider_name,
)
from core.staging_service import StagingCache, StagingError

logger = get_logger(__name__)

STATE_GATING = "Gating"
STATE_STAGING = "Staging"
STATE_SUBMITTING = "Submitting"
STATE_POLLING = "Polling"
STATE_PERSISTING = "Persisting"
STATE_SETTLING = "Settling"
STATE_DONE = "Done"
STATE_FAILED = "Failed"

KIND_NO_CREDITS = "NoCredits"
KIND_PROVIDER_AUTH_FAILED = "ProviderAuthFailed"
KIND_PROVIDER_INSUFFICIENT_BALANCE = "ProviderInsufficientBalance"
KIND_PROVIDER_RATE_LIMITED = "ProviderRateLimited"
KIND_PROVIDER_INVALID_INPUT = "ProviderInvalidInput"
KIND_PROVIDER_UNAVAILABLE = "ProviderUnavailable"
KIND_PROVIDER_ERROR = "ProviderError"
KIND_PROVIDER_TIMEOUT = "ProviderTimeout"
KIND_STAGING_FAILURE = "StagingFailure"
KIND_INVALID_IMAGE = "InvalidImage"
KIND_UNKNOWN_PROVIDER = "UnknownProvider"
KIND_PROVIDER_NOT_CONFIGURED = "ProviderNotConfigured"

_SUBMIT_KINDS = {
    AUTH_FAILED: KIND_PROVIDER_AUTH_FAILED,
    INSUFFICIENT_BALANCE: KIND_PROVIDER_INSUFFICIENT_BALANCE,
    RATE_LIMITED: KIND_PROVIDER_RATE_LIMITED,
    INVALID_INPUT: KIND_PROVIDER_INVALID_INPUT,
    UNAVAILABLE: KIND_PROVIDER_UNAVAILABLE,
}

_KIND_HTTP_STATUS = {
    KIND_NO_CREDITS: 402,
    KIND_PROVIDER_AUTH_FAILED: 401,
    KIND_PROVIDER_INSUFFICIENT_BALANCE: 401,
    KIND_PROVIDER_RATE_LIMITED: 429,
    KIND_PROVIDER_INVALID_INPUT: 400,
    KIND_INVALID_IMAGE: 400,
    KIND_UNKNOWN_PROVIDER: 400,
    KIND_PROVIDER_NOT_CONFIGURED: 400,
    KIND_PROVIDER_TIMEOUT: 504,
}


class GenerationError(Exception):
    def __init__(self, kind: str, detail: str = "", state: str = ""):
        self.kind = kind
        self.detail = str(detail or kind)
        self.state = state
        super().__init__(f"{kind}: {self.detail}")

    @property
    def http_status(self) -> int:
        return _KIND_HTTP_STATUS.get(self.kind, 500)


@dataclass
class GenerationOutcome:
    id: str
    image_url: str
    provider: str
    provider_url: str
    degraded: bool = False
    settlement_race: bool = False
    used_free: Optional[bool] = None
    state: str = STATE_DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image_url": self.image_url,
            "degraded": self.degraded,
        }


def _fail(account_id: str, kind: str, detail: str, state: str, level: str = "warning") -> GenerationError:
    log_event(logger, E.GENERATION_FAIL, level=level, account_id=account_id, kind=kind, state=state, detail=detail)
    return GenerationError(kind, detail, state=state)


def resolve_provider(provider_name: str, app_settings) -> ImageProvider:
    try:
        return get_provider(provider_name, app_settings)
    except UnknownProvider as e:
        raise GenerationError(KIND_UNKNOWN_PROVIDER, str(e), state=STATE_GATING) from e
    except ProviderNotConfigured as e:
        raise GenerationError(KIND_PROVIDER_NOT_CONFIGURED, str(e), state=STATE_GATING) from e


def _poll_until_terminal(
    provider: ImageProvider,
    job_id: str,
    account_id: str,
    interval: float,
    max_attempts: int,
    sleep: Callable[[float], None],
) -> str:
    """轮询到终态，返回结果 URL；失败或超时抛 GenerationError。"""
    for attempt in range(1, max_attempts + 1):
        status = provider.poll(job_id)
        if status.is_terminal:
            log_event(
                logger,
                E.GENERATION_POLL,
                account_id=account_id,
                job_id=job_id,
                attempt=attempt,
                state=status.state,
            )
            if status.state == JOB_SUCCEEDED:
                return status.result_url
            raise _fail(account_id, KIND_PROVIDER_ERROR, status.reason, STATE_POLLING)
        if attempt < max_attempts:
            sleep(interval)
    log_event(logger, E.GENERATION_TIMEOUT, level="warning", account_id=account_id, job_id=job_id, attempts=max_attempts)
    raise _fail(
        account_id,
        KIND_PROVIDER_TIMEOUT,
        f"timeout waiting for task completion after {max_attempts} attempts",
        STATE_POLLING,
    )


def generate_cover(
    session,
    account_id: str,
    image_bytes: bytes,
    app_settings,
    staging: StagingCache,
    prompt: str = "",
    provider_name: str = "",
    provider: Optional[ImageProvider] = None,
    image_format: str = "",
    options: Optional[Dict[str, Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
    today: Optional[date] = None,
) -> GenerationOutcome:
    """
    同步执行一次完整的封面生成，阻塞到服务商任务结束

    Args:
        provider: 直接注入适配器（测试用），为空时按 provider_name 从配置解析
        image_format: 已知的图片格式，为空时用 Pillow 识别
        sleep: 轮询间隔的休眠函数
        today: 额度计算所用的日期
    """
    gen = app_settings.generation

    # Gating
    if provider is None:
        provider = resolve_provider(provider_name, app_settings)
    provider_key = provider.name or normalize_provider_name(provider_name, gen.default_provider)
    if not image_format:
        try:
            image_format, _ = inspect_image(image_bytes, max_bytes=gen.max_image_bytes)
        except InvalidImage as e:
            raise _fail(account_id, KIND_INVALID_IMAGE, str(e), STATE_GATING) from e

    eligible, remaining = check_eligibility(session, account_id, today=today, daily_free=gen.daily_free)
    log_event(logger, E.GENERATION_GATE, account_id=account_id, eligible=eligible, remaining=remaining)
    if not eligible:
        log_event(logger, E.GENERATION_NO_CREDITS, account_id=account_id)
        raise GenerationError(
            KIND_NO_CREDITS,
            "No generations remaining. Please purchase a package.",
            state=STATE_GATING,
        )

    # Staging
    try:
        artifact_id = staging.put(image_bytes, content_kind=image_format, ttl_seconds=gen.staged_ttl_seconds)
    except StagingError as e:
        raise _fail(account_id, KIND_STAGING_FAILURE, f"failed to store image: {e}", STATE_STAGING, level="error") from e
    artifact_url = staging.url_for(artifact_id)
    log_event(logger, E.GENERATION_STAGE, account_id=account_id, artifact_id=artifact_id)

    try:
        # Submitting
        try:
            job_id = provider.submit(artifact_url, prompt, options)
        except ProviderError as e:
            kind = _SUBMIT_KINDS.get(e.kind, KIND_PROVIDER_UNAVAILABLE)
            raise _fail(account_id, kind, e.detail, STATE_SUBMITTING) from e
        log_event(logger, E.GENERATION_SUBMIT, account_id=account_id, provider=provider_key, job_id=job_id)

        # Polling
        provider_url = _poll_until_terminal(
            provider,
            job_id,
            account_id,
            interval=gen.poll_interval_seconds,
            max_attempts=gen.max_poll_attempts,
            sleep=sleep,
        )
    finally:
        staging.remove(artifact_id)

    # Persisting
    storage = app_settings.storage
    image_url = ImageService(account_id, storage.storage_dir, storage.base_url).persist_result(provider_url)
    degraded = image_url is None
    if degraded:
        image_url = provider_url
        log_event(logger, E.GENERATION_PERSIST_DEGRADED, level="warning", account_id=account_id, url=provider_url)
    else:
        log_event(logger, E.GENERATION_PERSIST, account_id=account_id, url=image_url)

    # Settling
    record_id = str(uuid.uuid4())

    def _record(used_free: bool) -> GenerationRecord:
        return GenerationRecord(
            id=record_id,
            account_id=account_id,
            image_url=image_url,
            provider=provider_key,
            is_free=used_free,
            created_at=datetime.now(),
        )

    outcome = GenerationOutcome(
        id=record_id,
        image_url=image_url,
        provider=provider_key,
        provider_url=provider_url,
        degraded=degraded,
    )
    try:
        outcome.used_free = settle_one_credit(
            session,
            account_id,
            prefer_free=True,
            today=today,
            daily_free=gen.daily_free,
            audit=_record,
        )
        log_event(logger, E.GENERATION_SETTLE, account_id=account_id, record_id=record_id, free=outcome.used_free)
    except InsufficientCredit:
        outcome.settlement_race = True
        log_event(logger, E.GENERATION_SETTLE_RACE, level="error", account_id=account_id, url=image_url)

    log_event(
        logger,
        E.GENERATION_COMPLETE,
        account_id=account_id,
        provider=provider_key,
        degraded=degraded,
        settlement_race=outcome.settlement_race,
    )
    return outcome


def generation_to_dict(record: GenerationRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "image_url": record.image_url,
        "provider": record.provider,
        "is_free": bool(record.is_free),
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def list_generations(session, account_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    limit = max(1, min(int(limit or 20), 100))
    rows = (
        session.query(GenerationRecord)
        .filter(GenerationRecord.account_id == account_id)
        .order_by(GenerationRecord.created_at.desc())
        .limit(limit)
        .all()
    )
    return [generation_to_dict(r) for r in rows]
