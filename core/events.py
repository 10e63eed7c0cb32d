"""
core/events.py — 结构化事件日志

提供统一的事件类型常量（E 类）和 log_event() 格式化方法。
额度、暂存、生图、支付等关键操作均通过此模块记录，确保日志可 grep / 统计。

格式：event=xxx | key=val | key=val

用法：
    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.GENERATION_SUBMIT, account_id="u1", provider="nanobanana")
    # 输出：event=generation.submit | account_id=u1 | provider=nanobanana
"""

import logging
from typing import Any


# ─── 事件类型常量 ──────────────────────────────────────────────────────────────
class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 认证 Auth ──────────────────────────────────────────────────────────────
    AUTH_TOKEN_VERIFY = "auth.token.verify"
    AUTH_TOKEN_INVALID = "auth.token.invalid"
    AUTH_ACCOUNT_CREATE = "auth.account.create"

    # ── 额度 Ledger ────────────────────────────────────────────────────────────
    LEDGER_DAILY_RESET = "ledger.daily_reset"
    LEDGER_CHECK = "ledger.check"
    LEDGER_CONSUME = "ledger.consume"
    LEDGER_INSUFFICIENT = "ledger.insufficient"
    LEDGER_CREDIT = "ledger.credit"

    # ── 暂存 Staging ───────────────────────────────────────────────────────────
    STAGING_PUT = "staging.put"
    STAGING_REMOVE = "staging.remove"
    STAGING_MISS = "staging.miss"
    STAGING_SWEEP = "staging.sweep"

    # ── 生图 Generation ────────────────────────────────────────────────────────
    GENERATION_GATE = "generation.gate"
    GENERATION_NO_CREDITS = "generation.no_credits"
    GENERATION_STAGE = "generation.stage"
    GENERATION_SUBMIT = "generation.submit"
    GENERATION_POLL = "generation.poll"
    GENERATION_TIMEOUT = "generation.timeout"
    GENERATION_PERSIST = "generation.persist"
    GENERATION_PERSIST_DEGRADED = "generation.persist.degraded"
    GENERATION_SETTLE = "generation.settle"
    GENERATION_SETTLE_RACE = "generation.settle.race"
    GENERATION_COMPLETE = "generation.complete"
    GENERATION_FAIL = "generation.fail"

    # ── 支付 Payment ───────────────────────────────────────────────────────────
    PAYMENT_INTENT_CREATE = "payment.intent.create"
    PAYMENT_GATEWAY_FAIL = "payment.gateway.fail"
    PAYMENT_SETTLE = "payment.settle"
    PAYMENT_SETTLE_DUPLICATE = "payment.settle.duplicate"
    PAYMENT_SETTLE_UNKNOWN = "payment.settle.unknown"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"
    SYSTEM_JOB_START = "system.job.start"


# ─── 结构化日志方法 ────────────────────────────────────────────────────────────
def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

    示例：
        log_event(logger, E.GENERATION_FAIL, level="warning",
                  kind="ProviderTimeout", attempts=120)
        # → event=generation.fail | kind=ProviderTimeout | attempts=120
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
