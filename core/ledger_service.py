"""
额度账本：每日免费次数 + 已购买次数

规则：
- 账户首次出现时懒创建，免费次数为每日配额
- last_free_reset_day 早于今天（或为空）时，先把免费次数重置为每日配额并清空盖章日期
- 消耗免费次数时才给 last_free_reset_day 盖上今天的日期，因此同一天不会重复重置
- 同一账户的校验/扣减在账户锁内串行执行，网络调用不持有该锁
"""

import threading
import weakref
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Generator, Optional, Tuple

from core.log import get_logger
from core.events import log_event, E
from core.models.account import Account

logger = get_logger(__name__)

DEFAULT_DAILY_FREE = 1


class InsufficientCredit(Exception):
    """账户已没有可扣减的次数"""


_LOCKS_GUARD = threading.Lock()
_ACCOUNT_LOCKS: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()


@contextmanager
def account_lock(account_id: str) -> Generator[None, None, None]:
    """单账户写锁，不同账户互不阻塞。"""
    with _LOCKS_GUARD:
        lock = _ACCOUNT_LOCKS.get(account_id)
        if lock is None:
            lock = threading.Lock()
            _ACCOUNT_LOCKS[account_id] = lock
    with lock:
        yield


def _today(today: Optional[date] = None) -> date:
    return today or datetime.now().date()


def _load_for_update(session, account_id: str) -> Optional[Account]:
    return (
        session.query(Account)
        .filter(Account.id == account_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _new_account(account_id: str, daily_free: int, now: datetime, **profile: str) -> Account:
    return Account(
        id=account_id,
        email=str(profile.get("email") or ""),
        name=str(profile.get("name") or ""),
        picture=str(profile.get("picture") or ""),
        free_generations_left=max(0, int(daily_free)),
        last_free_reset_day=None,
        paid_generations=0,
        created_at=now,
        updated_at=now,
    )


def get_or_create_account(
    session,
    account_id: str,
    email: str = "",
    name: str = "",
    picture: str = "",
    daily_free: int = DEFAULT_DAILY_FREE,
    now: Optional[datetime] = None,
) -> Account:
    account_id = str(account_id or "").strip()
    if not account_id:
        raise ValueError("account_id 不能为空")
    now = now or datetime.now()
    with account_lock(account_id):
        account = _load_for_update(session, account_id)
        if account is None:
            account = _new_account(account_id, daily_free, now, email=email, name=name, picture=picture)
            session.add(account)
            session.commit()
            log_event(logger, E.AUTH_ACCOUNT_CREATE, account_id=account_id)
            return account
        changed = False
        for attr, value in (("email", email), ("name", name), ("picture", picture)):
            if value and getattr(account, attr) != value:
                setattr(account, attr, value)
                changed = True
        if changed:
            account.updated_at = now
            session.commit()
        return account


def apply_daily_reset(account: Account, today: date, daily_free: int = DEFAULT_DAILY_FREE) -> bool:
    """今天还没盖章且上次盖章早于今天时，恢复免费次数。返回是否发生了重置。"""
    stamped = account.last_free_reset_day
    if stamped is not None and stamped >= today:
        return False
    if stamped is None and int(account.free_generations_left or 0) == max(0, int(daily_free)):
        return False
    account.free_generations_left = max(0, int(daily_free))
    account.last_free_reset_day = None
    return True


def _balances(account: Account) -> Tuple[int, int]:
    return max(0, int(account.free_generations_left or 0)), max(0, int(account.paid_generations or 0))


def _locked_account(session, account_id: str, daily_free: int, now: datetime) -> Account:
    account = _load_for_update(session, account_id)
    if account is None:
        account = _new_account(account_id, daily_free, now)
        session.add(account)
        session.flush()
        log_event(logger, E.AUTH_ACCOUNT_CREATE, account_id=account_id)
    return account


def check_eligibility(
    session,
    account_id: str,
    today: Optional[date] = None,
    daily_free: int = DEFAULT_DAILY_FREE,
) -> Tuple[bool, int]:
    """返回 (是否可以生成, 剩余总次数)"""
    now = datetime.now()
    today = _today(today)
    with account_lock(account_id):
        account = _locked_account(session, account_id, daily_free, now)
        if apply_daily_reset(account, today, daily_free):
            account.updated_at = now
            log_event(logger, E.LEDGER_DAILY_RESET, account_id=account_id, day=today.isoformat())
        session.commit()
        free_left, paid = _balances(account)
    eligible = free_left > 0 or paid > 0
    log_event(logger, E.LEDGER_CHECK, account_id=account_id, eligible=eligible, free=free_left, paid=paid)
    return eligible, free_left + paid


def settle_one_credit(
    session,
    account_id: str,
    prefer_free: bool = True,
    today: Optional[date] = None,
    daily_free: int = DEFAULT_DAILY_FREE,
    audit: Optional[Callable[[bool], Any]] = None,
) -> bool:
    """
    扣减一次生成次数，返回是否使用了免费次数。

    扣减前重新执行每日重置并复核余额，关闭“校验通过后被并发请求抢先扣完”的窗口；
    复核失败抛出 InsufficientCredit，账户不做任何修改。

    Args:
        audit: 可选回调，参数为是否使用免费次数，返回需要与扣减在同一事务内落库的 ORM 对象
    """
    now = datetime.now()
    today = _today(today)
    with account_lock(account_id):
        try:
            account = _locked_account(session, account_id, daily_free, now)
            if apply_daily_reset(account, today, daily_free):
                log_event(logger, E.LEDGER_DAILY_RESET, account_id=account_id, day=today.isoformat())
            free_left, paid = _balances(account)
            if prefer_free and free_left > 0:
                account.free_generations_left = free_left - 1
                account.last_free_reset_day = today
                used_free = True
            elif paid > 0:
                account.paid_generations = paid - 1
                used_free = False
            else:
                log_event(logger, E.LEDGER_INSUFFICIENT, level="warning", account_id=account_id)
                raise InsufficientCredit(f"账户 {account_id} 没有可用次数")
            account.updated_at = now
            if audit is not None:
                record = audit(used_free)
                if record is not None:
                    session.add(record)
            session.commit()
        except Exception:
            session.rollback()
            raise
    log_event(
        logger,
        E.LEDGER_CONSUME,
        account_id=account_id,
        free=used_free,
        free_left=account.free_generations_left,
        paid_left=account.paid_generations,
    )
    return used_free


def credit_paid_balance(session, account_id: str, count: int, commit: bool = True) -> Account:
    """增加已购买次数；commit=False 时由调用方与其它变更一起提交。"""
    count = int(count)
    if count <= 0:
        raise ValueError("count 必须为正整数")
    now = datetime.now()
    with account_lock(account_id):
        account = _locked_account(session, account_id, DEFAULT_DAILY_FREE, now)
        account.paid_generations = max(0, int(account.paid_generations or 0)) + count
        account.updated_at = now
        if commit:
            session.commit()
        else:
            session.flush()
    log_event(logger, E.LEDGER_CREDIT, account_id=account_id, count=count, paid=account.paid_generations)
    return account


def get_account_status(
    session,
    account_id: str,
    today: Optional[date] = None,
    daily_free: int = DEFAULT_DAILY_FREE,
) -> Dict[str, Any]:
    eligible, remaining = check_eligibility(session, account_id, today=today, daily_free=daily_free)
    account = session.query(Account).filter(Account.id == account_id).first()
    free_left, paid = _balances(account)
    return {
        "can_generate": eligible,
        "remaining": remaining,
        "free_generations_left": free_left,
        "paid_generations": paid,
    }
