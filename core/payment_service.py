import threading
import uuid
import weakref
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Generator, List, Tuple

from core.log import get_logger
from core.events import log_event, E
from core.ledger_service import credit_paid_balance
from core.models.transaction import Transaction
from core.payment_gateway import GatewayError, PaymentGateway


logger = get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

SETTLE_NOT_FOUND = "not_found"
SETTLE_DUPLICATE = "duplicate"

SUCCESS_STATUSES = {"success", "completed"}


class PaymentError(Exception):
    pass


class PackageNotFound(PaymentError):
    pass


_ORDER_LOCKS_GUARD = threading.Lock()
_ORDER_LOCKS: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()


@contextmanager
def _order_lock(external_order_id: str) -> Generator[None, None, None]:
    with _ORDER_LOCKS_GUARD:
        lock = _ORDER_LOCKS.get(external_order_id)
        if lock is None:
            lock = threading.Lock()
            _ORDER_LOCKS[external_order_id] = lock
    with lock:
        yield


def normalize_currency(currency: str) -> str:
    return "RUB" if str(currency or "").strip().upper() == "RUB" else "USD"


def transaction_to_dict(txn: Transaction) -> Dict:
    return {
        "id": txn.id,
        "package_type": txn.package_type,
        "amount": float(txn.amount or 0),
        "currency": txn.currency,
        "status": txn.status,
        "order_id": txn.external_order_id or "",
        "payment_url": txn.payment_url or "",
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
        "updated_at": txn.updated_at.isoformat() if txn.updated_at else None,
    }


def create_intent(
    session,
    account_id: str,
    package_type: str,
    currency: str,
    catalog,
    gateway: PaymentGateway,
) -> Tuple[Transaction, str]:
    """
    创建待支付订单并向网关申请支付链接

    Returns:
        (交易记录, 支付链接)
    """
    package = catalog.find(package_type)
    if package is None:
        raise PackageNotFound("Invalid package type")
    currency = normalize_currency(currency)
    now = datetime.now()
    txn = Transaction(
        id=str(uuid.uuid4()),
        account_id=account_id,
        package_type=package.type,
        amount=package.price_for(currency),
        currency=currency,
        status=STATUS_PENDING,
        created_at=now,
        updated_at=now,
    )
    session.add(txn)
    session.commit()

    try:
        order_id, payment_url = gateway.create_invoice(txn.id, txn.amount, currency, package)
    except GatewayError as e:
        txn.status = STATUS_FAILED
        txn.updated_at = datetime.now()
        session.commit()
        log_event(logger, E.PAYMENT_GATEWAY_FAIL, level="error", transaction_id=txn.id, error=str(e))
        raise

    txn.external_order_id = order_id
    txn.payment_url = payment_url
    txn.updated_at = datetime.now()
    session.commit()
    log_event(
        logger,
        E.PAYMENT_INTENT_CREATE,
        account_id=account_id,
        transaction_id=txn.id,
        package=package.type,
        amount=txn.amount,
        currency=currency,
        order_id=order_id,
    )
    return txn, payment_url


def apply_settlement(session, external_order_id: str, status: str, catalog) -> str:
    """
    处理支付回调，按外部订单号幂等地完成或关闭订单

    订单状态用带 status='pending' 条件的 UPDATE 抢占，只有抢到的一方入账，
    多进程部署下重复回调同样只入账一次。

    Returns:
        not_found / duplicate / completed / failed
    """
    external_order_id = str(external_order_id or "").strip()
    if not external_order_id:
        log_event(logger, E.PAYMENT_SETTLE_UNKNOWN, level="warning", order_id="")
        return SETTLE_NOT_FOUND

    with _order_lock(external_order_id):
        txn = (
            session.query(Transaction)
            .filter(Transaction.external_order_id == external_order_id)
            .populate_existing()
            .first()
        )
        if txn is None:
            log_event(logger, E.PAYMENT_SETTLE_UNKNOWN, level="warning", order_id=external_order_id)
            return SETTLE_NOT_FOUND
        if txn.status != STATUS_PENDING:
            log_event(logger, E.PAYMENT_SETTLE_DUPLICATE, order_id=external_order_id, status=txn.status)
            return SETTLE_DUPLICATE

        transaction_id = txn.id
        account_id = txn.account_id
        package = None
        new_status = STATUS_FAILED
        if str(status or "").strip().lower() in SUCCESS_STATUSES:
            package = catalog.find(txn.package_type)
            if package is None:
                # 套餐已下架，订单关闭不入账
                logger.error("订单 %s 对应套餐 %s 不存在", transaction_id, txn.package_type)
            else:
                new_status = STATUS_COMPLETED

        try:
            claimed = (
                session.query(Transaction)
                .filter(Transaction.id == transaction_id, Transaction.status == STATUS_PENDING)
                .update({"status": new_status, "updated_at": datetime.now()})
            )
            if claimed != 1:
                session.rollback()
                log_event(logger, E.PAYMENT_SETTLE_DUPLICATE, order_id=external_order_id, status="claimed")
                return SETTLE_DUPLICATE
            if new_status == STATUS_COMPLETED:
                credit_paid_balance(session, account_id, package.count, commit=False)
            session.commit()
        except Exception:
            session.rollback()
            raise

    log_event(logger, E.PAYMENT_SETTLE, order_id=external_order_id, transaction_id=transaction_id, status=new_status)
    return new_status


def list_transactions(session, account_id: str, status: str = "", limit: int = 50) -> List[Dict]:
    query = session.query(Transaction).filter(Transaction.account_id == account_id)
    if status:
        query = query.filter(Transaction.status == status)
    rows = query.order_by(Transaction.created_at.desc()).limit(max(1, min(int(limit or 50), 200))).all()
    return [transaction_to_dict(r) for r in rows]
