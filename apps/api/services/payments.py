"""Payment reconciliation: turn gateway notifications into credits exactly once."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import dialect_insert
from models.payment_session import PaymentSession
from models.payment_transaction import PaymentTransaction
from services.credits import credit_upsert_statement
from services.packages import get_credit_package_by_id
from services.payment_gateway import PaymentGateway, PaymentGatewayError, PaymentVerification

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
MISSING_METADATA = "Invalid webhook payload: missing metadata"


class ReconciliationStatus(str, enum.Enum):
    CREDITED = "credited"
    ALREADY_PROCESSED = "already_processed"
    PAYMENT_FAILED = "payment_failed"
    GATEWAY_ERROR = "gateway_error"
    SESSION_LOST = "session_lost"
    PACKAGE_NOT_FOUND = "package_not_found"
    INVALID = "invalid"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconciliationResult:
    status: ReconciliationStatus
    token: Optional[str] = None
    user_id: Optional[str] = None
    package_id: Optional[str] = None
    credits: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (
            ReconciliationStatus.CREDITED,
            ReconciliationStatus.ALREADY_PROCESSED,
            ReconciliationStatus.IGNORED,
        )


async def get_transaction(token: str, db: AsyncSession) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.token == token)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _is_settled(token: str, db: AsyncSession) -> bool:
    existing = await get_transaction(token, db)
    return existing is not None and existing.status == SUCCESS


async def get_payment_session(token: str, db: AsyncSession) -> Optional[PaymentSession]:
    result = await db.execute(select(PaymentSession).where(PaymentSession.token == token))
    return result.scalar_one_or_none()


async def record_payment_session(
    token: str,
    user_id: str,
    db: AsyncSession,
    *,
    conversation_id: Optional[str] = None,
    package_id: Optional[str] = None,
    price: Optional[float] = None,
    locale: Optional[str] = None,
) -> None:
    """Remember who opened the checkout form so a callback can find them later."""
    insert = dialect_insert(db)
    try:
        await db.execute(
            insert(PaymentSession)
            .values(
                token=token,
                user_id=user_id,
                conversation_id=conversation_id,
                package_id=package_id,
                price=price,
                locale=locale,
            )
            .on_conflict_do_nothing(index_elements=["token"])
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise


async def recover_payment_identity(
    token: str,
    verification: PaymentVerification,
    db: AsyncSession,
    session_user_id: Optional[str] = None,
) -> Tuple[Optional[str], List[str]]:
    """Resolve the paying user: live session, then conversationId, then the stored PaymentSession.

    Returns the user id (or None) and the identity sources that were tried.
    """
    tried: List[str] = []

    tried.append("session")
    if session_user_id:
        return session_user_id, tried

    tried.append("conversation_id")
    if verification.conversation_id:
        return str(verification.conversation_id), tried

    tried.append("payment_session")
    stored = await get_payment_session(token, db)
    if stored is not None and stored.user_id:
        return stored.user_id, tried

    return None, tried


async def commit_payment(
    *,
    token: str,
    provider: str,
    user_id: str,
    item_id: Optional[str],
    credits: int,
    provider_response: Dict[str, Any],
    db: AsyncSession,
    email: Optional[str] = None,
) -> bool:
    """Write the journal entry and grant credits in one transaction.

    The journal insert is keyed by token; when another delivery already
    settled it the insert does nothing and no credit is granted. Returns
    True only for the delivery that granted the credits.
    """
    insert = dialect_insert(db)
    try:
        journal = await db.execute(
            insert(PaymentTransaction)
            .values(
                token=token,
                provider=provider,
                status=SUCCESS,
                item_id=item_id,
                user_id=user_id,
                credits=credits,
                provider_response=provider_response,
            )
            .on_conflict_do_nothing(index_elements=["token"])
        )
        if journal.rowcount != 1:
            await db.rollback()
            return False
        await db.execute(credit_upsert_statement(db, user_id, credits, email=email))
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
    return True


async def _settle(
    *,
    token: str,
    provider: str,
    user_id: str,
    package_id: Optional[str],
    credits: int,
    provider_response: Dict[str, Any],
    db: AsyncSession,
    email: Optional[str] = None,
) -> ReconciliationResult:
    granted = await commit_payment(
        token=token,
        provider=provider,
        user_id=user_id,
        item_id=package_id,
        credits=credits,
        provider_response=provider_response,
        db=db,
        email=email,
    )
    if not granted:
        logger.info("Payment %s was settled concurrently; skipping credit grant", token)
        return ReconciliationResult(
            status=ReconciliationStatus.ALREADY_PROCESSED,
            token=token,
            user_id=user_id,
            package_id=package_id,
        )
    logger.info("Credited %s songs to user %s for payment %s", credits, user_id, token)
    return ReconciliationResult(
        status=ReconciliationStatus.CREDITED,
        token=token,
        user_id=user_id,
        package_id=package_id,
        credits=credits,
    )


async def reconcile_payment_callback(
    token: Optional[str],
    *,
    gateway: PaymentGateway,
    db: AsyncSession,
    session_user_id: Optional[str] = None,
    session_email: Optional[str] = None,
) -> ReconciliationResult:
    """Settle a checkout-form redirect callback."""
    token = str(token or "").strip()
    if not token:
        return ReconciliationResult(status=ReconciliationStatus.INVALID, error="Missing payment token")

    if await _is_settled(token, db):
        logger.info("Payment %s already processed", token)
        return ReconciliationResult(status=ReconciliationStatus.ALREADY_PROCESSED, token=token)

    try:
        verification = await gateway.verify(token)
    except PaymentGatewayError as exc:
        logger.warning("Payment verification for %s failed: %s", token, exc)
        return ReconciliationResult(status=ReconciliationStatus.GATEWAY_ERROR, token=token, error=str(exc))

    if verification.payment_status != SUCCESS:
        logger.info("Payment %s not successful: %s", token, verification.payment_status)
        return ReconciliationResult(
            status=ReconciliationStatus.PAYMENT_FAILED,
            token=token,
            error=f"Payment status {verification.payment_status or 'unknown'}",
        )

    user_id, tried = await recover_payment_identity(token, verification, db, session_user_id=session_user_id)
    if not user_id:
        logger.error(
            "Payment session lost: token=%s conversation_id=%s item_id=%s tried=%s",
            token,
            verification.conversation_id,
            verification.item_id,
            ",".join(tried),
        )
        return ReconciliationResult(
            status=ReconciliationStatus.SESSION_LOST,
            token=token,
            package_id=verification.item_id,
            error="Session lost; payment requires manual reconciliation",
        )

    package = await get_credit_package_by_id(verification.item_id, db)
    if package is None:
        return ReconciliationResult(
            status=ReconciliationStatus.PACKAGE_NOT_FOUND,
            token=token,
            user_id=user_id,
            package_id=verification.item_id,
            error="Package not found",
        )

    email = session_email if session_user_id and user_id == session_user_id else None
    return await _settle(
        token=token,
        provider="iyzico",
        user_id=user_id,
        package_id=package.id,
        credits=int(package.credits),
        provider_response=verification.raw,
        db=db,
        email=email,
    )


def _positive_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


async def reconcile_order_paid_event(
    payload: Dict[str, Any],
    db: AsyncSession,
    webhook_id: Optional[str] = None,
) -> ReconciliationResult:
    """Settle a Polar ``order.paid`` event through the same journal as the redirect path."""
    event_type = payload.get("type")
    if event_type != "order.paid":
        logger.info("Ignoring webhook event %s", event_type)
        return ReconciliationResult(status=ReconciliationStatus.IGNORED)

    data = payload.get("data")
    metadata = data.get("metadata") if isinstance(data, dict) else None
    if not isinstance(metadata, dict):
        logger.warning("order.paid event with malformed data or metadata")
        return ReconciliationResult(status=ReconciliationStatus.INVALID, error=MISSING_METADATA)
    user_id = str(metadata.get("userId") or "").strip()
    package_id = str(metadata.get("packageId") or "").strip() or None
    if not user_id:
        logger.warning("order.paid event without userId metadata")
        return ReconciliationResult(status=ReconciliationStatus.INVALID, error=MISSING_METADATA)

    order_id = str(data.get("id") or "").strip()
    if order_id:
        token = f"polar:{order_id}"
    elif webhook_id:
        token = f"polar:{webhook_id}"
    else:
        return ReconciliationResult(status=ReconciliationStatus.INVALID, error="Missing order id")

    if await _is_settled(token, db):
        logger.info("Payment %s already processed", token)
        return ReconciliationResult(status=ReconciliationStatus.ALREADY_PROCESSED, token=token, user_id=user_id)

    package = await get_credit_package_by_id(package_id, db)
    credits = int(package.credits) if package is not None else _positive_int(metadata.get("credits"))
    if credits <= 0:
        if package_id and package is None:
            return ReconciliationResult(
                status=ReconciliationStatus.PACKAGE_NOT_FOUND,
                token=token,
                user_id=user_id,
                package_id=package_id,
                error="Package not found",
            )
        logger.warning("order.paid event %s carries no credits", token)
        return ReconciliationResult(status=ReconciliationStatus.INVALID, token=token, error=MISSING_METADATA)

    customer = data.get("customer")
    email = customer.get("email") if isinstance(customer, dict) else None
    return await _settle(
        token=token,
        provider="polar",
        user_id=user_id,
        package_id=package_id,
        credits=credits,
        provider_response=payload,
        db=db,
        email=str(email) if email else None,
    )
