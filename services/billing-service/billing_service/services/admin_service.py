from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..exceptions import InternalError, InvoiceNotFoundError, NotFoundError, ValidationError
from ..metrics import ADMIN_ACTIONS_TOTAL
from ..models import AdminAction, BillingUser, Invoice, Payment, PaymentStatus
from ..money import round_money
from ..notifications import NotificationDispatcher, NotificationKind
from ..timeutils import as_utc, utcnow

logger = structlog.get_logger(__name__)

REMINDER_TYPES = ("payment_overdue", "stripe_connect")
PDF_MAGIC = b"%PDF-"


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


class AdminService:
    """Privileged billing controls. Each mutation commits together with its audit row."""

    def __init__(self, db: AsyncSession, admin_id: str, notifier: NotificationDispatcher | None = None):
        self.db = db
        self.admin_id = admin_id
        self.notifier = notifier
        self.settings = get_settings()

    def _audit(self, action: str, target_type: str, target_id: str | None, details: dict[str, Any]) -> None:
        self.db.add(
            AdminAction(
                admin_id=self.admin_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
                details=details,
            )
        )

    async def _commit_action(self, action: str) -> None:
        await self.db.commit()
        ADMIN_ACTIONS_TOTAL.labels(action=action).inc()

    async def _get_coach(self, coach_id: str) -> BillingUser:
        coach = await self.db.get(BillingUser, coach_id)
        if coach is None or coach.role != "coach":
            raise NotFoundError(f"Coach {coach_id} not found")
        return coach

    async def coach_statuses(self) -> list[dict[str, Any]]:
        coaches = (
            await self.db.execute(
                select(BillingUser).where(BillingUser.role == "coach").order_by(BillingUser.user_id)
            )
        ).scalars().all()

        totals = (
            await self.db.execute(
                select(
                    Payment.coach_id,
                    Payment.status,
                    func.coalesce(func.sum(Payment.amount), 0),
                    func.max(Payment.payment_date),
                )
                .where(Payment.coach_id.is_not(None))
                .group_by(Payment.coach_id, Payment.status)
            )
        ).all()
        earned: dict[str, Any] = {}
        pending: dict[str, Any] = {}
        last_paid: dict[str, Any] = {}
        for coach_id, status, amount, last_date in totals:
            if status == PaymentStatus.COMPLETED.value:
                earned[coach_id] = amount
                last_paid[coach_id] = as_utc(last_date)
            elif status == PaymentStatus.PENDING.value:
                pending[coach_id] = amount

        return [
            {
                "coach_id": coach.user_id,
                "coach_name": coach.name,
                "email": coach.email,
                "stripe_connect_account_id": coach.stripe_connect_account_id,
                "has_stripe_connected": bool(coach.stripe_connect_account_id),
                "total_earnings": round_money(earned.get(coach.user_id, 0)),
                "pending_payouts": round_money(pending.get(coach.user_id, 0)),
                "is_active": coach.is_active,
                "last_payment_date": last_paid.get(coach.user_id),
            }
            for coach in coaches
        ]

    async def toggle_coach_status(self, coach_id: str, is_active: bool) -> BillingUser:
        coach = await self._get_coach(coach_id)
        coach.is_active = is_active
        self._audit("toggle_coach_status", "coach", coach_id, {"is_active": is_active})
        await self._commit_action("toggle_coach_status")
        logger.info("coach_status_toggled", admin_id=self.admin_id, coach_id=coach_id, is_active=is_active)
        return coach

    async def bulk_disable_coaches_without_connect(self) -> list[str]:
        coach_ids = list(
            (
                await self.db.execute(
                    select(BillingUser.user_id).where(
                        BillingUser.role == "coach",
                        BillingUser.is_active.is_(True),
                        or_(
                            BillingUser.stripe_connect_account_id.is_(None),
                            BillingUser.stripe_connect_account_id == "",
                        ),
                    )
                )
            ).scalars()
        )
        if coach_ids:
            await self.db.execute(
                update(BillingUser).where(BillingUser.user_id.in_(coach_ids)).values(is_active=False)
            )
        self._audit(
            "bulk_disable_coaches_without_stripe",
            "coach",
            None,
            {"count": len(coach_ids), "coach_ids": coach_ids},
        )
        await self._commit_action("bulk_disable_coaches_without_stripe")
        logger.info("coaches_bulk_disabled", admin_id=self.admin_id, count=len(coach_ids))
        return coach_ids

    async def send_payment_reminder(self, user_id: str, reminder_type: str = "payment_overdue") -> None:
        if reminder_type not in REMINDER_TYPES:
            raise ValidationError("reminder_type must be one of: payment_overdue, stripe_connect")
        target = await self.db.get(BillingUser, user_id)
        if target is None:
            raise NotFoundError(f"User {user_id} not found")
        if self.notifier is None or not self.notifier.dispatch(
            NotificationKind.PAYMENT_REMINDER, target, {"reminder_type": reminder_type}
        ):
            raise InternalError("Failed to send payment reminder")

        self._audit("send_payment_reminder", target.role, user_id, {"reminder_type": reminder_type})
        await self._commit_action("send_payment_reminder")
        logger.info("payment_reminder_sent", admin_id=self.admin_id, target_id=user_id, reminder_type=reminder_type)

    async def store_invoice_document(self, invoice_id: int, content: bytes) -> Invoice:
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if not content:
            raise ValidationError("Document is empty")
        if len(content) > self.settings.ADMIN_DOCUMENT_MAX_BYTES:
            raise ValidationError("Document exceeds the maximum allowed size")
        if not content.startswith(PDF_MAGIC):
            raise ValidationError("Document must be a PDF")

        relative = Path(str(invoice_id)) / f"{uuid.uuid4().hex}.pdf"
        target = Path(self.settings.ADMIN_DOCUMENTS_DIR) / relative
        await asyncio.to_thread(_write_file, target, content)

        invoice.admin_document_path = relative.as_posix()
        invoice.admin_document_stored_at = utcnow()
        self._audit("store_invoice_document", "invoice", str(invoice_id), {"size": len(content)})
        try:
            await self._commit_action("store_invoice_document")
        except Exception:
            await self.db.rollback()
            await asyncio.to_thread(target.unlink, missing_ok=True)
            raise
        logger.info("invoice_document_stored", admin_id=self.admin_id, invoice_id=invoice_id)
        return invoice

    async def list_invoice_documents(self) -> list[Invoice]:
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.admin_document_path.is_not(None))
            .order_by(Invoice.admin_document_stored_at.desc(), Invoice.id.desc())
        )
        return list(result.scalars().all())

    async def invoice_document(self, invoice_id: int) -> tuple[Path, str]:
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if not invoice.admin_document_path:
            raise NotFoundError("No document stored for this invoice")
        path = Path(self.settings.ADMIN_DOCUMENTS_DIR) / invoice.admin_document_path
        if not path.is_file():
            logger.error("invoice_document_missing_on_disk", invoice_id=invoice_id)
            raise NotFoundError("No document stored for this invoice")
        return path, f"invoice-{invoice.invoice_number or invoice.id}.pdf"
