from backend_common.dependencies import CallerIdentity
from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .. import schemas
from ..dependencies import get_db, require_admin
from ..exceptions import BadRequestError
from ..notifications import NotificationDispatcher, get_notifier
from ..services.admin_service import AdminService

router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])


def get_admin_service(
    caller: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> AdminService:
    return AdminService(db, caller.user_id, notifier)


@router.get("/coaches", response_model=schemas.CoachStatusListResponse)
async def coach_payment_statuses(service: AdminService = Depends(get_admin_service)):
    return schemas.CoachStatusListResponse.model_validate({"coaches": await service.coach_statuses()})


@router.put("/coaches/{coach_id}/status", response_model=schemas.MessageResponse)
async def toggle_coach_status(
    coach_id: str,
    payload: schemas.ToggleCoachStatusRequest,
    service: AdminService = Depends(get_admin_service),
):
    await service.toggle_coach_status(coach_id, payload.is_active)
    state = "activated" if payload.is_active else "deactivated"
    return schemas.MessageResponse(message=f"Coach {state} successfully")


@router.post("/coaches/bulk-disable", response_model=schemas.BulkDisableCoachesResponse)
async def bulk_disable_coaches(
    payload: schemas.BulkDisableCoachesRequest,
    service: AdminService = Depends(get_admin_service),
):
    if not payload.disable_without_stripe:
        raise BadRequestError("No action specified")
    coach_ids = await service.bulk_disable_coaches_without_connect()
    return schemas.BulkDisableCoachesResponse(
        message=f"Disabled {len(coach_ids)} coaches without Stripe Connect",
        count=len(coach_ids),
        coach_ids=coach_ids,
    )


@router.post("/reminders", response_model=schemas.MessageResponse)
async def send_payment_reminder(
    payload: schemas.PaymentReminderRequest,
    service: AdminService = Depends(get_admin_service),
):
    await service.send_payment_reminder(payload.user_id, payload.reminder_type)
    return schemas.MessageResponse(message="Payment reminder sent successfully")


@router.put("/invoices/{invoice_id}/document", response_model=schemas.InvoiceDocumentStoredResponse)
async def store_invoice_document(
    invoice_id: int,
    request: Request,
    service: AdminService = Depends(get_admin_service),
):
    raw: bytes = await request.body()
    invoice = await service.store_invoice_document(invoice_id, raw)
    return schemas.InvoiceDocumentStoredResponse(
        message="Invoice document stored",
        document_path=invoice.admin_document_path,
    )


@router.get("/invoices/documents", response_model=schemas.InvoiceDocumentListResponse)
async def list_invoice_documents(service: AdminService = Depends(get_admin_service)):
    invoices = await service.list_invoice_documents()
    return schemas.InvoiceDocumentListResponse(
        invoices=[schemas.InvoiceDocumentResponse.model_validate(i) for i in invoices]
    )


@router.get("/invoices/{invoice_id}/document")
async def download_invoice_document(invoice_id: int, service: AdminService = Depends(get_admin_service)):
    path, filename = await service.invoice_document(invoice_id)
    return FileResponse(path, media_type="application/pdf", filename=filename)
