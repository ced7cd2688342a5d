from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from storefront.database import SessionLocal
from storefront.models import PaymentMethod
from storefront.routes import get_reconciler
from storefront.reconciliation import ReconciliationHandler


router = APIRouter(prefix="/orders/webhook")


def _process(method, payload, headers, reconciler):
    db = SessionLocal()
    try:
        return reconciler.handle_webhook(db, method, payload, headers)
    finally:
        db.close()


async def _handle(request: Request, method: PaymentMethod, reconciler: ReconciliationHandler):
    payload = await request.body()

    # Session work and notification senders are blocking.
    await run_in_threadpool(_process, method, payload, request.headers, reconciler)

    # Acknowledge once authenticated, even for unknown orders, so the
    # gateway stops retrying permanently orphaned events.
    return {"received": True}


@router.post("/paypal")
@router.post("/stripe")
async def card_webhook(request: Request, reconciler: ReconciliationHandler = Depends(get_reconciler)):
    return await _handle(request, PaymentMethod.CARD, reconciler)


@router.post("/khqr")
async def khqr_webhook(request: Request, reconciler: ReconciliationHandler = Depends(get_reconciler)):
    return await _handle(request, PaymentMethod.QR_BANK, reconciler)
