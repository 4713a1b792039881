"""WhatsApp user phone routes used by the onboarding connect screens."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

import auth
import db
from routers.helpers import log_query_error
from schemas import PhoneCheckRequest, PhoneUpdateRequest, clean_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/whatsapp/users", tags=["whatsapp"])


def mask_phone(phone: str) -> str:
    """Hide all but the last four digits for logging."""
    return "x" * max(len(phone) - 4, 0) + phone[-4:]


@router.post("/check-phone")
async def check_phone(body: PhoneCheckRequest, user: dict = Depends(auth.get_current_user)):
    """Whether the signed-in user may register this phone number.

    A phone already held by another account is unavailable; a legacy row
    without an owner can be claimed.
    """
    phone = body.cleaned
    if not phone:
        return JSONResponse({"ok": False, "error": "invalid_phone"}, status_code=400)

    try:
        row = await db.get_whatsapp_user_by_phone(phone)
    except db.QueryError as e:
        log_query_error("whatsapp-check-phone", "whatsapp_users", e, user["id"])
        return JSONResponse({"ok": False, "error": "lookup_failed"}, status_code=500)

    if not row:
        return {"ok": True, "available": True}
    if not row.get("user_id"):
        return {"ok": True, "available": True, "claimableLegacy": True}
    if str(row["user_id"]) == user["id"]:
        return {"ok": True, "available": True, "alreadyMine": True}
    return {"ok": True, "available": False, "reason": "claimed_by_other_user"}


@router.post("/update-phone")
async def update_phone(body: PhoneUpdateRequest, admin: dict = Depends(auth.require_admin)):
    """Admin: change the phone number of a WhatsApp user row."""
    phone = clean_phone(body.phone_number)
    logger.info("Updating phone of whatsapp user %s to %s", body.user_id, mask_phone(phone))

    try:
        if await db.phone_in_use_by_other(phone, body.user_id):
            return JSONResponse(
                {"error": "Este número de telefone já está em uso por outro usuário"},
                status_code=400,
            )
        row = await db.update_whatsapp_phone(body.user_id, phone)
    except db.QueryError as e:
        log_query_error("whatsapp-update-phone", "whatsapp_users", e, admin["id"])
        return JSONResponse({"error": "Erro ao atualizar número de telefone"}, status_code=500)

    if not row:
        return JSONResponse({"error": "WhatsApp user not found"}, status_code=404)
    return {
        "success": True,
        "message": "Número de telefone atualizado com sucesso",
        "data": {"id": row["id"], "phone_number": phone, "updated_at": row["updated_at"]},
    }
