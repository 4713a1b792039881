"""Admin form catalog CRUD and user form submissions."""

import logging
import math
from datetime import date, datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

import auth
import db
from schemas import FormCreate, FormUpdate, FormResponseCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/forms", tags=["forms"])


def sanitize_answers(value, _seen=None):
    """Reduce submitted answers to JSON-safe values.

    Cycles become None, dates become ISO strings, keys starting with '__' or
    '$' are dropped, and anything else not representable in JSON is None.
    """
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (datetime, date)):
        return value.isoformat()

    _seen = _seen if _seen is not None else set()
    if id(value) in _seen:
        return None

    if isinstance(value, dict):
        _seen.add(id(value))
        clean = {}
        for key, item in value.items():
            if not isinstance(key, str) or key.startswith(("__", "$")):
                continue
            clean[key] = sanitize_answers(item, _seen)
        _seen.discard(id(value))
        return clean
    if isinstance(value, (list, tuple)):
        _seen.add(id(value))
        clean = [sanitize_answers(item, _seen) for item in value]
        _seen.discard(id(value))
        return clean
    return None


@router.get("")
async def list_forms(user: dict = Depends(auth.require_admin)):
    """All forms in flow order (step, then creation)."""
    try:
        forms = await db.list_forms()
    except db.QueryError as e:
        logger.error("GET /api/forms error", extra=e.as_log_fields())
        return JSONResponse({"error": "failed_to_fetch"}, status_code=500)
    return {"data": forms}


@router.post("")
async def create_form(body: FormCreate, user: dict = Depends(auth.require_admin)):
    """Create a form. New forms default to the onboarding flow."""
    try:
        if body.parent_form_id and not await db.get_form(body.parent_form_id):
            return JSONResponse({"error": "Parent form not found"}, status_code=404)
        form = await db.create_form(
            name=body.name,
            description=body.description,
            schema=body.schema_,
            form_type=body.form_type,
            onboard_step=body.onboard_step,
            is_active=body.is_active,
            parent_form_id=body.parent_form_id,
            allow_other_option=body.allow_other_option,
            other_option_label=body.other_option_label,
        )
    except db.QueryError as e:
        logger.error("POST /api/forms error", extra=e.as_log_fields())
        return JSONResponse({"error": "failed_to_create"}, status_code=500)
    logger.info("Form created: %s (step=%s)", form["id"], form["onboard_step"], extra={"user_id": user["id"]})
    return JSONResponse({"data": form}, status_code=201)


@router.get("/{form_id}")
async def get_form(form_id: str):
    """A single form, as rendered to the user filling it in."""
    try:
        form = await db.get_form(form_id)
    except db.QueryError as e:
        logger.error("GET /api/forms/%s error", form_id, extra=e.as_log_fields())
        return JSONResponse({"error": "failed_to_fetch"}, status_code=500)
    if not form:
        return JSONResponse({"error": "Form not found"}, status_code=404)
    return {"data": form}


@router.put("/{form_id}")
async def update_form(form_id: str, body: FormUpdate, user: dict = Depends(auth.require_admin)):
    """Update a form; moving it in the flow is just a new onboard_step."""
    changes = body.changes()
    if changes.get("parent_form_id") == form_id:
        return JSONResponse({"error": "A form cannot be its own parent"}, status_code=400)
    try:
        form = await db.update_form(form_id, **changes)
    except db.QueryError as e:
        logger.error("PUT /api/forms/%s error", form_id, extra=e.as_log_fields())
        return JSONResponse({"error": "failed_to_update"}, status_code=500)
    if not form:
        return JSONResponse({"error": "Form not found"}, status_code=404)
    return {"data": form}


@router.delete("/{form_id}")
async def delete_form(form_id: str, user: dict = Depends(auth.require_admin)):
    """Delete a form and its responses."""
    try:
        deleted = await db.delete_form(form_id)
    except db.QueryError as e:
        logger.error("DELETE /api/forms/%s error", form_id, extra=e.as_log_fields())
        return JSONResponse({"error": "failed_to_delete"}, status_code=500)
    if not deleted:
        return JSONResponse({"error": "Form not found"}, status_code=404)
    logger.info("Form deleted: %s", form_id, extra={"user_id": user["id"]})
    return {"status": "ok"}


@router.post("/{form_id}/responses")
async def submit_form_response(form_id: str, body: FormResponseCreate, user: dict = Depends(auth.get_current_user)):
    """Record the signed-in user's answers to a form."""
    try:
        form = await db.get_form(form_id)
        if not form:
            return JSONResponse({"error": "Form not found"}, status_code=404)
        response_id = await db.save_form_response(form_id, sanitize_answers(body.answers), user["id"])
    except db.QueryError as e:
        logger.error("POST /api/forms/%s/responses error", form_id, extra={"user_id": user["id"], **e.as_log_fields()})
        return JSONResponse({"error": "failed_to_save"}, status_code=500)
    logger.info("Form response saved: form=%s", form_id, extra={"user_id": user["id"]})
    return JSONResponse({"success": True, "id": response_id}, status_code=201)
