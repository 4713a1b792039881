"""Onboarding flow routes: status, checklist, step order and navigation."""

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from jose import JWTError

import auth
import db
from onboarding import active_steps, build_checklist, build_status, next_step_url, step_at_position
from routers.helpers import (
    CHECKLIST_NOTHING_PENDING,
    STATUS_NOTHING_PENDING,
    OnboardingUnavailable,
    checklist_fallback,
    has_service_role,
    load_completion_facts,
    load_steps,
    log_query_error,
    status_fallback,
    warn_missing_service_role,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["onboarding"])


@router.get("/api/onboarding/status")
async def onboarding_status(request: Request):
    """Positions of the steps the user still has to go through.

    Identity comes from the x-user-id header set by the edge middleware.
    Never fails: any problem yields a "pending" payload with an error code.
    """
    endpoint = "onboarding-status"
    user_id = request.headers.get("x-user-id") or None
    if not user_id:
        return dict(STATUS_NOTHING_PENDING)

    if not has_service_role():
        warn_missing_service_role(endpoint)
        return status_fallback("missing_service_role")

    try:
        steps, configured = await load_steps(endpoint)
        if not configured:
            return dict(STATUS_NOTHING_PENDING)
        facts = await load_completion_facts(endpoint, user_id, steps)
        result = build_status(steps, facts)
    except OnboardingUnavailable as e:
        return status_fallback(e.error)
    except Exception:
        logger.exception("[%s] unexpected error", endpoint, extra={"user_id": user_id})
        return status_fallback("unexpected")

    logger.info(
        "[%s] result: pending=%d next=%s", endpoint, len(result["steps"]), result["nextStep"],
        extra={"user_id": user_id, "pending_count": len(result["steps"]), "next_step": result["nextStep"]},
    )
    return result


@router.get("/api/onboarding/checklist")
async def onboarding_checklist(user: dict = Depends(auth.get_current_user)):
    """Per-step completion checklist for the signed-in user."""
    endpoint = "onboarding-checklist"
    user_id = user["id"]

    if not has_service_role():
        warn_missing_service_role(endpoint)
        return checklist_fallback("missing_service_role")

    try:
        steps, configured = await load_steps(endpoint)
        if not configured:
            return dict(CHECKLIST_NOTHING_PENDING)
        facts = await load_completion_facts(endpoint, user_id, steps)
        result = build_checklist(steps, facts)
    except OnboardingUnavailable as e:
        return checklist_fallback(e.error)
    except Exception:
        logger.exception("[%s] unexpected error", endpoint, extra={"user_id": user_id})
        return checklist_fallback("unexpected")

    logger.info(
        "[%s] result: has_pending=%s next=%s", endpoint, result["hasPending"], result["nextStep"],
        extra={"user_id": user_id, "next_step": result["nextStep"]},
    )
    return result


@router.get("/api/onboarding/steps")
async def onboarding_steps():
    """Active steps in flow order, as the onboarding client renders them."""
    try:
        steps, _ = await load_steps("onboarding-steps")
    except OnboardingUnavailable as e:
        return {"steps": [], "error": e.error}
    return {"steps": [s.to_dict() for s in active_steps(steps)]}


@router.get("/api/onboarding/steps/{position}")
async def onboarding_step(position: int):
    """The step occupying a position, active or not."""
    try:
        steps, _ = await load_steps("onboarding-steps")
    except OnboardingUnavailable as e:
        return JSONResponse({"error": e.error}, status_code=503)
    step = step_at_position(steps, position)
    if not step:
        return JSONResponse({"error": "Step not found"}, status_code=404)
    return step.to_dict()


@router.get("/api/onboarding/next")
async def onboarding_next(
    current: int = Query(..., ge=0),
    category_id: str | None = Query(None, alias="categoryId"),
    form_id: str | None = Query(None, alias="formId"),
):
    """Where the client goes after finishing the step at position `current`."""
    try:
        steps, _ = await load_steps("onboarding-next")
    except OnboardingUnavailable as e:
        return {"url": "/", "error": e.error}
    return {"url": next_step_url(steps, current, category_id, form_id)}


@router.post("/api/onboarding/reset")
async def onboarding_reset(request: Request):
    """Delete the user's answers to every active onboarding form."""
    user_id = request.headers.get("x-user-id") or None
    if not user_id:
        return JSONResponse({"error": "user_id_required"}, status_code=401)

    try:
        form_ids = await db.get_active_onboarding_form_ids()
        if not form_ids:
            return {"success": True, "deleted": 0}
        deleted = await db.delete_form_responses(user_id, form_ids)
    except db.QueryError as e:
        log_query_error("onboarding-reset", "admin_form_responses", e, user_id)
        return JSONResponse({"error": "failed_to_reset"}, status_code=500)

    logger.info("Onboarding reset: user_id=%s responses=%d", user_id, deleted, extra={"user_id": user_id})
    return {
        "success": True,
        "deleted": deleted,
        "message": "Respostas do onboarding resetadas com sucesso",
    }


@router.get("/api/onboarding/step2-response")
async def step2_response(request: Request, form_id: str | None = Query(None, alias="formId")):
    """The user's latest answer to the step-2 form and the playlist it picked.

    Answers either carry the playlist title or only the playlist id in `option`;
    in the latter case the title is looked up. Every miss returns nulls.
    """
    empty = {"formId": None, "option": None, "playlistTitle": None}
    token = auth.get_bearer_token(request)
    if not token:
        return empty
    try:
        user_id = auth.decode_token(token).get("sub")
    except JWTError:
        return empty
    if not user_id:
        return empty

    try:
        if not form_id:
            form_id = await db.find_onboarding_form_id_at_step(2)
        option = playlist_title = None
        if form_id:
            response = await db.get_latest_form_response(user_id, form_id)
            answers = (response or {}).get("answers")
            if isinstance(answers, dict):
                if isinstance(answers.get("option"), str):
                    option = answers["option"]
                for key in ("playlist_title", "playlistTitle"):
                    if isinstance(answers.get(key), str):
                        playlist_title = answers[key]
                        break
        if option and not playlist_title:
            playlist = await db.get_playlist(option)
            if playlist and playlist.get("title"):
                playlist_title = str(playlist["title"])
    except db.QueryError as e:
        log_query_error("onboarding-step2", "admin_form_responses", e, user_id)
        return empty

    return {"formId": form_id, "option": option, "playlistTitle": playlist_title}
