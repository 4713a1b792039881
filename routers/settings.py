"""Admin onboarding console: flow settings and timeline."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

import auth
import db
from onboarding import FIXED_STEPS, SETTINGS_KEYS, TEXT_SETTING_KEYS, is_setting_active, parse_position
from routers.helpers import OnboardingUnavailable, load_steps, log_query_error
from schemas import OnboardingSettingsUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/onboarding", tags=["settings"])


def _effective_settings(stored: dict) -> dict:
    """Stored values with the defaults the resolver would apply filled in."""
    effective = {key: stored.get(key) for key in TEXT_SETTING_KEYS}
    for fixed in FIXED_STEPS:
        position = parse_position(stored.get(fixed.position_key), fixed.default_position)
        effective[fixed.position_key] = str(position)
        effective[fixed.active_key] = "true" if is_setting_active(stored.get(fixed.active_key)) else "false"
    return effective


@router.get("/settings")
async def get_onboarding_settings(user: dict = Depends(auth.require_admin)):
    """Return onboarding settings with defaults applied."""
    try:
        stored = await db.get_settings(SETTINGS_KEYS)
    except db.QueryError as e:
        log_query_error("admin-onboarding-settings", "app_settings", e, user["id"])
        return JSONResponse({"error": "failed_to_fetch"}, status_code=500)
    return {"settings": _effective_settings(stored)}


@router.put("/settings")
async def save_onboarding_settings(body: OnboardingSettingsUpdate, user: dict = Depends(auth.require_admin)):
    """Save onboarding settings. Only known onboarding keys are accepted."""
    try:
        await db.upsert_settings(body.settings)
        stored = await db.get_settings(SETTINGS_KEYS)
    except db.QueryError as e:
        log_query_error("admin-onboarding-settings", "app_settings", e, user["id"])
        return JSONResponse({"error": "failed_to_save"}, status_code=500)
    logger.info("Onboarding settings updated: %s", ", ".join(sorted(body.settings)), extra={"user_id": user["id"]})
    return {"ok": True, "settings": _effective_settings(stored)}


@router.get("/timeline")
async def onboarding_timeline(user: dict = Depends(auth.require_admin)):
    """Every step in flow order, inactive ones included, as the admin edits them."""
    try:
        steps, configured = await load_steps("admin-onboarding-timeline")
    except OnboardingUnavailable as e:
        return JSONResponse({"error": e.error}, status_code=500)
    return {"steps": [s.to_dict() for s in steps], "configured": configured}
