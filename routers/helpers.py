"""Shared helpers, state, and utilities used across multiple routers.

This module centralizes:
- The service-role gate and its warn-once registry
- Structured logging of backend query errors
- Degraded payloads returned by the onboarding endpoints
- Loading settings, forms and per-user rows for the step resolver
"""

import logging
import os

import db
from onboarding import (
    SETTINGS_KEYS,
    WHATSAPP_KINDS,
    CompletionFacts,
    OnboardingStep,
    active_steps,
    form_ids,
    is_form_active,
    is_onboarding_form,
    resolve_onboarding_steps,
)

logger = logging.getLogger(__name__)

SERVICE_ROLE_ENV_VARS = ("SUPABASE_SERVICE_ROLE_KEY", "SB_SERVICE_ROLE_KEY")
LEGACY_WHATSAPP_SCAN_LIMIT = 10
PENDING_LABEL = "Onboarding pendente"


# ---------------------------------------------------------------------------
# Service role
# ---------------------------------------------------------------------------

def has_service_role() -> bool:
    return any(os.environ.get(name) for name in SERVICE_ROLE_ENV_VARS)


# Endpoints that already logged the missing-credential warning in this process
_missing_service_role_warned: set[str] = set()


def warn_missing_service_role(endpoint: str) -> None:
    if endpoint in _missing_service_role_warned:
        return
    _missing_service_role_warned.add(endpoint)
    logger.warning(
        "[%s] service role key missing, returning pending fallback", endpoint,
        extra={"endpoint": endpoint},
    )


def legacy_whatsapp_fallback_enabled() -> bool:
    return os.environ.get("ONBOARDING_LEGACY_WHATSAPP_FALLBACK", "false").lower() in ("true", "1", "yes")


# ---------------------------------------------------------------------------
# Errors and degraded payloads
# ---------------------------------------------------------------------------

class OnboardingUnavailable(Exception):
    """The flow could not be computed; `error` is the code sent to the client."""

    def __init__(self, error: str):
        super().__init__(error)
        self.error = error


def log_query_error(endpoint: str, source: str, exc: db.QueryError, user_id: str | None = None) -> None:
    logger.error(
        "[%s] %s error: %s", endpoint, source, exc.message,
        extra={"endpoint": endpoint, "user_id": user_id, **exc.as_log_fields()},
    )


def status_fallback(error: str | None = None) -> dict:
    payload = {"pending": True, "steps": [], "nextStep": 1}
    if error:
        payload["error"] = error
    return payload


def checklist_fallback(error: str | None = None) -> dict:
    payload = {
        "steps": [{"stepNumber": 1, "label": PENDING_LABEL, "completed": False}],
        "hasPending": True,
        "nextStep": 1,
    }
    if error:
        payload["error"] = error
    return payload


STATUS_NOTHING_PENDING = {"pending": False, "steps": [], "nextStep": None}
CHECKLIST_NOTHING_PENDING = {"steps": [], "hasPending": False, "nextStep": None}


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

async def load_settings(endpoint: str) -> dict:
    try:
        return await db.get_settings(SETTINGS_KEYS)
    except db.QueryError as e:
        log_query_error(endpoint, "app_settings", e)
        raise OnboardingUnavailable("settings_error") from e


async def load_forms(endpoint: str) -> list[dict]:
    try:
        return await db.list_forms()
    except db.QueryError as e:
        log_query_error(endpoint, "admin_forms", e)
        raise OnboardingUnavailable("forms_error") from e


async def load_steps(endpoint: str) -> tuple[list[OnboardingStep], bool]:
    """Resolve the full step list.

    Returns (steps, configured) where configured is False when the catalog
    holds no active onboarding form, i.e. the admin never set the flow up.
    """
    settings = await load_settings(endpoint)
    forms = await load_forms(endpoint)
    configured = any(is_onboarding_form(f) and is_form_active(f) for f in forms)
    logger.debug(
        "[%s] forms fetched: total=%d configured=%s", endpoint, len(forms), configured,
        extra={"endpoint": endpoint},
    )
    return resolve_onboarding_steps(settings, forms), configured


async def find_whatsapp_user(endpoint: str, user_id: str) -> dict | None:
    """The user's WhatsApp row, falling back to the newest unlinked legacy row.

    Rows created before phone numbers were linked to accounts have no user_id;
    with ONBOARDING_LEGACY_WHATSAPP_FALLBACK on, the most recently updated one
    is assumed to be this user's. Lookup errors are logged and treated as
    "no row".
    """
    wa = None
    try:
        wa = await db.get_whatsapp_user_by_user_id(user_id)
    except db.QueryError as e:
        log_query_error(endpoint, "whatsapp_users by user_id", e, user_id)

    if (wa and wa.get("phone_number")) or not legacy_whatsapp_fallback_enabled():
        return wa

    try:
        legacy = await db.get_recent_unlinked_whatsapp_users(limit=LEGACY_WHATSAPP_SCAN_LIMIT)
    except db.QueryError as e:
        log_query_error(endpoint, "whatsapp_users without user_id", e, user_id)
        return wa
    if legacy:
        logger.info(
            "[%s] adopting unlinked whatsapp row", endpoint,
            extra={"endpoint": endpoint, "user_id": user_id},
        )
        return legacy[0]
    return wa


async def has_routine_audios(endpoint: str, user_id: str) -> bool:
    try:
        playlist = await db.get_routine_playlist(user_id)
        if not playlist:
            return False
        return await db.count_playlist_audios(playlist["id"]) > 0
    except db.QueryError as e:
        log_query_error(endpoint, "playlists", e, user_id)
        return False


async def load_completion_facts(endpoint: str, user_id: str, steps: list[OnboardingStep]) -> CompletionFacts:
    """Fetch only the rows the active steps need to decide completion."""
    active = active_steps(steps)
    facts = CompletionFacts()

    ids = form_ids(active)
    if ids:
        try:
            facts.answered_form_ids = await db.get_answered_form_ids(user_id, ids)
        except db.QueryError as e:
            log_query_error(endpoint, "admin_form_responses", e, user_id)
            raise OnboardingUnavailable("responses_error") from e

    kinds = {s.kind for s in active}
    if kinds & WHATSAPP_KINDS:
        facts.whatsapp_user = await find_whatsapp_user(endpoint, user_id)
    if "routine" in kinds:
        facts.has_routine = await has_routine_audios(endpoint, user_id)
    return facts
