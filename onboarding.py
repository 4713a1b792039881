"""Onboarding step resolution.

Pure functions only: the routers fetch settings, forms and per-user rows from
the database and hand them to this module, which decides

- the ordered list of steps (admin-authored forms interleaved with the five
  fixed screens, each fixed screen placed in the first free position at or
  after the one configured in app_settings),
- which of those steps a user has completed,
- where the client should navigate next.

Nothing here is cached; every request recomputes the flow from current rows.
"""

import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

TEXT_SETTING_KEYS = (
    "onboarding_step2_title",
    "onboarding_step2_subtitle",
    "onboarding_step3_title",
    "onboarding_step4_section_title",
    "onboarding_step4_instruction",
    "onboarding_step4_label",
    "onboarding_step4_privacy_text",
    "onboarding_step4_skip_button",
    "onboarding_step4_complete_button",
)


@dataclass(frozen=True)
class FixedStep:
    """A built-in screen whose position is configurable from the admin console."""
    id: str
    type: str                       # 'static' | 'hardcoded'
    kind: str                       # staticKind / hardcodedKind
    title: str
    position_key: str
    active_key: str
    default_position: int
    description: Optional[str] = None
    description_key: Optional[str] = None   # settings key overriding description
    static_data_keys: tuple = ()


# Allocation order matters: earlier entries claim contested slots first.
FIXED_STEPS = (
    FixedStep(
        id="static-step-preview",
        type="static",
        kind="preview",
        title="Preview da Categoria",
        position_key="onboarding_static_preview_position",
        active_key="onboarding_static_preview_active",
        default_position=2,
        description_key="onboarding_step2_subtitle",
        static_data_keys=("step2_title", "step2_subtitle"),
    ),
    FixedStep(
        id="static-step-whatsapp",
        type="static",
        kind="whatsapp",
        title="Conectar WhatsApp",
        position_key="onboarding_static_whatsapp_position",
        active_key="onboarding_static_whatsapp_active",
        default_position=3,
        description_key="onboarding_step3_title",
        static_data_keys=(
            "step3_title",
            "step4_section_title",
            "step4_instruction",
            "step4_label",
            "step4_privacy_text",
            "step4_skip_button",
            "step4_complete_button",
        ),
    ),
    FixedStep(
        id="hardcoded-step-6",
        type="hardcoded",
        kind="routine",
        title="Sua rotina está pronta",
        position_key="onboarding_hardcoded_6_position",
        active_key="onboarding_hardcoded_6_active",
        default_position=6,
        description="Tela de exibição da playlist da rotina criada",
    ),
    FixedStep(
        id="hardcoded-step-7",
        type="hardcoded",
        kind="whatsapp-final",
        title="Conectar WhatsApp (final)",
        position_key="onboarding_hardcoded_7_position",
        active_key="onboarding_hardcoded_7_active",
        default_position=7,
        description="Tela de configuração do WhatsApp para receber versículos diários",
    ),
    FixedStep(
        id="hardcoded-step-8",
        type="hardcoded",
        kind="daily-verse",
        title="Versículo Diário",
        position_key="onboarding_hardcoded_8_position",
        active_key="onboarding_hardcoded_8_active",
        default_position=8,
        description="Tela de opt-in para receber versículos diários via WhatsApp",
    ),
)

POSITION_SETTING_KEYS = tuple(s.position_key for s in FIXED_STEPS)
ACTIVE_SETTING_KEYS = tuple(s.active_key for s in FIXED_STEPS)
SETTINGS_KEYS = TEXT_SETTING_KEYS + ACTIVE_SETTING_KEYS + POSITION_SETTING_KEYS

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def parse_position(value: Optional[str], default: int) -> int:
    """Parse the leading integer of a settings value.

    "4", " 4", "4th" -> 4. Empty, unparsable and zero values give the default.
    """
    if value is None:
        return default
    match = _LEADING_INT.match(str(value))
    if not match:
        return default
    return int(match.group(1)) or default


def is_setting_active(value: Optional[str]) -> bool:
    """Flags are on unless stored as the literal string 'false'."""
    return value != "false"


# ---------------------------------------------------------------------------
# Form catalog
# ---------------------------------------------------------------------------

def is_onboarding_form(form: dict) -> bool:
    """Legacy forms without a form_type belong to the onboarding flow."""
    return form.get("form_type") in ("onboarding", None, "")


def is_form_active(form: dict) -> bool:
    return form.get("is_active") is not False


def _has_parent(form: dict) -> bool:
    return form.get("parent_form_id") is not None


def _step_number(form: dict) -> Optional[int]:
    step = form.get("onboard_step")
    if isinstance(step, bool) or not isinstance(step, int):
        return None
    return step


def find_root_form(forms: list[dict]) -> Optional[dict]:
    """Pick the form that opens the flow (position 1).

    Preference: step 1 without parent, then a parentless form with no step
    (legacy rows), then any parentless form.
    """
    for form in forms:
        if _step_number(form) == 1 and not _has_parent(form):
            return form
    for form in forms:
        if _step_number(form) is None and not _has_parent(form):
            return form
    for form in forms:
        if not _has_parent(form):
            return form
    return None


def is_info_form(form: dict) -> bool:
    schema = form.get("schema")
    return (
        isinstance(schema, list)
        and len(schema) > 0
        and isinstance(schema[0], dict)
        and schema[0].get("type") == "info"
    )


# ---------------------------------------------------------------------------
# Step descriptors
# ---------------------------------------------------------------------------

@dataclass
class OnboardingStep:
    """One screen of the flow. Derived on every request, never stored."""
    id: str
    position: int
    type: str                               # 'form' | 'info' | 'static' | 'hardcoded'
    title: str
    description: Optional[str] = None
    is_active: bool = True
    form_data: Optional[dict] = None
    static_data: Optional[dict] = None
    static_kind: Optional[str] = None
    hardcoded_kind: Optional[str] = None

    @property
    def kind(self) -> Optional[str]:
        return self.static_kind or self.hardcoded_kind

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "position": self.position,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "isActive": self.is_active,
        }
        if self.form_data is not None:
            data["formData"] = self.form_data
        if self.static_data is not None:
            data["staticData"] = self.static_data
        if self.static_kind is not None:
            data["staticKind"] = self.static_kind
        if self.hardcoded_kind is not None:
            data["hardcodedKind"] = self.hardcoded_kind
        return data


def _form_step(form: dict, position: int, step_type: str = "form") -> OnboardingStep:
    return OnboardingStep(
        id=form["id"],
        position=position,
        type=step_type,
        title=form.get("name") or f"Passo {position}",
        description=form.get("description"),
        is_active=is_form_active(form),
        form_data=form,
    )


def _fixed_step(fixed: FixedStep, position: int, settings: dict) -> OnboardingStep:
    description = fixed.description
    if fixed.description_key:
        description = settings.get(fixed.description_key)
    static_data = None
    if fixed.type == "static":
        static_data = {key: settings.get(f"onboarding_{key}") for key in fixed.static_data_keys}
    return OnboardingStep(
        id=fixed.id,
        position=position,
        type=fixed.type,
        title=fixed.title,
        description=description,
        is_active=is_setting_active(settings.get(fixed.active_key)),
        static_data=static_data,
        static_kind=fixed.kind if fixed.type == "static" else None,
        hardcoded_kind=fixed.kind if fixed.type == "hardcoded" else None,
    )


class SlotAllocator:
    """Hands out the first free integer position at or after a desired one."""

    def __init__(self, occupied=()):
        self.occupied = set(occupied)

    def claim(self, desired: int) -> int:
        slot = desired
        while slot in self.occupied:
            slot += 1
        self.occupied.add(slot)
        return slot


def resolve_onboarding_steps(settings: dict, forms: list[dict]) -> list[OnboardingStep]:
    """Build the full ordered step list, inactive steps included.

    `settings` maps app_settings keys to their raw string values (missing keys
    take defaults); `forms` is the admin_forms catalog in catalog order.
    Dynamic forms keep their own onboard_step; the five fixed steps are
    allocated around them in FIXED_STEPS order.
    """
    settings = settings or {}
    catalog = [f for f in (forms or []) if is_onboarding_form(f)]

    steps: list[OnboardingStep] = []
    root = find_root_form(catalog)
    if root is not None:
        steps.append(_form_step(root, 1))

    dynamic = [
        f for f in catalog
        if (_step_number(f) or 0) >= 2 and (root is None or f["id"] != root["id"])
    ]
    allocator = SlotAllocator(_step_number(f) for f in dynamic)
    if root is not None:
        allocator.occupied.add(1)

    for form in dynamic:
        steps.append(_form_step(form, _step_number(form), "info" if is_info_form(form) else "form"))

    for fixed in FIXED_STEPS:
        desired = parse_position(settings.get(fixed.position_key), fixed.default_position)
        steps.append(_fixed_step(fixed, allocator.claim(desired), settings))

    steps.sort(key=lambda s: s.position)
    return steps


def active_steps(steps: list[OnboardingStep]) -> list[OnboardingStep]:
    return [s for s in steps if s.is_active]


def root_form_step(steps: list[OnboardingStep]) -> Optional[OnboardingStep]:
    for step in steps:
        if step.position == 1 and step.type in ("form", "info"):
            return step
    return None


def form_ids(steps: list[OnboardingStep]) -> list[str]:
    """Ids of the steps backed by an admin form, in flow order."""
    return [s.id for s in steps if s.type in ("form", "info")]


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

WHATSAPP_KINDS = frozenset({"whatsapp", "whatsapp-final", "daily-verse"})


@dataclass
class CompletionFacts:
    """Per-user rows the completion rules look at."""
    answered_form_ids: set = field(default_factory=set)
    whatsapp_user: Optional[dict] = None
    has_routine: bool = False

    @property
    def has_phone(self) -> bool:
        phone = (self.whatsapp_user or {}).get("phone_number")
        return bool(phone and str(phone).strip())

    @property
    def daily_verse_set(self) -> bool:
        return isinstance((self.whatsapp_user or {}).get("receives_daily_verse"), bool)


def is_step_completed(step: OnboardingStep, facts: CompletionFacts, root: Optional[OnboardingStep]) -> bool:
    if step.type in ("form", "info"):
        return step.id in facts.answered_form_ids
    if step.kind == "preview":
        # No state of its own: follows the root form.
        return root is None or root.id in facts.answered_form_ids
    if step.kind in ("whatsapp", "whatsapp-final"):
        return facts.has_phone
    if step.kind == "routine":
        return facts.has_routine
    if step.kind == "daily-verse":
        return facts.daily_verse_set
    return False


def evaluate_steps(steps: list[OnboardingStep], facts: CompletionFacts) -> list[tuple[OnboardingStep, bool]]:
    """Pair each active step with its completion flag, in flow order."""
    active = active_steps(steps)
    root = root_form_step(active)
    return [(step, is_step_completed(step, facts, root)) for step in active]


def build_checklist(steps: list[OnboardingStep], facts: CompletionFacts) -> dict:
    """Checklist payload: display-numbered items plus the first pending one."""
    items = [
        {"stepNumber": index, "label": step.title, "completed": completed}
        for index, (step, completed) in enumerate(evaluate_steps(steps, facts), start=1)
    ]
    pending = [item["stepNumber"] for item in items if not item["completed"]]
    return {
        "steps": items,
        "hasPending": bool(pending),
        "nextStep": pending[0] if pending else None,
    }


def build_status(steps: list[OnboardingStep], facts: CompletionFacts) -> dict:
    """Status payload: positions of the pending steps, in flow order."""
    pending = [step.position for step, completed in evaluate_steps(steps, facts) if not completed]
    return {
        "pending": bool(pending),
        "steps": pending,
        "nextStep": pending[0] if pending else None,
    }


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------

def _query_value(value: str) -> str:
    return quote(str(value), safe="!~*'()")


def get_step_url(step: OnboardingStep, category_id: str | None = None, form_id: str | None = None) -> str:
    url = f"/onboarding?step={step.position}"
    if step.type == "static" and step.static_kind in ("preview", "whatsapp"):
        url += f"&showStatic={step.static_kind}"
    if category_id:
        url += f"&categoryId={_query_value(category_id)}"
    if form_id:
        url += f"&formId={_query_value(form_id)}"
    return url


def next_step_url(
    steps: list[OnboardingStep],
    current_position: int,
    category_id: str | None = None,
    form_id: str | None = None,
) -> str:
    """URL of the first active step after current_position, or '/' when done.

    The category preview can only render with a category, so it is skipped
    when none was chosen.
    """
    candidates = [
        s for s in active_steps(steps)
        if not (s.static_kind == "preview" and not category_id)
    ]
    candidates.sort(key=lambda s: s.position)
    for step in candidates:
        if step.position > current_position:
            return get_step_url(step, category_id, form_id)
    return "/"


def step_at_position(steps: list[OnboardingStep], position: int) -> Optional[OnboardingStep]:
    for step in steps:
        if step.position == position:
            return step
    return None
