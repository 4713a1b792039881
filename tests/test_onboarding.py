"""Tests for onboarding.py: step ordering, slot allocation, completion and navigation.

Pure functions only: no database, no app.
"""

import pytest

from conftest import make_form
from onboarding import (
    CompletionFacts,
    SlotAllocator,
    build_checklist,
    build_status,
    find_root_form,
    get_step_url,
    is_setting_active,
    next_step_url,
    parse_position,
    resolve_onboarding_steps,
    step_at_position,
)


def positions_by_id(steps):
    return {s.id: s.position for s in steps}


FIXED_IDS = [
    "static-step-preview",
    "static-step-whatsapp",
    "hardcoded-step-6",
    "hardcoded-step-7",
    "hardcoded-step-8",
]


# ── Settings parsing ────────────────────────────────────────────────

class TestParsePosition:
    @pytest.mark.parametrize("raw,expected", [
        ("4", 4),
        (" 5", 5),
        ("7th", 7),
        ("3.9", 3),
        ("", 2),
        ("abc", 2),
        ("0", 2),
        (None, 2),
    ])
    def test_values(self, raw, expected):
        assert parse_position(raw, 2) == expected

    def test_only_literal_false_disables(self):
        assert is_setting_active(None) is True
        assert is_setting_active("true") is True
        assert is_setting_active("False") is True
        assert is_setting_active("0") is True
        assert is_setting_active("false") is False


# ── Root form discovery ─────────────────────────────────────────────

class TestFindRootForm:
    def test_prefers_step_one_without_parent(self):
        forms = [make_form("legacy", None), make_form("first", 1)]
        assert find_root_form(forms)["id"] == "first"

    def test_step_one_with_parent_is_skipped(self):
        forms = [make_form("child", 1, parent="x"), make_form("legacy", None)]
        assert find_root_form(forms)["id"] == "legacy"

    def test_falls_back_to_any_parentless_form(self):
        forms = [make_form("child", 1, parent="x"), make_form("five", 5)]
        assert find_root_form(forms)["id"] == "five"

    def test_none_when_every_form_has_parent(self):
        assert find_root_form([make_form("child", 4, parent="x")]) is None

    def test_empty_catalog(self):
        assert find_root_form([]) is None


# ── Slot allocator ──────────────────────────────────────────────────

class TestSlotAllocator:
    def test_free_slot_taken_as_is(self):
        assert SlotAllocator({1}).claim(2) == 2

    def test_skips_occupied_slots(self):
        allocator = SlotAllocator({2, 3, 4})
        assert allocator.claim(2) == 5

    def test_claim_marks_slot_occupied(self):
        allocator = SlotAllocator()
        assert allocator.claim(3) == 3
        assert allocator.claim(3) == 4
        assert allocator.occupied == {3, 4}


# ── Resolver ────────────────────────────────────────────────────────

class TestResolveOnboardingSteps:
    def test_no_forms_no_settings_gives_five_fixed_steps(self):
        steps = resolve_onboarding_steps({}, [])
        assert [s.id for s in steps] == FIXED_IDS
        assert [s.position for s in steps] == [2, 3, 6, 7, 8]

    def test_defaults_with_root_form(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        assert [s.position for s in steps] == [1, 2, 3, 6, 7, 8]
        assert steps[0].id == "root"
        assert steps[0].type == "form"
        assert steps[0].title == "Como você está se sentindo?"

    def test_form_at_two_pushes_preview(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form, make_form("prefs", 2)])
        pos = positions_by_id(steps)
        assert pos["prefs"] == 2
        assert pos["static-step-preview"] == 3
        assert pos["static-step-whatsapp"] == 4

    def test_fixed_steps_never_share_a_slot(self):
        settings = {
            "onboarding_static_preview_position": "5",
            "onboarding_static_whatsapp_position": "5",
        }
        pos = positions_by_id(resolve_onboarding_steps(settings, []))
        assert pos["static-step-preview"] == 5
        assert pos["static-step-whatsapp"] == 6
        assert pos["hardcoded-step-6"] == 7
        assert pos["hardcoded-step-7"] == 8
        assert pos["hardcoded-step-8"] == 9
        assert len(set(pos.values())) == 5

    def test_positions_from_settings(self, root_form):
        settings = {
            "onboarding_static_preview_position": "4",
            "onboarding_static_whatsapp_position": "9",
            "onboarding_hardcoded_6_position": "2",
        }
        pos = positions_by_id(resolve_onboarding_steps(settings, [root_form]))
        assert pos["hardcoded-step-6"] == 2
        assert pos["static-step-preview"] == 4
        assert pos["static-step-whatsapp"] == 9

    def test_forms_without_step_are_excluded(self, root_form):
        steps = resolve_onboarding_steps({}, [make_form("orphan", None, parent="root"), root_form])
        assert "orphan" not in {s.id for s in steps}

    def test_legacy_root_without_step_sits_at_one(self):
        steps = resolve_onboarding_steps({}, [make_form("legacy", None)])
        assert steps[0].id == "legacy"
        assert steps[0].position == 1

    def test_root_not_duplicated_when_chosen_by_fallback(self):
        steps = resolve_onboarding_steps({}, [make_form("five", 5)])
        assert [s.id for s in steps].count("five") == 1
        assert step_at_position(steps, 1).id == "five"
        assert step_at_position(steps, 5) is None

    def test_inactive_forms_are_kept_and_flagged(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form, make_form("off", 4, active=False)])
        off = next(s for s in steps if s.id == "off")
        assert off.is_active is False
        assert off.position == 4

    def test_null_is_active_counts_as_active(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form, make_form("legacy", 4, active=None)])
        assert next(s for s in steps if s.id == "legacy").is_active is True

    def test_non_onboarding_forms_ignored(self, root_form):
        forms = [root_form, make_form("survey", 4, form_type="nps")]
        assert "survey" not in {s.id for s in resolve_onboarding_steps({}, forms)}

    def test_info_forms_typed_info(self, root_form):
        info = make_form("welcome", 4, schema=[{"type": "info", "title": "Bem-vindo"}])
        step = next(s for s in resolve_onboarding_steps({}, [root_form, info]) if s.id == "welcome")
        assert step.type == "info"

    def test_active_flags_from_settings(self):
        settings = {"onboarding_hardcoded_7_active": "false", "onboarding_static_preview_active": "true"}
        steps = {s.id: s for s in resolve_onboarding_steps(settings, [])}
        assert steps["hardcoded-step-7"].is_active is False
        assert steps["static-step-preview"].is_active is True

    def test_display_text_overrides(self):
        settings = {"onboarding_step2_subtitle": "Escolha um tema", "onboarding_step3_title": "Receba no WhatsApp"}
        steps = {s.id: s for s in resolve_onboarding_steps(settings, [])}
        assert steps["static-step-preview"].description == "Escolha um tema"
        assert steps["static-step-preview"].static_data["step2_subtitle"] == "Escolha um tema"
        assert steps["static-step-whatsapp"].description == "Receba no WhatsApp"

    def test_colliding_forms_keep_catalog_order(self, root_form):
        forms = [root_form, make_form("a", 4), make_form("b", 4)]
        steps = resolve_onboarding_steps({}, forms)
        at_four = [s.id for s in steps if s.position == 4]
        assert at_four == ["a", "b"]

    def test_sorted_by_position(self, root_form):
        forms = [root_form, make_form("late", 12), make_form("mid", 5)]
        steps = resolve_onboarding_steps({"onboarding_hardcoded_8_position": "4"}, forms)
        positions = [s.position for s in steps]
        assert positions == sorted(positions)

    def test_same_inputs_same_output(self, root_form):
        forms = [root_form, make_form("prefs", 2), make_form("routine", 5)]
        settings = {"onboarding_static_whatsapp_position": "2"}
        assert resolve_onboarding_steps(settings, forms) == resolve_onboarding_steps(settings, forms)

    def test_to_dict_shape(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        preview = steps[1].to_dict()
        assert preview["id"] == "static-step-preview"
        assert preview["isActive"] is True
        assert preview["staticKind"] == "preview"
        assert "hardcodedKind" not in preview
        assert steps[0].to_dict()["formData"]["id"] == "root"
        assert steps[-1].to_dict()["hardcodedKind"] == "daily-verse"


# ── Completion ──────────────────────────────────────────────────────

class TestChecklist:
    def test_new_user_starts_at_first_step(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        result = build_checklist(steps, CompletionFacts())
        assert result["hasPending"] is True
        assert result["nextStep"] == 1
        assert [i["stepNumber"] for i in result["steps"]] == [1, 2, 3, 4, 5, 6]
        assert not any(i["completed"] for i in result["steps"])

    def test_empty_routine_is_the_next_step(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        facts = CompletionFacts(
            answered_form_ids={"root"},
            whatsapp_user={"phone_number": "5511988887777", "receives_daily_verse": None},
            has_routine=False,
        )
        result = build_checklist(steps, facts)
        completed = [i["completed"] for i in result["steps"]]
        assert completed == [True, True, True, False, True, False]
        assert result["steps"][3]["label"] == "Sua rotina está pronta"
        assert result["nextStep"] == 4

    def test_everything_done(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        facts = CompletionFacts(
            answered_form_ids={"root"},
            whatsapp_user={"phone_number": "5511988887777", "receives_daily_verse": False},
            has_routine=True,
        )
        result = build_checklist(steps, facts)
        assert result["hasPending"] is False
        assert result["nextStep"] is None

    def test_inactive_steps_do_not_count(self, root_form):
        settings = {key: "false" for key in (
            "onboarding_static_whatsapp_active",
            "onboarding_hardcoded_6_active",
            "onboarding_hardcoded_7_active",
            "onboarding_hardcoded_8_active",
        )}
        forms = [root_form, make_form("off", 4, active=False)]
        result = build_checklist(resolve_onboarding_steps(settings, forms), CompletionFacts(answered_form_ids={"root"}))
        assert [i["label"] for i in result["steps"]] == ["Como você está se sentindo?", "Preview da Categoria"]
        assert result["hasPending"] is False

    def test_display_numbers_are_sequential(self, root_form):
        forms = [root_form, make_form("ten", 10)]
        result = build_checklist(resolve_onboarding_steps({}, forms), CompletionFacts())
        assert [i["stepNumber"] for i in result["steps"]] == [1, 2, 3, 4, 5, 6, 7]

    def test_preview_follows_root_form(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        before = build_checklist(steps, CompletionFacts())["steps"][1]
        after = build_checklist(steps, CompletionFacts(answered_form_ids={"root"}))["steps"][1]
        assert before["completed"] is False
        assert after["completed"] is True

    def test_preview_complete_without_root(self):
        result = build_checklist(resolve_onboarding_steps({}, []), CompletionFacts())
        assert result["steps"][0]["label"] == "Preview da Categoria"
        assert result["steps"][0]["completed"] is True

    def test_blank_phone_is_not_connected(self):
        facts = CompletionFacts(whatsapp_user={"phone_number": "   ", "receives_daily_verse": True})
        assert facts.has_phone is False
        assert facts.daily_verse_set is True

    def test_info_step_needs_response(self, root_form):
        info = make_form("welcome", 4, schema=[{"type": "info"}])
        steps = resolve_onboarding_steps({}, [root_form, info])
        done = build_checklist(steps, CompletionFacts(answered_form_ids={"root", "welcome"}))
        item = next(i for i in done["steps"] if i["label"] == "Form welcome")
        assert item["completed"] is True


class TestStatus:
    def test_pending_positions(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form, make_form("prefs", 4)])
        facts = CompletionFacts(answered_form_ids={"root"})
        result = build_status(steps, facts)
        assert result == {"pending": True, "steps": [3, 4, 6, 7, 8], "nextStep": 3}

    def test_nothing_pending(self):
        steps = resolve_onboarding_steps({}, [])
        facts = CompletionFacts(
            whatsapp_user={"phone_number": "5511988887777", "receives_daily_verse": True},
            has_routine=True,
        )
        assert build_status(steps, facts) == {"pending": False, "steps": [], "nextStep": None}


# ── Navigation ──────────────────────────────────────────────────────

class TestNavigation:
    def test_preview_skipped_without_category(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        assert next_step_url(steps, 1) == "/onboarding?step=3&showStatic=whatsapp"

    def test_preview_with_category(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        url = next_step_url(steps, 1, category_id="cat 1", form_id="root")
        assert url == "/onboarding?step=2&showStatic=preview&categoryId=cat%201&formId=root"

    def test_inactive_steps_skipped(self, root_form):
        steps = resolve_onboarding_steps({"onboarding_hardcoded_6_active": "false"}, [root_form])
        assert next_step_url(steps, 3) == "/onboarding?step=7"

    def test_finished_flow_goes_home(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form])
        assert next_step_url(steps, 8) == "/"

    def test_form_step_url(self, root_form):
        steps = resolve_onboarding_steps({}, [root_form, make_form("prefs", 4)])
        assert get_step_url(step_at_position(steps, 4), form_id="prefs") == "/onboarding?step=4&formId=prefs"
