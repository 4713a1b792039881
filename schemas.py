"""Pydantic request schemas for the Agapefy onboarding API."""
from __future__ import annotations
import re
from typing import Optional, List, Any
from pydantic import BaseModel, Field, field_validator, model_validator

from onboarding import SETTINGS_KEYS


# ──────────────────────── Constants ────────────────────────

ONBOARDING_SETTING_KEYS: set[str] = set(SETTINGS_KEYS)

MIN_PHONE_DIGITS = 10


def clean_phone(raw: Any) -> str:
    """Keep digits only: '+55 (11) 98888-7777' -> '5511988887777'."""
    return re.sub(r"\D", "", str(raw or ""))


# ──────────────────── Form catalog ──────────────────────

class FormCreate(BaseModel):
    name: str = Field(default="Novo formulário", min_length=1, max_length=256)
    description: Optional[str] = Field(default="Edite os campos depois", max_length=5_000)
    form_type: str = Field(default="onboarding", max_length=64)
    schema_: List[Any] = Field(default_factory=list, alias="schema")
    onboard_step: Optional[int] = Field(default=None, ge=1, le=1_000)
    is_active: bool = True
    parent_form_id: Optional[str] = None
    allow_other_option: bool = False
    other_option_label: Optional[str] = Field(default=None, max_length=256)

    model_config = {"populate_by_name": True}

    @field_validator("schema_", mode="before")
    @classmethod
    def schema_must_be_list(cls, v: Any) -> list:
        # Anything that is not an array becomes an empty form
        return v if isinstance(v, list) else []


class FormUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=256)
    description: Optional[str] = Field(None, max_length=5_000)
    form_type: Optional[str] = Field(None, max_length=64)
    schema_: Optional[List[Any]] = Field(None, alias="schema")
    onboard_step: Optional[int] = Field(None, ge=1, le=1_000)
    is_active: Optional[bool] = None
    parent_form_id: Optional[str] = None
    allow_other_option: Optional[bool] = None
    other_option_label: Optional[str] = Field(None, max_length=256)

    model_config = {"populate_by_name": True}

    @field_validator("name", "schema_", "allow_other_option")
    @classmethod
    def not_clearable(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("cannot be null")
        return v

    def changes(self) -> dict:
        """Only the fields the client actually sent, keyed by column name."""
        data = self.model_dump(exclude_unset=True)
        if "schema_" in data:
            data["schema"] = data.pop("schema_")
        return data


class FormResponseCreate(BaseModel):
    answers: dict = Field(default_factory=dict)


# ──────────────────── Onboarding settings ──────────────────────

class OnboardingSettingsUpdate(BaseModel):
    """Flat {key: value} map of onboarding settings. Values are stored as strings."""
    settings: dict[str, Any] = Field(..., min_length=1)

    @field_validator("settings")
    @classmethod
    def keys_must_be_known(cls, v: dict[str, Any]) -> dict[str, str]:
        unknown = sorted(set(v) - ONBOARDING_SETTING_KEYS)
        if unknown:
            raise ValueError(f"Unknown onboarding settings: {', '.join(unknown)}")
        normalized = {}
        for key, value in v.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            elif value is None:
                value = ""
            normalized[key] = str(value)
        return normalized


# ──────────────────── WhatsApp users ──────────────────────

class PhoneCheckRequest(BaseModel):
    phone: Optional[str] = None
    phone_number: Optional[str] = None

    @property
    def cleaned(self) -> str:
        return clean_phone(self.phone or self.phone_number)


class PhoneUpdateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)   # whatsapp_users row id
    phone_number: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_phone_length(self):
        if len(clean_phone(self.phone_number)) < MIN_PHONE_DIGITS:
            raise ValueError(f"Phone number must have at least {MIN_PHONE_DIGITS} digits")
        return self
