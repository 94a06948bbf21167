from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from stagekey.service.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_HANDLE_PATTERN = re.compile(r"^@?[A-Za-z0-9_.]{1,64}$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]{1,64}@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")


def validate_username(value: str) -> str:
    cleaned = _normalize_unicode(value.strip())
    if not _USERNAME_PATTERN.match(cleaned):
        raise ValueError(
            "username must be 1-64 letters, digits, underscores, dots or hyphens"
        )
    return cleaned


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value.strip())
    if not cleaned:
        raise ValueError("must not be blank")
    if len(cleaned) > 80:
        raise ValueError("must be at most 80 characters")
    return cleaned


def _validate_handle(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value.strip())
    if not _HANDLE_PATTERN.match(cleaned):
        raise ValueError("handle must be letters, digits, underscores or dots")
    return cleaned


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value.strip().lower())
    if not cleaned:
        return None
    if len(cleaned) > 254 or not _EMAIL_PATTERN.match(cleaned):
        raise ValueError("invalid email address")
    return cleaned


def _strip_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


class ApplicantData(BaseModel):
    """Public token-request intake form."""

    model_config = ConfigDict(extra="forbid")

    first_name: str
    last_name: str
    social_handle: str
    desired_username: str
    phone: str = Field(..., max_length=32)

    @field_validator("first_name", "last_name")
    @classmethod
    def _names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("social_handle")
    @classmethod
    def _handle(cls, value: str) -> str:
        return _validate_handle(value)

    @field_validator("desired_username")
    @classmethod
    def _username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return value.strip()


class NewUserData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    social_handle: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("social_handle")
    @classmethod
    def _handle(cls, value: Optional[str]) -> Optional[str]:
        return _validate_handle(value)

    @field_validator("phone", "first_name", "last_name")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)


class ProfileChanges(BaseModel):
    """Partial profile edit; only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    social_handle: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("social_handle")
    @classmethod
    def _handle(cls, value: Optional[str]) -> Optional[str]:
        return _validate_handle(value)

    @field_validator("phone", "first_name", "last_name")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        return _strip_optional(value)


def parse_input(model: Type[ModelT], data: Union[ModelT, dict, Any]) -> ModelT:
    """Coerce ``data`` into ``model``, raising the service ``ValidationError``."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        first = errors[0] if errors else {"field": "", "message": "invalid input"}
        raise ValidationError(
            f"invalid {first['field'] or 'input'}: {first['message']}",
            detail={"errors": errors},
        ) from exc
