"""Boundary validation turning pydantic failures into :class:`ValidationError`."""

from __future__ import annotations

from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError, constr

from .errors import ValidationError
from .models import (
    DISPLAY_NAME_MAX_LENGTH,
    ROOM_CODE_PATTERN,
    ChatMessageCreate,
    ContentSummary,
    JoinRequest,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _RoomCode(BaseModel):
    room_code: constr(strip_whitespace=True, pattern=ROOM_CODE_PATTERN)


class _DisplayName(BaseModel):
    display_name: constr(strip_whitespace=True, min_length=1, max_length=DISPLAY_NAME_MAX_LENGTH)


def parse_input(model: type[ModelT], data: Mapping[str, Any]) -> ModelT:
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or model.__name__
        raise ValidationError(field, error.get("msg", "invalid value")) from exc


def validate_room_code(room_code: Any) -> str:
    return parse_input(_RoomCode, {"room_code": room_code}).room_code


def validate_display_name(display_name: Any) -> str:
    return parse_input(_DisplayName, {"display_name": display_name}).display_name


def validate_message(text: Any) -> str:
    return parse_input(ChatMessageCreate, {"text": text}).text


def validate_content(content: ContentSummary | Mapping[str, Any]) -> ContentSummary:
    if isinstance(content, ContentSummary):
        return content
    return parse_input(ContentSummary, content)


def validate_join(room_code: Any, member_id: Any, display_name: Any) -> JoinRequest:
    return parse_input(
        JoinRequest,
        {"room_code": room_code, "member_id": member_id, "display_name": display_name},
    )
