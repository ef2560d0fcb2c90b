"""Wire contracts: Pydantic validation for save submissions.

A request with any malformed item id is rejected as a whole; the handler
never applies part of a set.
"""

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")
MAX_ITEMS_PER_SAVE = 5000


class SaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId")
    completed_item_ids: list[str] = Field(alias="completedItemIds")
    client_timestamp: float | str | None = Field(default=None, alias="clientTimestamp")
    client_correlation_id: str | None = Field(default=None, alias="clientCorrelationId")

    @field_validator("user_id")
    @classmethod
    def user_id_well_formed(cls, v: str) -> str:
        if not USER_ID_PATTERN.fullmatch(v):
            raise ValueError("userId must be 1-64 chars of letters, digits, '-' or '_'")
        return v

    @field_validator("completed_item_ids")
    @classmethod
    def item_ids_well_formed(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_ITEMS_PER_SAVE:
            raise ValueError(f"completedItemIds must hold at most {MAX_ITEMS_PER_SAVE} ids")
        bad = [item for item in v if not ITEM_ID_PATTERN.fullmatch(item)]
        if bad:
            raise ValueError(f"malformed item ids: {bad[:5]!r}")
        # Set semantics, first-seen order
        return list(dict.fromkeys(v))

    @field_validator("client_timestamp")
    @classmethod
    def client_timestamp_parseable(cls, v: float | str | None) -> float | str | None:
        if isinstance(v, str):
            try:
                datetime.fromisoformat(v.replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValueError("clientTimestamp must be ISO-8601 or epoch millis") from exc
        return v


class UserRequest(BaseModel):
    """Body of requests that only name a user (reset-progress)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId")

    @field_validator("user_id")
    @classmethod
    def user_id_well_formed(cls, v: str) -> str:
        if not USER_ID_PATTERN.fullmatch(v):
            raise ValueError("userId must be 1-64 chars of letters, digits, '-' or '_'")
        return v


def _summarize(exc: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def parse_save_request(payload: Any) -> SaveRequest:
    """Validate a raw JSON payload, raising the taxonomy's ValidationError."""
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    try:
        return SaveRequest.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            "invalid save request", details={"errors": _summarize(exc)}
        ) from exc


def parse_user_request(payload: Any) -> UserRequest:
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    try:
        return UserRequest.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            "invalid request", details={"errors": _summarize(exc)}
        ) from exc


def validate_user_id(user_id: str | None) -> str:
    if not user_id or not USER_ID_PATTERN.fullmatch(user_id):
        raise ValidationError("userId must be 1-64 chars of letters, digits, '-' or '_'")
    return user_id
