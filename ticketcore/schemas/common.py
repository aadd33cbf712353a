from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ticketcore.core.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

DISCORD_ID_PATTERN = r"^\d{1,20}$"


def parse_payload(model: type[ModelT], data: Any = None, **fields: Any) -> ModelT:
    """Validate input against ``model``, raising the core ``ValidationError`` on failure."""

    if isinstance(data, model):
        return data
    payload = dict(data or {})
    payload.update(fields)
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())),
                "message": error.get("msg", "Invalid value"),
            }
            for error in exc.errors()
        ]
        summary = "; ".join(f"{item['field']}: {item['message']}" for item in errors)
        raise ValidationError(f"Invalid {model.__name__}: {summary}", errors=errors) from exc
