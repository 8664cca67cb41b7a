from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from labtrack.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class CamelModel(BaseModel):
    """Base for persisted entities: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def build_model(model_cls: type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` into ``model_cls``, raising the domain ``ValidationError`` on failure."""
    try:
        return model_cls.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        fields = ", ".join(".".join(str(part) for part in err["loc"]) or "<root>" for err in errors)
        raise ValidationError(
            f"Invalid {model_cls.__name__}: {fields}",
            detail={"errors": errors},
        ) from exc


def field_names(model_cls: type[BaseModel]) -> dict[str, str]:
    """Map both attribute names and aliases to attribute names."""
    names: dict[str, str] = {}
    for name, info in model_cls.model_fields.items():
        names[name] = name
        if info.alias:
            names[info.alias] = name
    return names
