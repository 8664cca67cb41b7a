from typing import Any

from fastapi import Request
from pydantic import BaseModel

from labtrack.services.catalog import TestCatalog
from labtrack.services.lifecycle import LifecycleStore


def get_store(request: Request) -> LifecycleStore:
    return request.app.state.store


def get_catalog(request: Request) -> TestCatalog:
    return request.app.state.catalog


def dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [dump(item) for item in value]
    if isinstance(value, dict):
        return {key: dump(item) for key, item in value.items()}
    return value


def ok(data: Any, message: str = "Success") -> dict[str, Any]:
    return {"statusCode": 200, "message": message, "data": dump(data)}
