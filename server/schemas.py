"""JSON schemas for request bodies accepted by the app action endpoints."""
from __future__ import annotations

from typing import Any, Dict

ENV_KEY_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

CREATE_APP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["appname"],
    "properties": {
        "appname": {"type": "string", "minLength": 1, "maxLength": 63},
    },
}

DELETE_APP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "keepData": {"type": ["boolean", "string", "integer"]},
    },
}

ENV_UPDATE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["env"],
    "properties": {
        "env": {
            "type": "object",
            "propertyNames": {"pattern": ENV_KEY_PATTERN},
            "additionalProperties": {"type": ["string", "number", "boolean"]},
        },
    },
}

__all__ = ["CREATE_APP_SCHEMA", "DELETE_APP_SCHEMA", "ENV_KEY_PATTERN", "ENV_UPDATE_SCHEMA"]
