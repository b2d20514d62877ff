import uuid
from datetime import datetime, date
from enum import Enum
from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


class CamelCaseBaseModel(BaseModel):
    """
    Base model with camelCase field aliases and automatic serialization.

    The mobile client and the task payloads speak camelCase (``userId``,
    ``windowType``); Python code uses snake_case. Both spellings are accepted
    on input, and ``model_dump(by_alias=True)`` produces camelCase again.
    UUIDs, enums and datetimes are serialized to JSON-safe strings.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_serializer("*")
    def serialize_any(self, value):
        """Global serializer for all fields"""

        if isinstance(value, BaseModel):
            return value.model_dump(by_alias=True, exclude_none=True)

        if isinstance(value, uuid.UUID):
            return str(value)

        if isinstance(value, Enum):
            return value.value

        # datetime before date: datetime is a date subclass
        if isinstance(value, datetime):
            return value.isoformat()

        if isinstance(value, date):
            return value.isoformat()

        if isinstance(value, (list, tuple, set)):
            return [self.serialize_any(item) for item in value]

        if isinstance(value, dict):
            return {key: self.serialize_any(val) for key, val in value.items()}

        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")

        return value
