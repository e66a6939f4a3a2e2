from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, PlainSerializer
from pydantic.alias_generators import to_camel

# Amounts travel as JSON numbers; arithmetic stays in Decimal
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ApiModel(BaseModel):
    """Partner-facing models use camelCase on the wire."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class CountResponse(BaseModel):
    count: int
