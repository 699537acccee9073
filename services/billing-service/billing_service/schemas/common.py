from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated

from pydantic import AfterValidator, BaseModel, PlainSerializer

from ..timeutils import as_utc

# Money stays Decimal in Python and goes out as a JSON number.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class MessageResponse(BaseModel):
    success: bool = True
    message: str
