"""Strict Pydantic base model and shared field types."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

import pydantic

__all__ = [
    'JsonDatetime',
    'StrictModel',
]

# Accepts ISO strings on load (JSON snapshot files), datetimes in code
JsonDatetime = Annotated[datetime, pydantic.Field(strict=False)]


class StrictModel(pydantic.BaseModel):
    """Base model with strict validation.

    Config:
    - extra='forbid': Reject unknown fields (fail-fast)
    - strict=True: No implicit type coercion
    - frozen=True: Immutable after creation, safe to hand off by value
    """

    model_config = pydantic.ConfigDict(
        extra='forbid',
        strict=True,
        frozen=True,
    )
