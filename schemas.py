import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TagIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=50)


class RuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Not stripped: spaces are significant in prefix patterns.
    pattern: str = Field(..., min_length=1, max_length=200)
    tag_id: int


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: dt.date
    amount_cents: int
    description: str = Field(default="", max_length=500)
    tag_id: Optional[int] = None


class TransactionTagIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tag_id: Optional[int] = None


class ExcludedTagsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tag_ids: list[int] = Field(default_factory=list)
