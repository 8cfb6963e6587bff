from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ProjectCreate(BaseModel):
    title: str
    description: Optional[str] = None
    goal_amount: Decimal = Field(..., alias="goalAmount")
    interest_rate: Decimal = Field(Decimal("5"), alias="interestRate")
    creator_address: str = Field(..., alias="creatorAddress")

    model_config = {"populate_by_name": True}


class CommitmentCreate(BaseModel):
    investor_address: str = Field(..., alias="investorAddress")
    amount: Decimal
    lockup_period: Literal["10min", "24h", "7days"] = Field("10min", alias="lockupPeriod")
    tx_ref: Optional[str] = Field(None, alias="txRef")

    model_config = {"populate_by_name": True}
