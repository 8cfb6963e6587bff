from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, Field


class WithdrawRequest(BaseModel):
    project_id: str = Field("", alias="projectId")
    creator_address: str = Field("", alias="creatorAddress")

    model_config = {"populate_by_name": True}


class CheckRepaymentRequest(BaseModel):
    project_id: str = Field("", alias="projectId")
    # "checkerType" is accepted for older clients
    source: Literal["manual", "automated", "api"] = Field(
        "manual",
        validation_alias=AliasChoices("source", "checkerType"),
    )

    model_config = {"populate_by_name": True}
