from pydantic import BaseModel, ConfigDict, Field


class SetStockLineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    total_on_hand: int = Field(ge=0)
