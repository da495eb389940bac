from pydantic import BaseModel, ConfigDict, Field


class ManualReviewRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    note: str = Field(min_length=1, max_length=1000)
