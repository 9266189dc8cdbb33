from pydantic import BaseModel, Field
from typing import Optional


class BatchSettingsUpdate(BaseModel):
    scale: Optional[int] = Field(None, description="2, 4 or 8")
    concurrency: Optional[int] = Field(None, ge=1)
    output_format: Optional[str] = None
