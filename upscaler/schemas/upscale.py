from pydantic import BaseModel, Field
from typing import Optional


class UpscaleRequest(BaseModel):
    image: str = Field(..., description="Base64 image or data URL")
    scale: int = 2
    format: str = "png"
    filename: str = "image.png"


class UpscaleResponse(BaseModel):
    success: bool
    image: str
    format: str
    scale: int
    credits_used: int
    balance: int
    warning: Optional[str] = None
