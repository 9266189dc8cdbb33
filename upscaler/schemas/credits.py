from datetime import datetime
from pydantic import BaseModel
from typing import List, Optional


class ProfileResponse(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    credits: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    id: str
    type: str
    amount: int
    description: Optional[str] = None
    stripe_session_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransactionList(BaseModel):
    transactions: List[TransactionResponse]
    total: int


class CreditPackageResponse(BaseModel):
    id: str
    name: str
    credits: int
    price: float
    price_id: str
    description: str
    popular: bool


class EstimateResponse(BaseModel):
    filename: Optional[str] = None
    scale: int
    width: Optional[int] = None
    height: Optional[int] = None
    credits: int
    balance: int
    sufficient: bool
