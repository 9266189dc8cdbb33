from .batch import BatchSettingsUpdate
from .credits import (
    ProfileResponse, TransactionResponse, TransactionList,
    CreditPackageResponse, EstimateResponse,
)
from .payments import CheckoutRequest, CheckoutResponse
from .upscale import UpscaleRequest, UpscaleResponse

__all__ = [
    "BatchSettingsUpdate",
    "ProfileResponse", "TransactionResponse", "TransactionList",
    "CreditPackageResponse", "EstimateResponse",
    "CheckoutRequest", "CheckoutResponse",
    "UpscaleRequest", "UpscaleResponse",
]
