"""
Credit routes: balance, history, package catalog and cost estimates.
"""
from typing import List

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.concurrency import run_in_threadpool

from ..auth import get_required_user
from ..checkout import list_packages
from ..ledger import CreditLedger, get_ledger
from ..models.profile import Profile
from ..responses import bad_request
from ..schemas.credits import (
    CreditPackageResponse,
    EstimateResponse,
    ProfileResponse,
    TransactionList,
    TransactionResponse,
)
from ..worker.credit_estimator import estimate_credits, read_dimensions
from ..worker.upscale_client import SUPPORTED_SCALES

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("", response_model=ProfileResponse)
def get_balance(current_user: Profile = Depends(get_required_user)):
    """Current user's profile and credit balance."""
    return current_user


@router.get("/transactions", response_model=TransactionList)
def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    current_user: Profile = Depends(get_required_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Transaction history, newest first."""
    rows = ledger.transactions(current_user.id, limit=limit)
    return TransactionList(
        transactions=[TransactionResponse.model_validate(row) for row in rows],
        total=len(rows),
    )


@router.get("/packages", response_model=List[CreditPackageResponse])
def get_packages():
    return [package.to_dict() for package in list_packages()]


@router.post("/estimate", response_model=EstimateResponse)
async def estimate(
    file: UploadFile = File(...),
    scale: int = Form(2),
    current_user: Profile = Depends(get_required_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Estimate the credits needed to upscale one image."""
    if scale not in SUPPORTED_SCALES:
        bad_request(f"Unsupported scale {scale}. Choose one of {list(SUPPORTED_SCALES)}")

    data = await file.read()
    dimensions = read_dimensions(data)
    width, height = dimensions or (None, None)
    cost = estimate_credits(data, scale)

    balance = await run_in_threadpool(ledger.balance, current_user.id)
    return EstimateResponse(
        filename=file.filename,
        scale=scale,
        width=width,
        height=height,
        credits=cost,
        balance=balance,
        sufficient=balance >= cost,
    )
