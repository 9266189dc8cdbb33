"""
Credit ledger: balance updates with an append-only transaction log.

Every balance change happens in the same database transaction as the row
that records it. Usage debits are idempotent on ``reference`` and purchases
on ``stripe_session_id``, so callers may safely retry.
"""
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import get_settings
from .database import SessionLocal
from .logging_config import get_logger
from .models.profile import Profile
from .models.transaction import CreditTransaction

logger = get_logger("ledger")
settings = get_settings()


class LedgerError(Exception):
    """Raised when the ledger cannot apply a balance change."""


class InsufficientCreditsError(LedgerError):
    """Raised when a debit would take the balance below zero."""

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: {required} required, {available} available")


def get_or_create_profile(
    db: Session,
    user_id: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
) -> Profile:
    """Load a user's profile, creating it with the signup bonus on first sight."""
    profile = db.query(Profile).filter(Profile.id == user_id).first()
    if profile:
        return profile

    profile = Profile(
        id=user_id,
        email=email,
        full_name=full_name or "",
        credits=settings.signup_bonus_credits,
    )
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent first request created it
        db.rollback()
        return db.query(Profile).filter(Profile.id == user_id).one()
    db.refresh(profile)
    logger.info("profile_created", user_id=user_id, credits=profile.credits)
    return profile


class CreditLedger:
    """Debits and credits user balances through short-lived sessions."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def balance(self, user_id: str) -> int:
        db = self.session_factory()
        try:
            profile = db.get(Profile, user_id)
            return profile.credits if profile else 0
        finally:
            db.close()

    def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference: Optional[str] = None,
    ) -> CreditTransaction:
        """Subtract ``amount`` credits and append a ``usage`` row."""
        if amount <= 0:
            raise ValueError("Debit amount must be positive")

        db = self.session_factory()
        try:
            if reference:
                existing = db.query(CreditTransaction).filter(
                    CreditTransaction.reference == reference
                ).first()
                if existing:
                    logger.info("debit_already_recorded", user_id=user_id, reference=reference)
                    db.expunge(existing)
                    return existing

            result = db.execute(
                update(Profile)
                .where(Profile.id == user_id, Profile.credits >= amount)
                .values(
                    credits=Profile.credits - amount,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount == 0:
                db.rollback()
                profile = db.get(Profile, user_id)
                if profile is None:
                    raise LedgerError(f"Profile {user_id} not found")
                raise InsufficientCreditsError(user_id, amount, profile.credits)

            transaction = CreditTransaction(
                user_id=user_id,
                type="usage",
                amount=-amount,
                description=description,
                reference=reference,
            )
            db.add(transaction)
            db.commit()
            db.refresh(transaction)
            db.expunge(transaction)
            logger.info("credits_debited", user_id=user_id, amount=amount, reference=reference)
            return transaction
        except IntegrityError:
            # Same reference committed by a concurrent retry
            db.rollback()
            existing = db.query(CreditTransaction).filter(
                CreditTransaction.reference == reference
            ).first()
            if existing is None:
                raise LedgerError(f"Failed to record debit for {user_id}")
            db.expunge(existing)
            return existing
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("debit_failed", error=e, user_id=user_id, amount=amount)
            raise LedgerError(f"Failed to debit credits: {e}") from e
        finally:
            db.close()

    def credit(
        self,
        user_id: str,
        amount: int,
        description: str,
        stripe_session_id: Optional[str] = None,
        kind: str = "purchase",
    ) -> CreditTransaction:
        """Add ``amount`` credits and append a ``purchase`` (or ``refund``) row."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        if kind not in ("purchase", "refund"):
            raise ValueError(f"Invalid credit type: {kind}")

        db = self.session_factory()
        try:
            if stripe_session_id:
                existing = db.query(CreditTransaction).filter(
                    CreditTransaction.stripe_session_id == stripe_session_id
                ).first()
                if existing:
                    logger.info("credit_already_recorded", user_id=user_id, stripe_session_id=stripe_session_id)
                    db.expunge(existing)
                    return existing

            get_or_create_profile(db, user_id)
            db.execute(
                update(Profile)
                .where(Profile.id == user_id)
                .values(
                    credits=Profile.credits + amount,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            transaction = CreditTransaction(
                user_id=user_id,
                type=kind,
                amount=amount,
                description=description,
                stripe_session_id=stripe_session_id,
            )
            db.add(transaction)
            db.commit()
            db.refresh(transaction)
            db.expunge(transaction)
            logger.info("credits_added", user_id=user_id, amount=amount, kind=kind)
            return transaction
        except IntegrityError:
            db.rollback()
            existing = db.query(CreditTransaction).filter(
                CreditTransaction.stripe_session_id == stripe_session_id
            ).first()
            if existing is None:
                raise LedgerError(f"Failed to record credit for {user_id}")
            db.expunge(existing)
            return existing
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("credit_failed", error=e, user_id=user_id, amount=amount)
            raise LedgerError(f"Failed to add credits: {e}") from e
        finally:
            db.close()

    def transactions(self, user_id: str, limit: int = 50) -> List[CreditTransaction]:
        db = self.session_factory()
        try:
            rows = (
                db.query(CreditTransaction)
                .filter(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc())
                .limit(limit)
                .all()
            )
            for row in rows:
                db.expunge(row)
            return rows
        finally:
            db.close()


ledger = CreditLedger()


def get_ledger() -> CreditLedger:
    """Dependency returning the process-wide ledger."""
    return ledger
