from datetime import timedelta

from upscaler.auth import create_access_token
from upscaler.checkout import purchase_description
from upscaler.config import get_settings
from upscaler.database import SessionLocal, engine, Base
from upscaler.ledger import CreditLedger, get_or_create_profile

DEV_USER_ID = "00000000-0000-0000-0000-000000000001"
DEV_EMAIL = "dev@example.com"

# Create tables
Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    profile = get_or_create_profile(db, DEV_USER_ID, email=DEV_EMAIL, full_name="Dev User")
finally:
    db.close()

# A sample purchase so the history is not empty
ledger = CreditLedger()
ledger.credit(
    DEV_USER_ID,
    50,
    purchase_description(50, "starter"),
    stripe_session_id="cs_test_seed_starter",
)

print(f"Dev profile {DEV_USER_ID} has {ledger.balance(DEV_USER_ID)} credits")
if get_settings().auth_jwt_secret:
    print("Dev bearer token (24h):")
    print(create_access_token(DEV_USER_ID, email=DEV_EMAIL, expires_delta=timedelta(hours=24)))
else:
    print("Set AUTH_JWT_SECRET to print a dev bearer token")
