from .profile import Profile
from .transaction import CreditTransaction

__all__ = [
    "Profile",
    "CreditTransaction",
]
