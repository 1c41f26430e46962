"""Models package."""

from .user_credits import UserCredits
from .song import Song
from .payment_transaction import PaymentTransaction
from .payment_session import PaymentSession
from .credit_package import CreditPackage
from .anonymous_usage import AnonymousUsage
