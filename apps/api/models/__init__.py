"""Models package."""

from .user import User
from .order import Order
from .subscription import Subscription
from .credits import UserCredits
from .credit_history import CreditHistory
