"""Models package."""

from .identity import Identity
from .user_ledger import UserLedger
from .subscription import SubscriptionRecord
from .processed_transaction import ProcessedTransaction
