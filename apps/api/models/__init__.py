"""Models package."""

from .wallet import Wallet
from .credit_ledger import CreditLedger
from .usage_counter import UsageCounter
from .ai_session import AISession
from .subscription_state import SubscriptionState
from .plan_override import PlanOverride
