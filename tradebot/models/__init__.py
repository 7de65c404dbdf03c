"""Database models."""

from tradebot.models.trading_pair import TradingPair
from tradebot.models.ai_decision import AIDecision
from tradebot.models.transaction import Transaction
from tradebot.models.setting import Setting
from tradebot.models.credential import Credential
from tradebot.models.job_log import JobLog

__all__ = [
    "TradingPair",
    "AIDecision",
    "Transaction",
    "Setting",
    "Credential",
    "JobLog",
]
