"""Re-export all models so Base.metadata sees them."""

from app.db.models.daily_stats import DailyStats
from app.db.models.job import Job
from app.db.models.ledger import CommissionRun, LedgerBalanceCheck, LedgerEntry, RefundReversal
from app.db.models.notification import Notification
from app.db.models.order import Order, OrderStatusHistory
from app.db.models.payout_profile import PayoutProfile
from app.db.models.processed_webhook import ProcessedWebhook
from app.db.models.revenue import Revenue
from app.db.models.system_alert import SystemAlert
from app.db.models.webhook_event import WebhookEventLog
from app.db.models.withdrawal import Withdrawal, WithdrawalAllocation

__all__ = [
    "CommissionRun",
    "DailyStats",
    "Job",
    "LedgerBalanceCheck",
    "LedgerEntry",
    "Notification",
    "Order",
    "OrderStatusHistory",
    "PayoutProfile",
    "ProcessedWebhook",
    "RefundReversal",
    "Revenue",
    "SystemAlert",
    "WebhookEventLog",
    "Withdrawal",
    "WithdrawalAllocation",
]
