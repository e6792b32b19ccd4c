"""
Database Models
"""

from app.models.account import Account
from app.models.pos_integration import PosIntegration
from app.models.pos_location import PosLocation
from app.models.pos_transaction import PosTransaction, DeliveryStatus, SkipReason
from app.models.pos_webhook_event import PosWebhookEvent
from app.models.quota_reservation import QuotaReservation
from app.models.send_job import SendJob
from app.models.dead_letter_job import DeadLetterJob

__all__ = [
    "Account",
    "PosIntegration",
    "PosLocation",
    "PosTransaction",
    "DeliveryStatus",
    "SkipReason",
    "PosWebhookEvent",
    "QuotaReservation",
    "SendJob",
    "DeadLetterJob",
]
