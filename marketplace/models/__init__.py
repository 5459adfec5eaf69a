"""Import every model so Base.metadata sees all tables."""
from marketplace.models.audit_log import AuditLog
from marketplace.models.commission_payout import CommissionPayout
from marketplace.models.notification import Notification
from marketplace.models.partner_payout_request import PartnerPayoutRequest
from marketplace.models.payment import Payment
from marketplace.models.product_access import ProductAccessGrant
from marketplace.models.referral import Referral
from marketplace.models.referral_conversion import ReferralConversion
from marketplace.models.user import User
from marketplace.models.webhook_event import WebhookEvent

__all__ = [
    "AuditLog",
    "CommissionPayout",
    "Notification",
    "PartnerPayoutRequest",
    "Payment",
    "ProductAccessGrant",
    "Referral",
    "ReferralConversion",
    "User",
    "WebhookEvent",
]
