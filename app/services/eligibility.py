"""
Eligibility Filter
Decides whether a purchase may receive a review request SMS

The decision itself is a pure function over the purchase, the account and the
integration. The one lookup it needs (recent contact) is passed in as a
callable so the function stays free of database access.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from app.models.pos_transaction import DeliveryStatus, SkipReason
from app.services.phone import normalize_phone, is_us_number


SKIP_MESSAGES = {
    SkipReason.no_phone: "Customer has no valid phone number",
    SkipReason.non_us_number: "Non-US phone number",
    SkipReason.no_consent: "SMS consent not confirmed",
    SkipReason.no_review_link: "No review URL configured",
    SkipReason.limit_reached: "SMS limit reached",
    SkipReason.recently_contacted: "Contacted within the dedup window",
    SkipReason.test_mode_misconfigured: "Test mode enabled but no test phone number configured",
    SkipReason.location_disabled: "Location not enabled",
    SkipReason.refunded: "Order was refunded",
}


@dataclass
class PurchaseCandidate:
    """
    A purchase as reported by a POS provider, before any decision is made.
    """
    external_transaction_id: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None  # As received, not normalized
    purchase_amount: Optional[Decimal] = None
    location_name: Optional[str] = None


@dataclass
class EligibilityVerdict:
    """
    Result of evaluate().

    customer_phone is the normalized number when normalization succeeded, so
    the stored row is comparable for the recent contact window. target_phone is
    where the SMS goes (the test phone in test mode).
    """
    eligible: bool
    reason: Optional[SkipReason] = None
    message: Optional[str] = None
    customer_phone: Optional[str] = None
    target_phone: Optional[str] = None

    @property
    def status(self) -> DeliveryStatus:
        if self.eligible:
            return DeliveryStatus.pending
        return DeliveryStatus.skipped(self.reason)

    @classmethod
    def skip(
        cls,
        reason: SkipReason,
        customer_phone: Optional[str] = None,
        message: Optional[str] = None
    ) -> "EligibilityVerdict":
        return cls(
            eligible=False,
            reason=reason,
            message=message or SKIP_MESSAGES[reason],
            customer_phone=customer_phone
        )


def evaluate(
    candidate: PurchaseCandidate,
    account,
    integration,
    was_contacted_recently: Callable[[str], bool],
    window_days: int = 30
) -> EligibilityVerdict:
    """
    Run the ordered eligibility checks. The first failing check wins.

    Order:
    1. phone normalizes                -> no_phone
    2. phone is a US number            -> non_us_number
    3. consent confirmed               -> no_consent
    4. review link configured          -> no_review_link
    5. usage below limit (advisory)    -> limit_reached
    6. not contacted within window     -> recently_contacted
    7. test mode has a test phone      -> test_mode_misconfigured

    The limit check here only avoids queueing work that cannot succeed;
    the authoritative check is the quota reservation at send time.

    Args:
        candidate: Purchase data from the provider
        account: Account (review_url, sms_usage_count, sms_usage_limit)
        integration: PosIntegration (consent_confirmed, test_mode, test_phone_number)
        was_contacted_recently: Called with the normalized phone, only once
            every cheaper check has passed
        window_days: Dedup window, used in the skip message

    Returns:
        EligibilityVerdict
    """
    phone = normalize_phone(candidate.customer_phone)
    if phone is None:
        return EligibilityVerdict.skip(SkipReason.no_phone)

    if not is_us_number(phone):
        return EligibilityVerdict.skip(SkipReason.non_us_number, customer_phone=phone)

    if not integration.consent_confirmed:
        return EligibilityVerdict.skip(SkipReason.no_consent, customer_phone=phone)

    if not (account.review_url or "").strip():
        return EligibilityVerdict.skip(SkipReason.no_review_link, customer_phone=phone)

    used = max(account.sms_usage_count or 0, 0)
    limit = account.sms_usage_limit or 0
    if used >= limit:
        return EligibilityVerdict.skip(
            SkipReason.limit_reached,
            customer_phone=phone,
            message=f"SMS limit reached ({used}/{limit})"
        )

    if was_contacted_recently(phone):
        return EligibilityVerdict.skip(
            SkipReason.recently_contacted,
            customer_phone=phone,
            message=f"Contacted within last {window_days} days"
        )

    target_phone = phone
    if integration.test_mode:
        target_phone = normalize_phone(integration.test_phone_number)
        if target_phone is None:
            return EligibilityVerdict.skip(SkipReason.test_mode_misconfigured, customer_phone=phone)

    return EligibilityVerdict(eligible=True, customer_phone=phone, target_phone=target_phone)
