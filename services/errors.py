"""
Error taxonomy shared by the entitlement, billing and import services
"""


class BillingError(Exception):
    """Base class for errors raised by the billing and import services"""


class NotFoundError(BillingError):
    """User or import job does not exist"""


class AlreadyUsedError(BillingError):
    """The one-time trial has already been consumed"""


class AlreadySubscribedError(BillingError):
    """The user already holds a paid subscription, so no trial is offered"""


class QuotaExhaustedError(BillingError):
    """No generations remain for the current month"""


class SignatureError(BillingError):
    """Webhook payload failed signature verification"""


class BillingProviderError(BillingError):
    """The billing provider rejected a request"""


class ProviderUnavailableError(BillingProviderError):
    """The billing provider could not be reached in time"""


class UnresolvedEventError(BillingError):
    """A billing event refers to a customer that maps to no local user"""

    def __init__(self, customer_ref, event_type=None):
        self.customer_ref = customer_ref
        self.event_type = event_type
        super().__init__(f"No user found for customer {customer_ref} ({event_type or 'unknown event'})")


class InvalidTransitionError(BillingError):
    """An import job was asked to move backwards or out of a terminal state"""

    def __init__(self, job_id, current, requested):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Import job {job_id} cannot move from {current} to {requested}")
