class DonationError(Exception):
    pass


class ValidationError(DonationError):
    pass


class RefundNotAllowed(ValidationError):
    pass


class DonationNotFound(DonationError):
    pass


class AuthenticationError(DonationError):
    pass


class GatewayError(DonationError):
    def __init__(self, message, transient=False):
        super().__init__(message)
        self.transient = transient


class PersistenceError(DonationError):
    def __init__(self, message, transient=False):
        super().__init__(message)
        self.transient = transient


class OrphanedOrderError(PersistenceError):
    """A gateway order exists but no donation row could be written for it."""

    def __init__(self, order_id, donation_id):
        super().__init__(
            f"Payment order {order_id} was created but the donation could not be recorded; "
            "payment may have been initialized without a tracked record"
        )
        self.order_id = order_id
        self.donation_id = donation_id
