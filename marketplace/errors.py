class MarketplaceError(Exception):
    """Base class for errors raised by the billing service layer."""

    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class NotFoundError(MarketplaceError):
    status_code = 404


class PermissionDeniedError(MarketplaceError):
    status_code = 403


class PaymentError(MarketplaceError):
    status_code = 400
