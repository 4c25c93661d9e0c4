class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""


class MarketplaceValidationError(MarketplaceError):
    pass


class MarketplaceUnauthorizedError(MarketplaceError):
    pass


class MarketplacePermissionError(MarketplaceError):
    pass


class MarketplaceNotFoundError(MarketplaceError):
    pass


class MarketplaceConflictError(MarketplaceError):
    pass


class InsufficientFundsError(MarketplaceValidationError):
    pass


class UpstreamFailureError(MarketplaceError):
    """An external collaborator (payment gateway, identity provider) failed."""
