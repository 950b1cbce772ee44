"""Error taxonomy for the billing domain."""


class BillingError(RuntimeError):
    """Base billing domain error."""


class ValidationError(BillingError):
    """Raised when input is malformed."""


class BusinessRuleViolation(BillingError):
    """Raised when well-formed input breaks a subscription or checkout rule."""


class ConcurrencyError(BillingError):
    """Raised when an optimistic write collides with another writer."""


class IdempotencyNoop(BillingError):
    """Raised by stores on replays; callers resolve it as a no-op success."""


class UnknownPlanError(ValidationError):
    def __init__(self, plan_id: object) -> None:
        super().__init__(f"Unknown subscription plan: {plan_id!r}")
        self.plan_id = plan_id


class NegativeAmountError(ValidationError):
    def __init__(self, amount: object) -> None:
        super().__init__(f"Amount must be non-negative, got {amount!r}")
        self.amount = amount


class InvalidCommissionRateError(ValidationError):
    pass


class InvalidShippingTypeError(ValidationError):
    def __init__(self, shipping_type: object) -> None:
        super().__init__(f"Unsupported shipping type: {shipping_type!r}")
        self.shipping_type = shipping_type


class InvalidDistanceTierError(ValidationError):
    def __init__(self, tier: object) -> None:
        super().__init__(f"Unsupported distance tier: {tier!r}")
        self.tier = tier


class InvalidLineItemError(ValidationError):
    pass


class VendorNotFoundError(ValidationError):
    def __init__(self, vendor_id: str) -> None:
        super().__init__(f"Vendor not found: {vendor_id}")
        self.vendor_id = vendor_id


class DowngradeNotAllowedError(BusinessRuleViolation):
    pass


class PaymentRequiredError(BusinessRuleViolation):
    pass


class AlreadyOnPlanError(BusinessRuleViolation):
    pass


class VendorSuspendedError(BusinessRuleViolation):
    pass


class PurchaseInProgressError(BusinessRuleViolation):
    pass


class ConcurrentModificationError(ConcurrencyError):
    pass


class DuplicateReferenceError(IdempotencyNoop):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Transaction already recorded for reference {reference}")
        self.reference = reference
