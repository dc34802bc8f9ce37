class StoreError(Exception):
    pass


class InvalidOrderError(StoreError, ValueError):
    """Order data that can never produce a safe command."""


class PaymentVerificationError(StoreError):
    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message)


class GatewayNotConfiguredError(PaymentVerificationError):
    def __init__(self, message: str = "Payment gateway not configured"):
        super().__init__(message)


class OrderNotFoundError(PaymentVerificationError):
    def __init__(self, message: str = "Order not found"):
        super().__init__(message)


class DeliveryError(StoreError):
    """A delivery attempt that must not be retried automatically."""


class AuthenticationError(StoreError):
    pass


class RconError(RuntimeError):
    pass


class RconTimeoutError(RconError):
    pass


class PacketDecodeError(RconError):
    pass
