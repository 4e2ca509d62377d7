from fastapi import HTTPException, status


class ValidationError(HTTPException):
    """Exception raised for bad or missing client input."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=message
        )


class NoActiveSubscription(ValidationError):
    """Exception raised when an operation needs a live subscription and there is none."""

    def __init__(self, message: str = "No active subscription to cancel or already canceled."):
        super().__init__(message)


class SignatureInvalid(HTTPException):
    """Exception raised when a webhook payload fails signature verification."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Webhook Error: {message}"
        )


class AuthenticationError(HTTPException):
    """Exception raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=message,
            headers={"WWW-Authenticate": "Bearer"}
        )


class ForbiddenError(HTTPException):
    """Exception raised for authorization failures."""

    def __init__(self, message: str = "Not authorized to access this resource"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=message
        )


class NotFoundError(HTTPException):
    """Exception raised when a requested resource does not exist."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=message
        )


class PlanNotFound(NotFoundError):
    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__("Active plan not found.")


class UserNotFound(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("User not found.")


class SubscriptionNotFound(NotFoundError):
    """Raised when the processor reports a subscription as missing."""

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription '{subscription_id}' not found")


class PlanMisconfigured(HTTPException):
    """Exception raised when a plan has no processor price mapped for its billing period."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Configuration error: Stripe Price ID missing for this plan."
        )


class GatewayError(HTTPException):
    """Exception raised when the payment processor rejects a request."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Payment processor error: {message}"
        )


class GatewayUnavailable(HTTPException):
    """Exception raised when the payment processor is unconfigured or unreachable."""

    def __init__(self, message: str = "Payment processor is not available"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=message
        )
