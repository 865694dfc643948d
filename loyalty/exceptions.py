# loyalty/exceptions.py
"""
Error taxonomy for the loyalty engine.

Services raise these; blueprints translate them to JSON responses.
Nothing in here is retried automatically.
"""


class LoyaltyError(Exception):
    """Base class for every error the engine reports to a caller"""
    status_code = 400
    error = "Bad request"


class ValidationError(LoyaltyError):
    """Raised when caller input is malformed or out of range"""
    error = "Invalid input"


class NotFound(LoyaltyError):
    """Raised when an entity is absent or not owned by the caller"""
    status_code = 404
    error = "Not found"


class ProgramNotFound(NotFound):
    error = "Program not found"


class MembershipNotFound(NotFound):
    error = "Membership not found"


class RedemptionNotFound(NotFound):
    error = "Redemption not found"


class RequestNotFound(NotFound):
    error = "Request not found"


class InvalidState(LoyaltyError):
    """Raised when an operation is illegal for the current lifecycle status"""
    error = "Invalid state"


class ProgramNotActive(InvalidState):
    """Raised when a ledger mutation targets a program that is not active"""
    error = "Program not active"

    def __init__(self, status: str):
        super().__init__(f"This loyalty program is not currently active (status: {status})")
        self.status = status


class InsufficientBalance(InvalidState):
    """Raised when redeeming below the reward threshold"""
    error = "Insufficient balance"

    def __init__(self, balance: int, threshold: int):
        super().__init__(f"Not enough to redeem (balance: {balance}, threshold: {threshold})")
        self.balance = balance
        self.threshold = threshold


class EarnNotAllowed(InvalidState):
    """Raised when cooldown or rate limits block an earn"""
    status_code = 429
    error = "Earn not allowed"

    def __init__(self, message: str, reason: str, next_eligible_at=None):
        super().__init__(message)
        self.reason = reason
        self.next_eligible_at = next_eligible_at


class RedeemNotAllowed(InvalidState):
    """Raised when a visitor redeems again too soon"""
    status_code = 429
    error = "Redeem not allowed"

    def __init__(self, message: str, reason: str, next_eligible_at=None):
        super().__init__(message)
        self.reason = reason
        self.next_eligible_at = next_eligible_at


class InvalidToken(LoyaltyError):
    """Raised when a counter token is neither current nor within the grace window"""
    status_code = 403
    error = "Invalid token"


class ConflictingRequest(LoyaltyError):
    """Raised when a concurrent mutation won the race"""
    status_code = 409
    error = "Conflicting request"


class ExternalServiceFailure(LoyaltyError):
    """Raised by the issuing service client; never escapes a ledger operation"""
    status_code = 502
    error = "External service failure"


class NotificationError(Exception):
    """Raised by the outbound notification channel; always caught at the call site"""
    pass
