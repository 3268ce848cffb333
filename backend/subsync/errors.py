"""Error taxonomy shared by the reconciliation engine and its adapters."""


class BillingError(Exception):
    """Base class for all engine errors."""


class ValidationError(BillingError, ValueError):
    """Bad input (unknown plan, wrong frequency). Never retried."""


class ConflictError(BillingError):
    """Request conflicts with current state. Surfaced to the caller, not retried."""


class TrialAlreadyUsed(ConflictError):
    """The account already consumed its lifetime free plan."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} has already used its free trial")
        self.account_id = account_id


class NoActiveSubscription(ConflictError):
    """The operation needs a current subscription and the account has none."""

    def __init__(self, account_id: str, detail: str = "No active subscription found"):
        super().__init__(detail)
        self.account_id = account_id


class TransientGatewayError(BillingError):
    """Provider timeout, connection failure or 5xx. Retried by ingestion."""


class PersistenceError(BillingError):
    """The record store is unavailable. Fatal for the current operation."""
