"""Typed failures raised by the ledger, settlement and escrow services.

Every kind carries a stable ``code`` and the HTTP status the API layer
renders it with. Only ``ConfirmationTimeout`` is retryable; everything else
is terminal for the request that raised it.
"""
from typing import Any, Dict, Optional


class SafuError(Exception):
    code = "safu_error"
    status_code = 400
    retryable = False

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.message, "code": self.code}
        if self.retryable:
            body["retryable"] = True
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class InvalidInput(SafuError):
    """Invalid input"""
    code = "invalid_input"


class WalletBlocked(SafuError):
    """This wallet has been suspended"""
    code = "wallet_blocked"
    status_code = 403


class LaunchNotFound(SafuError):
    """Launch not found"""
    code = "launch_not_found"
    status_code = 404


class LaunchNotAcceptingContributions(SafuError):
    """Launch is not accepting contributions"""
    code = "launch_not_accepting_contributions"


class PerWalletCapExceeded(SafuError):
    """Maximum contribution per wallet exceeded"""
    code = "per_wallet_cap_exceeded"


class HardcapExceeded(SafuError):
    """Contribution would exceed the hardcap"""
    code = "hardcap_exceeded"


class TransferUnconfirmed(SafuError):
    """Contribution transfer could not be confirmed on-chain"""
    code = "transfer_unconfirmed"


class DuplicateTransaction(SafuError):
    """This transaction has already been processed"""
    code = "duplicate_transaction"
    status_code = 409


class ContributionNotFound(SafuError):
    """You have not contributed to this launch"""
    code = "contribution_not_found"
    status_code = 404


class ClaimInProgress(SafuError):
    """A previous claim is still pending or processing"""
    code = "claim_in_progress"
    status_code = 409


class AlreadyClaimed(SafuError):
    """Tokens already claimed"""
    code = "already_claimed"
    status_code = 409


class InvalidState(SafuError):
    """Illegal launch state transition"""
    code = "invalid_state"
    status_code = 409


class EncryptionUnavailable(SafuError):
    """Encryption not configured"""
    code = "encryption_unavailable"
    status_code = 500


class SigningFailed(SafuError):
    """Failed to sign transaction with the escrow wallet"""
    code = "signing_failed"
    status_code = 500


class SubmissionFailed(SafuError):
    """Transaction was rejected on-chain"""
    code = "submission_failed"
    status_code = 502


class ConfirmationTimeout(SafuError):
    """Transaction submitted but not yet confirmed, please wait"""
    code = "confirmation_timeout"
    status_code = 202
    retryable = True


class WithdrawalRequestNotFound(SafuError):
    """Withdrawal request not found"""
    code = "withdrawal_request_not_found"
    status_code = 404


class WalletMismatch(SafuError):
    """Wallet address mismatch"""
    code = "wallet_mismatch"
    status_code = 403


class DuplicateRequest(SafuError):
    """An identical request is already being processed"""
    code = "duplicate_request"
    status_code = 429


class ExternalServiceError(SafuError):
    """Upstream service unavailable"""
    code = "external_service_error"
    status_code = 503
