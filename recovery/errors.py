class RecoveryError(Exception):
    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ', '.join(f'{k}={v}' for k, v in self.details.items())
            return f'{self.message} ({details_str})'
        return self.message


class ConfigError(RecoveryError):
    pass


class DataSourceError(RecoveryError):
    """Chain-data lookup failed after retries, or the call reverted."""


class CallReverted(DataSourceError):
    pass


class RangeTooLarge(DataSourceError):
    pass


class ResolutionIntegrityError(RecoveryError):
    """Resolved balances do not add up. Nothing may be published."""


class WrapperCycleError(ResolutionIntegrityError):
    pass


class TreeIntegrityError(RecoveryError):
    """Share sums or proofs failed the pre-publication self-check."""


# claim-time rejections

class ClaimError(RecoveryError):
    pass


class WaiverRequired(ClaimError):
    pass


class UnknownRound(ClaimError):
    pass


class RoundInactive(ClaimError):
    pass


class ClaimWindowClosed(ClaimError):
    pass


class AlreadyClaimed(ClaimError):
    pass


class InvalidProof(ClaimError):
    pass


class PayoutExceedsAllocation(ClaimError):
    pass


# operator rejections

class OperatorError(RecoveryError):
    pass


class Unauthorized(OperatorError):
    pass


class InvalidRoot(OperatorError):
    pass


class InsufficientCustody(OperatorError):
    pass


class RootCorrectionRejected(OperatorError):
    pass


class SweepRejected(OperatorError):
    pass
