"""Error kinds raised by the CDP orchestration layer."""


class CdpError(Exception):
    """Base error for CDP operations"""
    pass


class NotFound(CdpError):
    """Unknown position id or collateral type"""
    pass


class LedgerRejected(CdpError):
    """A submitted step reverted on-chain"""

    def __init__(self, reason: str = '', step=None):
        self.reason = reason or 'reverted'
        self.step = step
        label = f'{step.label}: ' if step is not None else ''
        super().__init__(f'{label}{self.reason}')


class Unauthorized(LedgerRejected):
    """Caller's proxy does not own the target position"""
    pass


class InsufficientBalance(LedgerRejected):
    """Transfer or draw exceeds available funds or limits"""
    pass


class AlreadyExists(LedgerRejected):
    """Proxy or bag creation attempted when one already exists"""
    pass


# Revert reason → error kind. Matched as substrings of the revert message.
REVERT_REASONS = {
    'cdp-not-allowed':               Unauthorized,
    'ds-auth-unauthorized':          Unauthorized,
    'not-allowed':                   Unauthorized,
    'ds-token-insufficient-balance': InsufficientBalance,
    'insufficient-balance':          InsufficientBalance,
    'insufficient-allowance':        InsufficientBalance,
    'vat/ceiling-exceeded':          InsufficientBalance,
    'vat/not-safe':                  InsufficientBalance,
    'proxy-already-exists':          AlreadyExists,
    'bag-already-exists':            AlreadyExists,
}


def rejection_for(step, reason: str) -> LedgerRejected:
    """Build the most specific LedgerRejected for a revert reason."""
    text = (reason or '').lower()
    for needle, kind in REVERT_REASONS.items():
        if needle in text:
            return kind(reason, step)
    return LedgerRejected(reason, step)
