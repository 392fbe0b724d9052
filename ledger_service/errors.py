"""Ledger failures, each with its own machine-readable code."""
from common.error_handling import BusinessLogicError, ErrorCodes

class LedgerError(BusinessLogicError):
    pass

class InvalidAmount(LedgerError):
    code = ErrorCodes.INVALID_AMOUNT

class SameWalletError(LedgerError):
    code = ErrorCodes.SAME_WALLET

class WalletNotFound(LedgerError):
    code = ErrorCodes.WALLET_NOT_FOUND

class InsufficientBalance(LedgerError):
    code = ErrorCodes.INSUFFICIENT_BALANCE
