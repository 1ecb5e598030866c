"""
Error taxonomy for the ledger engine.

Every error derives from ``ValueError`` so callers that only care about
"the request was rejected" can keep catching ``ValueError``.
"""


class LedgerError(ValueError):
    """Base class for errors raised by the ledger engine."""


class ValidationError(LedgerError):
    """
    Malformed input.

    Raised for a transfer without a destination account, a non-positive
    amount, or frequency-dependent template fields that do not fit the chosen
    frequency (a yearly bill without a due month, a weekly bill with a day of
    month).
    """


class ReferentialError(LedgerError):
    """A referenced account, category, member or template belongs to another budget."""


class NotFoundError(LedgerError):
    """A referenced goal, template, account or transaction does not exist."""


class StateError(LedgerError):
    """The entity is not in a state that allows the requested transition."""
