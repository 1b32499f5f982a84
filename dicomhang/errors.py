"""
Exceptions raised by dicomhang.

Matching problems (unmatched rule sets, incomplete stages, rejected extension
registrations) are logged rather than raised; only caller precondition
violations surface as exceptions.
"""


class HangingProtocolError(Exception):
    def __init__(self, message: str = None):
        self.message = message
        super().__init__(message)


class NoProtocolAvailableError(HangingProtocolError):
    """Raised when a protocol must be selected but none is registered."""


class ProtocolValidationError(HangingProtocolError):
    """Raised when a protocol definition cannot be parsed."""

    def __init__(self, message: str = None, errors=None):
        self.errors = errors or []
        super().__init__(message)
