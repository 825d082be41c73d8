"""Transfer error types."""


class TransferError(Exception):
    """Base class for transfer failures reported to the UI."""


class SessionBusyError(TransferError):
    """A second session was started while one is active."""


class PeerUnavailableError(TransferError):
    """The target vanished, is not a receiver, or refused the session."""


class TransferTimeoutError(TransferError):
    """A bounded wait (ack, drain, negotiation) expired."""
