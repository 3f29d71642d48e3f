from __future__ import annotations


class PnPError(Exception):
    """Base error for the PnP pipeline."""


class InputMalformedError(PnPError):
    """Client supplied data that cannot be read, decoded or validated."""


class AuthRejectedError(PnPError):
    """Missing or invalid credentials."""


class TransientTransportError(PnPError):
    """Recoverable transport failure; retried by the layer that raised it."""


class BusTransportError(TransientTransportError):
    """Message bus connection or channel failure."""


class PersistentUpstreamError(PnPError):
    """Upstream source could not be read; the next tick retries."""


class StateConflictError(PnPError):
    """Incoming source update time regresses the stored one."""


class FatalConfigError(PnPError):
    """Unrecoverable configuration problem; the process must exit."""


class EnvelopeError(PnPError):
    """Bus envelope could not be sealed or opened."""


class EnvelopeAuthError(EnvelopeError):
    """Envelope authentication tag did not verify."""
