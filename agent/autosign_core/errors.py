"""
Error taxonomy shared by the transport, the responder and the engine.

  AuthExpired           session/credential no longer accepted
  TransientFetchFailure network or parse failure unrelated to auth
  ResolutionFailure     a rollcall could not be answered
  ConfigurationError    invalid input at the control surface
"""


class AutoSignError(Exception):
    """Base class for every error raised by autosign_core."""


class AuthExpired(AutoSignError):
    """401/403, or a redirect toward the identity provider."""


class TransientFetchFailure(AutoSignError):
    """Network or decoding error; the poll loop just carries on."""


class ResolutionFailure(AutoSignError):
    """No beacon, estimate or number code satisfied the rollcall."""


class GeolocationError(ResolutionFailure):
    """The sphere fit could not produce an estimate."""


class ConfigurationError(AutoSignError, ValueError):
    """Rejected account/schedule input."""
