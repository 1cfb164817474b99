"""
NLA Oracle — Error Taxonomy

Every component raises one of these. The arbitration loop catches them
at the per-event boundary; only provider misconfiguration at startup is
fatal to the process.

    NlaError
      ├── DecodeError            attestation data does not match the ABI shape
      │     └── MalformedDemand  decoded fine, content is invalid
      ├── NoProviderAvailable    router has nothing registered
      ├── UnsupportedProvider    provider name matches no backend family
      ├── ArbitrationFailed      backend call failed (carries the cause)
      ├── CommitRevealViolation  out-of-order commit/reveal/reclaim
      └── LedgerError            ledger boundary rejected or failed a call
"""

from __future__ import annotations


class NlaError(Exception):
    """Base class for all oracle errors."""

    kind = "nla_error"


class DecodeError(NlaError):
    """Byte layout does not match the expected ABI tuple."""

    kind = "decode_error"


class MalformedDemand(DecodeError):
    """
    Demand decoded structurally but its content is invalid.

    Embedded NULs in the model or an empty model/demand text mean the
    depositor encoded the demand incorrectly. Such a demand is never
    arbitrated.
    """

    kind = "malformed_demand"

    def __init__(self, reason: str, field_name: str = ""):
        self.reason = reason
        self.field_name = field_name
        super().__init__(f"Malformed demand: {reason}")


class NoProviderAvailable(NlaError):
    kind = "no_provider"

    def __init__(self, message: str = "No LLM provider available"):
        super().__init__(message)


class UnsupportedProvider(NlaError):
    """Provider name does not belong to any known backend family."""

    kind = "unsupported_provider"

    def __init__(self, provider_name: str, supported: list[str] | None = None):
        self.provider_name = provider_name
        self.supported = supported or []
        msg = f"Unsupported provider: {provider_name!r}"
        if self.supported:
            msg += f". Supported families: {', '.join(self.supported)}"
        super().__init__(msg)


class ArbitrationFailed(NlaError):
    """
    A single arbitration attempt failed before producing a verdict.

    Never converted into a ``False`` verdict: a failed call and a
    legitimate rejection must stay distinguishable.
    """

    kind = "arbitration_failed"

    def __init__(self, cause: BaseException, provider: str = "", model: str = ""):
        self.cause = cause
        self.provider = provider
        self.model = model
        super().__init__(f"LLM arbitration failed ({provider or '?'}/{model or '?'}): {cause}")


class CommitRevealViolation(NlaError):
    kind = "commit_reveal_violation"

    def __init__(self, message: str, state: str = ""):
        self.state = state
        super().__init__(message)


class LedgerError(NlaError):
    """The ledger rejected a call or could not be reached."""

    kind = "ledger_error"

    def __init__(self, message: str, uid: str = ""):
        self.uid = uid
        super().__init__(message)


def error_kind(error: BaseException) -> str:
    """Stable short name for logging an exception."""
    return getattr(error, "kind", None) or type(error).__name__
