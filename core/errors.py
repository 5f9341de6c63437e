"""Error taxonomy for meta-transaction authorization.

Every failure is reported synchronously to the caller of
``Authorizer.authorize``.  None of them leave partial state behind:
``InvalidSignatureError`` is raised before anything is touched, and the
``CallExecutionError`` family is raised only after the invocation's
state has been restored.
"""

from __future__ import annotations


class MetaTxError(Exception):
    """Base class for all authorizer failures."""


class InvalidSignatureError(MetaTxError):
    """Recovered signer does not match the claimed signer address."""

    def __init__(
        self,
        message: str,
        signer: str | None = None,
        recovered: str | None = None,
    ) -> None:
        super().__init__(message)
        self.signer = signer
        self.recovered = recovered


class CallExecutionError(MetaTxError):
    """The forwarded call failed; the whole invocation was rolled back."""

    def __init__(
        self,
        message: str,
        signer: str | None = None,
        selector: str | None = None,
    ) -> None:
        super().__init__(message)
        self.signer = signer
        self.selector = selector


class UnauthorizedActionError(CallExecutionError):
    """The signer lacks the capability required by the target action."""
