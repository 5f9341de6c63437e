"""metatx-relay — models package."""

from .audit_event import AuthorizationEvent
from .meta_request import MetaTxRequest, SignedRequest

__all__ = [
    "AuthorizationEvent",
    "MetaTxRequest",
    "SignedRequest",
]
