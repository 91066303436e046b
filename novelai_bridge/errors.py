"""Error taxonomy shared by every stage of a generation request.

Each error carries the user-facing text key the chat integration renders,
plus positional params for that message.
"""

from dataclasses import dataclass, field
from typing import List


class BridgeError(Exception):
    kind = "error"

    def __init__(self, key: str, *params):
        self.key = key
        self.params = list(params)
        super().__init__(f"{key} {self.params}" if self.params else key)

    def to_failure(self) -> "RequestFailure":
        return RequestFailure(kind=self.kind, key=self.key, params=self.params)


class SanitationError(BridgeError):
    """Prompt rejected before any network call (.latin-only, .too-many-words)."""
    kind = "sanitation"


class ValidationError(BridgeError):
    """Option values rejected during parameter resolution."""
    kind = "validation"


class AdmissionRejected(BridgeError):
    """Per-scope concurrency ceiling already met."""
    kind = "admission"

    def __init__(self, pending: int):
        super().__init__(".concurrent-jobs", pending)
        self.pending = pending


class TransportFailure(BridgeError):
    kind = "transport"

    def __init__(self, key: str, *params, retryable: bool = False):
        super().__init__(key, *params)
        self.retryable = retryable


class EmptyResponse(BridgeError):
    """Backend answered successfully but carried no image."""
    kind = "empty"

    def __init__(self):
        super().__init__(".empty-response")


@dataclass
class RequestFailure:
    kind: str
    key: str
    params: List = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "key": self.key, "params": self.params}
