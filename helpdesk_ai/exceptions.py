"""Error taxonomy shared by the engine components.

Transient LLM failures are retried, malformed output is coerced by the
caller, referential errors turn a job into a no-op, and draft conflicts are
surfaced to whoever attempted the transition.
"""


class HelpdeskAIError(Exception):
    """Base class for all engine errors"""


class LLMError(HelpdeskAIError):
    """Base class for LLM adapter failures"""


class TransientLLMError(LLMError):
    """An LLM failure that may succeed on retry"""


class LLMTimeoutError(TransientLLMError):
    """The provider did not answer within the wall-clock budget"""


class LLMRateLimitError(TransientLLMError):
    """The provider rejected the call because of quota or rate limits"""

    def __init__(self, message: str, retry_after: float = None):
        super().__init__(message)
        self.retry_after = retry_after


class LLMProviderError(TransientLLMError):
    """The provider returned a server-side error"""


class LLMMalformedResponseError(LLMError):
    """The provider answered, but not in the requested shape"""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


class ReferenceNotFoundError(HelpdeskAIError):
    """A message, conversation or other referenced record does not exist"""

    def __init__(self, kind: str, ref_id: str):
        super().__init__(f"{kind} {ref_id} not found")
        self.kind = kind
        self.ref_id = ref_id


class DraftNotFoundError(ReferenceNotFoundError):
    def __init__(self, draft_id: str):
        super().__init__("draft", draft_id)


class DraftConflictError(HelpdeskAIError):
    """Raised when a draft transition loses against a concurrent one"""

    def __init__(self, draft_id: str, current_status: str = None):
        super().__init__("draft no longer pending")
        self.draft_id = draft_id
        self.current_status = current_status


class DraftValidationError(HelpdeskAIError):
    """Raised for invalid draft actions such as blank edits"""


class CapacityExceededError(HelpdeskAIError):
    """An assignment would push an agent above their max capacity"""
