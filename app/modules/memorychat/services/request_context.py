from __future__ import annotations

import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RequestContext:
    """Identity of the caller for one request.

    Built by the HTTP layer and passed explicitly to every pipeline call;
    nothing in the pipeline reads a process-wide "current user".
    """

    user_id: str
    conversation_id: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self):
        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id is required")
        if not self.conversation_id or not self.conversation_id.strip():
            raise ValueError("conversation_id is required")

    @property
    def tag(self) -> str:
        return f"{self.request_id}:{self.conversation_id}"
