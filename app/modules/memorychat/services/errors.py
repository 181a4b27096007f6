from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureStep(str, Enum):
    IMAGE_PROCESSING = "image_processing"
    PROMPT_BUILDING = "prompt_building"
    MODEL_CALL = "model_call"
    DATABASE_SAVE = "database_save"
    VECTOR_STORE = "vector_store"


class MemoryChatError(Exception):
    """Base class for errors raised by the chat pipeline."""


class EmptyModelResponseError(MemoryChatError):
    def __init__(self, model: str):
        super().__init__(f"{model} returned an empty response")
        self.model = model


class ModelExhaustedError(MemoryChatError):
    """Both model tiers used up their retry budget."""

    def __init__(self, primary_model: str, fallback_model: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(
            f"Failed to get a response from both models ({primary_model} -> {fallback_model}) "
            f"after {attempts} attempts: {last_error}"
        )
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.attempts = attempts
        self.last_error = last_error


class ImageProcessingError(MemoryChatError):
    pass


class ConversationAccessError(MemoryChatError):
    """The conversation ID is already owned by another user."""

    def __init__(self, conversation_id: str, user_id: str):
        super().__init__(f"conversation {conversation_id} does not belong to user {user_id}")
        self.conversation_id = conversation_id
        self.user_id = user_id


class ChatPipelineError(MemoryChatError):
    """Terminal failure of one request, carrying what the caller needs to degrade gracefully."""

    def __init__(
        self,
        step: FailureStep,
        elapsed_ms: int,
        fallback_text: str,
        cause: BaseException,
    ):
        super().__init__(f"{step.value} failed after {elapsed_ms}ms: {cause}")
        self.step = step
        self.elapsed_ms = elapsed_ms
        self.fallback_text = fallback_text
        self.cause = cause

    @property
    def error_type(self) -> str:
        return type(self.cause).__name__
