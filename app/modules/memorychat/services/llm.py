"""LLM Invocation Engine.

Builds the multi-turn message sequence and drives a primary -> fallback model
state machine:

    TryPrimary  --ok-->           Success
    TryPrimary  --retryable-->    TryPrimary   (linear backoff, bounded)
    TryPrimary  --5xx-->          TryFallback  (skip remaining primary retries)
    TryPrimary  --budget spent--> TryFallback
    TryFallback --ok-->           Success
    TryFallback --retryable/5xx-> TryFallback  (own counter)
    TryFallback --budget spent--> Exhausted    (ModelExhaustedError)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from openai import AsyncOpenAI, BadRequestError

from app.modules.memorychat.services.context_merge import ContextEntry
from app.modules.memorychat.services.errors import EmptyModelResponseError, ModelExhaustedError
from app.modules.memorychat.services.images import to_data_uri
from app.services.memory.models import utcnow
from core.config import settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)

MessageSequence = List[Tuple[str, Any]]

_OPENAI_ROLES = {"system": "system", "human": "user", "assistant": "assistant"}

SERVER_ERROR_SIGNALS = (
    "500 internal server error",
    "internal server error",
    "an internal error has occurred",
    "503 service unavailable",
    "service unavailable",
    "502 bad gateway",
    "bad gateway",
)


@dataclass
class ModelReply:
    content: Optional[str]


class ChatModel(Protocol):
    name: str

    async def invoke(self, messages: MessageSequence) -> ModelReply: ...


class OpenAIChatModel:
    """Chat Completions client speaking the (role, content) message sequence."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: Optional[float] = settings.LLM_TEMPERATURE,
        max_tokens: int = settings.LLM_MAX_TOKENS,
    ):
        self.client = client
        self.name = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def invoke(self, messages: MessageSequence) -> ModelReply:
        params: Dict[str, Any] = {
            "model": self.name,
            "messages": [{"role": _OPENAI_ROLES[role], "content": content} for role, content in messages],
            "max_completion_tokens": self.max_tokens,
        }
        if self.temperature is not None:
            params["temperature"] = self.temperature
        try:
            response = await self.client.chat.completions.create(**params)
        except BadRequestError as e:
            # some models only accept the default temperature
            msg = str(e)
            if "temperature" in msg and "unsupported" in msg.lower():
                logger.warning(f"[llm] {self.name} rejected temperature, retrying without it")
                params.pop("temperature", None)
                response = await self.client.chat.completions.create(**params)
            else:
                raise
        if not response.choices:
            return ModelReply(content=None)
        return ModelReply(content=response.choices[0].message.content)


def build_message_sequence(
    message: str,
    system_prompt: str,
    images: Optional[Sequence[str]] = None,
    recent_history: Optional[Sequence[ContextEntry]] = None,
) -> MessageSequence:
    """``[system] + one turn per history item + [human: current message]``.

    With images the human turn becomes a text part followed by one
    ``image_url`` part per image, each as a base64 data URI.
    """
    human: Any = message
    if images:
        human = [{"type": "text", "text": message}] + [
            {"type": "image_url", "image_url": {"url": to_data_uri(img)}} for img in images
        ]

    sequence: MessageSequence = [("system", system_prompt)]
    for item in recent_history or []:
        sequence.append(("human" if item.role == "user" else "assistant", item.content))
    sequence.append(("human", human))
    return sequence


class InvocationState(str, Enum):
    TRY_PRIMARY = "try_primary"
    TRY_FALLBACK = "try_fallback"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


class Outcome(str, Enum):
    OK = "ok"
    RETRY = "retry"
    SERVER_ERROR = "server_error"
    BUDGET_SPENT = "budget_spent"


TRANSITIONS: Dict[Tuple[InvocationState, Outcome], InvocationState] = {
    (InvocationState.TRY_PRIMARY, Outcome.OK): InvocationState.SUCCESS,
    (InvocationState.TRY_PRIMARY, Outcome.RETRY): InvocationState.TRY_PRIMARY,
    (InvocationState.TRY_PRIMARY, Outcome.SERVER_ERROR): InvocationState.TRY_FALLBACK,
    (InvocationState.TRY_PRIMARY, Outcome.BUDGET_SPENT): InvocationState.TRY_FALLBACK,
    (InvocationState.TRY_FALLBACK, Outcome.OK): InvocationState.SUCCESS,
    (InvocationState.TRY_FALLBACK, Outcome.RETRY): InvocationState.TRY_FALLBACK,
    (InvocationState.TRY_FALLBACK, Outcome.SERVER_ERROR): InvocationState.TRY_FALLBACK,
    (InvocationState.TRY_FALLBACK, Outcome.BUDGET_SPENT): InvocationState.EXHAUSTED,
}


def is_server_error(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status in (500, 502, 503):
        return True
    msg = str(exc).lower()
    return any(signal in msg for signal in SERVER_ERROR_SIGNALS)


@dataclass
class LLMResult:
    response_text: str
    responded_at: datetime
    used_fallback: bool
    model: str
    attempts: int

    def display_text(self, tag: str = settings.FALLBACK_RESPONSE_TAG) -> str:
        """Response as shown to the user, marked when the fallback model answered."""
        if self.used_fallback and tag:
            return f"{tag}\n\n{self.response_text}"
        return self.response_text


class LLMInvocationEngine:
    def __init__(
        self,
        primary: ChatModel,
        fallback: ChatModel,
        max_retries: int = settings.LLM_MAX_RETRIES,
        base_delay: float = settings.LLM_RETRY_BASE_DELAY_SECS,
        failover_delay: float = settings.LLM_FAILOVER_DELAY_SECS,
        call_timeout: Optional[float] = settings.OPENAI_TIMEOUT_SECS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.primary = primary
        self.fallback = fallback
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.failover_delay = failover_delay
        self.call_timeout = call_timeout
        self._sleep = sleep

    def _model_for(self, state: InvocationState) -> ChatModel:
        return self.primary if state is InvocationState.TRY_PRIMARY else self.fallback

    def _classify(self, state: InvocationState, exc: BaseException, tier_attempts: int) -> Outcome:
        if state is InvocationState.TRY_PRIMARY and is_server_error(exc):
            return Outcome.SERVER_ERROR
        # attempts per tier = 1 + max_retries
        if tier_attempts > self.max_retries:
            return Outcome.BUDGET_SPENT
        return Outcome.RETRY

    async def _call(self, model: ChatModel, sequence: MessageSequence) -> str:
        if self.call_timeout:
            reply = await asyncio.wait_for(model.invoke(sequence), timeout=self.call_timeout)
        else:
            reply = await model.invoke(sequence)
        content = reply.content if reply is not None else None
        if not content or not content.strip():
            raise EmptyModelResponseError(model.name)
        return content

    @profile_stage("llm_invoke")
    async def invoke(
        self,
        message: str,
        system_prompt: str,
        images: Optional[Sequence[str]] = None,
        recent_history: Optional[Sequence[ContextEntry]] = None,
    ) -> LLMResult:
        sequence = build_message_sequence(message, system_prompt, images, recent_history)
        logger.info(f"[llm] invoking with {len(sequence)} messages ({len(images or [])} image(s))")

        state = InvocationState.TRY_PRIMARY
        tier_attempts = 0
        total_attempts = 0
        last_error: Optional[BaseException] = None

        while state not in (InvocationState.SUCCESS, InvocationState.EXHAUSTED):
            model = self._model_for(state)
            tier_attempts += 1
            total_attempts += 1
            try:
                text = await self._call(model, sequence)
                outcome = Outcome.OK
            except Exception as e:
                last_error = e
                outcome = self._classify(state, e, tier_attempts)
                logger.warning(
                    f"[llm] {model.name} attempt {tier_attempts}/{self.max_retries + 1} failed ({outcome.value}): {e}"
                )

            next_state = TRANSITIONS[(state, outcome)]

            if next_state is InvocationState.SUCCESS:
                used_fallback = state is InvocationState.TRY_FALLBACK
                if total_attempts > 1:
                    logger.info(
                        f"[llm] response from {model.name} after {total_attempts} attempts"
                        f"{' (fallback)' if used_fallback else ''}"
                    )
                return LLMResult(
                    response_text=text,
                    responded_at=utcnow(),
                    used_fallback=used_fallback,
                    model=model.name,
                    attempts=total_attempts,
                )

            if next_state is InvocationState.TRY_FALLBACK and state is InvocationState.TRY_PRIMARY:
                logger.warning(f"[llm] switching {self.primary.name} -> {self.fallback.name}")
                tier_attempts = 0
                await self._sleep(self.failover_delay)
            elif next_state is state:
                await self._sleep(tier_attempts * self.base_delay)
            state = next_state

        logger.error(f"[llm] both models exhausted after {total_attempts} attempts: {last_error}")
        raise ModelExhaustedError(self.primary.name, self.fallback.name, total_attempts, last_error)
