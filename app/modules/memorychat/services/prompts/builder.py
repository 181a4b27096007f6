from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo
import logging
import re

from app.modules.memorychat.services.context_merge import CombinedContext, ContextEntry, ContextMergeEngine
from app.modules.memorychat.services.prompts.templates import (
    CombinedPromptInput,
    CombinedTemplate,
    HistoryPromptInput,
    HistoryTemplate,
    Persona,
    PromptVersion,
    get_template,
)
from app.modules.memorychat.services.request_context import RequestContext
from app.services.memory.models import from_epoch_ms
from core.config import settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)

_SPACES = re.compile(r"[ \t]+")
_BLANK_RUNS = re.compile(r"\n{3,}")


@dataclass
class BuiltPrompt:
    text: str
    version: PromptVersion
    context: CombinedContext


def compact_whitespace(text: str) -> str:
    """Collapse runs of spaces and blank lines; content is otherwise untouched."""
    lines = [_SPACES.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()


def format_current_datetime(tz_name: str = settings.TIMEZONE, now: Optional[datetime] = None) -> str:
    tz = ZoneInfo(tz_name)
    now = (now or datetime.now(tz)).astimezone(tz)
    offset = now.strftime("%z")
    offset = f"UTC{offset[:3]}:{offset[3:]}" if offset else "UTC"
    return f"current time is {now.strftime('%A, %d %B %Y %H:%M:%S')} {offset} ({tz_name})."


def format_entry(entry: ContextEntry, tz_name: str = settings.TIMEZONE) -> str:
    when = from_epoch_ms(entry.timestamp).astimezone(ZoneInfo(tz_name))
    clean = " ".join(entry.content.split())
    return f"[{entry.role}] ({when.strftime('%d/%m/%Y %H:%M')}): {clean}"


def format_entries(entries: Sequence[ContextEntry], tz_name: str = settings.TIMEZONE) -> str:
    return "\n".join(format_entry(e, tz_name) for e in entries)


class PromptBuilder:
    """Renders the configured persona template around the merged conversation context."""

    def __init__(
        self,
        merge_engine: ContextMergeEngine,
        version: PromptVersion | str = settings.PROMPT_VERSION,
        persona: Optional[Persona] = None,
        tz_name: str = settings.TIMEZONE,
    ):
        self.merge_engine = merge_engine
        self.version = PromptVersion(version)
        self.template = get_template(self.version)
        self.persona = persona or Persona(
            assistant_name=settings.ASSISTANT_NAME,
            user_name=settings.USER_DISPLAY_NAME,
            user_profile=settings.USER_PROFILE,
        )
        self.tz_name = tz_name

    def render(self, context: CombinedContext, now: Optional[datetime] = None) -> str:
        current_date = format_current_datetime(self.tz_name, now)
        template = self.template
        if isinstance(template, CombinedTemplate):
            text = template.render(
                CombinedPromptInput(
                    combined_context=format_entries(context.entries, self.tz_name),
                    current_date=current_date,
                    persona=self.persona,
                )
            )
        elif isinstance(template, HistoryTemplate):
            text = template.render(
                HistoryPromptInput(
                    chat_history_context=format_entries(context.semantic, self.tz_name),
                    current_date=current_date,
                    recent_chat=[format_entry(e, self.tz_name) for e in context.recent],
                    persona=self.persona,
                )
            )
        else:
            raise TypeError(f"unsupported template {type(template).__name__}")
        return compact_whitespace(text)

    @profile_stage("prompt_build")
    async def build_prompt(
        self,
        user_message: str,
        ctx: RequestContext,
        recent: Optional[List[ContextEntry]] = None,
    ) -> BuiltPrompt:
        context = await self.merge_engine.merge(user_message, ctx, recent=recent)
        text = self.render(context)
        logger.info(f"[prompt] {self.version.value}: {len(text)} chars, {len(context.entries)} context entries")
        return BuiltPrompt(text=text, version=self.version, context=context)
