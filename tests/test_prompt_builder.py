from datetime import datetime, timezone

import pytest

from app.modules.memorychat.services.context_merge import CombinedContext, ContextEntry
from app.modules.memorychat.services.prompts import (
    Persona,
    PromptBuilder,
    PromptVersion,
    compact_whitespace,
    format_current_datetime,
    get_template,
)
from app.services.memory.models import epoch_ms

NOW = datetime(2025, 1, 1, 10, 30, tzinfo=timezone.utc)
PERSONA = Persona(assistant_name="Mira", user_name="Sam", user_profile="Likes trail running.")


class StaticMerge:
    def __init__(self, context):
        self.context = context
        self.calls = []

    async def merge(self, query, ctx, recent=None):
        self.calls.append((query, ctx, recent))
        return self.context


def _context():
    hi = ContextEntry("database", "user", "hi   there", epoch_ms(NOW), "c", "1")
    old = ContextEntry("vector", "assistant", "last week you said\nyou'd rest", epoch_ms(NOW) - 86_400_000, "c", "2")
    return CombinedContext(entries=[old, hi], semantic=[old], recent=[hi])


def test_format_current_datetime():
    assert format_current_datetime("UTC", NOW) == "current time is Wednesday, 01 January 2025 10:30:00 UTC+00:00 (UTC)."


def test_compact_whitespace():
    assert compact_whitespace("a    b\n\n\n\n  c  ") == "a b\n\nc"


@pytest.mark.parametrize("version", list(PromptVersion))
def test_every_version_has_a_template(version):
    assert get_template(version).version is version


def test_combined_template_renders_merged_transcript():
    builder = PromptBuilder(StaticMerge(_context()), version="combined-v3", persona=PERSONA, tz_name="UTC")
    text = builder.render(_context(), now=NOW)

    assert "you are Mira" in text
    assert "Sam" in text
    assert "Likes trail running." in text
    assert "[user] (01/01/2025 10:30): hi there" in text
    assert "[assistant] (31/12/2024 10:30): last week you said you'd rest" in text
    assert text.index("31/12/2024") < text.index("01/01/2025 10:30")
    assert "{" not in text


def test_history_template_renders_recent_and_history_separately():
    builder = PromptBuilder(StaticMerge(_context()), version=PromptVersion.DEFAULT, persona=PERSONA, tz_name="UTC")
    text = builder.render(_context(), now=NOW)

    recent_at = text.index("// Recent chat")
    history_at = text.index("// Long-term history")
    assert text.index("hi there") > recent_at
    assert text.index("you'd rest") > history_at


def test_empty_context_placeholder():
    builder = PromptBuilder(StaticMerge(CombinedContext()), version="combined-v2", persona=PERSONA)
    assert "(no earlier conversation yet)" in builder.render(CombinedContext(), now=NOW)


async def test_build_prompt_passes_recent_through(ctx):
    merge = StaticMerge(_context())
    builder = PromptBuilder(merge, version="combined-v3", persona=PERSONA, tz_name="UTC")
    recent = _context().recent

    built = await builder.build_prompt("how am I doing", ctx, recent=recent)

    assert built.version is PromptVersion.COMBINED_V3
    assert built.context.entries
    assert merge.calls == [("how am I doing", ctx, recent)]
    assert "hi there" in built.text
