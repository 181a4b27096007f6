# Prompt templates and builder for the memory chat pipeline.

from .templates import PromptVersion, Persona, TEMPLATES, get_template
from .builder import PromptBuilder, BuiltPrompt, compact_whitespace, format_current_datetime, format_entries

__all__ = [
    "PromptVersion",
    "Persona",
    "TEMPLATES",
    "get_template",
    "PromptBuilder",
    "BuiltPrompt",
    "compact_whitespace",
    "format_current_datetime",
    "format_entries",
]
