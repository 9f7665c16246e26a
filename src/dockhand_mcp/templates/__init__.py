"""Instruction templates and loader exports."""

from .loader import TemplateLoadError, TemplateLoader
from .models import BUILTIN_TEMPLATES, InstructionTemplate

__all__ = [
    "BUILTIN_TEMPLATES",
    "InstructionTemplate",
    "TemplateLoadError",
    "TemplateLoader",
]
