"""
LLM prompts for the deal extraction pipeline.
"""

from .structure_document import (
    STRUCTURING_SYSTEM_PROMPT,
    build_structuring_prompt,
)

__all__ = [
    'STRUCTURING_SYSTEM_PROMPT',
    'build_structuring_prompt',
]
