"""
Replier module - AI drafting of review replies.
"""

from review_responder.replier.gemini import (
    AiError,
    GeminiReplyGenerator,
    build_system_prompt,
    build_user_prompt,
)

__all__ = [
    "AiError",
    "GeminiReplyGenerator",
    "build_system_prompt",
    "build_user_prompt",
]
