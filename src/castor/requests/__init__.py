"""Request builders, one pure function per wire API."""

from ._common import PLACEHOLDER_SIGNATURE, SignaturePolicy, signature_bearing_call_ids
from .chat import build_chat_request
from .gemini import build_gemini_request
from .responses import build_responses_request

__all__ = [
    "PLACEHOLDER_SIGNATURE",
    "SignaturePolicy",
    "build_chat_request",
    "build_gemini_request",
    "build_responses_request",
    "signature_bearing_call_ids",
]
