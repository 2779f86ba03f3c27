"""Word and token counting for messages."""

import functools
import logging
import re
from typing import Iterable

import tiktoken

from .models import Message

logger = logging.getLogger(__name__)

# CJK ideographs, kana and hangul count as one word each.
_CJK = r"[぀-ヿ㐀-䶿一-鿿가-힯豈-﫿]"
_WORD_PATTERN = re.compile(rf"{_CJK}|[^\s{_CJK[1:-1]}]+")

TOKENS_PER_MESSAGE = 3
REPLY_PRIMING_TOKENS = 3
# Fallback when no encoding is available: roughly four characters per token.
CHARS_PER_TOKEN = 4


@functools.lru_cache(maxsize=1)
def _encoding():
    # tiktoken downloads the BPE file on first use, which fails offline.
    try:
        return tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        logger.warning(f"tiktoken encoding unavailable, estimating from length: {e}")
        return None


def _approximate_tokens(text: str) -> int:
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def count_word(text: str) -> int:
    if not text:
        return 0
    return len(_WORD_PATTERN.findall(text))


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    encoding = _encoding()
    if encoding is None:
        return _approximate_tokens(text)
    try:
        return len(encoding.encode(text, disallowed_special=()))
    except Exception as e:
        logger.warning(f"Token encoding failed, estimating from length: {e}")
        return _approximate_tokens(text)


def estimate_tokens_from_messages(messages: Iterable[Message]) -> int:
    """Approximate prompt size using the chat-completions accounting rules."""
    total = 0
    for message in messages:
        total += TOKENS_PER_MESSAGE
        total += estimate_tokens(message.content)
        total += estimate_tokens(message.role)
    return total + REPLY_PRIMING_TOKENS
