"""Token counting with tiktoken.

Uses the cl100k_base encoding shared by current OpenAI chat and embedding
models. The encoder is created lazily on first use.
"""

from __future__ import annotations

import tiktoken

_TIKTOKEN_ENCODING = "cl100k_base"

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(_TIKTOKEN_ENCODING)
    return _encoder


def count_tokens(text: str) -> int:
    """Number of tokens in ``text``."""
    return len(_get_encoder().encode(text))


def truncate_tokens_from_start(text: str, max_tokens: int) -> str:
    """Drop tokens from the start of ``text`` so at most ``max_tokens`` remain.

    Transcripts are cut this way so the most recent exchanges survive.
    """
    tokens = _get_encoder().encode(text)
    if len(tokens) <= max_tokens:
        return text
    return _get_encoder().decode(tokens[-max_tokens:])
