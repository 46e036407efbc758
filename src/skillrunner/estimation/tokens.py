"""Token estimation.

Counts are approximate: they are used for plan previews and cost
estimates, never for hard context-window enforcement.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from skillrunner.observability.logging import get_logger

if TYPE_CHECKING:
    import tiktoken

log = get_logger(__name__)

# Characters per token for the character-ratio heuristic
CHARS_PER_TOKEN = 4


@runtime_checkable
class TokenEstimator(Protocol):
    """Converts text into an approximate token count."""

    def estimate(self, text: str) -> int:
        """Return the estimated number of tokens in ``text``."""
        ...


class CharRatioEstimator:
    """Heuristic estimator: roughly four characters per token."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self.chars_per_token = max(1, chars_per_token)

    def estimate(self, text: str) -> int:
        """Estimate tokens by rounding the character count up."""
        if not text:
            return 0
        return (len(text) + self.chars_per_token - 1) // self.chars_per_token


class TiktokenEstimator:
    """BPE estimator using a tiktoken encoding.

    The encoding is loaded lazily. When it cannot be loaded (for example,
    the encoding file is not cached and the network is unavailable), the
    estimator falls back to :class:`CharRatioEstimator`.

    Attributes:
        encoding_name: tiktoken encoding to use.
    """

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self.encoding_name = encoding_name
        self._encoding: tiktoken.Encoding | None = None
        self._fallback: CharRatioEstimator | None = None

    def _get_encoding(self) -> tiktoken.Encoding | None:
        """Lazy-load the tiktoken encoder."""
        if self._encoding is None and self._fallback is None:
            import tiktoken

            try:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except (OSError, ValueError) as e:
                log.warning(
                    "token_encoding_unavailable",
                    encoding=self.encoding_name,
                    error=str(e),
                )
                self._fallback = CharRatioEstimator()
        return self._encoding

    def estimate(self, text: str) -> int:
        """Estimate token count for text.

        Args:
            text: Text to estimate tokens for.

        Returns:
            Estimated token count.
        """
        if not text:
            return 0
        encoding = self._get_encoding()
        if encoding is not None:
            return len(encoding.encode(text, disallowed_special=()))
        assert self._fallback is not None
        return self._fallback.estimate(text)
