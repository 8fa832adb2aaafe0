from __future__ import annotations

import secrets
from typing import Callable

from authguard.logging import get_logger
from authguard.service.errors import EntropySourceUnavailableError

logger = get_logger(__name__)

# Callable taking a byte count and returning a URL-safe string.
TokenSource = Callable[[int], str]


def generate_token(nbytes: int, source: TokenSource = secrets.token_urlsafe) -> str:
    """Return ``nbytes`` of OS randomness, URL-safe encoded.

    A failing random source is fatal for the call; there is no fallback to a
    weaker generator.
    """
    try:
        return source(nbytes)
    except (OSError, NotImplementedError) as exc:
        logger.error("entropy_source_unavailable", error=str(exc))
        raise EntropySourceUnavailableError(
            "secure random source unavailable"
        ) from exc
