"""Classification of low-level network errors."""

from __future__ import annotations

import errno


def is_epipe(err: BaseException | None) -> bool:
    """Return True if err, or any error it was raised from, is EPIPE."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        if isinstance(err, BrokenPipeError):
            return True
        if isinstance(err, OSError) and err.errno == errno.EPIPE:
            return True
        err = err.__cause__ or err.__context__
    return False