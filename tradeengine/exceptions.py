"""
Exceptions raised by the trading engine.

Recoverable conditions (sizing rejections, missing data, stalled price
fetches) are reported as skip reasons and never raise.  The classes
here cover the remaining case: accounting states that can only be
reached through a programming error.
"""

from __future__ import annotations


class PositionInvariantError(RuntimeError):
    """Raised when a position's bookkeeping would become inconsistent.

    Examples are closing more quantity than remains open, emitting an
    exit after a position is closed, or settling a position twice.
    """

    def __init__(self, pos_id: str, message: str) -> None:
        super().__init__(f"{pos_id}: {message}")
        self.pos_id = pos_id
