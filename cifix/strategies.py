from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Iterable, Optional, Protocol, TypeVar

C = TypeVar("C", contravariant=True)
R = TypeVar("R")


@dataclass(frozen=True)
class Attempt(Generic[R]):
    """
    Outcome of one strategy in a fallback chain.

    `ok=False` means "try the next strategy"; `value` may still carry partial output
    (logs, stderr) that the caller wants to surface.
    """

    ok: bool
    strategy: str
    value: Optional[R] = None
    detail: str = ""


class Strategy(Protocol[C]):
    name: str

    def attempt(self, context: C) -> Attempt[Any]: ...


def first_success(strategies: Iterable[Strategy[C]], context: C) -> Attempt[Any]:
    """
    Try each strategy in order until one reports ok.

    A strategy that raises counts as a failed attempt; the chain moves on. When every strategy
    fails, the last attempt is returned so callers can report its detail.
    """
    last: Attempt[Any] = Attempt(ok=False, strategy="none", detail="no strategies configured")
    for s in strategies:
        try:
            att = s.attempt(context)
        except Exception as e:  # noqa: BLE001
            att = Attempt(ok=False, strategy=s.name, detail=f"{type(e).__name__}: {e}")
        if att.ok:
            return att
        last = att
    return last
