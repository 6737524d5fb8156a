"""Per-request checks run by every virtual user iteration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from loadstage.engine.executor import RequestResult


@dataclass(frozen=True)
class Check:
    """A named predicate over a ``RequestResult``."""

    name: str
    predicate: Callable[[RequestResult], bool]

    def __call__(self, result: RequestResult) -> bool:
        return bool(self.predicate(result))


@dataclass(frozen=True)
class CheckOutcome:
    """Result of one check against one response."""

    name: str
    passed: bool


DEFAULT_CHECKS: tuple[Check, ...] = (
    Check("status is 200", lambda r: r.status_code == 200),
    Check("response time < 500ms", lambda r: r.duration_ms < 500),
    Check("response time < 1000ms", lambda r: r.duration_ms < 1000),
    Check("response has body", lambda r: r.body_size > 0),
)


def run_checks(
    result: RequestResult,
    checks: Iterable[Check] = DEFAULT_CHECKS,
) -> list[CheckOutcome]:
    """Evaluate every check against *result*.

    Args:
        result: Response to check.
        checks: Checks to run.  Defaults to the fixed iteration check set.

    Returns:
        One outcome per check, in order.
    """
    return [CheckOutcome(name=check.name, passed=check(result)) for check in checks]


def any_failed(outcomes: Iterable[CheckOutcome]) -> bool:
    """Return True if at least one check failed."""
    return not all(outcome.passed for outcome in outcomes)
