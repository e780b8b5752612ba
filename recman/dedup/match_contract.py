"""Result contract and ordered execution for pairwise match strategies."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, NotRequired, TypedDict, cast

if TYPE_CHECKING:
    from recman.config.datasources import DedupSettings

    from .verification import MatchProfile

MATCH_STATUSES: tuple[str, str, str] = ("DUPLICATE", "DISTINCT", "ABSTAIN")
MatchStatus = Literal["DUPLICATE", "DISTINCT", "ABSTAIN"]
NO_STRATEGY_MATCH_REASON = "no_strategy_match"


class MatchResult(TypedDict):
    """Outcome of one strategy comparing two records."""

    status: MatchStatus
    reason: str
    metadata: NotRequired[dict[str, object]]


# Called as strategy(left_profile, right_profile, dedup_settings)
MatchStrategy = Callable[..., object]
MatchStrategyChain = Sequence[tuple[str, MatchStrategy]]


class MatchContractError(ValueError):
    """Raised when a strategy returns something other than a MatchResult."""

    @classmethod
    def for_strategy(cls, strategy_name: str, *, details: str) -> MatchContractError:
        """Build error naming the offending strategy."""
        message = f"Strategy {strategy_name!r} returned invalid result contract: {details}"
        return cls(message)


@dataclass(frozen=True, slots=True)
class MatchAttempt:
    """One evaluated strategy in chain order."""

    strategy_name: str
    status: MatchStatus
    reason: str


@dataclass(frozen=True, slots=True)
class MatchDecision:
    """Final chain verdict with the attempts that led to it."""

    status: MatchStatus
    reason: str
    attempts: tuple[MatchAttempt, ...]

    @property
    def is_duplicate(self) -> bool:
        """Return true when the two records describe the same work."""
        return self.status == "DUPLICATE"


def duplicate(*, reason: str, metadata: Mapping[str, object] | None = None) -> MatchResult:
    """Return a DUPLICATE result."""
    return _result("DUPLICATE", reason=reason, metadata=metadata)


def distinct(*, reason: str, metadata: Mapping[str, object] | None = None) -> MatchResult:
    """Return a DISTINCT result."""
    return _result("DISTINCT", reason=reason, metadata=metadata)


def abstain(*, reason: str, metadata: Mapping[str, object] | None = None) -> MatchResult:
    """Return an ABSTAIN result."""
    return _result("ABSTAIN", reason=reason, metadata=metadata)


def execute_match_chain(
    *,
    strategies: MatchStrategyChain,
    left: MatchProfile,
    right: MatchProfile,
    settings: DedupSettings,
) -> MatchDecision:
    """Run strategies in order; the first non-ABSTAIN result decides.

    A chain where every strategy abstains yields DISTINCT.
    """
    attempts: list[MatchAttempt] = []
    for strategy_name, strategy in strategies:
        result = _coerce_match_result(
            strategy_name=strategy_name,
            raw=strategy(left, right, settings),
        )
        attempts.append(
            MatchAttempt(
                strategy_name=strategy_name,
                status=result["status"],
                reason=result["reason"],
            ),
        )
        if result["status"] == "ABSTAIN":
            continue
        return MatchDecision(
            status=result["status"],
            reason=result["reason"],
            attempts=tuple(attempts),
        )
    return MatchDecision(
        status="DISTINCT",
        reason=NO_STRATEGY_MATCH_REASON,
        attempts=tuple(attempts),
    )


def _result(
    status: MatchStatus,
    *,
    reason: str,
    metadata: Mapping[str, object] | None,
) -> MatchResult:
    result: MatchResult = {"status": status, "reason": reason}
    if metadata is not None:
        result["metadata"] = dict(metadata)
    return result


def _coerce_match_result(*, strategy_name: str, raw: object) -> MatchResult:
    if not isinstance(raw, Mapping):
        raise MatchContractError.for_strategy(
            strategy_name,
            details="result must be a mapping with `status` and `reason` fields",
        )
    result_map = cast("Mapping[str, object]", raw)
    status = result_map.get("status")
    if status not in MATCH_STATUSES:
        raise MatchContractError.for_strategy(
            strategy_name,
            details=f"unknown status {status!r}",
        )
    reason = result_map.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise MatchContractError.for_strategy(
            strategy_name,
            details="`reason` must be a non-empty string",
        )
    return cast("MatchResult", result_map)
