from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np


class ScheduleError(ValueError):
    pass


class ProtocolError(RuntimeError):
    def __init__(self, message: str, status: float = 1.0) -> None:
        super().__init__(message)
        self.status = status


class BufferCapacityError(ProtocolError):
    pass


class UnitFailure(RuntimeError):
    def __init__(
        self,
        strategy_index: int,
        reason: str,
        traceback: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"Strategy {strategy_index} failed: {reason}")
        self.strategy_index = strategy_index
        self.reason = reason
        self.traceback = traceback
        self.cause = cause
        self.__cause__ = cause


class UnitTimeoutError(UnitFailure):
    pass


class DispatchError(RuntimeError):
    def __init__(self, failures: list[UnitFailure]) -> None:
        failures = sorted(failures, key=lambda failure: failure.strategy_index)
        indices = ", ".join(str(failure.strategy_index) for failure in failures)
        details = "; ".join(f"[{failure.strategy_index}] {failure.reason}" for failure in failures)
        super().__init__(f"{len(failures)} strategy unit(s) failed (indices: {indices}): {details}")
        self.failures = failures

    @property
    def failed_indices(self) -> list[int]:
        return [failure.strategy_index for failure in self.failures]


def _frozen_array(values: Any) -> np.ndarray:
    array = np.array(values, dtype=np.float64)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class SimulationRequest:
    initial_debt: float
    initial_balance: float
    payment: float
    monthly_budget: float
    monthly_rate: float
    years: float
    volatility: float
    growth: float
    inflation: float
    margin_call_ltv: float
    path_count: int
    seed: Optional[int] = None

    @property
    def months(self) -> int:
        return int(round(self.years * 12.0))

    @property
    def surplus(self) -> float:
        return self.monthly_budget - self.payment

    @property
    def is_benchmark(self) -> bool:
        return self.initial_debt <= 0.0


@dataclass(frozen=True, eq=False)
class CashFlowSchedule:
    """Per-month debt and deposit paths, index 0 being the initial state."""

    debt_path: np.ndarray = field(repr=False)
    deposit_path: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        debt_path = _frozen_array(self.debt_path)
        deposit_path = _frozen_array(self.deposit_path)
        if debt_path.ndim != 1 or debt_path.shape != deposit_path.shape or debt_path.size == 0:
            raise ValueError("debt_path and deposit_path must be equal-length, non-empty 1-D sequences.")
        object.__setattr__(self, "debt_path", debt_path)
        object.__setattr__(self, "deposit_path", deposit_path)

    @property
    def months(self) -> int:
        return int(self.debt_path.size - 1)

    @property
    def terminal_debt(self) -> float:
        return float(self.debt_path[-1])

    @property
    def total_deposits(self) -> float:
        return float(np.sum(self.deposit_path[1:]))


@dataclass(frozen=True)
class SimulationOutcome:
    payment_amount: float
    surplus_amount: float
    survival_rate: float
    median_wealth: float
    p90_wealth: float
    expected_wealth: float
    wealth: np.ndarray = field(repr=False, compare=False)
    benchmark_percent_diff: float = 0.0
    path_count: Optional[int] = None
    terminal_debt: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "wealth", _frozen_array(self.wealth).reshape(-1))

    @property
    def survivor_count(self) -> int:
        return int(self.wealth.size)

    def to_dict(self, include_wealth: bool = True) -> dict[str, Any]:
        payload = {
            "payment_amount": float(self.payment_amount),
            "surplus_amount": float(self.surplus_amount),
            "survival_rate": float(self.survival_rate),
            "median_wealth": float(self.median_wealth),
            "p90_wealth": float(self.p90_wealth),
            "expected_wealth": float(self.expected_wealth),
            "benchmark_percent_diff": float(self.benchmark_percent_diff),
            "path_count": self.path_count,
            "survivor_count": self.survivor_count,
            "terminal_debt": float(self.terminal_debt),
        }
        if include_wealth:
            payload["wealth"] = self.wealth.tolist()
        return payload


@dataclass(frozen=True)
class StrategyResult:
    strategy_index: int
    request: SimulationRequest
    schedule: CashFlowSchedule = field(repr=False)
    outcome: SimulationOutcome
    payment_percent: float
    benchmark_wealth: np.ndarray = field(repr=False, compare=False)
    benchmark_median: float = 0.0
    benchmark_expected: float = 0.0
    benchmark_sigma: float = 0.0

    @property
    def percent_diff(self) -> float:
        return self.outcome.benchmark_percent_diff

    def to_dict(self, include_wealth: bool = True) -> dict[str, Any]:
        payload = self.outcome.to_dict(include_wealth=include_wealth)
        payload.update(
            {
                "strategy_index": self.strategy_index,
                "payment_percent": float(self.payment_percent),
                "benchmark_median": float(self.benchmark_median),
                "benchmark_expected": float(self.benchmark_expected),
                "benchmark_sigma": float(self.benchmark_sigma),
            }
        )
        if include_wealth:
            payload["debt_path"] = self.schedule.debt_path.tolist()
            payload["deposit_path"] = self.schedule.deposit_path.tolist()
        return payload


@dataclass(frozen=True)
class AggregateResult:
    benchmark: SimulationOutcome
    benchmark_schedule: CashFlowSchedule = field(repr=False)
    strategies: tuple[StrategyResult, ...]
    failures: tuple[UnitFailure, ...] = ()
    execution: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self, include_wealth: bool = True) -> dict[str, Any]:
        return {
            "benchmark": self.benchmark.to_dict(include_wealth=include_wealth),
            "strategies": [item.to_dict(include_wealth=include_wealth) for item in self.strategies],
            "failures": [
                {"strategy_index": failure.strategy_index, "reason": failure.reason}
                for failure in self.failures
            ],
            "execution": dict(self.execution),
        }
