import math

import numpy as np

from sim_models import CashFlowSchedule, ScheduleError, SimulationOutcome


MEDIAN_PERCENTILE = 0.50
HIGH_PERCENTILE = 0.90


def amortized_payment(loan_amount, monthly_rate, months):
    if months <= 0:
        raise ScheduleError("months must be > 0 to amortize a loan.")
    if monthly_rate == 0.0:
        return loan_amount / months
    power_term = (1.0 + monthly_rate) ** months
    return loan_amount * (monthly_rate * power_term) / (power_term - 1.0)


def interest_only_payment(loan_amount, monthly_rate):
    return loan_amount * monthly_rate


def _validate_schedule_inputs(loan_amount, monthly_rate, payment, monthly_budget, months, initial_balance):
    values = {
        "loan_amount": loan_amount,
        "monthly_rate": monthly_rate,
        "payment": payment,
        "monthly_budget": monthly_budget,
        "initial_balance": initial_balance,
    }
    for name, value in values.items():
        if not math.isfinite(value):
            raise ScheduleError(f"{name} must be finite (got {value!r}).")
    if isinstance(months, bool) or int(months) != months:
        raise ScheduleError(f"months must be a whole number (got {months!r}).")
    if months < 0:
        raise ScheduleError(f"months must be >= 0 (got {months}).")
    if monthly_budget <= 0:
        raise ScheduleError(f"monthly_budget must be > 0 (got {monthly_budget}).")
    if loan_amount < 0:
        raise ScheduleError(f"loan_amount must be >= 0 (got {loan_amount}).")
    if payment < 0:
        raise ScheduleError(f"payment must be >= 0 (got {payment}).")


def generate_schedule(loan_amount, monthly_rate, payment, monthly_budget, months, initial_balance=None):
    """Build the deterministic debt and deposit paths for one payment policy.

    Index 0 holds the initial state: the full loan outstanding and the initial
    capital injection (``initial_balance``, the loan proceeds by default).
    Month ``months`` always forces payoff of whatever debt remains, so the
    final deposit can go negative when the budget does not cover it.
    """
    if initial_balance is None:
        initial_balance = loan_amount
    _validate_schedule_inputs(loan_amount, monthly_rate, payment, monthly_budget, months, initial_balance)
    months = int(months)

    debt_path = np.zeros(months + 1, dtype=np.float64)
    deposit_path = np.zeros(months + 1, dtype=np.float64)
    debt_path[0] = loan_amount
    deposit_path[0] = initial_balance

    debt = float(loan_amount)
    for month in range(1, months + 1):
        if debt <= 0.0:
            deposit_path[month] = monthly_budget
            continue

        interest = debt * monthly_rate
        reduction = payment - interest
        if month == months or reduction >= debt:
            deposit_path[month] = monthly_budget - (debt + interest)
            debt = 0.0
        else:
            debt -= reduction
            deposit_path[month] = monthly_budget - payment
        debt_path[month] = debt

    return CashFlowSchedule(debt_path=debt_path, deposit_path=deposit_path)


def generate_request_schedule(request):
    return generate_schedule(
        request.initial_debt,
        request.monthly_rate,
        request.payment,
        request.monthly_budget,
        request.months,
        initial_balance=request.initial_balance,
    )


def _standard_normal(rng, size):
    # Box-Muller on u in (0, 1] so log(u) stays finite.
    u = 1.0 - rng.random(size)
    v = rng.random(size)
    return np.sqrt(-2.0 * np.log(u)) * np.cos(2.0 * np.pi * v)


def _percentile_value(sorted_values, percentile):
    count = sorted_values.size
    if count == 0:
        return 0.0
    idx = min(int(math.floor(count * percentile)), count - 1)
    return float(sorted_values[idx])


def summarize_wealth(wealth, path_count, payment_amount=0.0, surplus_amount=0.0, terminal_debt=0.0):
    wealth = np.sort(np.asarray(wealth, dtype=np.float64).reshape(-1))
    if path_count <= 0 or wealth.size == 0:
        return SimulationOutcome(
            payment_amount=float(payment_amount),
            surplus_amount=float(surplus_amount),
            survival_rate=0.0,
            median_wealth=0.0,
            p90_wealth=0.0,
            expected_wealth=0.0,
            wealth=np.empty(0, dtype=np.float64),
            path_count=int(max(path_count, 0)),
            terminal_debt=float(terminal_debt),
        )

    return SimulationOutcome(
        payment_amount=float(payment_amount),
        surplus_amount=float(surplus_amount),
        survival_rate=wealth.size / path_count * 100.0,
        median_wealth=_percentile_value(wealth, MEDIAN_PERCENTILE),
        p90_wealth=_percentile_value(wealth, HIGH_PERCENTILE),
        expected_wealth=float(np.mean(wealth)),
        wealth=wealth,
        path_count=int(path_count),
        terminal_debt=float(terminal_debt),
    )


def simulate_paths(
    schedule,
    growth,
    volatility,
    inflation,
    margin_call_ltv,
    years,
    path_count,
    rng=None,
    payment_amount=0.0,
    surplus_amount=0.0,
):
    """Run ``path_count`` GBM market paths against a fixed cash-flow schedule.

    A path is ruined the first month its outstanding debt exceeds
    ``margin_call_ltv`` times its balance; ruined paths stop contributing.
    Survivor terminal wealth is net of final debt and deflated to real terms.
    """
    path_count = int(path_count)
    if rng is None:
        rng = np.random.default_rng()

    debt_path = schedule.debt_path
    deposit_path = schedule.deposit_path
    months = schedule.months
    terminal_debt = schedule.terminal_debt

    if path_count <= 0:
        return summarize_wealth(
            np.empty(0), 0, payment_amount, surplus_amount, terminal_debt
        )

    drift = (growth - 0.5 * volatility * volatility) / 12.0
    diffusion = volatility * math.sqrt(1.0 / 12.0)

    balance = np.full(path_count, deposit_path[0], dtype=np.float64)
    alive = np.ones(path_count, dtype=bool)

    for month in range(1, months + 1):
        shocks = _standard_normal(rng, path_count)
        balance = balance * np.exp(drift + diffusion * shocks) + deposit_path[month]

        debt = debt_path[month]
        if debt > 0.0:
            # A non-positive balance under outstanding debt is an unbounded LTV.
            ltv = np.divide(
                debt,
                balance,
                out=np.full(path_count, np.inf, dtype=np.float64),
                where=balance > 0.0,
            )
            alive &= ~(ltv > margin_call_ltv)
            if not np.any(alive):
                break

    nominal_wealth = balance[alive] - terminal_debt
    real_wealth = nominal_wealth / math.pow(1.0 + inflation, years)
    return summarize_wealth(real_wealth, path_count, payment_amount, surplus_amount, terminal_debt)


def simulate_request(request, schedule=None, rng=None):
    if schedule is None:
        schedule = generate_request_schedule(request)
    if rng is None:
        rng = np.random.default_rng(request.seed)
    return simulate_paths(
        schedule,
        request.growth,
        request.volatility,
        request.inflation,
        request.margin_call_ltv,
        request.years,
        request.path_count,
        rng=rng,
        payment_amount=request.payment,
        surplus_amount=request.surplus,
    )
