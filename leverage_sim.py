from copy import deepcopy
from dataclasses import replace
import logging
import math
import multiprocessing
import os
import queue as queue_mod
import time
import traceback

import numpy as np

import sim_engine
import sim_protocol
from sim_models import (
    AggregateResult,
    DispatchError,
    ProtocolError,
    ScheduleError,
    SimulationRequest,
    StrategyResult,
    UnitFailure,
    UnitTimeoutError,
)


logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    "loan": {
        "collateral_value": 30_000.0,
        "loan_amount": 6_000.0,
        "annual_interest_rate": 0.07,
        "years": 30,
        "monthly_budget": 200.0,
        "payment_type": "interest",
        "min_payment": 0.0,
    },
    "market": {
        "growth_annual": 0.08,
        "volatility_annual": 0.15,
        "inflation_annual": 0.035,
        "margin_call_ltv": 0.60,
    },
    "strategies": {
        "num_leveraged": 20,
    },
    "simulation": {
        "path_count": 10_000,
        "benchmark_path_count": 20_000,
        "seed": 42,
    },
    "dispatch": {
        "parallel_enabled": True,
        "parallel_workers": None,
        "parallel_start_method": None,
        "parallel_min_units": 2,
        "unit_timeout_seconds": 300.0,
        "poll_interval_seconds": 0.05,
        "allow_partial_results": False,
    },
}

SUPPORTED_PAYMENT_TYPES = {"interest", "amortized", "custom"}

RISK_PROFILES = {
    "aggressive": 95.0,
    "median": 98.0,
    "conservative": 99.5,
}

BENCHMARK_INDEX = 0
PERCENT_DIFF_FALLBACK = 0.0


def _deep_merge(base, overrides):
    merged = deepcopy(base)
    _deep_merge_in_place(merged, overrides)
    return merged


def _deep_merge_in_place(target, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge_in_place(target[key], value)
        else:
            target[key] = value


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_count(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_dispatch_config(dispatch):
    if not isinstance(dispatch["parallel_enabled"], bool):
        raise ValueError("dispatch.parallel_enabled must be a bool.")
    workers = dispatch["parallel_workers"]
    if workers is not None and (not _is_count(workers) or workers <= 0):
        raise ValueError("dispatch.parallel_workers must be an int > 0 or None.")
    if dispatch["parallel_start_method"] is not None:
        available_methods = multiprocessing.get_all_start_methods()
        if dispatch["parallel_start_method"] not in available_methods:
            available = ", ".join(available_methods)
            raise ValueError(
                "dispatch.parallel_start_method must be one of "
                f"[{available}] or None."
            )
    if not _is_count(dispatch["parallel_min_units"]) or dispatch["parallel_min_units"] <= 0:
        raise ValueError("dispatch.parallel_min_units must be an int > 0.")
    if not _is_number(dispatch["unit_timeout_seconds"]) or dispatch["unit_timeout_seconds"] <= 0:
        raise ValueError("dispatch.unit_timeout_seconds must be > 0.")
    if not _is_number(dispatch["poll_interval_seconds"]) or dispatch["poll_interval_seconds"] <= 0:
        raise ValueError("dispatch.poll_interval_seconds must be > 0.")
    if not isinstance(dispatch["allow_partial_results"], bool):
        raise ValueError("dispatch.allow_partial_results must be a bool.")


def validate_config(config):
    for key in ("loan", "market", "strategies", "simulation", "dispatch"):
        if key not in config:
            raise ValueError(f"Missing top-level config section '{key}'.")

    loan = config["loan"]
    market = config["market"]
    strategies = config["strategies"]
    simulation = config["simulation"]

    for key in ("collateral_value", "loan_amount", "annual_interest_rate", "years", "monthly_budget", "min_payment"):
        if not _is_number(loan[key]):
            raise ValueError(f"loan.{key} must be a finite number.")
    if loan["collateral_value"] < 0:
        raise ValueError("loan.collateral_value must be >= 0.")
    if loan["loan_amount"] <= 0:
        raise ValueError("loan.loan_amount must be > 0.")
    if loan["annual_interest_rate"] < 0:
        raise ValueError("loan.annual_interest_rate must be >= 0.")
    if loan["years"] <= 0:
        raise ValueError("loan.years must be > 0.")
    if loan["monthly_budget"] <= 0:
        raise ValueError("loan.monthly_budget must be > 0.")
    if loan["payment_type"] not in SUPPORTED_PAYMENT_TYPES:
        allowed = ", ".join(sorted(SUPPORTED_PAYMENT_TYPES))
        raise ValueError(f"loan.payment_type must be one of: {allowed}")
    if loan["min_payment"] < 0:
        raise ValueError("loan.min_payment must be >= 0.")

    for key in ("growth_annual", "volatility_annual", "inflation_annual", "margin_call_ltv"):
        if not _is_number(market[key]):
            raise ValueError(f"market.{key} must be a finite number.")
    if market["volatility_annual"] < 0:
        raise ValueError("market.volatility_annual must be >= 0.")
    if market["inflation_annual"] <= -1:
        raise ValueError("market.inflation_annual must be > -1.")
    if market["margin_call_ltv"] <= 0:
        raise ValueError("market.margin_call_ltv must be > 0.")

    if not _is_count(strategies["num_leveraged"]) or strategies["num_leveraged"] <= 0:
        raise ValueError("strategies.num_leveraged must be an int > 0.")

    for key in ("path_count", "benchmark_path_count"):
        if not _is_count(simulation[key]) or simulation[key] < 0:
            raise ValueError(f"simulation.{key} must be an int >= 0.")
    seed = simulation["seed"]
    if seed is not None and (not _is_count(seed) or seed < 0):
        raise ValueError("simulation.seed must be an int >= 0 or None.")
    if seed is not None and seed + strategies["num_leveraged"] >= sim_protocol.MAX_EXACT_SEED:
        raise ValueError(
            "simulation.seed + strategies.num_leveraged must be below 2**53 "
            "so every per-strategy seed fits a float64 slot."
        )

    _validate_dispatch_config(config["dispatch"])


def _emit_progress(progress_callback, event, payload):
    if progress_callback is not None:
        progress_callback(event, payload)


def resolve_payment_range(config):
    loan = config["loan"]
    months = int(round(loan["years"] * 12.0))
    monthly_rate = loan["annual_interest_rate"] / 12.0
    payment_type = loan["payment_type"]

    if payment_type == "interest":
        min_payment = sim_engine.interest_only_payment(loan["loan_amount"], monthly_rate)
    elif payment_type == "amortized":
        min_payment = sim_engine.amortized_payment(loan["loan_amount"], monthly_rate, months)
    else:
        min_payment = loan["min_payment"]

    max_payment = loan["monthly_budget"]
    if min_payment > max_payment:
        raise ValueError(
            f"Minimum payment ${min_payment:,.2f} exceeds the monthly budget ${max_payment:,.2f}."
        )
    return min_payment, max_payment


def build_strategy_requests(config):
    """Benchmark first, then leveraged payments evenly spaced from the minimum to the full budget."""
    loan = config["loan"]
    market = config["market"]
    simulation = config["simulation"]
    seed = simulation["seed"]

    min_payment, max_payment = resolve_payment_range(config)
    num_leveraged = config["strategies"]["num_leveraged"]
    if num_leveraged == 1:
        payments = np.array([min_payment], dtype=np.float64)
    else:
        payments = np.linspace(min_payment, max_payment, num_leveraged)

    common = {
        "monthly_budget": float(loan["monthly_budget"]),
        "monthly_rate": loan["annual_interest_rate"] / 12.0,
        "years": float(loan["years"]),
        "volatility": float(market["volatility_annual"]),
        "growth": float(market["growth_annual"]),
        "inflation": float(market["inflation_annual"]),
        "margin_call_ltv": float(market["margin_call_ltv"]),
    }

    requests = [
        SimulationRequest(
            initial_debt=0.0,
            initial_balance=float(loan["collateral_value"]),
            payment=0.0,
            path_count=int(simulation["benchmark_path_count"]),
            seed=seed,
            **common,
        )
    ]
    for offset, payment in enumerate(payments, start=1):
        requests.append(
            SimulationRequest(
                initial_debt=float(loan["loan_amount"]),
                initial_balance=float(loan["collateral_value"] + loan["loan_amount"]),
                payment=float(payment),
                path_count=int(simulation["path_count"]),
                seed=None if seed is None else seed + offset,
                **common,
            )
        )
    return requests


def _default_parallel_start_method():
    methods = multiprocessing.get_all_start_methods()
    if os.name == "posix" and "fork" in methods:
        return "fork"
    if "spawn" in methods:
        return "spawn"
    return methods[0]


def _resolve_execution_settings(config, task_count):
    dispatch = config["dispatch"]
    resolved_workers = dispatch["parallel_workers"]
    if resolved_workers is None:
        resolved_workers = os.cpu_count() or 1

    execution = {
        "mode": "single",
        "workers_used": 1,
        "backend": "single",
        "start_method": None,
        "unit_tasks": task_count,
        "unit_timeout_seconds": float(dispatch["unit_timeout_seconds"]),
        "elapsed_ms": None,
        "unit_elapsed_ms": {},
    }

    if not dispatch["parallel_enabled"]:
        return execution
    if task_count < dispatch["parallel_min_units"]:
        return execution

    workers_used = max(1, min(resolved_workers, task_count))
    if workers_used <= 1:
        return execution

    execution["mode"] = "parallel"
    execution["workers_used"] = workers_used
    execution["backend"] = "multiprocessing"
    execution["start_method"] = dispatch["parallel_start_method"] or _default_parallel_start_method()
    return execution


def _run_unit_process(strategy_index, input_raw, capacity, out_queue):
    try:
        output_buffer = np.zeros(capacity, dtype=sim_protocol.WIRE_DTYPE)
        size = sim_protocol.execute_unit(sim_protocol.from_bytes(input_raw), output_buffer)
        out_queue.put(
            {
                "kind": "result",
                "strategy_index": strategy_index,
                "buffer": sim_protocol.to_bytes(output_buffer, size),
            }
        )
    except Exception as exc:
        out_queue.put(
            {
                "kind": "error",
                "strategy_index": strategy_index,
                "error": f"{type(exc).__name__}: {exc}",
                "traceback": traceback.format_exc(),
            }
        )


def _terminate_process(process):
    if process.is_alive():
        process.terminate()
        process.join(timeout=2.0)
        if process.is_alive() and hasattr(process, "kill"):
            process.kill()
            process.join(timeout=1.0)


def _record_failure(failures, failure, progress_callback):
    failures[failure.strategy_index] = failure
    logger.warning("%s", failure)
    _emit_progress(
        progress_callback,
        "unit_failed",
        {
            "strategy_index": failure.strategy_index,
            "reason": failure.reason,
            "timed_out": isinstance(failure, UnitTimeoutError),
        },
    )


def _collect_units_single(units, execution, progress_callback):
    timeout = execution["unit_timeout_seconds"]
    raw_outputs = {}
    failures = {}
    for unit in units:
        idx = unit["strategy_index"]
        _emit_progress(progress_callback, "unit_start", {"strategy_index": idx, "pid": os.getpid()})
        output_buffer = np.zeros(unit["capacity"], dtype=sim_protocol.WIRE_DTYPE)
        t0 = time.perf_counter()
        try:
            size = sim_protocol.execute_unit(sim_protocol.from_bytes(unit["input"]), output_buffer)
        except Exception as exc:
            _record_failure(
                failures,
                UnitFailure(idx, f"{type(exc).__name__}: {exc}", traceback.format_exc(), cause=exc),
                progress_callback,
            )
            continue
        elapsed = time.perf_counter() - t0
        execution["unit_elapsed_ms"][idx] = elapsed * 1000.0
        # In-process units cannot be preempted; the deadline is checked once the unit returns.
        if elapsed > timeout:
            _record_failure(
                failures,
                UnitTimeoutError(idx, f"ran {elapsed:.3f}s, over the {timeout:g}s timeout"),
                progress_callback,
            )
            continue
        raw_outputs[idx] = output_buffer[:size]
    return raw_outputs, failures


def _collect_units_parallel(units, execution, dispatch, progress_callback):
    mp_context = multiprocessing.get_context(execution["start_method"])
    timeout = float(dispatch["unit_timeout_seconds"])
    poll_interval = float(dispatch["poll_interval_seconds"])

    waiting = list(units)
    running = {}
    raw_outputs = {}
    failures = {}

    def _handle_message(idx, message):
        entry = running.pop(idx)
        entry["process"].join(timeout=poll_interval)
        entry["queue"].close()
        execution["unit_elapsed_ms"][idx] = (time.monotonic() - entry["started"]) * 1000.0
        if message["kind"] == "result":
            raw_outputs[idx] = sim_protocol.from_bytes(message["buffer"])
        else:
            _record_failure(
                failures,
                UnitFailure(idx, str(message.get("error", "Unknown worker error")), message.get("traceback")),
                progress_callback,
            )

    try:
        while waiting or running:
            while waiting and len(running) < execution["workers_used"]:
                unit = waiting.pop(0)
                idx = unit["strategy_index"]
                out_queue = mp_context.Queue()
                process = mp_context.Process(
                    target=_run_unit_process,
                    args=(idx, unit["input"], unit["capacity"], out_queue),
                    daemon=True,
                )
                process.start()
                running[idx] = {"process": process, "queue": out_queue, "started": time.monotonic()}
                _emit_progress(progress_callback, "unit_start", {"strategy_index": idx, "pid": process.pid})

            received = False
            for idx in list(running):
                entry = running[idx]
                try:
                    message = entry["queue"].get_nowait()
                except queue_mod.Empty:
                    message = None
                if message is not None:
                    received = True
                    _handle_message(idx, message)
                    continue

                process = entry["process"]
                if time.monotonic() - entry["started"] > timeout:
                    _terminate_process(process)
                    running.pop(idx)
                    entry["queue"].close()
                    _record_failure(
                        failures,
                        UnitTimeoutError(idx, f"timed out after {timeout:g}s"),
                        progress_callback,
                    )
                elif not process.is_alive():
                    # The result may still be in flight from the queue's feeder thread.
                    try:
                        message = entry["queue"].get(timeout=poll_interval)
                    except queue_mod.Empty:
                        message = None
                    if message is not None:
                        received = True
                        _handle_message(idx, message)
                    else:
                        running.pop(idx)
                        entry["queue"].close()
                        _record_failure(
                            failures,
                            UnitFailure(idx, f"worker exited unexpectedly with code {process.exitcode}"),
                            progress_callback,
                        )

            if not received and running:
                time.sleep(poll_interval)
    finally:
        for entry in running.values():
            _terminate_process(entry["process"])
            entry["queue"].close()

    return raw_outputs, failures


def _decode_unit_output(idx, raw_buffer, request, schedule):
    try:
        outcomes = sim_protocol.read_outcomes(raw_buffer)
    except (ProtocolError, ScheduleError) as exc:
        raise UnitFailure(idx, f"{type(exc).__name__}: {exc}", cause=exc) from exc
    if len(outcomes) != 1:
        raise UnitFailure(idx, f"expected 1 scenario block, got {len(outcomes)}")
    return replace(outcomes[0], path_count=request.path_count, terminal_debt=schedule.terminal_debt)


def percent_difference(expected_wealth, benchmark_expected):
    if benchmark_expected > 0:
        return (expected_wealth - benchmark_expected) / benchmark_expected * 100.0
    return PERCENT_DIFF_FALLBACK


def _aggregate(requests, schedules, outcomes, failures, execution):
    benchmark = outcomes[BENCHMARK_INDEX]
    benchmark_wealth = benchmark.wealth
    benchmark_sigma = float(np.std(benchmark_wealth)) if benchmark_wealth.size else 0.0

    strategies = []
    for idx in sorted(outcomes):
        if idx == BENCHMARK_INDEX:
            continue
        request = requests[idx]
        outcome = replace(
            outcomes[idx],
            benchmark_percent_diff=percent_difference(outcomes[idx].expected_wealth, benchmark.expected_wealth),
        )
        strategies.append(
            StrategyResult(
                strategy_index=idx,
                request=request,
                schedule=schedules[idx],
                outcome=outcome,
                payment_percent=request.payment / request.monthly_budget * 100.0,
                benchmark_wealth=benchmark_wealth,
                benchmark_median=benchmark.median_wealth,
                benchmark_expected=benchmark.expected_wealth,
                benchmark_sigma=benchmark_sigma,
            )
        )

    return AggregateResult(
        benchmark=benchmark,
        benchmark_schedule=schedules[BENCHMARK_INDEX],
        strategies=tuple(strategies),
        failures=tuple(failures[idx] for idx in sorted(failures)),
        execution=execution,
    )


def run_strategies(requests, path_count=None, config=None, progress_callback=None):
    """Simulate every strategy in its own compute unit and join the results.

    ``requests[0]`` is the benchmark. A non-None ``path_count`` replaces the
    path count of every request. Raises DispatchError naming every failed
    strategy unless ``dispatch.allow_partial_results`` is set, in which case
    only a benchmark failure raises.
    """
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    _validate_dispatch_config(merged_config["dispatch"])
    dispatch = merged_config["dispatch"]

    requests = list(requests)
    if not requests:
        raise ValueError("At least one strategy request (the benchmark) is required.")
    if path_count is not None:
        if not _is_count(path_count) or path_count < 0:
            raise ValueError("path_count must be an int >= 0 or None.")
        requests = [replace(request, path_count=path_count) for request in requests]

    schedules = {}
    failures = {}
    units = []
    for idx, request in enumerate(requests):
        try:
            schedules[idx] = sim_engine.generate_request_schedule(request)
            input_buffer = sim_protocol.encode_request(request)
        except (ScheduleError, ValueError) as exc:
            _record_failure(
                failures,
                UnitFailure(idx, f"{type(exc).__name__}: {exc}", cause=exc),
                progress_callback,
            )
            continue
        units.append(
            {
                "strategy_index": idx,
                "input": sim_protocol.to_bytes(input_buffer),
                "capacity": sim_protocol.output_capacity(request.path_count, 1),
            }
        )

    execution = _resolve_execution_settings(merged_config, len(units))
    _emit_progress(
        progress_callback,
        "dispatch_start",
        {"units": len(units), "mode": execution["mode"], "workers": execution["workers_used"]},
    )

    t0 = time.perf_counter()
    if execution["mode"] == "parallel":
        raw_outputs, unit_failures = _collect_units_parallel(units, execution, dispatch, progress_callback)
    else:
        raw_outputs, unit_failures = _collect_units_single(units, execution, progress_callback)
    execution["elapsed_ms"] = (time.perf_counter() - t0) * 1000.0
    failures.update(unit_failures)

    outcomes = {}
    for idx in sorted(raw_outputs):
        try:
            outcomes[idx] = _decode_unit_output(idx, raw_outputs[idx], requests[idx], schedules[idx])
        except UnitFailure as failure:
            _record_failure(failures, failure, progress_callback)
            continue
        _emit_progress(
            progress_callback,
            "unit_complete",
            {
                "strategy_index": idx,
                "survival_rate": outcomes[idx].survival_rate,
                "expected_wealth": outcomes[idx].expected_wealth,
            },
        )

    _emit_progress(
        progress_callback,
        "dispatch_complete",
        {"completed": len(outcomes), "failed": sorted(failures), "elapsed_ms": execution["elapsed_ms"]},
    )

    if failures and (BENCHMARK_INDEX in failures or not dispatch["allow_partial_results"]):
        raise DispatchError(list(failures.values()))

    return _aggregate(requests, schedules, outcomes, failures, execution)


def select_target_strategy(result, target_survival):
    """Position of the leveraged strategy whose survival is closest at or above the target.

    Falls back to the last (highest-payment, most conservative) strategy when
    none reaches the target.
    """
    if not result.strategies:
        raise ValueError("Result has no leveraged strategies to select from.")

    safe = [
        (pos, item)
        for pos, item in enumerate(result.strategies)
        if item.outcome.survival_rate >= target_survival
    ]
    if not safe:
        return len(result.strategies) - 1
    best_pos, _ = min(safe, key=lambda entry: entry[1].outcome.survival_rate - target_survival)
    return best_pos


def closest_payment_index(result, payment):
    if not result.strategies:
        raise ValueError("Result has no leveraged strategies to select from.")
    diffs = [abs(item.request.payment - payment) for item in result.strategies]
    return int(np.argmin(diffs))


def _print_report(result, config, min_payment, max_payment):
    loan = config["loan"]
    market = config["market"]
    benchmark = result.benchmark
    execution = result.execution

    print(
        f"Simulating {len(result.strategies)} payment strategies against an unleveraged benchmark...\n"
    )
    print("Loan summary:")
    print(f"  Loan amount:                 ${loan['loan_amount']:,.0f}")
    print(f"  Collateral value:            ${loan['collateral_value']:,.0f}")
    print(f"  Interest rate (annual):      {loan['annual_interest_rate']:.2%}")
    print(f"  Horizon:                     {loan['years']} years")
    print(f"  Monthly budget:              ${loan['monthly_budget']:,.2f}")
    print(f"  Payment range:               ${min_payment:,.2f} - ${max_payment:,.2f}")
    print(f"  Margin call LTV:             {market['margin_call_ltv']:.0%}")
    print()
    print("Benchmark (no leverage, full budget invested):")
    print(f"  Median real wealth:          ${benchmark.median_wealth:,.0f}")
    print(f"  90th percentile:             ${benchmark.p90_wealth:,.0f}")
    print(f"  Expected real wealth:        ${benchmark.expected_wealth:,.0f}")
    print()
    print(
        f"{'Payment':>10} | "
        f"{'Surplus':>10} | "
        f"{'Survival':>9} | "
        f"{'Median Wealth':>14} | "
        f"{'P90 Wealth':>14} | "
        f"{'Expected':>14} | "
        f"{'vs Benchmark':>12}"
    )
    print("-" * 100)
    if not result.strategies:
        print("No leveraged strategy completed.")
    for item in result.strategies:
        outcome = item.outcome
        print(
            f"${outcome.payment_amount:9,.2f} | "
            f"${outcome.surplus_amount:9,.2f} | "
            f"{outcome.survival_rate:8.2f}% | "
            f"${outcome.median_wealth:13,.0f} | "
            f"${outcome.p90_wealth:13,.0f} | "
            f"${outcome.expected_wealth:13,.0f} | "
            f"{item.percent_diff:+11.1f}%"
        )
    print("-" * 100)
    print(f"Execution mode:                        {execution['mode']}")
    print(f"Workers used:                          {execution['workers_used']}")
    if execution["start_method"] is not None:
        print(f"Parallel start method:                 {execution['start_method']}")
    print(f"Dispatch time (ms):                    {execution['elapsed_ms']:.1f}")
    if result.failures:
        failed = ", ".join(str(failure.strategy_index) for failure in result.failures)
        print(f"Failed strategies (partial result):    {failed}")
    if not result.strategies:
        return
    for profile, target in RISK_PROFILES.items():
        pos = select_target_strategy(result, target)
        item = result.strategies[pos]
        print(
            f"{profile.capitalize() + ' (' + format(target, 'g') + '% survival)':<38} "
            f"pay ${item.request.payment:,.2f}/mo -> {item.outcome.survival_rate:.2f}% survival, "
            f"{item.percent_diff:+.1f}% vs benchmark"
        )


def run_leverage_analysis(config=None, verbose=True, progress_callback=None):
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)

    min_payment, max_payment = resolve_payment_range(merged_config)
    requests = build_strategy_requests(merged_config)
    _emit_progress(
        progress_callback,
        "run_start",
        {
            "strategies": len(requests),
            "min_payment": min_payment,
            "max_payment": max_payment,
            "path_count": merged_config["simulation"]["path_count"],
            "benchmark_path_count": merged_config["simulation"]["benchmark_path_count"],
        },
    )

    result = run_strategies(requests, config=merged_config, progress_callback=progress_callback)

    _emit_progress(
        progress_callback,
        "run_complete",
        {
            "strategies": len(result.strategies),
            "benchmark_expected_wealth": result.benchmark.expected_wealth,
            "elapsed_ms": result.execution["elapsed_ms"],
        },
    )

    if verbose:
        _print_report(result, merged_config, min_payment, max_payment)

    return result


if __name__ == "__main__":
    run_leverage_analysis()
