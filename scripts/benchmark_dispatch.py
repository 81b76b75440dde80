#!/usr/bin/env python3
import argparse
from pathlib import Path
import sys
import time

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from leverage_sim import run_leverage_analysis
from sim_models import DispatchError


def run_case(name, config):
    t0 = time.perf_counter()
    try:
        result = run_leverage_analysis(config=config, verbose=False)
    except DispatchError as exc:
        elapsed = time.perf_counter() - t0
        print(f"\n{name}")
        print(f"  elapsed_s:             {elapsed:.3f}")
        print(f"  status:                FAILED")
        print(f"  failed_indices:        {exc.failed_indices}")
        print(f"  error:                 {exc}")
        return None, None
    elapsed = time.perf_counter() - t0
    execution = result.execution
    unit_times = list(execution["unit_elapsed_ms"].values())
    best = max(result.strategies, key=lambda item: item.outcome.expected_wealth)
    print(f"\n{name}")
    print(f"  elapsed_s:             {elapsed:.3f}")
    print(f"  mode:                  {execution['mode']}")
    print(f"  workers_used:          {execution['workers_used']}")
    print(f"  start_method:          {execution['start_method']}")
    print(f"  dispatch_ms:           {execution['elapsed_ms']:.1f}")
    print(f"  slowest_unit_ms:       {max(unit_times):.1f}")
    print(f"  benchmark_expected:    {result.benchmark.expected_wealth:.2f}")
    print(f"  best_payment:          {best.request.payment:.2f}")
    print(f"  best_expected:         {best.outcome.expected_wealth:.2f}")
    print(f"  best_survival_pct:     {best.outcome.survival_rate:.2f}")
    return elapsed, result


def main():
    parser = argparse.ArgumentParser(description="Benchmark single-process vs multiprocessing dispatch.")
    parser.add_argument("--path-count", type=int, default=10_000)
    parser.add_argument("--benchmark-path-count", type=int, default=20_000)
    parser.add_argument("--strategies", type=int, default=20)
    parser.add_argument("--workers", type=int, default=None)
    args = parser.parse_args()

    base = {
        "strategies": {
            "num_leveraged": args.strategies,
        },
        "simulation": {
            "path_count": args.path_count,
            "benchmark_path_count": args.benchmark_path_count,
            "seed": 123,
        },
    }

    single_cfg = {
        **base,
        "dispatch": {
            "parallel_enabled": False,
        },
    }
    parallel_cfg = {
        **base,
        "dispatch": {
            "parallel_enabled": True,
            "parallel_workers": args.workers,
        },
    }

    single_elapsed, _ = run_case("Single Process", single_cfg)
    parallel_elapsed, _ = run_case("Process Per Strategy", parallel_cfg)

    if parallel_elapsed is not None and parallel_elapsed > 0 and single_elapsed is not None:
        print(f"\nSpeedup (single/parallel): {single_elapsed / parallel_elapsed:.2f}x")


if __name__ == "__main__":
    main()
