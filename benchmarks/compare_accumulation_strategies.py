#!/usr/bin/env python3
"""Benchmark the three ways of folding a dataset into SufficientStatistics.

- sequential: add_sample row by row (weighted Welford update)
- batch:      one add_samples call on the whole column-major dataset
- partitioned: add_samples per partition in a thread pool, then reduce_statistics

All three must agree on mean and covariance; the table shows their cost.
"""

import sys
import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Tuple

import numpy as np
import pandas as pd

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from gmm_stats import SufficientStatistics, reduce_statistics


def timer(func: Callable, *args, n_runs: int = 5, warmup: int = 1, **kwargs) -> Tuple[float, float]:
    """Time a function with warmup runs.

    Returns:
        (mean_time, std_time) in milliseconds
    """
    for _ in range(warmup):
        _ = func(*args, **kwargs)

    times = []
    for _ in range(n_runs):
        start = time.perf_counter()
        func(*args, **kwargs)
        times.append((time.perf_counter() - start) * 1000)

    return np.mean(times), np.std(times)


def sequential(X: np.ndarray) -> SufficientStatistics:
    stats = SufficientStatistics(X.shape[1])
    for x in X:
        stats.add_sample(x)
    return stats


def batch(X: np.ndarray) -> SufficientStatistics:
    return SufficientStatistics(X.shape[1]).add_samples(X.T)


def partitioned(X: np.ndarray, n_parts: int = 8) -> SufficientStatistics:
    def accumulate(part):
        return SufficientStatistics(X.shape[1]).add_samples(part.T)

    with ThreadPoolExecutor(max_workers=n_parts) as pool:
        parts = list(pool.map(accumulate, np.array_split(X, n_parts)))
    return reduce_statistics(parts)


def benchmark():
    print("\n" + "="*100)
    print("BENCHMARK: sequential vs batch vs partitioned accumulation")
    print("="*100)

    results = []
    rng = np.random.default_rng(0)

    for N, D in [(2000, 4), (5000, 10), (20000, 20)]:
        X = rng.normal(size=(N, D)) * rng.uniform(0.5, 3.0, size=D) + 100.0
        reference = np.cov(X, rowvar=False)

        for name, func in [("sequential", sequential), ("batch", batch), ("partitioned", partitioned)]:
            n_runs = 1 if name == "sequential" else 5
            mean_ms, std_ms = timer(func, X, n_runs=n_runs, warmup=0 if name == "sequential" else 1)
            err = np.max(np.abs(func(X).covariance() - reference))

            print(f"N={N:6d}, D={D:3d} {name:12s}: {mean_ms:10.3f} ± {std_ms:.3f} ms  (max |err| {err:.2e})")
            results.append({
                "Strategy": name,
                "N": N,
                "D": D,
                "Time (ms)": mean_ms,
                "Std (ms)": std_ms,
                "Max abs error": err,
            })

    return pd.DataFrame(results)


def main():
    df = benchmark()

    print("\n" + "="*100)
    print("SUMMARY")
    print("="*100)
    print(df.pivot_table(index=["N", "D"], columns="Strategy", values="Time (ms)").round(3))

    output_file = os.path.join(os.path.dirname(__file__), "accumulation_strategies.csv")
    df.to_csv(output_file, index=False)
    print(f"\n✓ Results exported to: {output_file}")


if __name__ == "__main__":
    main()
