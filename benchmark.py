"""
Benchmark suite for the parallel factorization engine.

Benchmarks:
1. Primality Testing: Miller-Rabin with memoization
2. Divisor Finding: Pollard Rho (Floyd) on semiprimes
3. Sequential Reference: trial division generator
4. Engine: inline divisor searches vs. process pool dispatch
5. Stress Test: random composites, product verified for every run
"""

import logging
import math
import random
import statistics
import sys
import time
from typing import Callable, List

import numpy as np

from factorization import (
    _close_pool, clear_caches, factor, factorize, find_divisor, is_prime, trial_division,
)


# ============================================================================
# BENCHMARK UTILITIES
# ============================================================================

class BenchmarkResult:
    """Store benchmark results with statistics."""

    def __init__(self, name: str, times: List[float]):
        self.name = name
        self.times = sorted(times)

        self.min = min(times)
        self.max = max(times)
        self.mean = statistics.mean(times)
        self.median = statistics.median(times)
        self.stdev = statistics.stdev(times) if len(times) > 1 else 0

    def __str__(self):
        return (f"{self.name:40} | "
                f"Mean: {self.mean*1000:8.3f}ms | "
                f"Median: {self.median*1000:8.3f}ms | "
                f"StdDev: {self.stdev*1000:8.3f}ms | "
                f"Min: {self.min*1000:8.3f}ms | "
                f"Max: {self.max*1000:8.3f}ms")


def benchmark(func: Callable, *args, iterations: int = 5, **kwargs) -> BenchmarkResult:
    """
    Benchmark a function and return statistics.

    Args:
        func: Function to benchmark
        *args: Positional arguments to function
        iterations: Number of iterations to run
        **kwargs: Keyword arguments to function

    Returns:
        BenchmarkResult with timing statistics
    """
    times = []

    # Warm up
    func(*args, **kwargs)

    for _ in range(iterations):
        start = time.perf_counter()
        func(*args, **kwargs)
        times.append(time.perf_counter() - start)

    return BenchmarkResult(func.__name__, times)


def _section(title: str):
    print("\n" + "="*100)
    print(title)
    print("="*100)


# ============================================================================
# 1. PRIMALITY TESTING BENCHMARKS
# ============================================================================

def benchmark_primality():
    """Benchmark Miller-Rabin primality testing."""
    _section("PRIMALITY TESTING BENCHMARKS")

    test_primes = [
        (104729, "Small prime (6 digits)"),
        (6700417, "F5 factor (7 digits)"),
        (67280421310721, "F6 factor (14 digits)"),
    ]

    for prime, description in test_primes:
        clear_caches()
        result_fresh = benchmark(is_prime.__wrapped__, prime, iterations=10)
        result_fresh.name = f"{description:30} (no cache)"
        print(result_fresh)

        times = []
        for _ in range(100):
            start = time.perf_counter()
            is_prime(prime)
            times.append(time.perf_counter() - start)
        result_cached = BenchmarkResult(f"{description:30} (cached)", times)
        print(result_cached)
        print(f"  → Cache speedup: {result_fresh.mean / result_cached.mean:.1f}x\n")


# ============================================================================
# 2. DIVISOR FINDING BENCHMARKS
# ============================================================================

def benchmark_divisor_finding():
    """Benchmark Pollard Rho divisor search."""
    _section("POLLARD RHO (FLOYD) BENCHMARKS")

    test_cases = [
        (1073, "Small semiprime (29 * 37)"),
        (4294967297, "F5 (641 * 6700417)"),
        (18446744073709551617, "F6 (274177 * 67280421310721)"),
        (1000003 * 1000033, "Large semiprime (~10^12)"),
    ]

    for n, description in test_cases:
        result = benchmark(find_divisor, n, iterations=3)
        result.name = description
        print(result)


# ============================================================================
# 3. SEQUENTIAL VS. ENGINE
# ============================================================================

def _drain(n: int, **kwargs) -> list[int]:
    return factorize(n, **kwargs).collect()


def benchmark_strategies():
    """Compare trial division, the inline engine and the process pool engine."""
    _section("STRATEGY COMPARISON")

    test_cases = [
        (360, "Small composite"),
        (600851475143, "12-digit composite"),
        (2**64 - 1, "2^64 - 1 (7 prime factors)"),
        ((2**128 - 1) // 3, "F1..F6 product (8 prime factors)"),
    ]

    for n, description in test_cases:
        if n < 10**13:
            result = benchmark(lambda: list(trial_division(n)), iterations=3)
            result.name = f"{description} (trial division)"
            print(result)

        clear_caches()
        result = benchmark(_drain, n, iterations=3)
        result.name = f"{description} (engine, inline)"
        print(result)

        clear_caches()
        result = benchmark(factor, n, use_parallel=True, iterations=3)
        result.name = f"{description} (engine, process pool)"
        print(result)


# ============================================================================
# 4. STRESS TEST
# ============================================================================

def benchmark_stress_test():
    """Factor random composites and verify every result."""
    _section("STRESS TEST")

    rng = random.Random(20240101)
    test_numbers = []
    while len(test_numbers) < 20:
        n = rng.randrange(10**11, 10**15)
        if not is_prime(n):
            test_numbers.append(n)

    times = []
    successful = 0
    for n in test_numbers:
        start = time.perf_counter()
        factors = factorize(n).collect()
        elapsed = time.perf_counter() - start
        if math.prod(factors) == n and all(is_prime(f) for f in factors):
            successful += 1
            times.append(elapsed)
        else:
            print(f"Wrong factors for {n}: {factors}")

    if times:
        print(BenchmarkResult("Stress test factorizations", times))
        counts = np.array([len(factorize(n).collect()) for n in test_numbers])
        print(f"Successful: {successful}/{len(test_numbers)}")
        print(f"Factors per number: mean {counts.mean():.2f}, max {counts.max()}")


# ============================================================================
# MAIN BENCHMARK SUITE
# ============================================================================

def run_all_benchmarks():
    """Run all benchmarks."""
    print("\n")
    print("╔" + "="*98 + "╗")
    print("║" + " "*22 + "PARALLEL FACTORIZATION ENGINE BENCHMARK SUITE" + " "*31 + "║")
    print("╚" + "="*98 + "╝")

    try:
        benchmark_primality()
        benchmark_divisor_finding()
        benchmark_strategies()
        benchmark_stress_test()

        print("\n" + "="*100)
        print("BENCHMARK COMPLETE")
        print("="*100 + "\n")

    except KeyboardInterrupt:
        print("\nBenchmark interrupted by user")
        sys.exit(1)
    finally:
        _close_pool()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    run_all_benchmarks()
