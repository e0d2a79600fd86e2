"""
Parallel recursive integer factorization with Pollard's Rho.

A number is split into a divisor pair, each non-trivial divisor is factored
concurrently in its own task, and every prime found is pushed to a
FactorStream as soon as it is known. The stream is closed once the whole,
dynamically growing task tree has finished.

COMPONENTS:
1. Divisor finding: Pollard's Rho with Floyd cycle detection
   - Quick exits for multiples of 2 and 3
   - Deterministic: fixed seed, f(v) = v^2 - 1 first, then v^2 + c
   - Iteration bound so a bad input fails instead of spinning
2. Primality: Miller-Rabin with the deterministic 64-bit base set (memoized)
3. Engine: recursion + fan-out on TaskGroup scopes
   - Divisor searches run inline or on an injected concurrent.futures.Executor
   - Shared ProcessPoolExecutor for use_parallel=True
4. Sequential reference strategies: NumPy sieve and trial division generators

USAGE:
    for p in factorize(4294967297):
        print(p)            # 641, 6700417 in any order

    factor(12)              # [2, 2, 3] in any order (blocking)

DEPENDENCIES:
- NumPy: vectorized sieve of Eratosthenes
"""
import math
import logging
import operator
import threading
from concurrent.futures import Executor, ProcessPoolExecutor
from functools import lru_cache
from typing import Iterator, NamedTuple, Optional

import numpy as np

from concurrency_primitives import ConcurrencyFailure, FactorStream, TaskGroup

logger = logging.getLogger(__name__)

# Global process pool for reuse (avoid creation overhead)
_pool = None
_pool_size = 4

# Pre-computed primes in contiguous memory (faster cache performance)
_SMALL_PRIMES_LIMIT = 10000
_small_primes_cache = None

# Pollard Rho tuning: shared seed for x and y, polynomial constants tried in order
_RHO_SEED = 2
_RHO_CONSTANTS = (-1, 1, 2, 3, 5, 7, 11)
_MAX_RHO_ITERATIONS = 1 << 20


class DomainError(ValueError):
    """Input outside the domain of the operation (e.g. n < 1)."""


class DivisorSearchExhausted(RuntimeError):
    """Pollard Rho ran past its iteration bound without a divisor."""


class DivisorPair(NamedTuple):
    d: int
    m: int


def _as_int(n) -> int:
    # numpy integers pass, floats raise TypeError
    return operator.index(n)


def _init_small_primes():
    """Initialize small primes sieve in contiguous memory."""
    global _small_primes_cache
    if _small_primes_cache is not None:
        return _small_primes_cache
    _small_primes_cache = list(primes_up_to(_SMALL_PRIMES_LIMIT))
    return _small_primes_cache

@lru_cache(maxsize=1)
def get_small_primes():
    """Get pre-computed small primes from contiguous memory (memoized)."""
    return tuple(_init_small_primes())

def _get_pool():
    """Get or create global process pool (lazy initialization)."""
    global _pool
    if _pool is None:
        _pool = ProcessPoolExecutor(max_workers=_pool_size)
        logger.debug(f"Started process pool with {_pool_size} workers")
    return _pool

def _close_pool():
    """Manually close the pool if it was created."""
    global _pool
    if _pool is not None:
        _pool.shutdown(wait=True)
        _pool = None

def clear_caches():
    """Clear all memoization caches. Useful between independent factorization runs."""
    global _small_primes_cache
    is_prime.cache_clear()
    get_small_primes.cache_clear()
    _small_primes_cache = None  # Reset small primes to recalculate if needed

# Miller–Rabin primality test (memoized)
@lru_cache(maxsize=1024)
def is_prime(n: int, bases: tuple[int, ...] =(2, 325, 9375, 28178, 450775, 9780504, 1795265022)) -> bool:
    if n < 2:
        return False
    # small primes check
    for p in (2, 3, 5, 7, 11, 13, 17, 19, 23):
        if n == p:
            return True
        if n % p == 0:
            return False

    # write n-1 as d * 2^s
    d: int = n - 1
    s: int = 0
    while (d & 1) == 0:
        d >>= 1
        s += 1

    def check(a):
        x: int = pow(a, d, n)
        if x == 1 or x == n - 1:
            return True
        for _ in range(s - 1):
            x = pow(x, 2, n)
            if x == n - 1:
                return True
        return False

    for a in bases:
        if a % n == 0:
            continue
        if not check(a):
            return False
    return True

# ============================================================================
# Sequential reference strategies
# ============================================================================

def primes_up_to(limit: int) -> Iterator[int]:
    """
    Lazily yield every prime <= limit.

    The sieve is built with NumPy slicing when iteration starts; call again
    to restart the sequence.

    Raises:
        DomainError: if limit is negative
    """
    limit = _as_int(limit)
    if limit < 0:
        raise DomainError(f"limit must be non-negative, got {limit}")
    return _primes_up_to(limit)

def _primes_up_to(limit: int) -> Iterator[int]:
    if limit < 2:
        return
    yield 2
    # NumPy vectorized sieve of Eratosthenes over odd numbers only
    sieve = np.ones(limit + 1, dtype=np.uint8)
    sieve[0] = sieve[1] = 0
    for i in range(3, math.isqrt(limit) + 1, 2):
        if sieve[i]:
            sieve[i*i::2*i] = 0
    for p in np.flatnonzero(sieve[3::2]) * 2 + 3:
        yield int(p)

def trial_division(n: int) -> Iterator[int]:
    """
    Lazily yield the prime factors of n by trial division (with multiplicity).

    Sequential counterpart of factorize(): same output contract, product of
    the yielded values equals n, but factors come out in ascending order.

    Raises:
        DomainError: if n < 1
    """
    n = _as_int(n)
    if n < 1:
        raise DomainError(f"n must be >= 1, got {n}")
    return _trial_division(n)

def _trial_division(n: int) -> Iterator[int]:
    # Handle 2 separately using bit operations
    while (n & 1) == 0:
        yield 2
        n >>= 1

    for p in get_small_primes()[1:]:
        if p * p > n:
            break
        while n % p == 0:
            yield p
            n //= p

    # Past the cached primes: odd candidates only
    candidate = get_small_primes()[-1] + 2
    while candidate * candidate <= n:
        while n % candidate == 0:
            yield candidate
            n //= candidate
        candidate += 2

    if n > 1:
        yield n

# ============================================================================
# Divisor finding (Pollard Rho, Floyd cycle detection)
# ============================================================================

def pollard_rho(n: int, c: int = -1, seed: int = _RHO_SEED, max_iterations: Optional[int] = _MAX_RHO_ITERATIONS) -> int:
    """
    Pollard's Rho with Floyd cycle detection on f(v) = (v^2 + c) mod n.

    x and y both start at seed; each round advances x once and y twice and
    stops as soon as gcd(|x - y|, n) != 1. The result may be n itself when
    the cycle closes without exposing a factor (always the case for prime n).

    Args:
        n: Number to search a divisor of (n > 1)
        c: Polynomial constant (the default gives v^2 - 1)
        seed: Starting value for both x and y
        max_iterations: Round limit, None for no limit

    Returns:
        A divisor d of n with 1 < d <= n

    Raises:
        DivisorSearchExhausted: if max_iterations rounds pass without a divisor
    """
    x: int = seed % n
    y: int = x
    d: int = 1
    rounds: int = 0
    while d == 1:
        if max_iterations is not None and rounds >= max_iterations:
            raise DivisorSearchExhausted(
                f"no divisor of {n} within {max_iterations} rounds (c={c})"
            )
        x = (x*x + c) % n
        y = (y*y + c) % n
        y = (y*y + c) % n
        d = math.gcd(abs(x - y), n)
        rounds += 1
    return d

def find_divisor(n: int, max_iterations: Optional[int] = _MAX_RHO_ITERATIONS) -> DivisorPair:
    """
    Find a divisor pair (d, n // d) of n.

    Multiples of 2 and 3 return immediately. Otherwise Pollard Rho runs with
    each constant of _RHO_CONSTANTS until one gives a non-trivial divisor.
    A prime n (or a composite whose every cycle closes trivially) comes back
    as (n, 1).

    Must stay at module level so process pools can pickle it.

    Args:
        n: Number to split (n > 1; intended for composites > 3)
        max_iterations: Round limit per Pollard Rho run

    Returns:
        DivisorPair with d * m == n

    Raises:
        DomainError: if n <= 1
        DivisorSearchExhausted: if a Pollard Rho run hits its round limit
    """
    n = _as_int(n)
    if n <= 1:
        raise DomainError(f"cannot split n <= 1, got {n}")

    if (n & 1) == 0:
        return DivisorPair(2, n >> 1)
    if n % 3 == 0:
        return DivisorPair(3, n // 3)

    for c in _RHO_CONSTANTS:
        d = pollard_rho(n, c=c, max_iterations=max_iterations)
        if d != n:
            return DivisorPair(d, n // d)
        logger.debug(f"Pollard Rho with c={c} gave trivial divisor of {n}")
    return DivisorPair(n, 1)

# ============================================================================
# Parallel recursive engine
# ============================================================================

class FactorizationEngine:
    """
    Recursive orchestrator that factors a number over a fork tree of tasks.

    Each call of factor() either emits one value to the stream or splits its
    number into two children that run concurrently in a TaskGroup; the call
    returns only after that group (and everything nested in it) has joined.

    Args:
        executor: Where divisor searches run. None runs them inline on the
                  task's thread; a ProcessPoolExecutor gives CPU parallelism.
        check_primality: Emit primes directly instead of searching a divisor
                  of them. Disabling it reproduces the plain split-and-emit
                  recursion, which may emit unsplit composites and may exhaust
                  the search on large primes.
        max_iterations: Round limit for each Pollard Rho run
    """

    def __init__(
        self,
        executor: Optional[Executor] = None,
        check_primality: bool = True,
        max_iterations: Optional[int] = _MAX_RHO_ITERATIONS,
    ):
        self.executor = executor
        self.check_primality = check_primality
        self.max_iterations = max_iterations

    def _find_divisor(self, n: int) -> DivisorPair:
        if self.executor is None:
            return find_divisor(n, self.max_iterations)
        future = self.executor.submit(find_divisor, n, self.max_iterations)
        d, m = future.result()
        return DivisorPair(d, m)

    def factor(self, n: int, stream: FactorStream, group: Optional[TaskGroup] = None) -> None:
        """Factor n into stream; returns once every value for n has been emitted."""
        if group is not None and group.cancelled:
            return
        if n == 1:
            return

        if self.check_primality and is_prime(n):
            logger.debug(f"Emitting prime {n}")
            stream.put(n)
            return

        d, m = self._find_divisor(n)
        if d == 1:
            stream.put(m)
            return
        if m == 1:
            if self.check_primality:
                logger.warning(f"Could not split composite {n}, emitting it unfactored")
            stream.put(d)
            return

        if group is not None and group.cancelled:
            return
        logger.debug(f"Splitting {n} into {d} * {m}")
        with TaskGroup(parent=group, name=f"split-{n}") as children:
            children.spawn(self.factor, d, stream, children)
            children.spawn(self.factor, m, stream, children)

    def factorize(self, n: int, maxsize: int = 0) -> FactorStream:
        """
        Start factoring n in the background and return the result stream.

        The stream yields the prime factors of n with multiplicity, in no
        particular order, and is closed when the whole task tree is done.
        If a task fails, the stream is failed with a ConcurrencyFailure after
        the factors emitted so far. Cancelling the stream cancels the tasks.

        Args:
            n: Integer to factorize (n >= 1)
            maxsize: Stream buffer size, 0 for unbounded

        Returns:
            FactorStream of the factors of n

        Raises:
            DomainError: if n < 1 (before any task is started)
            TypeError: if n is not an integer
        """
        n = _as_int(n)
        if n < 1:
            raise DomainError(f"n must be >= 1, got {n}")

        stream = FactorStream(maxsize=maxsize)
        if n == 1:
            stream.close()
            return stream

        root = TaskGroup(name=f"factorize-{n}")
        stream.on_cancel(root.cancel)
        threading.Thread(
            target=self._run_root, args=(n, stream, root), name=f"factorize-{n}", daemon=True
        ).start()
        return stream

    def _run_root(self, n: int, stream: FactorStream, root: TaskGroup) -> None:
        try:
            with root:
                root.spawn(self.factor, n, stream, root)
        except Exception as exc:
            if not isinstance(exc, ConcurrencyFailure):
                failure = ConcurrencyFailure(f"factorization of {n} failed: {exc!r}")
                failure.__cause__ = exc
                exc = failure
            logger.error(f"Factorization of {n} failed: {exc}")
            stream.fail(exc)
        else:
            stream.close()

def factorize(
    n: int,
    executor: Optional[Executor] = None,
    check_primality: bool = True,
    max_iterations: Optional[int] = _MAX_RHO_ITERATIONS,
) -> FactorStream:
    """
    Factorize n concurrently, streaming factors as they are found.

    See FactorizationEngine for the meaning of the keyword arguments.

    Returns:
        FactorStream that closes once every factor has been emitted
    """
    engine = FactorizationEngine(executor=executor, check_primality=check_primality, max_iterations=max_iterations)
    return engine.factorize(n)

# blocking factorization
def factor(n: int, use_parallel: bool = False) -> list[int]:
    """
    Factorize n into prime factors and wait for the result.

    Args:
        n: Integer to factorize (n >= 1)
        use_parallel: Dispatch divisor searches to the shared process pool.
                     Pays off for inputs with large factors; default False
                     to avoid process overhead on small inputs.

    Returns:
        List of prime factors in arbitrary order
    """
    executor = _get_pool() if use_parallel else None
    return factorize(n, executor=executor).collect()

# Example usage
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    n = 4294967297  # F5, Euler's counterexample
    print("Factors of", n, ":", sorted(factorize(n)))
