"""
scripts/bench_pool2d_generic_vs_fast.py

Benchmark script (NOT a unit test) comparing the two keypool pooling
strategies on the host worker grid:
1) generic window scan (geometry derived per worker)
2) fast path (precomputed offset table)

It measures forward/backward for max and average pooling through the NCHW
wrappers, so offset-table construction is part of every fast-path sample.

Usage examples
--------------
# Default: benchmark one shape
python scripts/bench_pool2d_generic_vs_fast.py

# Benchmark a single shape
python scripts/bench_pool2d_generic_vs_fast.py --N 8 --C 16 --H 64 --W 64 --k 3 --s 1 --p 1

# Smaller blocks, more repeats
KEYPOOL_BLOCK_SIZE=128 python scripts/bench_pool2d_generic_vs_fast.py --repeats 30

Notes
-----
- Window sizes 2x2..5x5 use the fixed-size fast variants; anything else uses
  the runtime-sized fallback.
"""

from __future__ import annotations

import os
import sys

# Ensure repo_root/src is importable when running this file directly:
# repo_root/
#   src/keypool/...
#   scripts/bench_pool2d_generic_vs_fast.py
THIS_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(THIS_DIR, ".."))
SRC_DIR = os.path.join(ROOT_DIR, "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

import argparse
import statistics
import time
from typing import Callable

import numpy as np

from keypool.infrastructure.ops.pool2d_ext import (
    avgpool2d_backward_nchw,
    avgpool2d_forward_nchw,
    maxpool2d_backward_nchw,
    maxpool2d_forward_nchw,
)


def _time_one(fn: Callable[[], None], *, warmup: int, repeats: int) -> list[float]:
    for _ in range(warmup):
        fn()

    times: list[float] = []
    for _ in range(repeats):
        t0 = time.perf_counter()
        fn()
        times.append(time.perf_counter() - t0)
    return times


def _fmt_seconds(x: float) -> str:
    if x < 1e-3:
        return f"{x*1e6:.2f} us"
    if x < 1:
        return f"{x*1e3:.2f} ms"
    return f"{x:.3f} s"


def _print_row(name: str, generic_s: float, fast_s: float) -> None:
    speedup = (generic_s / fast_s) if fast_s > 0 else float("inf")
    print(
        f"{name:<20}  "
        f"generic(median)={_fmt_seconds(generic_s):>10}  "
        f"fast(median)={_fmt_seconds(fast_s):>10}  "
        f"speedup={speedup:>6.2f}x"
    )


def bench_one(
    *,
    N: int,
    C: int,
    H: int,
    W: int,
    k: int,
    s: int,
    p: int,
    dtype: np.dtype,
    warmup: int,
    repeats: int,
) -> None:
    rng = np.random.default_rng(0)
    x = rng.standard_normal((N, C, H, W)).astype(dtype, copy=False)
    hp = dict(kernel_size=k, stride=s, padding=p)

    y_max, argmax = maxpool2d_forward_nchw(x, **hp)
    g_max = np.ones_like(y_max)
    y_avg = avgpool2d_forward_nchw(x, **hp)
    g_avg = np.ones_like(y_avg)

    cases: list[tuple[str, Callable[[bool], object]]] = [
        ("maxpool2d_forward", lambda fast: maxpool2d_forward_nchw(x, fast=fast, **hp)),
        (
            "maxpool2d_backward",
            lambda fast: maxpool2d_backward_nchw(
                g_max, x, argmax=None if fast else argmax, fast=fast, **hp
            ),
        ),
        ("avgpool2d_forward", lambda fast: avgpool2d_forward_nchw(x, fast=fast, **hp)),
        (
            "avgpool2d_backward",
            lambda fast: avgpool2d_backward_nchw(g_avg, x, fast=fast, **hp),
        ),
    ]

    print("\n" + "=" * 86)
    print(
        f"Shape: N={N} C={C} H={H} W={W}  k={k} s={s} p={p}  dtype={dtype.__name__}  "
        f"(warmup={warmup}, repeats={repeats})"
    )
    print("-" * 86)
    for name, run in cases:
        t_generic = _time_one(lambda: run(False), warmup=warmup, repeats=repeats)
        t_fast = _time_one(lambda: run(True), warmup=warmup, repeats=repeats)
        _print_row(name, statistics.median(t_generic), statistics.median(t_fast))


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--N", type=int, default=4)
    ap.add_argument("--C", type=int, default=16)
    ap.add_argument("--H", type=int, default=64)
    ap.add_argument("--W", type=int, default=64)
    ap.add_argument("--k", type=int, default=2)
    ap.add_argument("--s", type=int, default=2)
    ap.add_argument("--p", type=int, default=0)
    ap.add_argument("--warmup", type=int, default=3)
    ap.add_argument("--repeats", type=int, default=15)
    ap.add_argument(
        "--dtypes",
        nargs="*",
        default=["float32", "float64"],
        choices=["float32", "float64"],
    )
    args = ap.parse_args()

    for dt in args.dtypes:
        bench_one(
            N=args.N,
            C=args.C,
            H=args.H,
            W=args.W,
            k=args.k,
            s=args.s,
            p=args.p,
            dtype=getattr(np, dt),
            warmup=args.warmup,
            repeats=args.repeats,
        )


if __name__ == "__main__":
    main()
