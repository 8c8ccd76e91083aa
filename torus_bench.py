#!/usr/bin/env python3
"""
Profiling harness for the toroidal engine.

Runs the tick pipeline headlessly under cProfile, then prints a ranked
breakdown of where time is spent.

Usage:
  python3 torus_bench.py                  # 2000 ticks, summary
  python3 torus_bench.py -n 5000          # 5000 ticks
  python3 torus_bench.py --line-timing    # per-tick component timing
  python3 torus_bench.py --dump prof.out  # dump cProfile binary for snakeviz etc.
"""

from __future__ import annotations

import argparse
import cProfile
import pstats
import random
import time
from io import StringIO

import numpy as np

from torus import (
    DEPTH,
    MODEL_LAGRANGIAN,
    N_TRANSFORMS,
    PHYSICS_MODELS,
    ThermalState,
    apply_face,
    compute_metrics,
    effective_sums,
    interconnect_sums,
    neighbour_sums,
    round_half_up,
)
from torus_sim import ToroidalSim


def time_tick_components(sim: ToroidalSim, rng: random.Random) -> dict[str, float]:
    """
    Run one tick stage by stage, timing each component.

    Returns a dict of component -> seconds. The sim is advanced.
    """
    timings: dict[str, float] = {}
    cur, prev = sim.lattice.current, sim.lattice.previous
    start = time.perf_counter()

    t0 = time.perf_counter()
    sums = neighbour_sums(
        cur, prev, rng.randrange(N_TRANSFORMS), kinetic=(sim.physics_model == MODEL_LAGRANGIAN)
    )
    timings["neighbour_sums"] = time.perf_counter() - t0

    t0 = time.perf_counter()
    bus = interconnect_sums(cur, sim.interconnects)
    timings["interconnect_sums"] = time.perf_counter() - t0

    t0 = time.perf_counter()
    eff = round_half_up(effective_sums(sums, bus, sim.physics_model))
    nxt = apply_face(sim.kernel_face, eff, cur)
    timings["gates"] = time.perf_counter() - t0

    t0 = time.perf_counter()
    compute_metrics(nxt, cur, start, ThermalState(sim.thermal.load))
    timings["metrics"] = time.perf_counter() - t0

    # Advance through the real path so history and thermal stay consistent
    sim.step()
    return timings


def run_benchmark(
    n_ticks: int,
    depth: int = DEPTH,
    model: str = "standard",
    buses: bool = False,
    line_timing: bool = False,
    dump_path: str | None = None,
) -> None:
    """Run the benchmark for n_ticks and report results."""

    rng = random.Random(0)
    sim = ToroidalSim(depth=depth, physics_model=model, transform_source=lambda: rng.randrange(N_TRANSFORMS))
    if buses:
        for idx in range(3):
            sim.toggle_interconnect("rows", idx)
            sim.toggle_interconnect("cols", idx)

    print(f"Lattice: 9x9x{depth}  Model: {model}  Buses: {'on' if buses else 'off'}  "
          f"Ticks: {n_ticks}")
    print()

    # ── Per-tick component timing ──────────────────────────────────
    if line_timing:
        comp_times: dict[str, list[float]] = {}

        for tick in range(n_ticks):
            ct = time_tick_components(sim, rng)
            for k, v in ct.items():
                comp_times.setdefault(k, []).append(v)
            # Keep the lattice alive so the timings stay representative
            if sim.population() == 0:
                sim.reset()

            if (tick + 1) % 500 == 0:
                print(f"  tick {tick + 1}/{n_ticks}  "
                      f"energy {sim.metrics.energy:.3f}  "
                      f"thermal {sim.metrics.thermal_load:.3f}")

        print()
        print("=== Per-Tick Component Breakdown (ms) ===")
        print(f"{'Component':<25} {'Mean':>8} {'P50':>8} {'P95':>8} {'P99':>8} {'Max':>8}")
        print("-" * 73)

        def stats_line(name: str, data: list[float]) -> str:
            arr = np.array(data) * 1000  # to ms
            return (f"{name:<25} {arr.mean():8.3f} {np.median(arr):8.3f} "
                    f"{np.percentile(arr, 95):8.3f} {np.percentile(arr, 99):8.3f} "
                    f"{arr.max():8.3f}")

        for k in comp_times:
            print(stats_line(k, comp_times[k]))
        total = np.sum([np.array(v) for v in comp_times.values()], axis=0)
        print(stats_line("TOTAL", total.tolist()))
        return

    # ── cProfile run ───────────────────────────────────────────────
    def profiled_run() -> None:
        for _ in range(n_ticks):
            sim.step()

    profiler = cProfile.Profile()
    wall_t0 = time.perf_counter()
    profiler.runctx("profiled_run()", globals(), locals())
    wall_dt = time.perf_counter() - wall_t0

    print(f"Wall time: {wall_dt:.2f}s  ({wall_dt / n_ticks * 1000:.3f}ms/tick)")
    print(f"Ticks/s: {n_ticks / wall_dt:.1f}")
    print()

    if dump_path:
        profiler.dump_stats(dump_path)
        print(f"Profile data saved to: {dump_path}")
        print(f"  View with: python3 -m pstats {dump_path}")
        print()

    buf = StringIO()
    ps = pstats.Stats(profiler, stream=buf)
    ps.sort_stats("cumulative")
    ps.print_stats(30)
    print(buf.getvalue())


def main() -> None:
    parser = argparse.ArgumentParser(description="Profile the toroidal engine")
    parser.add_argument("-n", "--ticks", type=int, default=2000,
                        help="Number of ticks to simulate (default: 2000)")
    parser.add_argument("--depth", type=int, default=DEPTH,
                        help=f"Lattice depth (default: {DEPTH})")
    parser.add_argument("--model", choices=PHYSICS_MODELS, default="standard",
                        help="Physics model (default: standard)")
    parser.add_argument("--buses", action="store_true",
                        help="Enable every row and column interconnect")
    parser.add_argument("--line-timing", action="store_true",
                        help="Per-tick component timing instead of cProfile")
    parser.add_argument("--dump", type=str, default=None,
                        help="Dump cProfile binary to this path")
    args = parser.parse_args()

    run_benchmark(
        n_ticks=args.ticks,
        depth=args.depth,
        model=args.model,
        buses=args.buses,
        line_timing=args.line_timing,
        dump_path=args.dump,
    )


if __name__ == "__main__":
    main()
