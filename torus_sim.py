#!/usr/bin/env python3
"""
Headless driver for the cohesive toroidal engine.

Owns the live lattice pair, the editable 3x3 core grid, interconnect buses
and the thermal state, and ticks the engine on a fixed-delay loop. The delay
stretches as the lattice heats up (see torus.effective_delay).

Usage:
  python3 torus_sim.py                          # 200 ticks, default seed
  python3 torus_sim.py -n 1000 --model wave_dynamics
  python3 torus_sim.py --pattern pinwheel --kernel oscillator
  python3 torus_sim.py --row-bus 4 --col-bus 1 --seed 7
  python3 torus_sim.py --realtime --delay 100   # sleep between ticks

Stats are logged to torus_stats.csv in the working directory (override with
--log).
"""

from __future__ import annotations

import argparse
import random
import time
from collections import deque
from pathlib import Path
from typing import IO, Any, Callable, ClassVar, Sequence

import numpy as np
from numpy.typing import NDArray

from torus import (
    DEFAULT_CORE_GRID,
    DEPTH,
    INTERCONNECT_CHANNELS,
    MODEL_STANDARD,
    N_TRANSFORMS,
    PHYSICS_MODELS,
    SIZE,
    Interconnects,
    Lattice,
    LatticePair,
    Metrics,
    ThermalState,
    check_core,
    check_lattice,
    check_model,
    compute_metrics,
    draw_transform,
    effective_delay,
    from_flat,
    mirror,
    new_lattice,
    step as engine_step,
    system_transform,
    to_flat,
    toggle_cell,
)

# ── Sparkline characters ────────────────────────────────────────────────
SPARKS = "▁▂▃▄▅▆▇█"

METRICS_HISTORY: int = 150
DEFAULT_DELAY: float = 100.0  # ms

# ── Pattern library ─────────────────────────────────────────────────────
# Quadrant patterns: placed at (1, 1) and mirrored into all four quadrants
# on the middle layer.
PATTERNS: dict[str, list[list[int]]] = {
    "quad_glider": [
        [0, 1, 0],
        [0, 0, 1],
        [1, 1, 1],
    ],
    "corner_blocks": [
        [1, 1],
        [1, 1],
    ],
    "quad_cross": [
        [0, 1, 0],
        [1, 1, 1],
        [0, 1, 0],
    ],
    "pinwheel": [
        [0, 1, 1],
        [1, 1, 0],
        [0, 0, 0],
    ],
    "penta_replicator": [
        [0, 1, 1],
        [1, 1, 0],
        [0, 1, 0],
    ],
    "diagonal_line": [
        [1, 0, 0, 0],
        [0, 1, 0, 0],
        [0, 0, 1, 0],
        [0, 0, 0, 1],
    ],
    "agitator": [
        [1, 1, 0],
        [1, 0, 1],
        [0, 1, 0],
    ],
}
PATTERN_OFFSET: int = 1

# ── Kernel presets ──────────────────────────────────────────────────────
KERNEL_PRESETS: dict[str, tuple[tuple[int, ...], ...]] = {
    "standard": DEFAULT_CORE_GRID,
    "chaotic_growth": ((6, 3, 6), (3, 4, 3), (6, 3, 6)),
    "oscillator": ((4, 5, 4), (5, 3, 5), (4, 5, 4)),
    "blockade": ((5, 5, 5), (5, 6, 5), (5, 5, 5)),
}

# resolved against the working directory at open time
LOG_PATH = Path("torus_stats.csv")


def lattice_from_pattern(pattern: Sequence[Sequence[int]], depth: int = DEPTH) -> Lattice:
    """Mirror a quadrant pattern into four-fold symmetry on the middle layer."""
    lat = new_lattice(depth)
    mid = depth // 2
    half = (SIZE + 1) // 2
    for r, row in enumerate(pattern):
        for c, v in enumerate(row):
            if v != 1:
                continue
            y, x = PATTERN_OFFSET + r, PATTERN_OFFSET + c
            # stay inside the top-left quadrant
            if y >= half or x >= half:
                continue
            for yy, xx in ((y, x), (y, SIZE - 1 - x), (SIZE - 1 - y, x), (SIZE - 1 - y, SIZE - 1 - x)):
                lat[yy, xx, mid] = 1
    return lat


def default_seed(depth: int = DEPTH) -> Lattice:
    """Centre cell plus the four (1|7, 1|7) corners on the middle layer."""
    lat = new_lattice(depth)
    mid = depth // 2
    lat[4, 4, mid] = 1
    for r in (1, 7):
        for c in (1, 7):
            lat[r, c, mid] = 1
    return lat


# ═══════════════════════════════════════════════════════════════════════
#  Stats logger
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes engine telemetry to CSV for post-hoc tuning."""

    HEADER: ClassVar[str] = (
        "gen,time_s,delta_swastika,latency_ms,energy,thermal_load,delay_ms,event\n"
    )

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            self._fh = None

    def log(self, gen: int, metrics: Metrics, delay: float, event: str = "") -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        try:
            self._fh.write(
                f"{gen},{t:.1f},{metrics.delta_swastika:.4f},{metrics.latency:.3f},"
                f"{metrics.energy:.4f},{metrics.thermal_load:.4f},{delay:.1f},{event}\n"
            )
            # Flush on events or periodically
            if event or gen % 50 == 0:
                self._fh.flush()
        except OSError:
            self.close()

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  The simulation
# ═══════════════════════════════════════════════════════════════════════

class ToroidalSim:
    """
    One running lattice: the state the engine reads and writes between ticks.

    Ticks are all-or-nothing. The new lattice and its metrics are computed
    first; the pair is promoted only once both succeeded.
    """

    def __init__(
        self,
        depth: int = DEPTH,
        physics_model: str = MODEL_STANDARD,
        core_grid: Sequence[Sequence[int]] | None = None,
        transform_source: Callable[[], int] | None = system_transform,
    ) -> None:
        self.depth: int = depth
        self.physics_model: str = MODEL_STANDARD
        self.set_physics_model(physics_model)

        self.core_grid: NDArray[np.int16] = check_core(
            DEFAULT_CORE_GRID if core_grid is None else core_grid
        )
        self.kernel_face: NDArray[np.int16] = mirror(self.core_grid)
        self.interconnects: Interconnects = Interconnects()

        self._transform_source = transform_source

        self.lattice: LatticePair = LatticePair(default_seed(depth), new_lattice(depth))
        self.thermal: ThermalState = ThermalState()
        self.metrics: Metrics = Metrics()
        self.metrics_history: deque[Metrics] = deque(maxlen=METRICS_HISTORY)
        self.generation: int = 0
        self.delay: float = DEFAULT_DELAY
        self.last_transform: int = -1

    # ── Simulation ──────────────────────────────────────────────────

    def _draw(self) -> int:
        t = draw_transform(self._transform_source)
        self.last_transform = t
        return t

    def step(self) -> Metrics:
        """Advance one tick and return its metrics."""
        start = time.perf_counter()
        cur, prev = self.lattice.current, self.lattice.previous
        nxt = engine_step(
            cur,
            prev,
            self.kernel_face,
            self.interconnects,
            self.physics_model,
            transform_source=self._draw,
        )
        metrics = compute_metrics(nxt, cur, start, self.thermal)

        self.lattice.promote(nxt)
        self.metrics = metrics
        self.metrics_history.append(metrics)
        self.generation += 1
        return metrics

    def effective_delay(self) -> float:
        return effective_delay(self.delay, self.metrics.thermal_load)

    # ── Initial conditions ──────────────────────────────────────────

    def _restart(self) -> None:
        self.thermal.reset()
        self.metrics = Metrics()
        self.metrics_history.clear()
        self.generation = 0

    def reset(self) -> None:
        self.lattice.reset(default_seed(self.depth))
        self._restart()

    def clear(self) -> None:
        self.lattice.reset()
        self._restart()

    def load_lattice(
        self,
        data: Sequence[int] | NDArray,
        core_grid: Sequence[Sequence[int]] | None = None,
        interconnects: Interconnects | None = None,
    ) -> None:
        """Install an initial condition (flat or 3-D lattice)."""
        arr = np.asarray(data)
        lat = from_flat(arr, self.depth) if arr.ndim == 1 else check_lattice(arr, self.depth)
        core = check_core(DEFAULT_CORE_GRID if core_grid is None else core_grid)

        self.lattice.reset(lat)
        self.set_core_grid(core)
        if interconnects is not None:
            self.interconnects = interconnects
        self._restart()

    def load_pattern(self, name: str) -> None:
        if name not in PATTERNS:
            raise KeyError(f"unknown pattern {name!r}; expected one of {', '.join(PATTERNS)}")
        self.load_lattice(lattice_from_pattern(PATTERNS[name], self.depth))

    def apply_generated(self, grid: Sequence[Sequence[int]]) -> None:
        """Place a 9x9 0/1 grid on the middle layer of an empty lattice."""
        plane = np.asarray(grid)
        if plane.shape != (SIZE, SIZE):
            raise ValueError(f"generated grid must be {SIZE}x{SIZE}, got {plane.shape}")
        lat = new_lattice(self.depth)
        lat[:, :, self.depth // 2] = plane != 0
        self.lattice.reset(lat)
        self._restart()

    def snapshot(self) -> dict[str, Any]:
        """Pattern-save payload: flat lattice, core grid, interconnects."""
        return {
            "depth": self.depth,
            "data": to_flat(self.lattice.current).tolist(),
            "core_grid": self.core_grid.tolist(),
            "interconnects": {
                "rows": list(self.interconnects.rows),
                "cols": list(self.interconnects.cols),
            },
        }

    # ── Editing ─────────────────────────────────────────────────────

    def toggle_cell(self, i: int, j: int, k: int) -> None:
        cur = self.lattice.current.copy()
        toggle_cell(cur, i, j, k)
        self.lattice.current = cur

    def set_core_grid(self, core: Sequence[Sequence[int]] | NDArray) -> None:
        self.core_grid = check_core(core)
        self.kernel_face = mirror(self.core_grid)

    def set_core_cell(self, i: int, j: int, code: int) -> None:
        core = self.core_grid.copy()
        core[i, j] = code
        self.set_core_grid(core)

    def reset_core_grid(self) -> None:
        self.set_core_grid(DEFAULT_CORE_GRID)

    def load_kernel_preset(self, name: str) -> None:
        if name not in KERNEL_PRESETS:
            raise KeyError(
                f"unknown kernel preset {name!r}; expected one of {', '.join(KERNEL_PRESETS)}"
            )
        self.set_core_grid(KERNEL_PRESETS[name])

    def toggle_interconnect(self, kind: str, idx: int) -> None:
        self.interconnects = self.interconnects.toggled(kind, idx)

    def set_physics_model(self, name: str) -> None:
        self.physics_model = check_model(name)

    # ── Read-outs ───────────────────────────────────────────────────

    def population(self) -> int:
        return int(self.lattice.current.sum())

    def sparkline(self, width: int = 24) -> str:
        hist = [m.energy for m in self.metrics_history][-width:]
        if len(hist) < 2:
            return ""
        lo, hi = min(hist), max(hist)
        n_sparks = len(SPARKS) - 1
        mid_spark = SPARKS[len(SPARKS) // 2]
        if hi == lo:
            return mid_spark * len(hist)
        return "".join(SPARKS[int((v - lo) / (hi - lo) * n_sparks)] for v in hist)


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def _bus_index(channel: int) -> int:
    if channel not in INTERCONNECT_CHANNELS:
        raise argparse.ArgumentTypeError(
            f"bus must be one of {', '.join(map(str, INTERCONNECT_CHANNELS))}"
        )
    return INTERCONNECT_CHANNELS.index(channel)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the toroidal gate lattice headlessly")
    parser.add_argument("-n", "--ticks", type=int, default=200,
                        help="Number of ticks to run (default: 200)")
    parser.add_argument("--depth", type=int, default=DEPTH,
                        help=f"Lattice depth (default: {DEPTH})")
    parser.add_argument("--model", choices=PHYSICS_MODELS, default=MODEL_STANDARD,
                        help="Physics model (default: standard)")
    parser.add_argument("--pattern", choices=sorted(PATTERNS), default=None,
                        help="Start from a library pattern instead of the default seed")
    parser.add_argument("--kernel", choices=sorted(KERNEL_PRESETS), default="standard",
                        help="Core grid preset (default: standard)")
    parser.add_argument("--row-bus", type=int, action="append", default=[],
                        help="Enable a row interconnect (1, 4 or 7); repeatable")
    parser.add_argument("--col-bus", type=int, action="append", default=[],
                        help="Enable a column interconnect (1, 4 or 7); repeatable")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed the neighbour-transform draw for replayable runs")
    parser.add_argument("--delay", type=float, default=DEFAULT_DELAY,
                        help=f"Base tick delay in ms (default: {DEFAULT_DELAY:.0f})")
    parser.add_argument("--realtime", action="store_true",
                        help="Sleep the effective delay between ticks")
    parser.add_argument("--every", type=int, default=10,
                        help="Print a status line every N ticks (default: 10)")
    parser.add_argument("--log", type=Path, default=LOG_PATH,
                        help="CSV stats log path")
    return parser


def run(
    sim: ToroidalSim,
    ticks: int,
    logger: StatsLogger,
    every: int = 10,
    realtime: bool = False,
) -> None:
    """Tick `sim`, logging every tick. Only hot/cool transitions are events."""
    was_hot = False
    for _ in range(ticks):
        m = sim.step()
        delay = sim.effective_delay()
        hot = delay > sim.delay
        event = ""
        if hot != was_hot:
            event = "hot" if hot else "cool"
        was_hot = hot
        logger.log(sim.generation, m, delay, event)

        if every > 0 and sim.generation % every == 0:
            print(f"  tick {sim.generation:>6}  "
                  f"delta {m.delta_swastika:6.2f}  "
                  f"energy {m.energy:5.3f}  "
                  f"thermal {m.thermal_load:5.3f}  "
                  f"delay {delay:6.1f}ms  "
                  f"{sim.sparkline()}")

        if realtime:
            time.sleep(delay / 1000.0)


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    source = system_transform
    if args.seed is not None:
        rng = random.Random(args.seed)
        source = lambda: rng.randrange(N_TRANSFORMS)

    sim = ToroidalSim(depth=args.depth, physics_model=args.model, transform_source=source)
    # loading a pattern resets the core grid, so the preset goes on after
    if args.pattern:
        sim.load_pattern(args.pattern)
    sim.load_kernel_preset(args.kernel)
    try:
        for ch in args.row_bus:
            sim.toggle_interconnect("rows", _bus_index(ch))
        for ch in args.col_bus:
            sim.toggle_interconnect("cols", _bus_index(ch))
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    sim.delay = args.delay

    logger = StatsLogger(args.log)
    logger.open()

    print(f"Lattice: {SIZE}x{SIZE}x{sim.depth}  Model: {sim.physics_model}  "
          f"Kernel: {args.kernel}  Ticks: {args.ticks}")
    print(f"Buses: rows={sim.interconnects.active_rows()} cols={sim.interconnects.active_cols()}")
    print()

    try:
        run(sim, args.ticks, logger, every=args.every, realtime=args.realtime)
    except KeyboardInterrupt:
        pass
    finally:
        logger.close()


if __name__ == "__main__":
    main()
