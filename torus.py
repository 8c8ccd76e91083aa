"""
Cohesive toroidal engine: the lattice-update core.

A 9x9xDEPTH binary lattice wraps around all three axes. A 3x3 "core" of
logic gates is mirrored out to a 9x9 kernel face, and every lattice column
(i, j) runs the gate the face assigns to it on every depth layer.

One tick:
  1. draw a single neighbour transform (one of the 8 symmetries of the square)
  2. count active Moore neighbours, split into intra-module (same 3x3 block)
     and inter-module, for both the current and the previous lattice
  3. add long-range interconnect bus contributions
  4. fold the counts into one effective sum per cell (physics model)
  5. round and run the cell's gate

Metrics (delta_swastika, energy, thermal load) are computed from the
new/old lattice pair after each tick.

The lattice is a C-contiguous uint8 array of shape (SIZE, SIZE, depth), so
its flat view uses idx = i*SIZE*depth + j*depth + k.
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterator, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy.ndimage import convolve

# ── Geometry ────────────────────────────────────────────────────────────
SIZE: int = 9
DEPTH: int = 6
MIN_DEPTH: int = 1  # at depth 1 or 2 the dk=-1 and dk=+1 neighbours alias
MODULE: int = 3     # modules are the nine MODULE x MODULE blocks of the plane

# ── Coupling weights ────────────────────────────────────────────────────
INTRA_WEIGHT: float = 1.0          # neighbour in the same 3x3 module
INTER_WEIGHT: float = 0.5          # neighbour in another module
INTERCONNECT_WEIGHT: float = 0.15  # long-range bus influence
WAVE_MOMENTUM: float = 0.5

# Rows / columns that can carry an interconnect bus
INTERCONNECT_CHANNELS: tuple[int, ...] = (1, 4, 7)

# ── Thermal load ────────────────────────────────────────────────────────
THERMAL_DECAY: float = 0.95
THERMAL_THRESHOLD: float = 0.2
THERMAL_PENALTY_SCALE: float = 400.0  # ms at full load
THERMAL_PENALTY_CAP: float = 300.0    # ms

# ── Physics models ──────────────────────────────────────────────────────
MODEL_STANDARD: str = "standard"
MODEL_LAGRANGIAN: str = "lagrangian"
MODEL_WAVE: str = "wave_dynamics"
PHYSICS_MODELS: tuple[str, ...] = (MODEL_STANDARD, MODEL_LAGRANGIAN, MODEL_WAVE)

DEFAULT_CORE_GRID: tuple[tuple[int, ...], ...] = (
    (3, 4, 3),
    (5, 6, 5),
    (3, 4, 3),
)

Lattice = NDArray[np.uint8]


# ═══════════════════════════════════════════════════════════════════════
#  Errors
# ═══════════════════════════════════════════════════════════════════════

class TorusError(Exception):
    """Base class for engine errors."""


class LatticeShapeError(TorusError, ValueError):
    """A lattice, core grid or kernel face has the wrong shape or values."""


class TransformSourceError(TorusError, RuntimeError):
    """The per-tick random source is missing or returned an unusable draw."""


# ═══════════════════════════════════════════════════════════════════════
#  Lattice store
# ═══════════════════════════════════════════════════════════════════════

def new_lattice(depth: int = DEPTH) -> Lattice:
    if depth < MIN_DEPTH:
        raise LatticeShapeError(f"depth must be >= {MIN_DEPTH}, got {depth}")
    return np.zeros((SIZE, SIZE, depth), dtype=np.uint8)


def flat_index(i: int, j: int, k: int, depth: int = DEPTH) -> int:
    """Flat index of (i, j, k), wrapped toroidally on every axis."""
    return (i % SIZE) * SIZE * depth + (j % SIZE) * depth + (k % depth)


def get_cell(lattice: Lattice, i: int, j: int, k: int) -> int:
    depth = lattice.shape[2]
    return int(lattice[i % SIZE, j % SIZE, k % depth])


def set_cell(lattice: Lattice, i: int, j: int, k: int, value: int) -> None:
    if value not in (0, 1):
        raise LatticeShapeError(f"cell values are 0 or 1, got {value!r}")
    depth = lattice.shape[2]
    lattice[i % SIZE, j % SIZE, k % depth] = value


def toggle_cell(lattice: Lattice, i: int, j: int, k: int) -> None:
    depth = lattice.shape[2]
    lattice[i % SIZE, j % SIZE, k % depth] ^= 1


def _check_binary(arr: NDArray, what: str) -> None:
    if arr.size and np.any((arr != 0) & (arr != 1)):
        raise LatticeShapeError(f"{what} contains values other than 0 and 1")


def check_lattice(lattice: NDArray, depth: int | None = None) -> Lattice:
    """Validate shape and values; return the lattice as contiguous uint8."""
    arr = np.asarray(lattice)
    if arr.ndim != 3 or arr.shape[:2] != (SIZE, SIZE):
        raise LatticeShapeError(
            f"lattice must have shape ({SIZE}, {SIZE}, depth), got {arr.shape}"
        )
    if arr.shape[2] < MIN_DEPTH:
        raise LatticeShapeError(f"depth must be >= {MIN_DEPTH}, got {arr.shape[2]}")
    if depth is not None and arr.shape[2] != depth:
        raise LatticeShapeError(f"expected depth {depth}, got {arr.shape[2]}")
    _check_binary(arr, "lattice")
    return np.ascontiguousarray(arr, dtype=np.uint8)


def check_face(face: NDArray | Sequence[Sequence[int]]) -> NDArray[np.int16]:
    arr = np.asarray(face)
    if arr.shape != (SIZE, SIZE):
        raise LatticeShapeError(
            f"kernel face must have shape ({SIZE}, {SIZE}), got {arr.shape}"
        )
    return arr.astype(np.int16)


def check_pair(
    current: NDArray, previous: NDArray
) -> tuple[Lattice, Lattice]:
    """Both lattices of a tick must share one shape."""
    cur = check_lattice(current)
    prev = check_lattice(previous, depth=cur.shape[2])
    return cur, prev


def to_flat(lattice: Lattice) -> Lattice:
    return check_lattice(lattice).reshape(-1).copy()


def from_flat(data: Sequence[int] | NDArray, depth: int = DEPTH) -> Lattice:
    """Rebuild a lattice from its flat form (pattern load boundary)."""
    arr = np.asarray(data)
    expected = SIZE * SIZE * depth
    if arr.ndim != 1 or arr.size != expected:
        raise LatticeShapeError(
            f"flat lattice must have {expected} cells, got shape {arr.shape}"
        )
    return check_lattice(arr.reshape(SIZE, SIZE, depth))


@dataclass
class LatticePair:
    """The live current/previous lattices. Replaced whole, never in part."""

    current: Lattice
    previous: Lattice

    def __post_init__(self) -> None:
        self.current, self.previous = check_pair(self.current, self.previous)

    @classmethod
    def empty(cls, depth: int = DEPTH) -> LatticePair:
        return cls(new_lattice(depth), new_lattice(depth))

    @property
    def depth(self) -> int:
        return int(self.current.shape[2])

    def promote(self, new: NDArray) -> None:
        """current -> previous, new -> current."""
        nxt = check_lattice(new, depth=self.depth)
        self.previous, self.current = self.current, nxt

    def reset(self, current: NDArray | None = None) -> None:
        cur = new_lattice(self.depth) if current is None else check_lattice(
            current, depth=self.depth
        ).copy()
        self.previous, self.current = new_lattice(self.depth), cur


# ═══════════════════════════════════════════════════════════════════════
#  Kernel mirror
# ═══════════════════════════════════════════════════════════════════════

def mirror_index(d: int) -> int:
    """Map a face coordinate in [0, 9) onto the core axis [0, 3)."""
    if 3 <= d <= 5:
        return d - 3
    if d < 3:
        return 2 - d
    return 8 - d


def mirror(core: Sequence[Sequence[int]] | NDArray) -> NDArray[np.int16]:
    """Expand a 3x3 core grid into the bilaterally mirrored 9x9 face."""
    src = np.asarray(core, dtype=np.int16)
    idx = np.array([mirror_index(d) for d in range(SIZE)])
    return src[np.ix_(idx, idx)]


def check_core(core: Sequence[Sequence[int]] | NDArray) -> NDArray[np.int16]:
    """Validate an editor-supplied core grid: 3x3, gate codes only."""
    arr = np.asarray(core)
    if arr.shape != (MODULE, MODULE):
        raise LatticeShapeError(f"core grid must be 3x3, got shape {arr.shape}")
    codes = {int(g) for g in Gate}
    bad = sorted({int(v) for v in arr.ravel()} - codes)
    if bad:
        raise LatticeShapeError(f"unknown gate codes in core grid: {bad}")
    return arr.astype(np.int16)


# ═══════════════════════════════════════════════════════════════════════
#  Gate rules
# ═══════════════════════════════════════════════════════════════════════

class Gate(IntEnum):
    XOR = 3
    THRESHOLD = 4
    MEMORY = 5
    NOT = 6


GATE_DESCRIPTIONS: dict[Gate, str] = {
    Gate.XOR: "active if the sum is positive and odd",
    Gate.THRESHOLD: "active if the sum is at least 2",
    Gate.MEMORY: "sets on sum 1, resets on sum > 1, holds otherwise",
    Gate.NOT: "active if the sum is 0",
}

# Rules accept Python ints or integer arrays and return uint8 (0-d for scalars)


def xor_gate(s):
    s = np.asarray(s)
    return ((s > 0) & (s % 2 == 1)).astype(np.uint8)


def threshold_gate(s):
    return (np.asarray(s) >= 2).astype(np.uint8)


def memory_gate(s, state):
    s = np.asarray(s)
    return np.where(np.asarray(state) == 0, s == 1, s <= 1).astype(np.uint8)


def not_gate(s):
    return (np.asarray(s) == 0).astype(np.uint8)


def apply_gate(code: int, s, state):
    """Run gate `code` on effective sum `s`. Unknown codes keep `state`."""
    if code == Gate.XOR:
        return xor_gate(s)
    elif code == Gate.THRESHOLD:
        return threshold_gate(s)
    elif code == Gate.MEMORY:
        return memory_gate(s, state)
    elif code == Gate.NOT:
        return not_gate(s)
    return state


def apply_face(
    face: NDArray, sums: NDArray[np.int64], state: Lattice
) -> Lattice:
    """Apply each column's gate (from the kernel face) across all layers."""
    codes = np.broadcast_to(np.asarray(face)[:, :, None], state.shape)
    out = state.copy()
    for gate in Gate:
        mask = codes == gate
        if mask.any():
            out[mask] = apply_gate(gate, sums, state)[mask]
    return out


# ═══════════════════════════════════════════════════════════════════════
#  Neighbour transforms
# ═══════════════════════════════════════════════════════════════════════

# The 8 symmetries of the square acting on an in-plane offset (di, dj).
TRANSFORMS: tuple[Callable[[int, int], tuple[int, int]], ...] = (
    lambda di, dj: (di, dj),      # identity
    lambda di, dj: (-di, dj),     # flip rows
    lambda di, dj: (di, -dj),     # flip columns
    lambda di, dj: (dj, di),      # main diagonal
    lambda di, dj: (-dj, -di),    # anti-diagonal
    lambda di, dj: (-di, -dj),    # 180 degrees
    lambda di, dj: (dj, -di),     # quarter turn
    lambda di, dj: (-dj, di),     # three-quarter turn
)
N_TRANSFORMS: int = len(TRANSFORMS)


def transform_offset(transform: int, di: int, dj: int) -> tuple[int, int]:
    return TRANSFORMS[transform](di, dj)


def neighbour_offsets() -> Iterator[tuple[int, int, int]]:
    """The 26 Moore offsets (di, dj, dk), centre excluded."""
    for di in (-1, 0, 1):
        for dj in (-1, 0, 1):
            for dk in (-1, 0, 1):
                if di == 0 and dj == 0 and dk == 0:
                    continue
                yield di, dj, dk


def system_transform() -> int:
    """Default per-tick transform source: the process-wide `random` RNG."""
    return random.randrange(N_TRANSFORMS)


def _check_transform(t: object) -> int:
    if isinstance(t, bool) or not isinstance(t, (int, np.integer)):
        raise TransformSourceError(f"transform draw must be an int, got {t!r}")
    if not 0 <= t < N_TRANSFORMS:
        raise TransformSourceError(
            f"transform draw must be in [0, {N_TRANSFORMS}), got {t}"
        )
    return int(t)


def draw_transform(source: Callable[[], int] | None) -> int:
    """Draw this tick's transform. No source is an error, never identity."""
    if source is None:
        raise TransformSourceError("no random source for the neighbour transform")
    return _check_transform(source())


# ═══════════════════════════════════════════════════════════════════════
#  Step engine
# ═══════════════════════════════════════════════════════════════════════

# Module id of every (i, j) in the plane
_MODULE_ID: NDArray[np.int16] = (
    (np.arange(SIZE) // MODULE)[:, None] * MODULE + (np.arange(SIZE) // MODULE)[None, :]
).astype(np.int16)

# (di, dj) -> (SIZE, SIZE, 1) mask: neighbour at that offset is in the cell's module
_SAME_MODULE: dict[tuple[int, int], NDArray[np.bool_]] = {
    (di, dj): (
        _MODULE_ID == np.roll(_MODULE_ID, (-di, -dj), axis=(0, 1))
    )[:, :, None]
    for di in (-1, 0, 1)
    for dj in (-1, 0, 1)
}

# 3x3x3 Moore kernel (convolution is symmetric so orientation doesn't matter)
MOORE_KERNEL: NDArray[np.int16] = np.ones((3, 3, 3), dtype=np.int16)
MOORE_KERNEL[1, 1, 1] = 0


@dataclass(frozen=True)
class Interconnects:
    """Long-range buses on rows / columns INTERCONNECT_CHANNELS."""

    rows: tuple[bool, ...] = (False, False, False)
    cols: tuple[bool, ...] = (False, False, False)

    def __post_init__(self) -> None:
        n = len(INTERCONNECT_CHANNELS)
        if len(self.rows) != n or len(self.cols) != n:
            raise LatticeShapeError(f"interconnects need {n} rows and {n} cols")
        object.__setattr__(self, "rows", tuple(bool(v) for v in self.rows))
        object.__setattr__(self, "cols", tuple(bool(v) for v in self.cols))

    @property
    def any_active(self) -> bool:
        return any(self.rows) or any(self.cols)

    def active_rows(self) -> list[int]:
        return [ch for ch, on in zip(INTERCONNECT_CHANNELS, self.rows) if on]

    def active_cols(self) -> list[int]:
        return [ch for ch, on in zip(INTERCONNECT_CHANNELS, self.cols) if on]

    def toggled(self, kind: str, idx: int) -> Interconnects:
        if kind not in ("rows", "cols"):
            raise ValueError(f"interconnect kind must be 'rows' or 'cols', got {kind!r}")
        n = len(INTERCONNECT_CHANNELS)
        if isinstance(idx, bool) or not 0 <= idx < n:
            raise ValueError(f"interconnect index must be in [0, {n}), got {idx!r}")
        values = list(getattr(self, kind))
        values[idx] = not values[idx]
        if kind == "rows":
            return Interconnects(rows=tuple(values), cols=self.cols)
        return Interconnects(rows=self.rows, cols=tuple(values))


@dataclass
class NeighbourSums:
    """Per-cell neighbour counts for one tick."""

    now_intra: NDArray[np.int16]
    now_inter: NDArray[np.int16]
    prev_intra: NDArray[np.int16]
    prev_inter: NDArray[np.int16]
    kinetic: NDArray[np.int16] | None = None

    @property
    def now_total(self) -> NDArray[np.int16]:
        return self.now_intra + self.now_inter

    @property
    def prev_total(self) -> NDArray[np.int16]:
        return self.prev_intra + self.prev_inter


def _moore_count(lattice: NDArray) -> NDArray[np.int16]:
    """Active Moore neighbours of every cell, toroidal on all axes.

    The lattice is wrap-padded by one cell first so axes shorter than the
    kernel (depth 1 or 2) still read their neighbours modulo the axis length.
    """
    padded = np.pad(lattice.astype(np.int16), 1, mode="wrap")
    return convolve(padded, MOORE_KERNEL, mode="constant")[1:-1, 1:-1, 1:-1]


def neighbour_sums(
    current: Lattice,
    previous: Lattice,
    transform: int,
    kinetic: bool = False,
) -> NeighbourSums:
    """Count intra/inter-module active neighbours in both lattices.

    The transform permutes which physical cell is read as "the neighbour
    at (di, dj)"; the depth offset is never transformed.
    """
    transform = _check_transform(transform)
    now_intra = np.zeros(current.shape, dtype=np.int16)
    prev_intra = np.zeros(current.shape, dtype=np.int16)

    for di, dj, dk in neighbour_offsets():
        ti, tj = transform_offset(transform, di, dj)
        same = _SAME_MODULE[(ti, tj)]
        # neighbour of (i, j, k) is (i+ti, j+tj, k+dk), wrapped
        shift = (-ti, -tj, -dk)
        now_intra += np.roll(current, shift, axis=(0, 1, 2)) * same
        prev_intra += np.roll(previous, shift, axis=(0, 1, 2)) * same

    # Totals don't depend on the transform: it only permutes the 26 offsets
    now_total = _moore_count(current)
    prev_total = _moore_count(previous)

    ke = None
    if kinetic:
        ke = _moore_count(current != previous)

    return NeighbourSums(
        now_intra=now_intra,
        now_inter=now_total - now_intra,
        prev_intra=prev_intra,
        prev_inter=prev_total - prev_intra,
        kinetic=ke,
    )


def interconnect_sums(
    current: Lattice, interconnects: Interconnects
) -> NDArray[np.float64]:
    """Bus contribution per cell: (bus count - own state) * weight per bus.

    Bus counts are taken once, on the middle depth layer.
    """
    bus = np.zeros(current.shape, dtype=np.float64)
    if not interconnects.any_active:
        return bus

    ref = current[:, :, current.shape[2] // 2].astype(np.int64)
    row_counts = ref.sum(axis=1)
    col_counts = ref.sum(axis=0)
    own = current.astype(np.float64)

    for ch in interconnects.active_rows():
        bus[ch, :, :] += (row_counts[ch] - own[ch, :, :]) * INTERCONNECT_WEIGHT
    for ch in interconnects.active_cols():
        bus[:, ch, :] += (col_counts[ch] - own[:, ch, :]) * INTERCONNECT_WEIGHT
    return bus


def check_model(model: str) -> str:
    if model not in PHYSICS_MODELS:
        raise ValueError(
            f"unknown physics model {model!r}; expected one of {', '.join(PHYSICS_MODELS)}"
        )
    return model


def effective_sums(
    sums: NeighbourSums, bus: NDArray[np.float64], model: str
) -> NDArray[np.float64]:
    """Fold neighbour counts into one (unrounded) sum per cell."""
    model = check_model(model)
    if model == MODEL_STANDARD:
        return (
            (sums.now_intra + sums.prev_intra) * INTRA_WEIGHT
            + (sums.now_inter + sums.prev_inter) * INTER_WEIGHT
            + bus
        )
    if model == MODEL_LAGRANGIAN:
        if sums.kinetic is None:
            raise ValueError("lagrangian model needs kinetic counts")
        return (
            sums.kinetic
            - (sums.now_intra * INTRA_WEIGHT + sums.now_inter * INTER_WEIGHT)
            + bus
        )
    # MODEL_WAVE
    now = sums.now_total.astype(np.float64)
    prev = sums.prev_total.astype(np.float64)
    return now + (now - prev) * WAVE_MOMENTUM + bus


def round_half_up(x: NDArray[np.float64]) -> NDArray[np.int64]:
    """Nearest integer, .5 rounds toward +inf (2.5 -> 3, -2.5 -> -2)."""
    return np.floor(np.asarray(x) + 0.5).astype(np.int64)


def step(
    current: NDArray,
    previous: NDArray,
    face: NDArray | Sequence[Sequence[int]],
    interconnects: Interconnects,
    model: str = MODEL_STANDARD,
    transform_source: Callable[[], int] | None = system_transform,
    transform: int | None = None,
) -> Lattice:
    """Compute the next lattice. Inputs are not modified.

    Pass `transform` to replay a known draw; otherwise one draw is taken
    from `transform_source` for the whole tick.
    """
    cur, prev = check_pair(current, previous)
    codes = check_face(face)
    model = check_model(model)

    t = draw_transform(transform_source) if transform is None else _check_transform(transform)

    sums = neighbour_sums(cur, prev, t, kinetic=(model == MODEL_LAGRANGIAN))
    bus = interconnect_sums(cur, interconnects)
    eff = round_half_up(effective_sums(sums, bus, model))
    return apply_face(codes, eff, cur)


# ═══════════════════════════════════════════════════════════════════════
#  Metrics engine
# ═══════════════════════════════════════════════════════════════════════

def fold_source(i: int, j: int) -> tuple[int, int]:
    """Source cell of (i, j) under the inverse quadrant fold.

    The central cross and the central module are fixed; any other point is
    pulled back through an inverse quarter turn inside its own module.
    """
    if i == SIZE // 2 or j == SIZE // 2:
        return i, j
    if 3 <= i <= 5 and 3 <= j <= 5:
        return i, j
    oi, oj = i - i % MODULE, j - j % MODULE
    li, lj = i - oi, j - oj
    return oi + lj, oj + (MODULE - 1 - li)


FOLD_SOURCE: tuple[NDArray[np.intp], NDArray[np.intp]] = tuple(
    np.array(
        [[fold_source(i, j)[axis] for j in range(SIZE)] for i in range(SIZE)],
        dtype=np.intp,
    )
    for axis in (0, 1)
)  # type: ignore[assignment]


def delta_swastika(new: Lattice, old: Lattice) -> float:
    """sqrt of the number of folded-source cells that changed this tick."""
    si, sj = FOLD_SOURCE
    diff = new[si, sj, :] ^ old[si, sj, :]
    return math.sqrt(int(diff.sum()))


def energy(lattice: Lattice, total_cells: int | None = None) -> float:
    total = lattice.size if total_cells is None else total_cells
    return int(lattice.sum()) / max(total, 1)


@dataclass
class ThermalState:
    """Exponentially smoothed occupancy, carried across ticks."""

    load: float = 0.0
    decay: float = THERMAL_DECAY

    def update(self, energy_value: float) -> float:
        self.load = self.decay * self.load + (1.0 - self.decay) * energy_value
        return self.load

    def reset(self) -> None:
        self.load = 0.0


@dataclass(frozen=True)
class Metrics:
    """Per-tick telemetry record."""

    delta_swastika: float = 0.0
    latency: float = 0.0  # ms
    energy: float = 0.0
    thermal_load: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "delta_swastika": self.delta_swastika,
            "latency": self.latency,
            "energy": self.energy,
            "thermalLoad": self.thermal_load,
        }


def compute_metrics(
    new: NDArray,
    old: NDArray,
    tick_start: float,
    thermal: ThermalState,
    total_cells: int | None = None,
) -> Metrics:
    """Metrics for one tick. `tick_start` is a time.perf_counter() reading.

    Updates `thermal` in place.
    """
    new_l, old_l = check_pair(new, old)
    e = energy(new_l, total_cells)
    delta = delta_swastika(new_l, old_l)
    load = thermal.update(e)
    latency = (time.perf_counter() - tick_start) * 1000.0
    return Metrics(delta_swastika=delta, latency=latency, energy=e, thermal_load=load)


def effective_delay(base_delay: float, thermal_load: float) -> float:
    """Tick delay (ms) with the quadratic thermal penalty above threshold."""
    if thermal_load <= THERMAL_THRESHOLD:
        return base_delay
    ramp = (thermal_load - THERMAL_THRESHOLD) / (1.0 - THERMAL_THRESHOLD)
    return base_delay + min(THERMAL_PENALTY_CAP, ramp * ramp * THERMAL_PENALTY_SCALE)
