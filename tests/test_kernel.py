import numpy as np
import pytest

from torus import (
    DEFAULT_CORE_GRID,
    Gate,
    LatticeShapeError,
    apply_face,
    apply_gate,
    check_core,
    memory_gate,
    mirror,
    mirror_index,
    not_gate,
    threshold_gate,
    xor_gate,
)

CORES = [
    DEFAULT_CORE_GRID,
    [[6, 3, 6], [3, 4, 3], [6, 3, 6]],
    [[3, 4, 5], [6, 3, 4], [5, 6, 3]],
]


def test_mirror_index_map():
    assert [mirror_index(d) for d in range(9)] == [2, 1, 0, 0, 1, 2, 2, 1, 0]


@pytest.mark.parametrize("core", CORES)
def test_mirror_centre_is_core(core):
    face = mirror(core)
    assert face.shape == (9, 9)
    for i in range(3):
        for j in range(3):
            assert face[i + 3][j + 3] == core[i][j]


@pytest.mark.parametrize("core", CORES)
def test_mirror_cells_reflect_centre_block(core):
    face = mirror(core)
    for i in range(9):
        for j in range(9):
            assert face[i][j] == face[3 + mirror_index(i)][3 + mirror_index(j)]


def test_mirror_blocks_are_reflections_not_tiles():
    core = np.array(CORES[2])
    face = mirror(core)
    assert np.array_equal(face[0:3, 0:3], core[::-1, ::-1])
    assert np.array_equal(face[0:3, 3:6], core[::-1, :])
    assert np.array_equal(face[3:6, 0:3], core[:, ::-1])
    assert np.array_equal(face[6:9, 6:9], core[::-1, ::-1])
    assert not np.array_equal(face[0:3, 0:3], core)


def test_mirror_default_not_positions():
    face = mirror(DEFAULT_CORE_GRID)
    nots = {(int(i), int(j)) for i, j in zip(*np.nonzero(face == Gate.NOT))}
    assert nots == {(r, c) for r in (1, 4, 7) for c in (1, 4, 7)}


def test_check_core_rejects_bad_input():
    with pytest.raises(LatticeShapeError):
        check_core([[3, 4], [5, 6]])
    with pytest.raises(LatticeShapeError):
        check_core([[3, 4, 3], [5, 7, 5], [3, 4, 3]])


# sum -> output, rows as in the published rule table
RULE_TABLE = [
    (Gate.XOR, 0, [0, 1, 0, 1]),
    (Gate.THRESHOLD, 0, [0, 0, 1, 1]),
    (Gate.MEMORY, 0, [0, 1, 0, 0]),
    (Gate.MEMORY, 1, [1, 1, 0, 0]),
    (Gate.NOT, 0, [1, 0, 0, 0]),
]


@pytest.mark.parametrize("gate,state,expected", RULE_TABLE)
def test_gate_rule_table(gate, state, expected):
    got = [int(apply_gate(gate, s, state)) for s in range(4)]
    assert got == expected


def test_gate_rules_on_negative_sums():
    # lagrangian sums can go below zero
    assert int(xor_gate(-3)) == 0
    assert int(threshold_gate(-1)) == 0
    assert int(not_gate(-1)) == 0
    assert int(memory_gate(-2, 1)) == 1


def test_gate_rules_vectorise():
    s = np.array([0, 1, 2, 3, 4, 5])
    assert xor_gate(s).tolist() == [0, 1, 0, 1, 0, 1]
    assert threshold_gate(s).tolist() == [0, 0, 1, 1, 1, 1]
    assert not_gate(s).tolist() == [1, 0, 0, 0, 0, 0]
    state = np.array([1, 1, 1, 0, 0, 0])
    assert memory_gate(s, state).tolist() == [1, 1, 0, 0, 0, 0]


@pytest.mark.parametrize("code", [0, 2, 7, 99, -1])
def test_unknown_gate_code_keeps_state(code):
    assert apply_gate(code, 1, 0) == 0
    assert apply_gate(code, 0, 1) == 1


def test_apply_face_uses_column_gate_on_every_layer():
    face = np.full((9, 9), Gate.NOT, dtype=np.int16)
    face[2, 5] = Gate.THRESHOLD
    face[0, 0] = 0  # unknown: pass-through
    state = np.zeros((9, 9, 6), dtype=np.uint8)
    state[0, 0, :3] = 1
    sums = np.zeros((9, 9, 6), dtype=np.int64)
    sums[2, 5, :] = 2

    out = apply_face(face, sums, state)

    assert out[2, 5, :].tolist() == [1] * 6
    assert out[0, 0, :].tolist() == [1, 1, 1, 0, 0, 0]
    assert out[4, 4, :].tolist() == [1] * 6
    assert out.dtype == np.uint8
