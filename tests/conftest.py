import random
import sys
from pathlib import Path

# Ensure the top-level modules import without an install
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import numpy as np
import pytest


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def fixed_source():
    """Deterministic transform source for replayable ticks."""
    r = random.Random(7)
    return lambda: r.randrange(8)
