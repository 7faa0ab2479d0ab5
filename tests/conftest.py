import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from topopt_state.core.config import MeshConfig, ProblemConfig, RestartConfig, TOConfig  # noqa: E402


@pytest.fixture
def small_config(tmp_path):
    """4x2x2 unit-spaced grid, serial, restart files under tmp_path."""
    return ProblemConfig(
        mesh=MeshConfig(extent=[0.0, 4.0, 0.0, 2.0, 0.0, 2.0], resolution=[4, 2, 2], nlvls=1),
        to=TOConfig(volfrac=0.5, filter="linear", max_iter=6),
        restart=RestartConfig(directory=str(tmp_path / "restart")),
    )
