"""
Shared test fixtures for structural connectivity tests.

Synthetic data builders live in ``phantoms.py``; this module wraps them in
fixtures and handles the Camino availability marker.
"""

import pytest
from phantoms import (
    CORTEX_LABEL,
    LEFT_NODE,
    RIGHT_NODE,
    WM_LABEL,
    FakeEngine,
    make_phantom,
    phantom_streamlines,
    write_label_csv,
)

from structconn.core.volume import save_volume
from structconn.pipeline import SessionInputs


def _check_camino_available():
    """Check if Camino is available for tests."""
    try:
        from structconn.tractography.camino import check_camino_available

        check_camino_available()
        return True
    except Exception:
        return False


# Cache the availability check to avoid repeated calls
_CAMINO_AVAILABLE = None


def pytest_configure(config):
    """Cache availability checks at pytest startup."""
    global _CAMINO_AVAILABLE
    _CAMINO_AVAILABLE = _check_camino_available()


def pytest_collection_modifyitems(config, items):
    """Skip tests that require unavailable dependencies."""
    for item in items:
        if "requires_camino" in [m.name for m in item.iter_markers()]:
            if not _CAMINO_AVAILABLE:
                item.add_marker(pytest.mark.skip(reason="Camino not available"))


@pytest.fixture
def phantom():
    """Synthetic brain volumes and label definitions."""
    return make_phantom()


@pytest.fixture
def fake_engine():
    """Engine producing the phantom streamlines."""
    return FakeEngine(phantom_streamlines())


@pytest.fixture
def session_inputs(tmp_path, phantom):
    """Phantom written to disk as one session."""
    inputs = tmp_path / "inputs"
    inputs.mkdir()

    save_volume(phantom.label_volume, inputs / "labels.nii.gz")
    save_volume(phantom.node_volume, inputs / "nodes.nii.gz")
    save_volume(phantom.fa, inputs / "fa.nii.gz")
    save_volume(phantom.tensor, inputs / "dt.nii.gz")

    write_label_csv(inputs / "cortical.csv", [(CORTEX_LABEL, "cortex")])
    write_label_csv(inputs / "wm.csv", [(WM_LABEL, "white_matter")])
    write_label_csv(
        inputs / "nodes.csv", [(LEFT_NODE, "left_cortex"), (RIGHT_NODE, "right_cortex")]
    )

    return SessionInputs(
        subject="sub-01",
        timepoint="tp1",
        output_dir=tmp_path / "out",
        label_volume=inputs / "labels.nii.gz",
        cortical_labels=inputs / "cortical.csv",
        wm_labels=inputs / "wm.csv",
        anisotropy=inputs / "fa.nii.gz",
        tensor=inputs / "dt.nii.gz",
        node_labels=inputs / "nodes.csv",
        node_volume=inputs / "nodes.nii.gz",
    )
