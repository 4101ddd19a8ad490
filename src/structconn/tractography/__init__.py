"""Tractography engines and seeding."""

from .base import TrackingParameters, TractographyEngine, build_seed_mask
from .camino import CaminoError, CaminoTrackEngine, check_camino_available

__all__ = [
    "CaminoError",
    "CaminoTrackEngine",
    "TrackingParameters",
    "TractographyEngine",
    "build_seed_mask",
    "check_camino_available",
]
