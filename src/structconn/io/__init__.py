"""
Input/Output for streamline files and session outputs.

Provides functions for:
- Reading and writing Camino Bfloat streamlines
- Exporting connectivity matrices, label order and volumes
"""

from .camino import read_bfloat, write_bfloat
from .export import (
    export_label_order,
    export_matrix,
    export_volume,
    load_matrix_csv,
    session_prefix,
)

__all__ = [
    "export_label_order",
    "export_matrix",
    "export_volume",
    "load_matrix_csv",
    "read_bfloat",
    "session_prefix",
    "write_bfloat",
]
