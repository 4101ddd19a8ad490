"""Transform chains between diffusion and reference spaces."""

from .provider import FileTransformProvider, StaticTransformProvider, TransformProvider
from .transform import (
    TO_MOVING,
    TO_REFERENCE,
    AffineLink,
    DisplacementFieldLink,
    StreamlineTransformer,
    TransformChain,
    TransformLink,
)

__all__ = [
    "TO_MOVING",
    "TO_REFERENCE",
    "AffineLink",
    "DisplacementFieldLink",
    "FileTransformProvider",
    "StaticTransformProvider",
    "StreamlineTransformer",
    "TransformChain",
    "TransformLink",
    "TransformProvider",
]
