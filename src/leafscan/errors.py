"""Error taxonomy for the classification pipeline.

Every stage raises its own subclass of ``LeafScanError`` and chains the
underlying cause. ``ModelLoadFailure`` is raised at session start-up; the
others are per request and end up as an error outcome.
"""

from __future__ import annotations


class LeafScanError(Exception):
    """Base class for all pipeline errors."""


class RenderFailure(LeafScanError):
    """The orientation-corrected canvas could not be produced."""


class ResizeFailure(LeafScanError):
    """The image could not be stretched to the requested size."""


class EncodeFailure(LeafScanError):
    """The pixel buffer could not be allocated or its format was rejected."""


class ModelLoadFailure(LeafScanError):
    """The model file is missing, corrupt, or incompatible with the runtime."""


class InferenceFailure(LeafScanError):
    """The runtime produced no usable scores for a buffer."""
