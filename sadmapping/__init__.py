"""Keyframe pose-graph optimisation, NDT loop closure and point-cloud map export."""

__version__ = "0.1.0"