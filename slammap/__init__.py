"""Keyframes, map points, covisibility graph, keyframe database and loop detection for visual SLAM."""

__version__ = "0.1.0"