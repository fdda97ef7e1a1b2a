"""Core operator performance harness.

This package drives forward/backward runs of individual tensor operators
(activation, fused SGD momentum update, fully connected) on top of NumPy (CPU) or CuPy (GPU),
times them over fixed shape lists, normalizes the timings into a stable
project-owned `results.json` schema, and generates Markdown reports.
"""

from __future__ import annotations
