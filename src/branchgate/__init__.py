"""branchgate: session lifecycle management for multi-channel banking access."""

__version__ = "0.1.0"
