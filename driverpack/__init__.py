"""
DriverPack Fetcher - vendor driver/firmware download orchestration

Runs the bundled HP, Lenovo and Dell download scripts as external processes.

Features:
- Per-vendor configuration with live hot-reload
- Temp-script materialization with guaranteed cleanup
- Live streamed output and safe cancellation

Quick Start:
    pip install -e .
    driverpack run Dell --model "Latitude 5440"
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
