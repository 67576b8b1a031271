"""
NMES Rehabilitation Pilot Analysis Package
==========================================
Analysis pipeline for the pilot study comparing usual-care rehabilitation
with and without neuromuscular electrical stimulation (NMES) in
hospitalised older adults.
"""

from pathlib import Path

# Package root directory
PACKAGE_DIR = Path(__file__).resolve().parent

__version__ = "1.0.0"
