"""
NMES Pilot Analysis Pipeline - Standalone Script
================================================
Loads NMES.xlsx, fits the mixed models, runs the acceptability tests and
writes all tables and figures under outputs/.

Usage:
    cd <study folder containing NMES.xlsx>
    python -m nmes_analysis.run_analysis
"""

from .nmes_config import load_config
from .analysis_pipeline import run_pipeline


def main():
    """Main analysis pipeline."""
    config, data_root, _ = load_config()
    run_pipeline(config, data_root)


if __name__ == "__main__":
    main()
