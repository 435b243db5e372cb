#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Multi-Lab Analysis Pipeline Entry Point

Runs the complete design-validation pipeline from a source checkout.
See multilab/pipeline.py for stages and options.

Usage:
    python pipelines/run_multilab_analysis.py
    python pipelines/run_multilab_analysis.py --n-labs 20 --seed 7 --n-jobs 4
    python pipelines/run_multilab_analysis.py --dry-run
"""

import sys
from pathlib import Path

# Add project root to path (pipelines/ is one level below root)
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from multilab.pipeline import main


if __name__ == '__main__':
    sys.exit(main())
