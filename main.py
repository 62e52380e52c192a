"""
TagForge - Image Classification Model Lifecycle
===============================================

Launcher for running TagForge from a source checkout without installing it.
Equivalent to the ``tagforge`` console script.
"""

import os
import sys

# Ensure the repository root is on the module search path so 'tagforge'
# imports resolve regardless of where the script is executed from.
current_dir = os.path.dirname(os.path.abspath(__file__))
if current_dir not in sys.path:
    sys.path.insert(0, current_dir)

from tagforge.cli import main

if __name__ == "__main__":
    sys.exit(main())
