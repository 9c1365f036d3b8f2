"""
Entry point for running the spine as a module: python -m docspine
"""

import sys
from docspine.cli import main

if __name__ == "__main__":
    sys.exit(main())
