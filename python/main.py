#!/usr/bin/env python3
"""Run manifest-sync from a source checkout: python python/main.py [opts] registrydomain"""

import sys

from manifest_sync.cli import main

if __name__ == "__main__":
    sys.exit(main())
