#!/usr/bin/env python3
"""Development runner"""
import sys
from nightbackup.cli import main

if __name__ == '__main__':
    sys.exit(main())
