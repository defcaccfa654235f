#!/usr/bin/env python3
"""
gMSA Provisioner
Main entry point for the command line runbook
"""

import sys

from gmsa_provisioner.cli import main

if __name__ == "__main__":
    sys.exit(main())
