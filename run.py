"""Launcher for the Backup Warden.

Watches one folder and keeps hourly snapshots of it in every configured
backup location, pruning daily snapshots past the retention window while
keeping one snapshot per month.

Usage:
    python run.py
    python run.py --config config/config.json --log-level DEBUG
"""

import sys

from backup_warden.service import main

if __name__ == "__main__":
    sys.exit(main())
