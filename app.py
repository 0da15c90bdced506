#!/usr/bin/env python3
"""
DEX Price Streamer - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
- Compatible with PM2 / systemd process management
- Can be started, stopped, and restarted safely
- SIGINT / SIGTERM trigger a graceful stop with a final flush

============================================================
USAGE
============================================================
Direct execution:
    python app.py
    python app.py --dry-run --log-level DEBUG

With PM2:
    pm2 start app.py --interpreter python --name dex-price-streamer

Environment-based configuration:
    PAIRS=solana:So1...:SOL/USDC LEDGER_URL=... python app.py

============================================================
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
