from __future__ import annotations
import os
from pathlib import Path

BRINGUP_HOME = Path(os.environ.get("BRINGUP_HOME", ".bringup"))
STATE_URL = os.environ.get("BRINGUP_STATE_URL", f"sqlite:///{BRINGUP_HOME / 'state.db'}")
LOG_DIR = Path(os.environ.get("BRINGUP_LOG_DIR", str(BRINGUP_HOME / "logs")))
LEASE_SECONDS = int(os.environ.get("BRINGUP_LEASE_SECONDS", "21600"))
SSH_CONNECT_TIMEOUT = float(os.environ.get("BRINGUP_SSH_CONNECT_TIMEOUT", "20"))
