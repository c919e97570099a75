# elquest/process.py
"""Subprocess helper shared by the recipe repository and the build backend."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from elquest.logging import get_logger

logger = get_logger("process")


def safe_run(cmd: List[str], cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None, timeout: Optional[int] = None) -> Tuple[int, str, str]:
    """Run command and capture output. Returns (rc, stdout, stderr); 127 if it cannot start, 124 on timeout."""
    try:
        logger.debug("RUN: %s (cwd=%s)", " ".join(cmd), str(cwd) if cwd else None)
        p = subprocess.Popen(cmd, cwd=str(cwd) if cwd else None, stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=(env or os.environ), text=True)
    except OSError as e:
        return 127, "", str(e)
    try:
        out, err = p.communicate(timeout=timeout)
        return p.returncode, out or "", err or ""
    except subprocess.TimeoutExpired:
        p.kill()
        out, err = p.communicate()
        return 124, out or "", (err or "") + f"\ntimeout after {timeout}s"
