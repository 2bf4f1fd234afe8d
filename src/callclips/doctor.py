from __future__ import annotations

import importlib.util
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional

from .config import WorkerConfig
from .utils import subprocess_flags


@dataclass(frozen=True)
class DoctorReport:
    ok: bool
    checks: Dict[str, Dict[str, object]]


def _version(cmd: str) -> str:
    try:
        out = subprocess.check_output([cmd, "-version"], text=True, stderr=subprocess.STDOUT, **subprocess_flags())
        return out.splitlines()[0].strip()
    except (OSError, subprocess.CalledProcessError) as e:
        return f"error: {type(e).__name__}: {e}"


def _tool_check(cmd: str) -> Dict[str, object]:
    path = shutil.which(cmd)
    return {"found": path is not None, "path": path, "version": _version(cmd) if path else None}


def run_doctor(config: Optional[WorkerConfig] = None) -> DoctorReport:
    checks: Dict[str, Dict[str, object]] = {
        "ffmpeg": _tool_check("ffmpeg"),
        "ffprobe": _tool_check("ffprobe"),
    }

    if importlib.util.find_spec("openai") is not None:
        checks["openai"] = {"installed": True}
    else:
        checks["openai"] = {"installed": False, "note": "Install with: pip install openai"}

    if config is not None:
        checks["recordings_dir"] = {
            "path": str(config.recordings_dir),
            "exists": config.recordings_dir.is_dir(),
        }
        checks["state_file"] = {
            "path": str(config.state_file),
            "writable_dir": config.state_file.parent.is_dir() or not config.state_file.parent.exists(),
        }
        checks["ai"] = {"enabled": config.ai_enabled}

    ok = bool(checks["ffmpeg"]["found"] and checks["ffprobe"]["found"])
    if config is not None:
        ok = ok and bool(checks["recordings_dir"]["exists"])
    return DoctorReport(ok=ok, checks=checks)
