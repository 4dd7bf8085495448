"""System prompt for a fresh conversation."""
from __future__ import annotations

import datetime
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

POWERSHELL = "Powershell"
POSIX = "POSIX"

_POWERSHELL_VARS = ("POWERSHELL_DISTRIBUTION_CHANNEL", "PSModulePath", "PSExecutionPolicyPreference")
_POSIX_VARS = ("SHELL", "BASH_VERSION", "ZSH_VERSION", "FISH_VERSION")
_POWERSHELL_NAMES = {"pwsh", "powershell", "pwsh.exe", "powershell.exe"}


def _parent_process_name() -> str | None:
    """Name of the parent process on Linux, else None."""
    try:
        stat = Path("/proc/self/stat").read_text()
        # The command name may contain spaces; fields resume after ')'.
        ppid = int(stat.rsplit(")", 1)[1].split()[1])
        return Path(f"/proc/{ppid}/comm").read_text().strip()
    except (OSError, ValueError, IndexError):
        return None


def detect_shell_kind(environ: dict[str, str] | None = None) -> str:
    """Guess whether commands run under PowerShell or a POSIX shell."""
    env = os.environ if environ is None else environ
    if any(name in env for name in _POWERSHELL_VARS):
        return POWERSHELL
    if any(name in env for name in _POSIX_VARS):
        return POSIX
    if sys.platform == "win32":
        return POWERSHELL
    if _parent_process_name() in _POWERSHELL_NAMES:
        return POWERSHELL
    return POSIX


def build_system_prompt(shell: str, today: datetime.date | None = None) -> str:
    date = (today or datetime.date.today()).isoformat()
    return (
        "Help the user with their tasks.\n"
        "IMPORTANT: This is a one-way conversation - the user cannot reply to your messages.\n"
        "Guidelines:\n"
        "• You don't need to ask for permission to use the tools available to you\n"
        "• Use the current directory as working directory unless otherwise specified\n"
        "• Follow the conventions that the user uses.\n"
        "   • Example: If the user asks you to generate a commit message, look at other "
        "commits and generate a message that is similar to them.\n"
        "   • If you don't know the answer, try to figure it out based on the information "
        "available to you.\n"
        f"• Ensure shell commands are compatible with {shell}\n"
        f"• Today's date is {date}.\n"
        "• Format all responses in markdown for readability\n"
    )
