# agentrelay/ui/colors.py
"""
ANSI palette for the terminal client.
"""

import os
import sys

# ═══════════════════════════════════════════════════════════════
# PALETTE
# ═══════════════════════════════════════════════════════════════

NEON_PURPLE = "\033[38;5;165m"
BRIGHT_MAGENTA = "\033[38;5;201m"
ELECTRIC_CYAN = "\033[38;5;51m"
DEEP_CYAN = "\033[38;5;39m"
DARK_GRAY = "\033[38;5;240m"
MID_GRAY = "\033[38;5;250m"
GLITCH_RED = "\033[38;5;196m"
GLITCH_GREEN = "\033[38;5;46m"
NEON_YELLOW = "\033[38;5;226m"

BOLD = "\033[1m"
DIM = "\033[2m"
ITALIC = "\033[3m"
RESET = "\033[0m"

# ═══════════════════════════════════════════════════════════════
# EVENT ROLES
# ═══════════════════════════════════════════════════════════════

USER_FG = f"{BOLD}{ELECTRIC_CYAN}"
ASSISTANT_FG = BRIGHT_MAGENTA
THINKING_FG = f"{DIM}{ITALIC}{MID_GRAY}"
TOOL_FG = DEEP_CYAN
TOOL_ERROR_FG = GLITCH_RED
STDERR_FG = DARK_GRAY
ERROR_FG = f"{BOLD}{GLITCH_RED}"
SUCCESS_FG = GLITCH_GREEN
WARNING_FG = NEON_YELLOW
MUTED_FG = MID_GRAY
BRAND_FG = NEON_PURPLE


def color_enabled(stream=None) -> bool:
    """Colors only on a TTY, and never when NO_COLOR is set."""
    stream = stream or sys.stdout
    if os.environ.get("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def colorize(text: str, color: str, enabled: bool = True) -> str:
    if not enabled or not color:
        return text
    return f"{color}{text}{RESET}"
