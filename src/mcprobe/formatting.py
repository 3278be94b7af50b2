"""Terminal rendering of Minecraft formatted text and status reports."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcprobe.fingerprint import FingerprintResult
    from mcprobe.response import StatusResponse

# Matches §x§R§R§G§G§B§B (RGB) or §X (single char code)
_MC_FORMAT_PATTERN = re.compile(r"§x(?:§[0-9A-Fa-f]){6}|§.")
_HEX_COLOR_PATTERN = re.compile(r"#[0-9A-Fa-f]{6}")

_ANSI_RESET = "\033[0m"

# Component colour names and the legacy code each one maps to
NAMED_COLORS: dict[str, str] = {
    "black": "0",
    "dark_blue": "1",
    "dark_green": "2",
    "dark_aqua": "3",
    "dark_red": "4",
    "dark_purple": "5",
    "gold": "6",
    "gray": "7",
    "dark_gray": "8",
    "blue": "9",
    "green": "a",
    "aqua": "b",
    "red": "c",
    "light_purple": "d",
    "yellow": "e",
    "white": "f",
}

# §k (obfuscated) has no terminal equivalent and is dropped.
_MC_TO_ANSI: dict[str, str] = {
    "0": "\033[30m",
    "1": "\033[34m",
    "2": "\033[32m",
    "3": "\033[36m",
    "4": "\033[31m",
    "5": "\033[35m",
    "6": "\033[33m",
    "7": "\033[37m",
    "8": "\033[90m",
    "9": "\033[94m",
    "a": "\033[92m",
    "b": "\033[96m",
    "c": "\033[91m",
    "d": "\033[95m",
    "e": "\033[93m",
    "f": "\033[97m",
    "l": "\033[1m",
    "m": "\033[9m",
    "n": "\033[4m",
    "o": "\033[3m",
    "r": _ANSI_RESET,
}
_COLOR_CODES = frozenset("0123456789abcdef")


def legacy_color_code(color: str) -> str:
    """Return the § sequence for a component colour name or ``#RRGGBB`` value.

    Unknown colour names yield an empty string.
    """
    if _HEX_COLOR_PATTERN.fullmatch(color):
        return "§x" + "".join(f"§{c}" for c in color[1:])
    code = NAMED_COLORS.get(color.lower())
    return f"§{code}" if code else ""


def strip_formatting(text: str) -> str:
    """Remove all § formatting codes from text."""
    return _MC_FORMAT_PATTERN.sub("", text)


def convert_formatting(text: str) -> str:
    """Convert § formatting codes to ANSI escape sequences.

    RGB colours become 24-bit ANSI colours. As in Minecraft, a colour code
    also resets any active style. A reset is appended when any formatting
    was emitted so the terminal is left clean.
    """
    emitted = [False]

    def _to_ansi(match: re.Match[str]) -> str:
        code = match.group(0)
        if code.startswith("§x"):
            digits = code[2:].replace("§", "")
            r, g, b = (int(digits[i : i + 2], 16) for i in (0, 2, 4))
            ansi = f"{_ANSI_RESET}\033[38;2;{r};{g};{b}m"
        else:
            char = code[1].lower()
            ansi = _MC_TO_ANSI.get(char, "")
            if char in _COLOR_CODES:
                ansi = _ANSI_RESET + ansi
        if ansi:
            emitted[0] = True
        return ansi

    result = _MC_FORMAT_PATTERN.sub(_to_ansi, text)
    return result + _ANSI_RESET if emitted[0] else result


def format_text(text: str, *, color: bool = True) -> str:
    """Prepare §-formatted text for the terminal, coloured or plain."""
    return convert_formatting(text) if color else strip_formatting(text)


def format_status_report(
    response: StatusResponse,
    fingerprint: FingerprintResult | None = None,
    *,
    color: bool = True,
) -> str:
    """Render a status response (and optional fingerprint) as aligned lines."""
    description = format_text(response.description.to_legacy(), color=color)
    sample = ", ".join(player.name for player in response.players.sample)

    lines = [
        f"version:         {format_text(response.version.name, color=color)}",
        f"protocol:        {response.version.protocol}",
        f"description:     {_indent(description)}",
        f"online players:  {response.players.online}",
        f"max players:     {response.players.max}",
        f"sample players:  {sample or '-'}",
    ]
    if response.latency is not None:
        lines.append(f"latency:         {response.latency}ms")
    lines.append(f"favicon:         {'yes' if response.favicon else 'no'}")
    if response.forge_data is not None:
        lines.append(f"forge mods:      {len(response.forge_data.mods)}")
    elif response.forge_mod_info is not None:
        lines.append(f"forge mods:      {len(response.forge_mod_info.mod_list)}")

    if fingerprint is not None:
        lines.append(f"software:        {fingerprint.label}")
        if fingerprint.reason is not None:
            lines.append(f"fingerprint:     {fingerprint.reason}")

    return "\n".join(lines)


def _indent(text: str) -> str:
    return text.replace("\n", "\n" + " " * 17)
