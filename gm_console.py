# Module: gm_console.py
# Part of Groupmatic
#
# Operator-facing prints (not logs). Colours off for NO_COLOR / pipes / --mono.

import os
import sys

from colorama import Fore, Style, init as _cinit

_cinit()

_COLOR_MONO = False


def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)


def fncWantColor(stream=sys.stdout) -> bool:
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


def fncColor(text: str, *styles: str) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor() or not styles:
        return text
    m = {
        "red": Fore.RED, "green": Fore.GREEN, "yellow": Fore.YELLOW, "cyan": Fore.CYAN,
        "magenta": Fore.MAGENTA, "white": Fore.WHITE, "gray": Fore.LIGHTBLACK_EX,
        "bold": Style.BRIGHT,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{Style.RESET_ALL}"


# Function: fncPrintMessage
# Purpose : Human-friendly coloured console messages.
# Notes   : info/success/warning/error; errors go to stderr.
def fncPrintMessage(message: str, msg_type: str = "info"):
    styles = {
        "info":    ("[*] ", "cyan"),
        "success": ("[+] ", "green"),
        "warning": ("[!] ", "yellow"),
        "error":   ("[-] ", "red"),
    }
    tag, colour = styles.get(msg_type, ("    ", "white"))
    stream = sys.stderr if msg_type == "error" else sys.stdout
    print(fncColor(tag, colour) + message, file=stream)


def fncHeading(msg: str):
    print(fncColor(msg, "magenta", "bold"))


def fncAskYesNo(prompt: str, default_yes: bool = False) -> bool:
    hint = "Y/n" if default_yes else "y/N"
    while True:
        ans = input(f"{fncColor(prompt, 'cyan', 'bold')} {fncColor(f'[{hint}]', 'gray')}: ").strip().lower()
        if not ans:
            return default_yes
        if ans in ("y", "yes"):
            return True
        if ans in ("n", "no"):
            return False
        fncPrintMessage("Please answer y or n.", "warning")
