"""ANSI colors for headless output."""

RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
RESET = "\033[0m"


def paint(text: str, color: str) -> str:
    return f"{color}{text}{RESET}"


def red(text: str) -> str:
    return paint(text, RED)


def green(text: str) -> str:
    return paint(text, GREEN)


def yellow(text: str) -> str:
    return paint(text, YELLOW)


def cyan(text: str) -> str:
    return paint(text, CYAN)
