"""Text patterns for classifying an agent's terminal output.

Only the bottom of the buffer matters: prompts that scrolled away were
already answered. Permission and question checks look at the last
``PROMPT_WINDOW`` lines, idle checks at the last ``IDLE_WINDOW`` non-empty
lines.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

PROMPT_WINDOW = 15
IDLE_WINDOW = 5

ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

PERMISSION_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("bash", re.compile(r"Allow (?:Bash|command|shell)\b.*\?", re.IGNORECASE)),
    ("file", re.compile(r"Allow (?:Edit|Write|Read|file|reading|writing|editing)\b.*\?", re.IGNORECASE)),
    ("mcp", re.compile(r"Allow (?:MCP|tool)\b.*\?", re.IGNORECASE)),
    (
        "generic",
        re.compile(
            r"^(?:Allow|Confirm|Approve)\s+(?:this|the|once|always)?\s*\w*\s*\?",
            re.IGNORECASE | re.MULTILINE,
        ),
    ),
    (
        "proceed",
        re.compile(r"Do you want to (?:proceed|make this edit|create|run|allow)\b[^?\n]*\?", re.IGNORECASE),
    ),
)

MENU_OPTION_RE = re.compile(r"^\s*(?:[❯>]\s*)?\d+\.\s+\S")
MENU_SELECTOR_RE = re.compile(r"^\s*[❯>]\s*\d+\.\s+\S")
QUESTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Would you like to proceed\?", re.IGNORECASE),
    re.compile(r"\?\s*\[[YyNn]/[YyNn]\]\s*$", re.MULTILINE),
)

# Agent input boxes are followed by footer lines, so these may sit anywhere
# in the last IDLE_WINDOW lines.
IDLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[>❯]\s*$"),
    re.compile(r"\|\s*idle\s*$", re.IGNORECASE),
    re.compile(r"^(?:Enter|Input|Type|Provide)\b.*:\s*$", re.IGNORECASE),
)

# A shell prompt only counts as the very last line: ``$``, ``user@host:~/repo$``,
# ``[user@host repo]#``. Bare progress figures such as ``50%`` are excluded.
SHELL_PROMPT_RE = re.compile(r"^(?!\d+(?:\.\d+)?%$)(?:\[[^\]\n]*\]|[\w.@:~/+-]*)[$#%]$")

WORKING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"esc to interrupt", re.IGNORECASE),
    re.compile(r"(?:Thinking|Processing|Loading|Working)(?:\.\.\.|…)"),
    re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]"),
)

_BOX_EDGE = "│┃|"
_LABELLED_RE = re.compile(r"^(Command|Bash|File|Path)\s*:\s*(.+)$", re.IGNORECASE)
_TOOL_CALL_RE = re.compile(r"^(?:[●⏺•]\s*)?([A-Z][A-Za-z0-9_]*|mcp(?:__[\w-]+)+)\((.*)\)\s*$")
_HEADER_TOOLS = ("Bash", "Edit", "Write", "Read", "MultiEdit", "NotebookEdit", "WebFetch")
_CANONICAL_TOOL = {name.lower(): name for name in _HEADER_TOOLS}
_HEADER_RE = re.compile(r"^(" + "|".join(_HEADER_TOOLS) + r")\s+(?:command|file|url)s?$", re.IGNORECASE)
_DEFAULT_TOOL = {"bash": "Bash", "file": "Edit", "mcp": "mcp"}


@dataclass(frozen=True, slots=True)
class PermissionDetails:
    kind: str
    tool_name: str
    parameter_text: str


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def _clean(line: str) -> str:
    return line.strip().strip(_BOX_EDGE).strip()


def clean_lines(output: str) -> list[str]:
    """ANSI-free lines with box-drawing edges removed."""

    return [_clean(line) for line in strip_ansi(output).splitlines()]


def _tail(lines: list[str], count: int) -> list[str]:
    while lines and not lines[-1]:
        lines = lines[:-1]
    return lines[-count:]


def _permission_kind(line: str) -> str | None:
    for kind, pattern in PERMISSION_PATTERNS:
        if pattern.search(line):
            return kind
    return None


def is_permission_prompt(output: str) -> bool:
    return any(_permission_kind(line) for line in _tail(clean_lines(output), PROMPT_WINDOW))


def is_question_prompt(output: str) -> bool:
    tail = _tail(clean_lines(output), PROMPT_WINDOW)
    options = [line for line in tail if MENU_OPTION_RE.match(line)]
    if len(options) >= 2 and any(MENU_SELECTOR_RE.match(line) for line in options):
        return True
    text = "\n".join(tail)
    return any(pattern.search(text) for pattern in QUESTION_PATTERNS)


def is_working(output: str) -> bool:
    text = "\n".join(_tail(clean_lines(output), PROMPT_WINDOW))
    return any(pattern.search(text) for pattern in WORKING_PATTERNS)


def ends_with_idle_prompt(output: str) -> bool:
    lines = [line for line in clean_lines(output) if line and not set(line) <= set("─━═-╭╮╰╯")]
    if not lines:
        return False
    if SHELL_PROMPT_RE.match(lines[-1]):
        return True
    for line in lines[-IDLE_WINDOW:]:
        if any(pattern.search(line) for pattern in IDLE_PATTERNS):
            return True
    return False


def extract_permission(output: str) -> PermissionDetails | None:
    """Return the tool and parameter shown above the bottom-most permission prompt."""

    lines = _tail(clean_lines(output), PROMPT_WINDOW * 2)
    prompt_index = None
    kind = None
    for index in range(len(lines) - 1, -1, -1):
        kind = _permission_kind(lines[index])
        if kind:
            prompt_index = index
            break
    if prompt_index is None or kind is None:
        return None

    context = [line for line in lines[max(0, prompt_index - 8) : prompt_index] if line]
    for line in reversed(context):
        match = _TOOL_CALL_RE.match(line)
        if match:
            return PermissionDetails(kind, match.group(1), match.group(2).strip())
    for index, line in enumerate(context):
        match = _HEADER_RE.match(line)
        if match:
            parameter = context[index + 1] if index + 1 < len(context) else ""
            return PermissionDetails(kind, _CANONICAL_TOOL[match.group(1).lower()], parameter)
    for line in reversed(context):
        match = _LABELLED_RE.match(line)
        if match:
            label = match.group(1).lower()
            tool = "Bash" if label in {"command", "bash"} else _DEFAULT_TOOL.get(kind, "Edit")
            return PermissionDetails(kind, tool, match.group(2).strip())
    return PermissionDetails(kind, _DEFAULT_TOOL.get(kind, "unknown"), "")


__all__ = [
    "PermissionDetails",
    "clean_lines",
    "ends_with_idle_prompt",
    "extract_permission",
    "is_permission_prompt",
    "is_question_prompt",
    "is_working",
    "strip_ansi",
]
