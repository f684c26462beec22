from __future__ import annotations

import json
from typing import Any, Dict, List, Tuple


def _strip_comment(line: str) -> str:
    quote = ""
    for pos, ch in enumerate(line):
        if quote:
            if ch == quote:
                quote = ""
        elif ch in {'"', "'"}:
            quote = ch
        elif ch == "#" and (pos == 0 or line[pos - 1] in " \t"):
            return line[:pos].rstrip()
    return line.rstrip()


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def _collect_list(lines: List[str], start: int, indent: int) -> Tuple[List[str], int]:
    items: List[str] = []
    j = start
    while j < len(lines):
        nxt = lines[j]
        nxt_indent = len(nxt) - len(nxt.lstrip(" "))
        nxt_stripped = nxt.strip()
        if nxt_indent <= indent or not nxt_stripped.startswith("-"):
            break
        items.append(_unquote(nxt_stripped[1:].strip()))
        j += 1
    return items, j


def parse_minimal_yaml(text: str) -> Dict[str, Any]:
    """Parse the minimal YAML subset used by sfdelta config files.

    Supports:
    - Nested mappings by indentation (2 spaces)
    - Lists ("- item") and inline empty lists ("[]")
    - Scalar strings (quotes trimmed)

    This is not a general YAML parser.
    """

    raw_lines = [ln for ln in (_strip_comment(l) for l in text.splitlines()) if ln.strip()]
    root: Dict[str, Any] = {}
    stack: List[Tuple[int, Dict[str, Any]]] = [(0, root)]

    i = 0
    while i < len(raw_lines):
        line = raw_lines[i]
        indent = len(line) - len(line.lstrip(" "))
        stripped = line.strip()

        while stack and indent < stack[-1][0]:
            stack.pop()
        if not stack:
            raise ValueError("Invalid indentation")
        cur = stack[-1][1]

        if stripped.startswith("-"):
            raise ValueError(f"Unexpected list item: {line}")

        if ":" not in stripped:
            raise ValueError(f"Invalid line (expected key: value): {line}")

        key, rest = stripped.split(":", 1)
        key = _unquote(key.strip())
        rest = rest.strip()

        if rest == "":
            items, j = _collect_list(raw_lines, i + 1, indent)
            if items:
                cur[key] = items
                i = j
                continue

            # Empty value followed by deeper keys starts a nested mapping;
            # otherwise it is an empty mapping.
            new_map: Dict[str, Any] = {}
            cur[key] = new_map
            stack.append((indent + 2, new_map))
            i += 1
            continue

        if rest == "[]":
            cur[key] = []
        else:
            cur[key] = _unquote(rest)
        i += 1

    return root


def parse_json_object(text: str) -> Dict[str, Any]:
    obj = json.loads(text)
    if not isinstance(obj, dict):
        raise ValueError("expected a JSON object")
    return obj


def parse_config_text(text: str, *, suffix: str = "") -> Dict[str, Any]:
    """Parse JSON or minimal YAML by file suffix; unknown suffix tries YAML then JSON."""

    suffix = suffix.lower()
    if suffix == ".json":
        return parse_json_object(text)
    if suffix in {".yaml", ".yml"}:
        return parse_minimal_yaml(text)
    if text.lstrip().startswith("{"):
        return parse_json_object(text)
    try:
        return parse_minimal_yaml(text)
    except ValueError:
        return parse_json_object(text)
