"""JSON handling for resource payloads.

Payload bytes are stored exactly as the client sent them. Request bodies are
split into their top-level members without re-encoding any member, so key
order, whitespace and number precision inside ``data`` survive untouched.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, Tuple

_WHITESPACE = " \t\n\r"


class PayloadError(ValueError):
    """Raised when bytes that should hold JSON do not."""


def _reject_constant(name: str) -> Any:
    raise PayloadError(f"{name} is not valid JSON")


# floats as Decimal so large exponents stay finite
_DECODER = json.JSONDecoder(parse_float=Decimal, parse_constant=_reject_constant)


def _skip_ws(text: str, idx: int) -> int:
    while idx < len(text) and text[idx] in _WHITESPACE:
        idx += 1
    return idx


def _value_at(text: str, idx: int) -> Tuple[Any, int]:
    try:
        return _DECODER.raw_decode(text, idx)
    except json.JSONDecodeError as exc:
        raise PayloadError(f"Invalid JSON at offset {exc.pos}: {exc.msg}") from exc
    except RecursionError as exc:
        raise PayloadError(f"JSON nested too deeply at offset {idx}") from exc


def split_object(raw: bytes) -> Dict[str, Tuple[Any, bytes]]:
    """Parse a JSON object into ``name -> (value, member bytes)``.

    Only the top level is split. Each member's bytes are the exact span sent
    by the client. A repeated name keeps its last occurrence.
    """
    try:
        text = bytes(raw).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PayloadError("Body is not valid UTF-8") from exc
    idx = _skip_ws(text, 0)
    if idx >= len(text) or text[idx] != "{":
        raise PayloadError("Body must be a JSON object")
    members: Dict[str, Tuple[Any, bytes]] = {}
    idx = _skip_ws(text, idx + 1)
    if idx < len(text) and text[idx] == "}":
        end = idx + 1
    else:
        while True:
            if idx >= len(text) or text[idx] != '"':
                raise PayloadError(f"Expected member name at offset {idx}")
            name, idx = _value_at(text, idx)
            idx = _skip_ws(text, idx)
            if idx >= len(text) or text[idx] != ":":
                raise PayloadError(f"Expected ':' at offset {idx}")
            start = _skip_ws(text, idx + 1)
            value, idx = _value_at(text, start)
            members[name] = (value, text[start:idx].encode("utf-8"))
            idx = _skip_ws(text, idx)
            if idx < len(text) and text[idx] == ",":
                idx = _skip_ws(text, idx + 1)
                continue
            if idx < len(text) and text[idx] == "}":
                end = idx + 1
                break
            raise PayloadError(f"Expected ',' or '}}' at offset {idx}")
    if _skip_ws(text, end) != len(text):
        raise PayloadError(f"Unexpected data after the object at offset {end}")
    return members


def decode_payload(raw: bytes) -> Any:
    try:
        return json.loads(bytes(raw).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadError(f"Stored payload is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise PayloadError("Stored payload is nested too deeply") from exc
