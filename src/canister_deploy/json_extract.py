from __future__ import annotations

import json
import re


class JsonExtractError(ValueError):
    pass


_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_CODE_FENCE_RE = re.compile(r"```(?:motoko|mo)?[ \t]*\r?\n(.*?)```", re.DOTALL | re.IGNORECASE)
_BARE_SOURCE_RE = re.compile(r"^\s*(?:import\s|(?:persistent\s+)?actor\b|//|/\*)")

# Keys the rewrite prompt asks for, plus the spellings models drift to.
_CODE_KEYS = ("canisterCode", "canister_code", "code", "source")

_decoder = json.JSONDecoder()


def extract_json_value(text: str) -> object:
    """
    Decode the first JSON document in a model reply.

    The reply may be bare JSON, fenced in ```json, or surrounded by prose; in
    the last case decoding starts at each `{` or `[` in turn.
    """
    m = _JSON_FENCE_RE.search(text)
    body = (m.group(1) if m else text).strip()
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        pass

    for i, ch in enumerate(body):
        if ch not in "{[":
            continue
        try:
            value, _ = _decoder.raw_decode(body, i)
        except json.JSONDecodeError:
            continue
        return value
    raise JsonExtractError("no JSON found in model output")


def extract_canister_code(text: str) -> str:
    """
    Pull Motoko source out of a model reply.

    Accepts, in order:
      - JSON object with the code under `canisterCode` (or a close spelling)
      - a ```motoko / ```mo / bare ``` fenced block containing an actor
      - the bare source itself (starts with an import, an actor or a comment)
    """
    try:
        v = extract_json_value(text)
    except JsonExtractError:
        v = None
    if isinstance(v, dict):
        for key in _CODE_KEYS:
            code = v.get(key)
            if isinstance(code, str) and code.strip():
                return code.strip() + "\n"

    for m in _CODE_FENCE_RE.finditer(text):
        block = m.group(1).strip()
        if "actor" in block:
            return block + "\n"

    if "actor" in text and _BARE_SOURCE_RE.match(text):
        return text.strip() + "\n"

    raise JsonExtractError("no canister source found in model output")
