from __future__ import annotations

from pathlib import Path

_QUOTES = ('"', "'")


def load_dotenv(path: Path) -> dict[str, str]:
    """
    Read `KEY=VALUE` pairs (optionally prefixed with `export`) from a .env file.

    Quotes around a value are dropped; `#` lines and malformed lines are skipped;
    nothing is expanded. The result is returned, never written to os.environ.
    A missing file yields an empty dict.
    """
    if not path.is_file():
        return {}

    pairs: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line.startswith("export "):
            line = line[7:].lstrip()
        key, sep, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key or key.startswith("#"):
            continue
        if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
            value = value[1:-1]
        pairs[key] = value
    return pairs
