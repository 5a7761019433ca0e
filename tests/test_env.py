from __future__ import annotations

from pathlib import Path

from canister_deploy.env import load_dotenv


def test_load_dotenv_parses_basic(tmp_path: Path) -> None:
    p = tmp_path / ".env"
    p.write_text(
        """
# comment
CDEPLOY_API_KEY=abc
CDEPLOY_MODEL="m"
export OPENAI_BASE_URL='https://example.invalid/v1'
EMPTY=
not a pair
""".strip()
        + "\n"
    )
    env = load_dotenv(p)
    assert env["CDEPLOY_API_KEY"] == "abc"
    assert env["CDEPLOY_MODEL"] == "m"
    assert env["OPENAI_BASE_URL"] == "https://example.invalid/v1"
    assert env["EMPTY"] == ""
    assert "not a pair" not in env


def test_load_dotenv_missing_file(tmp_path: Path) -> None:
    assert load_dotenv(tmp_path / "nope.env") == {}
