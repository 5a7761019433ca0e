from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import FakeToolchain

from canister_deploy import cli
from canister_deploy.codegen import OpenAICompatibleCodeGen
from canister_deploy.errors import DeployInvocationFailure, ToolchainAbsent
from canister_deploy.models import DeployAction, DeploymentOutcome


class StubOrchestrator:
    last: StubOrchestrator | None = None
    error: Exception | None = None

    def __init__(self, toolchain, *, config, codegen, events) -> None:
        self.toolchain = toolchain
        self.config = config
        self.codegen = codegen
        self.events = events
        self.requests = []
        StubOrchestrator.last = self

    def deploy(self, request):
        self.requests.append(request)
        if StubOrchestrator.error is not None:
            raise StubOrchestrator.error
        return DeploymentOutcome(module_id="bkyz2-fmaaa-aaaaa-qaaaq-cai", module_name=request.module_name, action=DeployAction.INSTALL)


@pytest.fixture
def stub(monkeypatch: pytest.MonkeyPatch) -> type[StubOrchestrator]:
    StubOrchestrator.last = None
    StubOrchestrator.error = None
    monkeypatch.setattr(cli, "DeploymentOrchestrator", StubOrchestrator)
    monkeypatch.setattr(cli, "_toolchain", lambda args: FakeToolchain())
    for k in ("CDEPLOY_API_KEY", "OPENAI_API_KEY", "OPENROUTER_API_KEY", "GROQ_API_KEY", "CDEPLOY_MODEL", "OPENAI_MODEL"):
        monkeypatch.delenv(k, raising=False)
    return StubOrchestrator


def _source(tmp_path: Path) -> Path:
    p = tmp_path / "echo.mo"
    p.write_text("actor Echo {};\n")
    return p


def _run(argv: list[str], capsys) -> tuple[int, dict]:
    with pytest.raises(SystemExit) as ei:
        cli.main(argv)
    return ei.value.code, json.loads(capsys.readouterr().out)


def test_deploy_prints_outcome(tmp_path: Path, stub, capsys) -> None:
    code, out = _run(
        ["deploy", "--name", "Echo", "--source", str(_source(tmp_path)), "--project-root", str(tmp_path), "--no-codegen"],
        capsys,
    )

    assert code == 0
    assert out["ok"] is True
    assert out["module_id"] == "bkyz2-fmaaa-aaaaa-qaaaq-cai"
    assert out["action"] == "install"
    assert stub.last.codegen is None
    assert stub.last.config.teardown_at_exit is True
    assert stub.last.requests[0].source_artifact == "actor Echo {};\n"


def test_deploy_keep_replica_and_port(tmp_path: Path, stub, capsys) -> None:
    code, _ = _run(
        ["deploy", "--name", "Echo", "--source", str(_source(tmp_path)), "--port", "8123", "--keep-replica", "--no-codegen"],
        capsys,
    )
    assert code == 0
    assert stub.last.config.port == 8123
    assert stub.last.config.teardown_at_exit is False


def test_deploy_builds_codegen_from_env_file(tmp_path: Path, stub, capsys) -> None:
    env = tmp_path / ".env"
    env.write_text("CDEPLOY_API_KEY=k\nCDEPLOY_MODEL=m\n")

    code, _ = _run(["deploy", "--name", "Echo", "--source", str(_source(tmp_path)), "--env-file", str(env)], capsys)

    assert code == 0
    assert isinstance(stub.last.codegen, OpenAICompatibleCodeGen)
    assert stub.last.codegen.cfg.model == "m"


def test_deploy_without_api_key_disables_codegen(tmp_path: Path, stub, capsys) -> None:
    code, _ = _run(["deploy", "--name", "Echo", "--source", str(_source(tmp_path))], capsys)
    assert code == 0
    assert stub.last.codegen is None


def test_deploy_writes_run_log(tmp_path: Path, stub, capsys) -> None:
    logs = tmp_path / "logs"
    _run(
        ["deploy", "--name", "Echo", "--source", str(_source(tmp_path)), "--no-codegen", "--log-dir", str(logs), "--run-id", "r1"],
        capsys,
    )
    meta = json.loads((logs / "r1" / "run_metadata.json").read_text())
    assert meta["module_name"] == "Echo"
    assert stub.last.events is not None


def test_deploy_failure_prints_error_json(tmp_path: Path, stub, capsys) -> None:
    stub.error = DeployInvocationFailure("dfx deploy Echo failed with exit code 1", stage="install", output="boom")

    code, out = _run(["deploy", "--name", "Echo", "--source", str(_source(tmp_path)), "--no-codegen"], capsys)

    assert code == 1
    assert out["ok"] is False
    assert out["error"]["kind"] == "deploy_invocation_failure"
    assert out["error"]["output"] == "boom"


def test_toolchain_absent_carries_hint(tmp_path: Path, stub, capsys) -> None:
    stub.error = ToolchainAbsent("dfx not found", hint="install it")
    code, out = _run(["deploy", "--name", "Echo", "--source", str(_source(tmp_path)), "--no-codegen"], capsys)
    assert code == 1
    assert out["error"]["data"]["hint"] == "install it"


def test_invalid_module_name(tmp_path: Path, stub, capsys) -> None:
    code, out = _run(["deploy", "--name", "9lives", "--source", str(_source(tmp_path)), "--no-codegen"], capsys)
    assert code == 1
    assert out["error"]["kind"] == "invalid_request"


def test_missing_source_file(tmp_path: Path, stub, capsys) -> None:
    code, out = _run(["deploy", "--name", "Echo", "--source", str(tmp_path / "nope.mo"), "--no-codegen"], capsys)
    assert code == 1
    assert out["error"]["kind"] == "filesystem_error"


def test_id_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    tc = FakeToolchain()
    tc.ids["Echo"] = "ryjl3-tyaaa-aaaaa-aaaba-cai"
    monkeypatch.setattr(cli, "_toolchain", lambda args: tc)

    code, out = _run(["id", "--name", "Echo", "--project-root", str(tmp_path)], capsys)

    assert code == 0
    assert out["existing_id"] == "ryjl3-tyaaa-aaaaa-aaaba-cai"


def test_stop_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    (tmp_path / "deploy_workspace").mkdir()
    tc = FakeToolchain()
    monkeypatch.setattr(cli, "_toolchain", lambda args: tc)

    code, out = _run(["stop", "--project-root", str(tmp_path)], capsys)

    assert code == 0
    assert out["ok"] is True
    assert tc.count("stop") == 1
