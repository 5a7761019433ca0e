import argparse
import json
import logging
import sys
from pathlib import Path

from canister_deploy.codegen import OpenAICompatibleCodeGen, load_codegen_config
from canister_deploy.constants import DEFAULT_REPLICA_HOST, DEFAULT_REPLICA_PORT
from canister_deploy.env import load_dotenv
from canister_deploy.errors import DeployError
from canister_deploy.logging import JsonlLogger, default_run_id
from canister_deploy.models import DeploymentRequest
from canister_deploy.orchestrator import DeployConfig, DeploymentOrchestrator
from canister_deploy.registry import ModuleRegistry
from canister_deploy.replica import ReplicaLifecycle
from canister_deploy.toolchain import Toolchain, resolve_dfx_binary

logger = logging.getLogger(__name__)

_SERIALIZE_NOTE = (
    "Deployments against the same project root must not run concurrently; "
    "serialize them externally (one run per root)."
)


def _emit(obj: dict) -> None:
    sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    sys.stdout.flush()


def _fail(obj: dict) -> int:
    _emit({"ok": False, "error": obj})
    return 1


def _toolchain(args) -> Toolchain:
    return Toolchain(resolve_dfx_binary(args.dfx))


def _build_codegen(args):
    if args.no_codegen:
        return None
    env = load_dotenv(args.env_file) if args.env_file else {}
    try:
        cfg = load_codegen_config(env)
    except ValueError as e:
        logger.info(f"External rewrite disabled: {e}")
        return None
    return OpenAICompatibleCodeGen(cfg)


def cmd_deploy(args) -> int:
    source = args.source.read_text(encoding="utf-8")
    request = DeploymentRequest(module_name=args.name, source_artifact=source, project_root=args.project_root)

    events = None
    if args.log_dir:
        run_id = args.run_id or default_run_id(prefix="deploy")
        events = JsonlLogger(base_dir=args.log_dir, run_id=run_id)
        events.write_run_metadata(
            {
                "run_id": run_id,
                "module_name": args.name,
                "source": str(args.source),
                "project_root": str(request.project_root.resolve()),
                "host": args.host,
                "port": args.port,
            }
        )

    codegen = _build_codegen(args)
    try:
        orchestrator = DeploymentOrchestrator(
            _toolchain(args),
            config=DeployConfig(host=args.host, port=args.port, teardown_at_exit=not args.keep_replica),
            codegen=codegen,
            events=events,
        )
        outcome = orchestrator.deploy(request)
    finally:
        if codegen is not None:
            codegen.close()

    _emit({"ok": True, **outcome.to_dict()})
    return 0


def cmd_stop(args) -> int:
    ReplicaLifecycle(_toolchain(args), host=args.host).stop(args.project_root)
    _emit({"ok": True, "stopped": str(args.project_root.resolve())})
    return 0


def cmd_id(args) -> int:
    record = ModuleRegistry(_toolchain(args)).resolve(args.name, args.project_root)
    _emit({"ok": True, "module_name": record.module_name, "existing_id": record.existing_id})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deploy Motoko canisters to a local dfx replica",
        epilog=_SERIALIZE_NOTE,
    )
    parser.add_argument("--dfx", type=Path, default=None, help="Path to the dfx binary (default: CDEPLOY_DFX_BIN, PATH)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--project-root", type=Path, default=Path("."), help="Project root (default: cwd)")
        p.add_argument("--host", type=str, default=DEFAULT_REPLICA_HOST)

    p_deploy = subparsers.add_parser("deploy", help="Stage, validate, repair and deploy one canister", epilog=_SERIALIZE_NOTE)
    add_common(p_deploy)
    p_deploy.add_argument("--name", required=True, help="Canister name")
    p_deploy.add_argument("--source", type=Path, required=True, help="Motoko source file")
    p_deploy.add_argument("--port", type=int, default=DEFAULT_REPLICA_PORT, help="Replica port")
    p_deploy.add_argument("--env-file", type=Path, default=None, help=".env file with codegen API settings")
    p_deploy.add_argument("--no-codegen", action="store_true", help="Never call the external rewrite service")
    p_deploy.add_argument("--keep-replica", action="store_true", help="Leave a started replica running on exit")
    p_deploy.add_argument("--log-dir", type=Path, default=None, help="Write JSONL run logs under this directory")
    p_deploy.add_argument("--run-id", type=str, default=None)
    p_deploy.set_defaults(func=cmd_deploy)

    p_stop = subparsers.add_parser("stop", help="Stop the local replica for a project root")
    add_common(p_stop)
    p_stop.set_defaults(func=cmd_stop)

    p_id = subparsers.add_parser("id", help="Print the canister id registered for a name")
    add_common(p_id)
    p_id.add_argument("--name", required=True, help="Canister name")
    p_id.set_defaults(func=cmd_id)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        code = args.func(args)
    except DeployError as e:
        code = _fail(e.to_dict())
    except ValueError as e:
        code = _fail({"kind": "invalid_request", "message": str(e)})
    except TimeoutError as e:
        code = _fail({"kind": "timeout", "message": str(e)})
    except OSError as e:
        code = _fail({"kind": "filesystem_error", "message": str(e)})
    sys.exit(code)


if __name__ == "__main__":
    main()
