# run.py
# Entry point. Argument parsing and wiring only; no engine logic lives here.
#
#   deploy-pilot analyze  ./my-app
#   deploy-pilot generate ./my-app --config-type docker --output ./my-app/deploy
#   deploy-pilot deploy   ./my-app/deploy --env NODE_ENV=production --recover
#   deploy-pilot deploy   ./my-app --no-compose --port 8080:3000

import argparse
import asyncio
import json
import logging
import re
from pathlib import Path

from deploy_pilot import display
from deploy_pilot.config import Settings
from deploy_pilot.deployment import DeploymentStateMachine
from deploy_pilot.docker import DockerCLIRuntime, find_compose_file, parse_dockerfile_ports
from deploy_pilot.events import ProgressChannel
from deploy_pilot.extraction import ParseFailure
from deploy_pilot.harness import ToolLoopTimeout
from deploy_pilot.logging_config import configure_logging
from deploy_pilot.models import DeploymentPlan, PortMapping
from deploy_pilot.providers import AIProvider, ProviderError, create_provider
from deploy_pilot.recovery import RecoveryAgent
from deploy_pilot.results import (
    DeploymentConfigRequest,
    IncompleteResultError,
    ProjectAnalysisResult,
    ProjectContext,
)
from deploy_pilot.tools import walk_files

LOGGER = logging.getLogger(__name__)

MAX_CONTEXT_FILES = 500
README_NAMES = ("README.md", "README.rst", "README.txt", "README")


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def parse_port(value: str) -> PortMapping:
    """'8080:3000', '8080:3000/udp' or '3000' (same port on both sides)."""
    spec, _, protocol = value.partition("/")
    host, _, container = spec.partition(":")
    try:
        return PortMapping(host=int(host), container=int(container or host), protocol=protocol or "tcp")
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid port mapping '{value}'") from exc


def parse_env(value: str) -> tuple[str, str]:
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got '{value}'")
    return key, val


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9_.-]+", "-", name.lower()).strip("-.")
    return slug or "app"


def build_context(path: Path) -> ProjectContext:
    files = []
    for file in walk_files(path):
        files.append(file.relative_to(path).as_posix())
        if len(files) >= MAX_CONTEXT_FILES:
            break
    readme = next(
        (
            (path / name).read_text(encoding="utf-8", errors="replace")
            for name in README_NAMES
            if (path / name).is_file()
        ),
        None,
    )
    return ProjectContext(project_path=str(path), project_name=path.name, files=files, readme=readme)


def build_plan(args: argparse.Namespace) -> DeploymentPlan:
    config_path = Path(args.path).resolve()
    name = slugify(args.name or config_path.name)
    compose_file = None if args.no_compose else args.compose_file or find_compose_file(config_path)
    ports = list(args.port or [])
    if not ports and compose_file is None:
        dockerfile = config_path / args.dockerfile
        if dockerfile.is_file():
            exposed = parse_dockerfile_ports(dockerfile.read_text(encoding="utf-8", errors="replace"))
            ports = [PortMapping(host=port, container=port) for port in exposed[:1]]
    return DeploymentPlan(
        config_path=str(config_path),
        image_tag=args.image_tag or f"{name}:latest",
        container_name=name,
        dockerfile_path=args.dockerfile,
        ports=ports,
        environment=dict(args.env or []),
        health_path=args.health_path,
        compose_file=compose_file,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deploy-pilot", description="Analyze, configure and deploy projects.")
    parser.add_argument("--provider", help="Override DEPLOY_PILOT_PROVIDER.")
    parser.add_argument("--model", help="Override DEPLOY_PILOT_MODEL.")
    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Analyze a project with the model.")
    analyze.add_argument("path")
    analyze.add_argument("--save", help="Write the analysis JSON to this file.")

    generate = commands.add_parser("generate", help="Analyze a project and generate deployment files.")
    generate.add_argument("path")
    generate.add_argument(
        "--config-type", default="docker-compose", choices=["docker", "docker-compose", "kubernetes", "bash"]
    )
    generate.add_argument("--output", help="Output directory (default: PATH/deploy).")
    generate.add_argument("--optimize-for", choices=["speed", "size", "security", "cost"])
    generate.add_argument("--analysis", help="Reuse a saved analysis JSON instead of analyzing again.")

    deploy = commands.add_parser("deploy", help="Build and run a directory with a compose file or a Dockerfile.")
    deploy.add_argument("path")
    deploy.add_argument("--image-tag")
    deploy.add_argument("--name", help="Container or compose project name (default: directory name).")
    deploy.add_argument("--dockerfile", default="Dockerfile")
    deploy.add_argument("--compose-file", help="Compose file in PATH (default: detected, e.g. docker-compose.yml).")
    deploy.add_argument("--no-compose", action="store_true", help="Ignore compose files and docker run the Dockerfile.")
    deploy.add_argument("--port", action="append", type=parse_port, help="HOST:CONTAINER[/udp], repeatable.")
    deploy.add_argument("--env", action="append", type=parse_env, help="KEY=VALUE, repeatable.")
    deploy.add_argument("--health-path", default="/")
    deploy.add_argument("--recover", action="store_true", help="Let the recovery agent fix a failed deploy.")
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _provider(settings: Settings, channel: ProgressChannel) -> AIProvider:
    provider = create_provider(settings.provider, channel=channel)
    await provider.initialize(settings.provider_config())
    return provider


async def _analyze(provider: AIProvider, path: Path) -> ProjectAnalysisResult:
    display.stage("ANALYZING PROJECT")
    result = await provider.analyze_project(build_context(path))
    display.analysis_result(result)
    return result


async def cmd_analyze(args: argparse.Namespace, settings: Settings, channel: ProgressChannel) -> int:
    path = Path(args.path).resolve()
    provider = await _provider(settings, channel)
    result = await _analyze(provider, path)
    if args.save:
        Path(args.save).write_text(json.dumps(result.to_wire(), indent=2), encoding="utf-8")
    return 0


async def cmd_generate(args: argparse.Namespace, settings: Settings, channel: ProgressChannel) -> int:
    path = Path(args.path).resolve()
    output = Path(args.output).resolve() if args.output else path / "deploy"
    provider = await _provider(settings, channel)
    if args.analysis:
        analysis = ProjectAnalysisResult.model_validate_json(Path(args.analysis).read_text(encoding="utf-8"))
    else:
        analysis = await _analyze(provider, path)

    display.stage("GENERATING CONFIGURATION")
    output.mkdir(parents=True, exist_ok=True)
    request = DeploymentConfigRequest(
        analysis=analysis,
        project_path=str(path),
        output_path=str(output),
        config_type=args.config_type,
        optimize_for=args.optimize_for,
    )
    result = await provider.generate_deployment_config(request)
    display.config_result(result, str(output))
    return 0


async def cmd_deploy(args: argparse.Namespace, settings: Settings, channel: ProgressChannel) -> int:
    plan = build_plan(args)
    machine = DeploymentStateMachine(DockerCLIRuntime(), channel)

    display.stage("DEPLOYING")
    outcome = await machine.run(plan)
    display.deployment_result(outcome)
    if outcome.success or not args.recover:
        return 0 if outcome.success else 1

    display.stage("RECOVERING")
    provider = await _provider(settings, channel)
    agent = RecoveryAgent(
        provider,
        machine,
        plan,
        channel,
        max_attempts=settings.recovery_max_attempts,
        max_steps=settings.max_steps,
    )
    session = await agent.recover(outcome)
    display.recovery_result(session)
    return 0 if session.status.value == "completed" else 1


COMMANDS = {"analyze": cmd_analyze, "generate": cmd_generate, "deploy": cmd_deploy}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    overrides = {k: v for k, v in (("provider", args.provider), ("model", args.model)) if v}
    if overrides:
        settings = settings.model_copy(update=overrides)
    configure_logging(settings.log_level)

    channel = ProgressChannel(keep_history=False)
    channel.subscribe(display.render_event)
    display.banner(args.command, settings.provider, settings.model, args.path)

    try:
        return asyncio.run(COMMANDS[args.command](args, settings, channel))
    except (ProviderError, ParseFailure, IncompleteResultError, ToolLoopTimeout, ValueError) as exc:
        LOGGER.debug("command_failed", exc_info=True)
        display.halt(str(exc))
        return 1
    except KeyboardInterrupt:
        display.halt("Interrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
