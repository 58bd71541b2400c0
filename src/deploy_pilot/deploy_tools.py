# deploy_tools.py
# Docker deployment tools for agents.
#
# Thin, validated wrappers over a ContainerRuntime, scoped to one config
# directory. Each tool reports what it is doing on the progress channel
# and returns plain JSON-able dicts the model can read.
#
# Public API for embedding applications: create_deployment_tools() returns
# a Toolbox to merge into a ToolLoop, and DeploymentTools exposes the same
# handlers as methods. The bundled CLI and RecoveryAgent do not register
# it; recovery uses its own session-aware tools.
#
#   toolbox = create_deployment_tools(DockerCLIRuntime(), "./deploy", channel)
#   loop = ToolLoop(model, create_project_analysis_tools("./deploy").merged(toolbox))

import logging
from pathlib import Path

from pydantic import Field

from deploy_pilot.classifier import classify_error
from deploy_pilot.docker import ContainerRuntime, parse_dockerfile_ports
from deploy_pilot.events import ProgressChannel
from deploy_pilot.models import DeploymentErrorStage, DeploymentErrorType, PortMapping
from deploy_pilot.tools import ToolArgs, ToolError, Toolbox, ToolSpec, resolve_inside

LOGGER = logging.getLogger(__name__)

MAX_LOG_LINES_RETURNED = 50


class RunPreFlightChecksArgs(ToolArgs):
    requested_ports: list[int] = Field(default_factory=list, description="Host ports the deployment will bind.")
    dockerfile_path: str = "Dockerfile"


class DetectDockerfilePortsArgs(ToolArgs):
    dockerfile_path: str = "Dockerfile"


class BuildDockerImageArgs(ToolArgs):
    image_tag: str = Field(..., description="Tag for the built image, e.g. 'myapp:latest'.")
    dockerfile_path: str = "Dockerfile"
    build_args: dict[str, str] = Field(default_factory=dict)


class RunDockerContainerArgs(ToolArgs):
    image_tag: str
    container_name: str
    ports: list[PortMapping] = Field(default_factory=list, description="Port mappings: {host, container, protocol}.")
    environment_variables: dict[str, str] = Field(default_factory=dict)


class ContainerArgs(ToolArgs):
    container_id: str = Field(..., description="Container id or name.")


class RemoveContainerArgs(ContainerArgs):
    force: bool = True


class GetContainerLogsArgs(ContainerArgs):
    tail: int = Field(default=100, ge=1, le=1000)


class WriteEnvFileArgs(ToolArgs):
    env_vars: dict[str, str]
    file_name: str = ".env"


class DeploymentTools:
    """Docker tools bound to a runtime and a config directory."""

    def __init__(self, runtime: ContainerRuntime, config_path: str, channel: ProgressChannel | None = None) -> None:
        self.runtime = runtime
        self.config_path = str(config_path)
        self._channel = channel

    def _emit(self, type: str, message: str, **details) -> None:
        if self._channel is not None:
            self._channel.emit(type, message, **details)

    async def run_pre_flight_checks(self, args: RunPreFlightChecksArgs) -> dict:
        self._emit("pre_flight", "Running pre-flight checks")
        checks = await self.runtime.run_pre_flight_checks(
            self.config_path, args.dockerfile_path, args.requested_ports
        )
        for check in checks:
            self._emit("pre_flight", f"{check.name}: {check.message}", status=check.status)
        passed = sum(1 for check in checks if check.status == "passed")
        return {
            "passed": not any(check.status == "failed" for check in checks),
            "checks": [check.model_dump() for check in checks],
            "summary": f"{passed}/{len(checks)} checks passed",
        }

    async def detect_dockerfile_ports(self, args: DetectDockerfilePortsArgs) -> dict:
        path = resolve_inside(self.config_path, args.dockerfile_path)
        if not path.is_file():
            raise ToolError(f"Dockerfile not found: {args.dockerfile_path}")
        ports = parse_dockerfile_ports(path.read_text(encoding="utf-8", errors="replace"))
        return {"dockerfilePath": args.dockerfile_path, "ports": ports}

    async def build_docker_image(self, args: BuildDockerImageArgs) -> dict:
        resolve_inside(self.config_path, args.dockerfile_path)
        self._emit("build", f"Building image {args.image_tag}")
        result = await self.runtime.build_image(
            self.config_path,
            args.image_tag,
            args.dockerfile_path,
            args.build_args,
            on_line=lambda line: self._emit("build", line),
        )
        payload = {
            "success": result.success,
            "imageTag": args.image_tag,
            "imageId": result.image_id,
            "exitCode": result.exit_code,
            "logs": result.logs[-MAX_LOG_LINES_RETURNED:],
        }
        if not result.success:
            error = classify_error(
                "\n".join(result.logs),
                DeploymentErrorStage.BUILD,
                exit_code=result.exit_code,
                default=DeploymentErrorType.BUILD_FAILED,
            )
            payload["errorType"] = error.type.value
            payload["error"] = error.message
            self._emit("error", f"Build failed: {error.message}")
        return payload

    async def run_docker_container(self, args: RunDockerContainerArgs) -> dict:
        self._emit("deploy", f"Starting container {args.container_name}")
        result = await self.runtime.run_container(
            args.image_tag, args.container_name, args.ports, args.environment_variables
        )
        if not result.success:
            self._emit("error", f"Container {args.container_name} failed to start")
        return {"success": result.success, "containerId": result.container_id, "output": result.output[-2000:]}

    async def _lifecycle(self, verb: str, container_id: str, call) -> dict:
        self._emit("deploy", f"{verb.capitalize()} container {container_id}")
        result = await call
        return {"success": result.ok, "containerId": container_id, "output": result.output[-2000:]}

    async def stop_docker_container(self, args: ContainerArgs) -> dict:
        return await self._lifecycle("stopping", args.container_id, self.runtime.stop(args.container_id))

    async def start_docker_container(self, args: ContainerArgs) -> dict:
        return await self._lifecycle("starting", args.container_id, self.runtime.start(args.container_id))

    async def restart_docker_container(self, args: ContainerArgs) -> dict:
        return await self._lifecycle("restarting", args.container_id, self.runtime.restart(args.container_id))

    async def remove_docker_container(self, args: RemoveContainerArgs) -> dict:
        return await self._lifecycle(
            "removing", args.container_id, self.runtime.remove(args.container_id, force=args.force)
        )

    async def get_container_logs(self, args: GetContainerLogsArgs) -> dict:
        logs = await self.runtime.get_logs(args.container_id, args.tail)
        return {"containerId": args.container_id, "logs": logs, "lines": len(logs)}

    async def get_container_status(self, args: ContainerArgs) -> dict:
        state = await self.runtime.get_status(args.container_id)
        self._emit("status", f"Container {args.container_id} is {state.status}")
        return {
            "found": state.found,
            "status": state.status,
            "running": state.running,
            "ports": state.ports,
            "startedAt": state.started_at,
            "exitCode": state.exit_code,
        }

    async def write_env_file(self, args: WriteEnvFileArgs) -> dict:
        target = resolve_inside(self.config_path, args.file_name)
        path = self.runtime.write_env_file(str(target.parent), args.env_vars, target.name)
        LOGGER.info("env_file_written", extra={"file": str(path), "variables": len(args.env_vars)})
        return {
            "success": True,
            "filePath": Path(path).relative_to(Path(self.config_path).resolve()).as_posix(),
            "variables": len(args.env_vars),
        }

    def toolbox(self) -> Toolbox:
        return Toolbox(
            [
                ToolSpec("runPreFlightChecks", "Check Docker, the build file, host ports and disk space.",
                         RunPreFlightChecksArgs, self.run_pre_flight_checks, lambda a: "Running pre-flight checks"),
                ToolSpec("detectDockerfilePorts", "List the ports a Dockerfile EXPOSEs.",
                         DetectDockerfilePortsArgs, self.detect_dockerfile_ports,
                         lambda a: f"Reading ports from {a.dockerfile_path}"),
                ToolSpec("buildDockerImage", "Build a Docker image from the config directory.",
                         BuildDockerImageArgs, self.build_docker_image, lambda a: f"Building {a.image_tag}"),
                ToolSpec("runDockerContainer", "Run a container from a built image in the background.",
                         RunDockerContainerArgs, self.run_docker_container,
                         lambda a: f"Running container {a.container_name}"),
                ToolSpec("stopDockerContainer", "Stop a running container.",
                         ContainerArgs, self.stop_docker_container, lambda a: f"Stopping {a.container_id}"),
                ToolSpec("startDockerContainer", "Start a stopped container.",
                         ContainerArgs, self.start_docker_container, lambda a: f"Starting {a.container_id}"),
                ToolSpec("restartDockerContainer", "Restart a container.",
                         ContainerArgs, self.restart_docker_container, lambda a: f"Restarting {a.container_id}"),
                ToolSpec("removeDockerContainer", "Remove a container.",
                         RemoveContainerArgs, self.remove_docker_container, lambda a: f"Removing {a.container_id}"),
                ToolSpec("getContainerLogs", "Read the last lines of a container's output.",
                         GetContainerLogsArgs, self.get_container_logs, lambda a: f"Reading logs of {a.container_id}"),
                ToolSpec("getContainerStatus", "Inspect a container's state, exit code and ports.",
                         ContainerArgs, self.get_container_status, lambda a: f"Inspecting {a.container_id}"),
                ToolSpec("writeEnvFile", "Write environment variables to a .env file in the config directory.",
                         WriteEnvFileArgs, self.write_env_file, lambda a: f"Writing {a.file_name}"),
            ]
        )


def create_deployment_tools(
    runtime: ContainerRuntime, config_path: str, channel: ProgressChannel | None = None
) -> Toolbox:
    return DeploymentTools(runtime, config_path, channel).toolbox()
