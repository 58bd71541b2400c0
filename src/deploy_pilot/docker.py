# docker.py
# Container runtime.
#
# ContainerRuntime is the seam the state machine and the deployment tools
# talk to. DockerCLIRuntime drives the docker CLI through asyncio
# subprocesses: argument lists only, never a shell. Host probes (binary
# lookup, port binding, disk usage) are injectable for tests.
#
# Two deployment shapes share the seam: a single image run with
# `docker run`, and a compose project driven with `docker compose -p`.
# Compose project names are validated before they reach the CLI.

import abc
import asyncio
import json
import logging
import re
import shutil
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from deploy_pilot.models import PortMapping, PreFlightCheck
from deploy_pilot.tools import ToolError

LOGGER = logging.getLogger(__name__)

DISK_FAIL_PERCENT = 95.0
DISK_WARN_PERCENT = 85.0
DAEMON_FIX = "Start Docker Desktop or run 'sudo systemctl start docker'"

LineCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CommandExecutionError(ToolError):
    """Raised when a docker command cannot be launched or exits non-zero where success is required."""

    def __init__(self, args: list[str], returncode: int | None, output: str = "") -> None:
        super().__init__(f"Command {' '.join(args[:3])}… failed ({returncode}): {output[-500:]}")
        self.args_list = args
        self.returncode = returncode
        self.output = output


class InvalidProjectNameError(ToolError):
    """Raised for a compose project name docker would reject."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass
class BuildResult:
    success: bool
    exit_code: int
    image_id: str | None = None
    logs: list[str] = field(default_factory=list)


@dataclass
class RunResult:
    success: bool
    container_id: str | None = None
    output: str = ""


@dataclass
class ContainerState:
    found: bool
    status: str = "not_found"
    running: bool = False
    exit_code: int | None = None
    oom_killed: bool = False
    started_at: str | None = None
    ports: dict = field(default_factory=dict)
    error: str | None = None


@dataclass
class ServiceState:
    """One compose service. published holds (host, container) port pairs."""

    name: str
    state: str = "unknown"
    health: str = "none"
    exit_code: int | None = None
    published: list[tuple[int, int]] = field(default_factory=list)
    container_id: str | None = None

    @property
    def running(self) -> bool:
        return self.state == "running"


# ---------------------------------------------------------------------------
# Host probes
# ---------------------------------------------------------------------------


def port_available(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def parse_dockerfile_ports(text: str) -> list[int]:
    """Ports declared by EXPOSE instructions, in order, without duplicates."""
    ports: list[int] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.upper().startswith("EXPOSE "):
            continue
        for token in stripped.split()[1:]:
            match = re.search(r"(\d{1,5})", token)
            if match:
                port = int(match.group(1))
                if 0 < port < 65536 and port not in ports:
                    ports.append(port)
    return ports


def format_env_file(env: dict[str, str]) -> str:
    lines = []
    for key, value in env.items():
        text = str(value)
        if any(ch in text for ch in ' #"\'$\n'):
            text = '"' + text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'
        lines.append(f"{key}={text}")
    return "\n".join(lines) + "\n"


COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
COMPOSE_PROJECT_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_ENV_REFERENCE = re.compile(r"\$\{(\w+)(?::?-([^}]*))?\}")


def find_compose_file(directory: str | Path) -> str | None:
    """Name of the first compose file present in directory, if any."""
    for name in COMPOSE_FILE_NAMES:
        if (Path(directory) / name).is_file():
            return name
    return None


def compose_project_name(name: str) -> str:
    """Lowercase compose project name made only of characters docker accepts."""
    slug = re.sub(r"[^a-z0-9_-]+", "-", name.lower()).strip("-_")
    return slug or "app"


def _load_compose(text: str) -> dict:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError:
        return {}
    return document if isinstance(document, dict) else {}


def validate_compose_text(text: str) -> dict:
    """Structural check of a compose file: YAML syntax and a services mapping."""
    errors: list[str] = []
    services: list[str] = []
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        return {"valid": False, "errors": [f"YAML syntax error: {exc}"], "services": []}

    if not isinstance(document, dict):
        errors.append("Compose file must be a mapping at the top level")
    elif not isinstance(document.get("services"), dict) or not document["services"]:
        errors.append("Compose file has no 'services' mapping")
    else:
        for name, service in document["services"].items():
            services.append(str(name))
            if not isinstance(service, dict):
                errors.append(f"Service '{name}' must be a mapping")
            elif "image" not in service and "build" not in service:
                errors.append(f"Service '{name}' needs an 'image' or a 'build' key")
    return {"valid": not errors, "errors": errors, "services": services}


def _published_port(entry, env: dict[str, str]) -> int | None:
    if isinstance(entry, dict):
        published = str(entry.get("published") or "")
        return int(published) if published.isdigit() else None
    text = _ENV_REFERENCE.sub(lambda match: env.get(match.group(1)) or match.group(2) or "", str(entry))
    parts = text.split("/")[0].split(":")
    # "HOST:CONTAINER" or "IP:HOST:CONTAINER"; a bare "CONTAINER" publishes a random port
    host = parts[-2] if len(parts) in (2, 3) else ""
    return int(host) if host.isdigit() else None


def compose_host_ports(text: str, env: dict[str, str] | None = None) -> dict[str, list[int]]:
    """Fixed host ports each service publishes, read from compose YAML."""
    services = _load_compose(text).get("services")
    if not isinstance(services, dict):
        return {}
    ports: dict[str, list[int]] = {}
    for name, service in services.items():
        entries = service.get("ports") if isinstance(service, dict) else None
        found = [_published_port(entry, env or {}) for entry in entries or []]
        ports[str(name)] = [port for port in found if port]
    return ports


def compose_images(text: str) -> dict[str, str]:
    """Registry images of the services that do not build their own."""
    services = _load_compose(text).get("services")
    if not isinstance(services, dict):
        return {}
    return {
        str(name): str(service["image"])
        for name, service in services.items()
        if isinstance(service, dict) and service.get("image") and "build" not in service
    }


def normalise_service_state(raw: str) -> str:
    lower = (raw or "").lower()
    for needle, state in (
        ("running", "running"),
        ("up", "running"),
        ("exit", "exited"),
        ("paused", "paused"),
        ("restarting", "restarting"),
        ("dead", "dead"),
        ("created", "created"),
    ):
        if needle in lower:
            return state
    return "unknown"


def parse_compose_ps(stdout: str) -> list["ServiceState"]:
    """
    Services from `docker compose ps --format json`.

    Newer compose prints one JSON object per line, older releases print a
    single JSON array. Unreadable lines are skipped.
    """
    text = stdout.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            rows = json.loads(text)
        except ValueError:
            rows = []
    else:
        rows = []
        for line in text.splitlines():
            try:
                rows.append(json.loads(line))
            except ValueError:
                LOGGER.debug("compose_ps_line_skipped", extra={"line": line[:200]})

    services = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        published = [
            (int(p["PublishedPort"]), int(p.get("TargetPort") or 0))
            for p in row.get("Publishers") or []
            if str(p.get("PublishedPort") or "0").isdigit() and int(p["PublishedPort"]) > 0
        ]
        services.append(
            ServiceState(
                name=row.get("Service") or row.get("Name") or "unknown",
                state=normalise_service_state(row.get("State") or row.get("Status") or ""),
                health=row.get("Health") or "none",
                exit_code=row.get("ExitCode"),
                published=published,
                container_id=row.get("ID"),
            )
        )
    return services


def service_urls(services: list["ServiceState"], declared: dict[str, list[int]] | None = None) -> dict[str, str]:
    """
    One http://localhost URL per reachable service: the first published
    host port docker reports, else the first fixed port the compose file
    declares for it.
    """
    urls: dict[str, str] = {}
    for service in services:
        if service.published:
            urls[service.name] = f"http://localhost:{service.published[0][0]}"
    for name, ports in (declared or {}).items():
        if name not in urls and ports:
            urls[name] = f"http://localhost:{ports[0]}"
    return urls


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class ContainerRuntime(abc.ABC):
    """Operations the deployment engine needs from a container runtime."""

    @abc.abstractmethod
    def check_installed(self) -> bool: ...

    @abc.abstractmethod
    async def ping(self) -> bool: ...

    @abc.abstractmethod
    async def build_image(
        self,
        context_dir: str,
        image_tag: str,
        dockerfile: str = "Dockerfile",
        build_args: dict[str, str] | None = None,
        on_line: LineCallback | None = None,
    ) -> BuildResult: ...

    @abc.abstractmethod
    async def image_id(self, image_tag: str) -> str | None: ...

    @abc.abstractmethod
    async def run_container(
        self,
        image_tag: str,
        name: str,
        ports: list[PortMapping],
        environment: dict[str, str] | None = None,
    ) -> RunResult: ...

    @abc.abstractmethod
    async def start(self, container: str) -> CommandResult: ...

    @abc.abstractmethod
    async def stop(self, container: str) -> CommandResult: ...

    @abc.abstractmethod
    async def restart(self, container: str) -> CommandResult: ...

    @abc.abstractmethod
    async def remove(self, container: str, force: bool = True) -> CommandResult: ...

    @abc.abstractmethod
    async def get_logs(self, container: str, tail: int = 100) -> list[str]: ...

    @abc.abstractmethod
    async def get_status(self, container: str) -> ContainerState: ...

    @abc.abstractmethod
    async def run_pre_flight_checks(
        self, context_dir: str, dockerfile: str = "Dockerfile", ports: list[int] | None = None
    ) -> list[PreFlightCheck]: ...

    # compose projects: compose_file is an absolute path, project a compose project name

    @abc.abstractmethod
    async def compose_build(
        self, compose_file: str, project: str, on_line: LineCallback | None = None
    ) -> BuildResult: ...

    @abc.abstractmethod
    async def compose_up(self, compose_file: str, project: str) -> RunResult: ...

    @abc.abstractmethod
    async def compose_stop(self, compose_file: str, project: str) -> CommandResult: ...

    @abc.abstractmethod
    async def compose_down(self, compose_file: str, project: str, volumes: bool = False) -> CommandResult: ...

    @abc.abstractmethod
    async def compose_ps(self, compose_file: str, project: str) -> list[ServiceState]: ...

    @abc.abstractmethod
    async def compose_logs(
        self, compose_file: str, project: str, tail: int = 100, service: str | None = None
    ) -> list[str]: ...

    @abc.abstractmethod
    async def run_compose_pre_flight_checks(
        self, compose_file: str, ports: list[int] | None = None
    ) -> list[PreFlightCheck]: ...

    def write_env_file(self, directory: str, env: dict[str, str], file_name: str = ".env") -> Path:
        path = Path(directory) / file_name
        path.write_text(format_env_file(env), encoding="utf-8")
        return path


# ---------------------------------------------------------------------------
# Docker CLI
# ---------------------------------------------------------------------------


class DockerCLIRuntime(ContainerRuntime):
    """
    ContainerRuntime backed by the `docker` binary.

    Example:
        runtime = DockerCLIRuntime()
        checks = await runtime.run_pre_flight_checks("./out", ports=[3000])
    """

    def __init__(
        self,
        binary: str = "docker",
        *,
        which: Callable[[str], str | None] = shutil.which,
        is_port_free: Callable[[int], bool] = port_available,
        disk_usage: Callable[[str], tuple] = shutil.disk_usage,
    ) -> None:
        self.binary = binary
        self._which = which
        self._is_port_free = is_port_free
        self._disk_usage = disk_usage

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    async def _run(self, *args: str, check: bool = False, cwd: str | None = None) -> CommandResult:
        command = [self.binary, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise CommandExecutionError(command, None, f"{self.binary} is not installed") from exc
        stdout, stderr = await process.communicate()
        result = CommandResult(
            args=command,
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        LOGGER.debug("docker_command", extra={"command": " ".join(args[:2]), "returncode": result.returncode})
        if check and not result.ok:
            raise CommandExecutionError(command, result.returncode, result.output)
        return result

    async def _stream(self, *args: str, on_line: LineCallback | None = None, cwd: str | None = None) -> tuple[int, list[str]]:
        command = [self.binary, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise CommandExecutionError(command, None, f"{self.binary} is not installed") from exc
        lines: list[str] = []
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            lines.append(line)
            if on_line is not None:
                on_line(line)
        returncode = await process.wait()
        return returncode, lines

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------

    def check_installed(self) -> bool:
        return self._which(self.binary) is not None

    async def ping(self) -> bool:
        try:
            result = await self._run("info", "--format", "{{.ServerVersion}}")
        except CommandExecutionError:
            return False
        return result.ok

    # ------------------------------------------------------------------
    # Images and containers
    # ------------------------------------------------------------------

    async def build_image(
        self,
        context_dir: str,
        image_tag: str,
        dockerfile: str = "Dockerfile",
        build_args: dict[str, str] | None = None,
        on_line: LineCallback | None = None,
    ) -> BuildResult:
        args = ["build", "--progress=plain", "-t", image_tag, "-f", str(Path(context_dir) / dockerfile)]
        for key, value in (build_args or {}).items():
            args += ["--build-arg", f"{key}={value}"]
        args.append(context_dir)

        exit_code, logs = await self._stream(*args, on_line=on_line)
        image = await self.image_id(image_tag) if exit_code == 0 else None
        return BuildResult(success=exit_code == 0 and image is not None, exit_code=exit_code, image_id=image, logs=logs)

    async def image_id(self, image_tag: str) -> str | None:
        result = await self._run("image", "inspect", "--format", "{{.Id}}", image_tag)
        image = result.stdout.strip()
        return image if result.ok and image else None

    async def run_container(
        self,
        image_tag: str,
        name: str,
        ports: list[PortMapping],
        environment: dict[str, str] | None = None,
    ) -> RunResult:
        args = ["run", "-d", "--name", name]
        for port in ports:
            args += ["-p", f"{port.host}:{port.container}/{port.protocol}"]
        for key, value in (environment or {}).items():
            args += ["-e", f"{key}={value}"]
        args.append(image_tag)
        result = await self._run(*args)
        container_id = result.stdout.strip().splitlines()[-1] if result.ok and result.stdout.strip() else None
        return RunResult(success=result.ok and container_id is not None, container_id=container_id, output=result.output)

    async def start(self, container: str) -> CommandResult:
        return await self._run("start", container)

    async def stop(self, container: str) -> CommandResult:
        return await self._run("stop", container)

    async def restart(self, container: str) -> CommandResult:
        return await self._run("restart", container)

    async def remove(self, container: str, force: bool = True) -> CommandResult:
        return await self._run("rm", *(["-f"] if force else []), container)

    async def get_logs(self, container: str, tail: int = 100) -> list[str]:
        result = await self._run("logs", "--tail", str(tail), container)
        return [line for line in result.output.splitlines() if line.strip()]

    async def get_status(self, container: str) -> ContainerState:
        result = await self._run("inspect", container)
        if not result.ok:
            return ContainerState(found=False, error=result.output or None)
        try:
            info = json.loads(result.stdout)[0]
        except (ValueError, IndexError) as exc:
            return ContainerState(found=False, error=f"Unreadable inspect output: {exc}")
        state = info.get("State", {})
        return ContainerState(
            found=True,
            status=state.get("Status", "unknown"),
            running=bool(state.get("Running")),
            exit_code=state.get("ExitCode"),
            oom_killed=bool(state.get("OOMKilled")),
            started_at=state.get("StartedAt"),
            ports=(info.get("NetworkSettings") or {}).get("Ports") or {},
        )

    # ------------------------------------------------------------------
    # Compose
    # ------------------------------------------------------------------

    def _compose(self, compose_file: str, project: str, *args: str) -> list[str]:
        if not COMPOSE_PROJECT_RE.match(project):
            raise InvalidProjectNameError(
                f"Invalid compose project name '{project}'. Use lowercase letters, digits, '-' and '_'."
            )
        return ["compose", "-p", project, "-f", compose_file, *args]

    async def compose_build(
        self, compose_file: str, project: str, on_line: LineCallback | None = None
    ) -> BuildResult:
        exit_code, logs = await self._stream(
            *self._compose(compose_file, project, "build"), on_line=on_line, cwd=str(Path(compose_file).parent)
        )
        return BuildResult(success=exit_code == 0, exit_code=exit_code, logs=logs)

    async def compose_up(self, compose_file: str, project: str) -> RunResult:
        result = await self._run(
            *self._compose(compose_file, project, "up", "-d", "--remove-orphans"), cwd=str(Path(compose_file).parent)
        )
        return RunResult(success=result.ok, output=result.output)

    async def compose_stop(self, compose_file: str, project: str) -> CommandResult:
        return await self._run(*self._compose(compose_file, project, "stop"), cwd=str(Path(compose_file).parent))

    async def compose_down(self, compose_file: str, project: str, volumes: bool = False) -> CommandResult:
        args = ["down", "--remove-orphans", *(["-v"] if volumes else [])]
        return await self._run(*self._compose(compose_file, project, *args), cwd=str(Path(compose_file).parent))

    async def compose_ps(self, compose_file: str, project: str) -> list[ServiceState]:
        result = await self._run(
            *self._compose(compose_file, project, "ps", "--all", "--format", "json"),
            cwd=str(Path(compose_file).parent),
        )
        if not result.ok:
            LOGGER.debug("compose_ps_failed", extra={"project": project, "error": result.output[-300:]})
            return []
        return parse_compose_ps(result.stdout)

    async def compose_logs(
        self, compose_file: str, project: str, tail: int = 100, service: str | None = None
    ) -> list[str]:
        args = ["logs", "--no-color", "--tail", str(tail), *([service] if service else [])]
        result = await self._run(*self._compose(compose_file, project, *args), cwd=str(Path(compose_file).parent))
        return [line for line in result.output.splitlines() if line.strip()]

    async def image_available(self, image: str) -> bool:
        """True when image is present locally or its manifest resolves in a registry."""
        if (await self._run("image", "inspect", image)).ok:
            return True
        return (await self._run("manifest", "inspect", image)).ok

    # ------------------------------------------------------------------
    # Pre-flight
    # ------------------------------------------------------------------

    async def run_pre_flight_checks(
        self, context_dir: str, dockerfile: str = "Dockerfile", ports: list[int] | None = None
    ) -> list[PreFlightCheck]:
        checks = await self._docker_checks()

        build_file = Path(context_dir) / dockerfile
        if build_file.is_file():
            checks.append(PreFlightCheck(name="Build file", status="passed", message=f"{dockerfile} found"))
        else:
            checks.append(
                PreFlightCheck(
                    name="Build file",
                    status="failed",
                    message=f"{dockerfile} not found in {context_dir}",
                    fix="Generate the deployment configuration first",
                )
            )

        checks.extend(self._port_checks(ports or []))
        checks.append(self._disk_check(context_dir))
        return checks

    async def run_compose_pre_flight_checks(
        self, compose_file: str, ports: list[int] | None = None
    ) -> list[PreFlightCheck]:
        checks = await self._docker_checks()
        path = Path(compose_file)

        version = await self._run("compose", "version", "--short") if checks[0].status == "passed" else None
        if version is not None and version.ok:
            checks.append(
                PreFlightCheck(
                    name="Docker Compose",
                    status="passed",
                    message=f"Docker Compose v{version.stdout.strip().lstrip('v') or 'unknown'} is available",
                )
            )
        else:
            checks.append(
                PreFlightCheck(
                    name="Docker Compose",
                    status="failed",
                    message="Docker Compose is not available",
                    fix="Install the Docker Compose plugin or upgrade Docker Desktop",
                )
            )

        if not path.is_file():
            checks.append(
                PreFlightCheck(
                    name="Compose file",
                    status="failed",
                    message=f"{path.name} not found in {path.parent}",
                    fix="Generate a docker-compose.yml configuration for this project",
                )
            )
            checks.append(self._disk_check(str(path.parent)))
            return checks

        text = path.read_text(encoding="utf-8", errors="replace")
        validation = validate_compose_text(text)
        if validation["valid"]:
            checks.append(
                PreFlightCheck(
                    name="Compose file",
                    status="passed",
                    message=f"{path.name} is valid ({len(validation['services'])} services)",
                )
            )
        else:
            checks.append(
                PreFlightCheck(
                    name="Compose file",
                    status="failed",
                    message=f"Invalid {path.name}: {validation['errors'][0]}",
                    fix=f"Review and fix {path.name}",
                )
            )

        images = compose_images(text)
        if images and checks[1].status == "passed":
            missing = [f"{name}: {image}" for name, image in images.items() if not await self.image_available(image)]
            if missing:
                checks.append(
                    PreFlightCheck(
                        name="Docker images",
                        status="failed",
                        message=f"Images not found: {', '.join(missing)}",
                        fix=f"Fix the image tags in {path.name}",
                    )
                )
            else:
                checks.append(
                    PreFlightCheck(name="Docker images", status="passed", message=f"All {len(images)} images resolve")
                )

        checks.extend(self._port_checks(ports or []))
        checks.append(self._disk_check(str(path.parent)))
        return checks

    async def _docker_checks(self) -> list[PreFlightCheck]:
        checks: list[PreFlightCheck] = []
        installed = self.check_installed()
        checks.append(
            PreFlightCheck(name="Docker installed", status="passed", message="Docker CLI found")
            if installed
            else PreFlightCheck(
                name="Docker installed",
                status="failed",
                message="Docker CLI not found on PATH",
                fix="Install Docker: https://docs.docker.com/get-docker/",
            )
        )

        if installed and await self.ping():
            checks.append(PreFlightCheck(name="Docker daemon", status="passed", message="Docker daemon is running"))
        else:
            checks.append(
                PreFlightCheck(
                    name="Docker daemon", status="failed", message="Docker daemon is not reachable", fix=DAEMON_FIX
                )
            )
        return checks

    def _port_checks(self, ports: list[int]) -> list[PreFlightCheck]:
        checks = []
        for port in ports:
            if self._is_port_free(port):
                checks.append(PreFlightCheck(name=f"Port {port}", status="passed", message=f"Port {port} is available"))
            else:
                checks.append(
                    PreFlightCheck(
                        name=f"Port {port}",
                        status="failed",
                        message=f"Port {port} is already in use",
                        fix=f"Stop the process using port {port} or map a different host port",
                    )
                )
        return checks

    def _disk_check(self, path: str) -> PreFlightCheck:
        try:
            usage = self._disk_usage(path if Path(path).exists() else ".")
        except OSError as exc:
            return PreFlightCheck(name="Disk space", status="warning", message=f"Could not read disk usage: {exc}")
        total, used = usage[0], usage[1]
        percent = used / total * 100 if total else 0.0
        if percent > DISK_FAIL_PERCENT:
            return PreFlightCheck(
                name="Disk space",
                status="failed",
                message=f"Disk is {percent:.0f}% full",
                fix="Free disk space, e.g. 'docker system prune'",
            )
        if percent > DISK_WARN_PERCENT:
            return PreFlightCheck(
                name="Disk space",
                status="warning",
                message=f"Disk is {percent:.0f}% full",
                fix="Consider freeing disk space",
            )
        return PreFlightCheck(name="Disk space", status="passed", message=f"Disk is {percent:.0f}% full")
