# recovery.py
# Recovery agent
#
# Wraps a failed deployment in a bounded session:
#
#   for each attempt, while the budget lasts:
#     1. give the model the classified error, the config files and the logs
#     2. let it inspect, edit and redeploy through the recovery tools
#     3. if it did not redeploy itself, redeploy once
#     4. stop when a deployment is running, or the model gives up
#
# attempt_number counts state machine runs made by the session and never
# exceeds max_attempts. The session always ends completed, failed or
# cancelled.

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import Field

from deploy_pilot.classifier import POSSIBLE_CAUSES, suggest_fixes
from deploy_pilot.deployment import DeploymentStateMachine, failed_service, http_probe
from deploy_pilot.docker import (
    COMPOSE_FILE_NAMES,
    compose_host_ports,
    compose_project_name,
    validate_compose_text,
)
from deploy_pilot.events import ProgressChannel
from deploy_pilot.harness import ChatModel, ToolLoop, ToolLoopTimeout
from deploy_pilot.models import (
    DeploymentOutcome,
    DeploymentPlan,
    FixResult,
    FixSuggestion,
    RecoverySession,
    RecoverySessionStatus,
)
from deploy_pilot.providers import ProviderError
from deploy_pilot.timing import race_with_timeout
from deploy_pilot.tools import (
    ListDirectoryArgs,
    ReadFileArgs,
    ToolArgs,
    ToolError,
    Toolbox,
    ToolSpec,
    list_directory,
    read_file,
    resolve_inside,
    walk_files,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_RECOVERY_TIMEOUT = 15 * 60.0
MAX_CONTEXT_FILES = 50
MAX_CONTEXT_LOG_LINES = 100
MAX_RAW_ERROR_CHARS = 4000
MAX_LISTED_FILES = 1000

Status = RecoverySessionStatus


RECOVERY_SYSTEM_PROMPT = """You are a deployment recovery engineer. A Docker deployment has failed and
you must make it run.

Work in small steps:
1. Read the error, the logs and the deployment files you are given.
2. Use readDeploymentFile, listDeploymentFiles, validateDockerfile and
   validateDockerCompose to confirm the cause before changing anything.
3. Fix the cause with writeDeploymentFile. Always give a short reason.
4. Call deployProject to try again. Every call uses one of a limited number
   of deployment attempts, so only deploy after a real fix.
5. When the deployment is running, verify it with checkServiceHealth or
   checkEndpointHealth, then call completeSession with success=true.
6. If the problem cannot be fixed from the deployment files (for example
   Docker is not running or a secret is missing), call completeSession with
   success=false and list what the user must do in suggestions.

Use reportProgress to tell the user what you are doing. Never invent file
contents you have not read."""


# ---------------------------------------------------------------------------
# Tool arguments
# ---------------------------------------------------------------------------


class WriteDeploymentFileArgs(ToolArgs):
    file_path: str = Field(..., description="Path relative to the deployment directory.")
    content: str = Field(..., description="Complete new file content.")
    reason: str = Field(..., description="Why this change fixes the failure.")


class ListDeploymentFilesArgs(ToolArgs):
    directory: str = "."
    recursive: bool = False


class NoArgs(ToolArgs):
    pass


class GetDeploymentLogsArgs(ToolArgs):
    type: Literal["build", "runtime", "all"] = "all"
    tail: int = Field(default=100, ge=1, le=1000)


class ValidateFileArgs(ToolArgs):
    file_path: str | None = Field(default=None, description="Defaults to the deployment's own file.")


class CheckServiceHealthArgs(ToolArgs):
    service: str | None = Field(
        default=None, description="Container name, or compose service name; defaults to the whole deployment."
    )


class CheckEndpointHealthArgs(ToolArgs):
    url: str
    expected_status: int = Field(default=200, description="Expected HTTP status. 0 accepts any 2xx.")
    timeout: int = Field(default=5000, ge=1, description="Timeout in milliseconds.")


class GetContainerLogsArgs(ToolArgs):
    tail: int = Field(default=50, ge=1, le=1000)


class ReportProgressArgs(ToolArgs):
    message: str
    progress_type: Literal["analyzing", "fixing", "testing", "info"] = "info"


class CompleteSessionArgs(ToolArgs):
    success: bool
    summary: str
    suggestions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def validate_dockerfile_text(text: str) -> dict:
    errors: list[str] = []
    warnings: list[str] = []
    instructions = [
        line.strip().split(None, 1)[0].upper()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]
    if not instructions:
        errors.append("Dockerfile is empty")
    else:
        first = next((word for word in instructions if word != "ARG"), None)
        if "FROM" not in instructions:
            errors.append("Dockerfile has no FROM instruction")
        elif first != "FROM":
            errors.append(f"First instruction must be FROM, found {first}")
        if "CMD" not in instructions and "ENTRYPOINT" not in instructions:
            warnings.append("No CMD or ENTRYPOINT; the container will use the base image default")
    return {"valid": not errors, "errors": errors, "warnings": warnings}


def _endpoint_healthy(status: int | None, expected: int) -> bool:
    if status is None:
        return False
    if expected == 0:
        return 200 <= status < 300
    return status == expected


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class RecoveryAgent:
    """
    Bounded, agent-driven repair of a failed deployment.

    Example:
        agent = RecoveryAgent(provider, machine, plan, channel, max_attempts=3)
        session = await agent.recover(failed_outcome)
        print(session.status, session.summary)
    """

    def __init__(
        self,
        model: ChatModel,
        state_machine: DeploymentStateMachine,
        plan: DeploymentPlan,
        channel: ProgressChannel | None = None,
        *,
        max_attempts: int = 3,
        max_steps: int = 50,
        timeout: float | None = DEFAULT_RECOVERY_TIMEOUT,
        probe=http_probe,
    ) -> None:
        if not callable(getattr(model, "complete", None)):
            raise ProviderError("Recovery needs a tool-calling provider; this one cannot drive custom tools.")
        self._model = model
        self._machine = state_machine
        self._plan = plan
        self._channel = channel
        self._max_steps = max_steps
        self._timeout = timeout
        self._probe = probe
        self._root = Path(plan.config_path)
        self.session = RecoverySession(max_attempts=max_attempts)
        self._latest: DeploymentOutcome | None = None
        self._cancelled = False
        self._abandoned = False
        self._stop_inner = False
        self._deployed_this_round = False
        self._toolbox = self._build_toolbox()

    @property
    def toolbox(self) -> Toolbox:
        return self._toolbox

    @property
    def latest_outcome(self) -> DeploymentOutcome | None:
        return self._latest

    def cancel(self) -> None:
        """Ask the session to stop at the next turn boundary."""
        self._cancelled = True

    def _emit(self, type: str, message: str, **details) -> None:
        if self._channel is not None:
            self._channel.emit(type, message, **details)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def recover(self, failed_outcome: DeploymentOutcome | None = None) -> RecoverySession:
        LOGGER.info(
            "recovery_started",
            extra={"session": self.session.id, "max_attempts": self.session.max_attempts},
        )
        try:
            await race_with_timeout(
                self._recover(failed_outcome),
                self._timeout,
                f"Recovery did not finish within {self._timeout:.0f}s." if self._timeout else "",
                error=ToolLoopTimeout,
            )
        except ToolLoopTimeout as exc:
            # the round keeps running in the background; it must not touch the session again
            self._abandoned = True
            self._cancelled = True
            self._finish(Status.FAILED, str(exc))
        except ProviderError as exc:
            self._finish(Status.FAILED, f"Model provider failed: {exc}")
        except Exception as exc:
            LOGGER.exception("recovery_crashed", extra={"session": self.session.id})
            self._finish(Status.FAILED, f"Recovery stopped on an unexpected error: {exc}")
            raise
        finally:
            if not self.session.is_terminal:
                self._finish(Status.FAILED, "Recovery ended without a result.")
        return self.session

    async def _recover(self, failed_outcome: DeploymentOutcome | None) -> None:
        session = self.session
        if failed_outcome is None:
            await self._deploy()
        else:
            self._latest = failed_outcome
            session.last_error = failed_outcome.error

        while not session.is_terminal:
            if self._cancelled:
                self._finish(Status.CANCELLED, "Recovery was cancelled.")
                return
            if self._latest is not None and self._latest.success:
                self._finish(Status.COMPLETED, session.summary or "Deployment is running.")
                return
            if session.attempt_number >= session.max_attempts:
                self._finish(
                    Status.FAILED,
                    f"Deployment still failing after {session.attempt_number} attempts.",
                )
                return

            session.status = Status.ANALYZING
            self._stop_inner = False
            self._deployed_this_round = False
            loop = ToolLoop(
                self._model,
                self._toolbox,
                max_steps=self._max_steps,
                timeout=None,
                channel=self._channel,
                stop_when=lambda: self._stop_inner or self._cancelled or session.is_terminal,
            )
            result = await loop.run(RECOVERY_SYSTEM_PROMPT, self._context())
            if self._abandoned:
                return
            session.transcript.extend(result.transcript)
            if result.text and not session.summary:
                session.summary = result.text
            LOGGER.info(
                "recovery_round_finished",
                extra={"session": session.id, "steps": result.steps, "exhausted": result.exhausted},
            )

            if session.is_terminal or self._cancelled:
                continue
            if not self._deployed_this_round and session.attempt_number < session.max_attempts:
                await self._deploy()

    def _finish(self, status: RecoverySessionStatus, summary: str) -> None:
        session = self.session
        if session.is_terminal:
            return
        if status == Status.FAILED and not session.suggestions and session.last_error is not None:
            session.suggestions = suggest_fixes(session.last_error)
        if status != Status.COMPLETED or not session.summary:
            session.summary = summary
        session.status = status
        session.completed_at = datetime.now(timezone.utc)
        LOGGER.info(
            "recovery_finished",
            extra={"session": session.id, "status": status.value, "attempts": session.attempt_number},
        )
        self._emit(
            "error" if status == Status.FAILED else "status",
            f"Recovery {status.value}: {session.summary}",
            status=status.value,
        )

    async def _deploy(self) -> DeploymentOutcome:
        session = self.session
        session.status = Status.RETRYING
        session.attempt_number += 1
        self._deployed_this_round = True
        self._emit(
            "status",
            f"Deployment attempt {session.attempt_number}/{session.max_attempts}",
            attempt=session.attempt_number,
        )
        outcome = await self._machine.run(self._plan)
        if self._abandoned:
            return outcome
        self._latest = outcome
        if outcome.success:
            session.deploy_url = outcome.deploy_url
        else:
            session.last_error = outcome.error
        LOGGER.info(
            "recovery_deploy_attempt",
            extra={"attempt": session.attempt_number, "status": outcome.status.value},
        )
        return outcome

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _read_optional(self, name: str) -> str | None:
        path = self._root / name
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    def _context(self) -> str:
        session = self.session
        sections = [
            f"Deployment directory: {self._plan.config_path}",
            f"Image: {self._plan.image_tag}  Container: {self._plan.container_name}",
            f"Deployment attempts used: {session.attempt_number}/{session.max_attempts}",
        ]

        error = session.last_error
        if error is not None:
            lines = [
                "## Error",
                f"Type: {error.type.value}",
                f"Stage: {error.stage.value}",
                f"Message: {error.message}",
            ]
            if error.exit_code is not None:
                lines.append(f"Exit code: {error.exit_code}")
            if error.location is not None:
                lines.append(f"Location: {error.location.file}:{error.location.line or '?'}")
            causes = POSSIBLE_CAUSES.get(error.type)
            if causes:
                lines.append("Possible causes: " + "; ".join(causes))
            lines.append("Suggested fixes:")
            lines.extend(f"- {fix.description}" for fix in suggest_fixes(error))
            if error.raw_error:
                lines.append("Raw error:\n```\n" + error.raw_error[-MAX_RAW_ERROR_CHARS:] + "\n```")
            sections.append("\n".join(lines))

        dockerfile = self._read_optional(self._plan.dockerfile_path)
        if dockerfile is not None:
            sections.append(f"## {self._plan.dockerfile_path}\n```dockerfile\n{dockerfile}\n```")
        for name in COMPOSE_FILE_NAMES:
            compose = self._read_optional(name)
            if compose is not None:
                sections.append(f"## {name}\n```yaml\n{compose}\n```")
                break

        if self._root.is_dir():
            files = []
            for path in walk_files(self._root, include_hidden=True):
                files.append(path.relative_to(self._root).as_posix())
                if len(files) >= MAX_CONTEXT_FILES:
                    break
            sections.append("## Files\n" + "\n".join(files))

        logs = self._recent_logs("all", MAX_CONTEXT_LOG_LINES)
        if logs:
            sections.append("## Recent logs\n```\n" + "\n".join(logs) + "\n```")

        if session.fixes_applied:
            sections.append(
                "## Fixes already applied\n"
                + "\n".join(f"- {fix.file}: {fix.reason or fix.message}" for fix in session.fixes_applied)
            )
        return "\n\n".join(sections)

    def _recent_logs(self, kind: str, tail: int) -> list[str]:
        outcome = self._latest
        if outcome is None:
            return []
        logs: list[str] = []
        if kind in ("build", "all"):
            logs.extend(outcome.build_logs)
        if kind in ("runtime", "all"):
            logs.extend(outcome.runtime_logs)
        return logs[-tail:]

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def read_deployment_file(self, args: ReadFileArgs) -> dict:
        return read_file(self._root, args)

    def write_deployment_file(self, args: WriteDeploymentFileArgs) -> dict:
        target = resolve_inside(self._root, args.file_path)
        before = target.read_text(encoding="utf-8", errors="replace") if target.is_file() else None
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(args.content, encoding="utf-8")
        fix = FixResult(
            success=True,
            message=f"Updated {args.file_path}",
            file=args.file_path,
            before=before,
            after=args.content,
            reason=args.reason,
        )
        self.session.fixes_applied.append(fix)
        self.session.status = Status.FIXING
        LOGGER.info("recovery_fix_applied", extra={"file": args.file_path, "reason": args.reason})
        return {"filePath": args.file_path, "fixId": fix.fix_id, "created": before is None, "success": True}

    def list_deployment_files(self, args: ListDeploymentFilesArgs) -> dict:
        if not args.recursive:
            return list_directory(self._root, ListDirectoryArgs(dir_path=args.directory))
        target = resolve_inside(self._root, args.directory)
        if not target.is_dir():
            raise ToolError(f"Directory not found: {args.directory}")
        base = self._root.resolve()
        files = []
        for path in walk_files(target):
            files.append(path.relative_to(base).as_posix())
            if len(files) >= MAX_LISTED_FILES:
                break
        return {"path": args.directory, "files": files, "count": len(files)}

    def _compose_target(self) -> tuple[str, str] | None:
        if not self._plan.compose_file:
            return None
        return str(self._root / self._plan.compose_file), compose_project_name(self._plan.container_name)

    async def run_pre_flight_checks(self, args: NoArgs) -> dict:
        runtime = self._machine.runtime
        target = self._compose_target()
        if target is None:
            checks = await runtime.run_pre_flight_checks(
                self._plan.config_path, self._plan.dockerfile_path, [port.host for port in self._plan.ports]
            )
        else:
            compose = self._read_optional(self._plan.compose_file) or ""
            declared = compose_host_ports(compose, self._plan.environment)
            checks = await runtime.run_compose_pre_flight_checks(
                target[0], sorted({port for ports in declared.values() for port in ports})
            )
        return {
            "passed": not any(check.status == "failed" for check in checks),
            "checks": [check.model_dump() for check in checks],
        }

    async def deploy_project(self, args: NoArgs) -> dict:
        session = self.session
        if session.attempt_number >= session.max_attempts:
            self._stop_inner = True
            raise ToolError(
                f"No deployment attempts left ({session.attempt_number}/{session.max_attempts} used)."
            )
        outcome = await self._deploy()
        payload = {
            "success": outcome.success,
            "status": outcome.status.value,
            "attempt": session.attempt_number,
            "maxAttempts": session.max_attempts,
            "deployUrl": outcome.deploy_url,
        }
        if outcome.error is not None:
            payload["error"] = {
                "type": outcome.error.type.value,
                "stage": outcome.error.stage.value,
                "message": outcome.error.message,
            }
            payload["logs"] = self._recent_logs("all", 30)
        return payload

    def get_deployment_logs(self, args: GetDeploymentLogsArgs) -> dict:
        logs = self._recent_logs(args.type, args.tail)
        return {"type": args.type, "logs": logs, "lines": len(logs)}

    def validate_docker_compose(self, args: ValidateFileArgs) -> dict:
        names = [args.file_path] if args.file_path else list(COMPOSE_FILE_NAMES)
        for name in names:
            target = resolve_inside(self._root, name)
            if target.is_file():
                result = validate_compose_text(target.read_text(encoding="utf-8", errors="replace"))
                return {"filePath": name, **result}
        raise ToolError(f"Compose file not found: {', '.join(names)}")

    def validate_dockerfile(self, args: ValidateFileArgs) -> dict:
        name = args.file_path or self._plan.dockerfile_path
        target = resolve_inside(self._root, name)
        if not target.is_file():
            raise ToolError(f"Dockerfile not found: {name}")
        return {"filePath": name, **validate_dockerfile_text(target.read_text(encoding="utf-8", errors="replace"))}

    async def check_service_health(self, args: CheckServiceHealthArgs) -> dict:
        target = self._compose_target()
        if target is not None:
            services = await self._machine.runtime.compose_ps(*target)
            if args.service:
                services = [service for service in services if service.name == args.service]
            return {
                "project": target[1],
                "services": [
                    {"name": s.name, "status": s.state, "health": s.health, "exitCode": s.exit_code, "running": s.running}
                    for s in services
                ],
                "healthy": bool(services) and failed_service(services) is None,
            }
        container = args.service or self._plan.container_name
        state = await self._machine.runtime.get_status(container)
        return {
            "service": container,
            "found": state.found,
            "status": state.status,
            "running": state.running,
            "exitCode": state.exit_code,
            "healthy": state.running,
        }

    async def check_endpoint_health(self, args: CheckEndpointHealthArgs) -> dict:
        status = await self._probe(args.url, args.timeout / 1000)
        return {
            "url": args.url,
            "status": status,
            "expectedStatus": args.expected_status,
            "healthy": _endpoint_healthy(status, args.expected_status),
        }

    async def get_container_logs(self, args: GetContainerLogsArgs) -> dict:
        target = self._compose_target()
        if target is not None:
            logs = await self._machine.runtime.compose_logs(*target, args.tail)
            return {"project": target[1], "logs": logs, "lines": len(logs)}
        container = (self._latest.container_id if self._latest else None) or self._plan.container_name
        logs = await self._machine.runtime.get_logs(container, args.tail)
        return {"container": container, "logs": logs, "lines": len(logs)}

    def report_progress(self, args: ReportProgressArgs) -> dict:
        if args.progress_type == "analyzing":
            self.session.status = Status.ANALYZING
        elif args.progress_type == "fixing":
            self.session.status = Status.FIXING
        self._emit("status", args.message, progress_type=args.progress_type)
        return {"acknowledged": True}

    def complete_session(self, args: CompleteSessionArgs) -> dict:
        session = self.session
        if not args.success:
            session.suggestions = [FixSuggestion(description=text) for text in args.suggestions] or (
                suggest_fixes(session.last_error) if session.last_error else []
            )
            self._finish(Status.FAILED, args.summary)
            return {"accepted": True, "status": session.status.value}

        if self._latest is not None and self._latest.success:
            session.summary = args.summary
            self._finish(Status.COMPLETED, args.summary)
            return {"accepted": True, "status": session.status.value}

        # claim without a running deployment: hand control back to the outer loop
        session.summary = args.summary
        self._stop_inner = True
        LOGGER.info("recovery_success_claim_rejected", extra={"session": session.id})
        return {
            "accepted": False,
            "reason": "The latest deployment is not running. A new deployment attempt will be made.",
        }

    def _guarded(self, handler):
        """Wrap a tool handler so it refuses to run once the session has ended."""

        def run(args):
            if self._cancelled or self.session.is_terminal:
                raise ToolError("Recovery session is no longer active; no further tool calls are accepted.")
            return handler(args)

        return run

    def _build_toolbox(self) -> Toolbox:
        specs = [
            ToolSpec("readDeploymentFile", "Read a file from the deployment directory.",
                     ReadFileArgs, self.read_deployment_file, lambda a: f"Reading {a.file_path}"),
            ToolSpec("writeDeploymentFile", "Overwrite a deployment file with a fix. Give the reason.",
                     WriteDeploymentFileArgs, self.write_deployment_file,
                     lambda a: f"Fixing {a.file_path}: {a.reason}"),
            ToolSpec("listDeploymentFiles", "List files in the deployment directory.",
                     ListDeploymentFilesArgs, self.list_deployment_files, lambda a: f"Listing {a.directory}"),
            ToolSpec("runPreFlightChecks", "Check Docker, the build file, host ports and disk space.",
                     NoArgs, self.run_pre_flight_checks, lambda a: "Running pre-flight checks"),
            ToolSpec("deployProject", "Build and run the deployment again. Uses one deployment attempt.",
                     NoArgs, self.deploy_project, lambda a: "Redeploying"),
            ToolSpec("getDeploymentLogs", "Read build and runtime logs of the latest deployment.",
                     GetDeploymentLogsArgs, self.get_deployment_logs, lambda a: f"Reading {a.type} logs"),
            ToolSpec("validateDockerCompose", "Check a compose file's YAML and services.",
                     ValidateFileArgs, self.validate_docker_compose, lambda a: "Validating compose file"),
            ToolSpec("validateDockerfile", "Check a Dockerfile is non-empty and starts FROM a base image.",
                     ValidateFileArgs, self.validate_dockerfile, lambda a: "Validating Dockerfile"),
            ToolSpec("checkServiceHealth", "Inspect the deployed container's or compose services' state.",
                     CheckServiceHealthArgs, self.check_service_health, lambda a: "Checking container health"),
            ToolSpec("checkEndpointHealth", "Send an HTTP GET and compare the status code.",
                     CheckEndpointHealthArgs, self.check_endpoint_health, lambda a: f"Checking {a.url}"),
            ToolSpec("getContainerLogs", "Read the deployed container's or compose project's latest output.",
                     GetContainerLogsArgs, self.get_container_logs, lambda a: "Reading container logs"),
            ToolSpec("reportProgress", "Tell the user what you are doing.",
                     ReportProgressArgs, self.report_progress, lambda a: a.message),
            ToolSpec("completeSession", "End the session. success=true only once the deployment is running.",
                     CompleteSessionArgs, self.complete_session,
                     lambda a: "Finishing recovery" if a.success else "Giving up recovery"),
        ]
        for spec in specs:
            spec.handler = self._guarded(spec.handler)
        return Toolbox(specs)
