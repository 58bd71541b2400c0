# deployment.py
# Deployment state machine
#
#   pending → pre_flight → building → deploying → running
#   failed is reachable from every non-terminal state
#   running → stopped | terminated
#
# The machine never retries. Every run returns a DeploymentOutcome value;
# failures are classified DeploymentErrors inside it, not exceptions.
# Only an illegal transition raises, because that is a programming error.
#
# `deploying → running` is earned, not assumed: the container must survive
# a settle window and, when it maps a port, answer an HTTP probe.
#
# A plan with a compose_file walks the same states as a compose project:
# `compose down` before pre-flight, `compose build`, `compose up -d`, then
# every service must stay up and the first published service must answer.

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

import httpx

from deploy_pilot.classifier import classify_error, make_error
from deploy_pilot.docker import (
    CommandExecutionError,
    ContainerRuntime,
    ContainerState,
    ServiceState,
    compose_host_ports,
    compose_project_name,
    service_urls,
)
from deploy_pilot.events import ProgressChannel
from deploy_pilot.models import (
    DeploymentError,
    DeploymentErrorStage,
    DeploymentErrorType,
    DeploymentOutcome,
    DeploymentPlan,
    DeploymentStatus,
)

LOGGER = logging.getLogger(__name__)

S = DeploymentStatus

ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    S.PENDING: frozenset({S.PRE_FLIGHT, S.FAILED}),
    S.PRE_FLIGHT: frozenset({S.BUILDING, S.FAILED}),
    S.BUILDING: frozenset({S.DEPLOYING, S.FAILED}),
    S.DEPLOYING: frozenset({S.RUNNING, S.FAILED}),
    S.RUNNING: frozenset({S.STOPPED, S.TERMINATED, S.FAILED}),
    S.STOPPED: frozenset({S.TERMINATED}),
    S.FAILED: frozenset({S.TERMINATED}),
    S.TERMINATED: frozenset(),
}

_STAGE_FOR_STATUS = {
    S.PENDING: DeploymentErrorStage.PRE_FLIGHT,
    S.PRE_FLIGHT: DeploymentErrorStage.PRE_FLIGHT,
    S.BUILDING: DeploymentErrorStage.BUILD,
    S.DEPLOYING: DeploymentErrorStage.DEPLOY,
    S.RUNNING: DeploymentErrorStage.RUNTIME,
}

CRASHED_STATES = frozenset({"exited", "dead"})
FAILED_SERVICE_STATES = frozenset({"dead", "restarting"})
OOM_EXIT_CODE = 137

Probe = Callable[[str], Awaitable[int | None]]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class InvalidTransitionError(Exception):
    """Raised when code asks the state machine for a transition the table forbids."""


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------


async def http_probe(url: str, timeout: float = 5.0) -> int | None:
    """Status code of a GET to url, or None when nothing answered."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        LOGGER.debug("http_probe_failed", extra={"url": url, "error": str(exc)})
        return None
    return response.status_code


def failed_service(services: list[ServiceState]) -> ServiceState | None:
    """
    The first service that crashed, or None while the project looks healthy.

    A service that exited 0 is a finished one-shot job, unless nothing at
    all is left running.
    """
    for service in services:
        if service.state in FAILED_SERVICE_STATES or (service.state == "exited" and service.exit_code != 0):
            return service
    if services and not any(service.running for service in services):
        return services[0]
    return None


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class DeploymentStateMachine:
    """
    Drives one plan through pre-flight, build, deploy and verification.

    Example:
        machine = DeploymentStateMachine(DockerCLIRuntime(), channel)
        outcome = await machine.run(plan)
        if not outcome.success:
            print(outcome.error.type, outcome.error.message)
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        channel: ProgressChannel | None = None,
        *,
        settle_seconds: float = 2.0,
        poll_interval: float = 0.5,
        probe_attempts: int = 5,
        probe_interval: float = 1.0,
        probe: Probe = http_probe,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log_tail: int = 100,
    ) -> None:
        self.runtime = runtime
        self._channel = channel
        self._settle_seconds = settle_seconds
        self._poll_interval = poll_interval
        self._probe_attempts = max(1, probe_attempts)
        self._probe_interval = probe_interval
        self._probe = probe
        self._sleep = sleep
        self._log_tail = log_tail

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _emit(self, type: str, message: str, **details) -> None:
        if self._channel is not None:
            self._channel.emit(type, message, **details)

    def _advance(self, outcome: DeploymentOutcome, target: DeploymentStatus) -> None:
        current = outcome.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Cannot move deployment from {current.value} to {target.value}.")
        outcome.status = target
        outcome.history.append(target)
        LOGGER.info("deployment_transition", extra={"from": current.value, "to": target.value})
        self._emit("status", f"Deployment {target.value.replace('_', '-')}", status=target.value)

    def _fail(self, outcome: DeploymentOutcome, error: DeploymentError) -> DeploymentOutcome:
        outcome.error = error
        self._advance(outcome, S.FAILED)
        self._emit("error", error.message, error_type=error.type.value, stage=error.stage.value)
        return outcome

    def _pre_flight_error(self, outcome: DeploymentOutcome) -> DeploymentError | None:
        for check in outcome.checks:
            self._emit("pre_flight", f"{check.name}: {check.message}", status=check.status, fix=check.fix)
        failed = [check for check in outcome.checks if check.status == "failed"]
        if not failed:
            return None
        raw = "\n".join(f"{c.name}: {c.message}" + (f" ({c.fix})" if c.fix else "") for c in failed)
        return classify_error(raw, DeploymentErrorStage.PRE_FLIGHT)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, plan: DeploymentPlan) -> DeploymentOutcome:
        outcome = DeploymentOutcome(history=[S.PENDING])
        try:
            if plan.compose_file:
                return await self._run_compose(plan, outcome)
            return await self._run(plan, outcome)
        except CommandExecutionError as exc:
            stage = _STAGE_FOR_STATUS.get(outcome.status, DeploymentErrorStage.DEPLOY)
            return self._fail(outcome, classify_error(exc.output or str(exc), stage))

    async def _run(self, plan: DeploymentPlan, outcome: DeploymentOutcome) -> DeploymentOutcome:
        # ── pre-flight ──────────────────────────────────────────────
        self._advance(outcome, S.PRE_FLIGHT)
        # a previous attempt's container still holds its host ports
        if self.runtime.check_installed():
            await self.runtime.remove(plan.container_name, force=True)
        outcome.checks = await self.runtime.run_pre_flight_checks(
            plan.config_path, plan.dockerfile_path, [port.host for port in plan.ports]
        )
        error = self._pre_flight_error(outcome)
        if error is not None:
            return self._fail(outcome, error)

        # ── build ───────────────────────────────────────────────────
        self._advance(outcome, S.BUILDING)
        build = await self.runtime.build_image(
            plan.config_path,
            plan.image_tag,
            plan.dockerfile_path,
            plan.build_args,
            on_line=lambda line: self._emit("build", line),
        )
        outcome.build_logs = build.logs
        if not build.success:
            raw = "\n".join(build.logs)
            if build.exit_code == 0:
                error = make_error(
                    DeploymentErrorType.BUILD_FAILED,
                    DeploymentErrorStage.BUILD,
                    f"Build finished but image {plan.image_tag} could not be found",
                    raw,
                )
            else:
                error = classify_error(
                    raw, DeploymentErrorStage.BUILD, exit_code=build.exit_code, default=DeploymentErrorType.BUILD_FAILED
                )
            return self._fail(outcome, error)
        outcome.image_id = build.image_id

        # ── deploy ──────────────────────────────────────────────────
        self._advance(outcome, S.DEPLOYING)
        started = await self.runtime.run_container(plan.image_tag, plan.container_name, plan.ports, plan.environment)
        if not started.success:
            return self._fail(
                outcome,
                classify_error(started.output, DeploymentErrorStage.DEPLOY, default=DeploymentErrorType.STARTUP_FAILED),
            )
        outcome.container_id = started.container_id
        self._emit("deploy", f"Container {plan.container_name} started", container_id=started.container_id)

        # ── verify ──────────────────────────────────────────────────
        error = await self._verify(plan, outcome)
        if error is not None:
            return self._fail(outcome, error)

        outcome.runtime_logs = await self.runtime.get_logs(outcome.container_id, self._log_tail)
        self._advance(outcome, S.RUNNING)
        self._emit("deploy", f"Deployment running{' at ' + outcome.deploy_url if outcome.deploy_url else ''}")
        return outcome

    async def _run_compose(self, plan: DeploymentPlan, outcome: DeploymentOutcome) -> DeploymentOutcome:
        compose_file = str(Path(plan.config_path) / plan.compose_file)
        project = compose_project_name(plan.container_name)
        outcome.compose_file = compose_file
        outcome.compose_project = project
        path = Path(compose_file)
        declared = compose_host_ports(
            path.read_text(encoding="utf-8", errors="replace") if path.is_file() else "", plan.environment
        )

        # ── pre-flight ──────────────────────────────────────────────
        self._advance(outcome, S.PRE_FLIGHT)
        # the project's previous containers still hold their host ports
        if self.runtime.check_installed() and path.is_file():
            await self.runtime.compose_down(compose_file, project)
        if plan.environment and path.parent.is_dir():
            self.runtime.write_env_file(str(path.parent), plan.environment)
        host_ports = sorted({port for ports in declared.values() for port in ports})
        outcome.checks = await self.runtime.run_compose_pre_flight_checks(compose_file, host_ports)
        error = self._pre_flight_error(outcome)
        if error is not None:
            return self._fail(outcome, error)

        # ── build ───────────────────────────────────────────────────
        self._advance(outcome, S.BUILDING)
        build = await self.runtime.compose_build(compose_file, project, on_line=lambda line: self._emit("build", line))
        outcome.build_logs = build.logs
        if not build.success:
            return self._fail(
                outcome,
                classify_error(
                    "\n".join(build.logs),
                    DeploymentErrorStage.BUILD,
                    exit_code=build.exit_code,
                    default=DeploymentErrorType.BUILD_FAILED,
                ),
            )

        # ── deploy ──────────────────────────────────────────────────
        self._advance(outcome, S.DEPLOYING)
        started = await self.runtime.compose_up(compose_file, project)
        if not started.success:
            return self._fail(
                outcome,
                classify_error(started.output, DeploymentErrorStage.DEPLOY, default=DeploymentErrorType.STARTUP_FAILED),
            )
        self._emit("deploy", f"Compose project {project} started")

        # ── verify ──────────────────────────────────────────────────
        error = await self._verify_compose(plan, outcome, declared)
        if error is not None:
            return self._fail(outcome, error)

        outcome.runtime_logs = await self.runtime.compose_logs(compose_file, project, self._log_tail)
        self._advance(outcome, S.RUNNING)
        for service, url in outcome.service_urls.items():
            self._emit("deploy", f"Service {service} at {url}", service=service, url=url)
        self._emit("deploy", f"Deployment running{' at ' + outcome.deploy_url if outcome.deploy_url else ''}")
        return outcome

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    @staticmethod
    def _crashed(state: ContainerState) -> bool:
        return not state.found or state.status in CRASHED_STATES

    @staticmethod
    def _runtime_error(message: str, logs: list[str], exit_code: int | None, oom_killed: bool = False) -> DeploymentError:
        if oom_killed or exit_code == OOM_EXIT_CODE:
            return make_error(
                DeploymentErrorType.MEMORY_EXCEEDED,
                DeploymentErrorStage.RUNTIME,
                "Container was killed after running out of memory",
                "\n".join(logs),
                exit_code=exit_code,
                context=logs[-20:],
            )
        return make_error(
            DeploymentErrorType.STARTUP_FAILED,
            DeploymentErrorStage.RUNTIME,
            message,
            "\n".join(logs),
            exit_code=exit_code,
            context=logs[-20:],
        )

    async def _crash_error(self, outcome: DeploymentOutcome, state: ContainerState) -> DeploymentError:
        logs = await self.runtime.get_logs(outcome.container_id, self._log_tail) if state.found else []
        outcome.runtime_logs = logs
        message = (
            f"Container exited with code {state.exit_code}"
            if state.found
            else "Container disappeared right after starting"
        )
        return self._runtime_error(message, logs, state.exit_code, state.oom_killed)

    async def _service_error(self, outcome: DeploymentOutcome, service: ServiceState | None) -> DeploymentError:
        if service is None:
            outcome.runtime_logs = await self.runtime.compose_logs(
                outcome.compose_file, outcome.compose_project, self._log_tail
            )
            return self._runtime_error("No compose services are running", outcome.runtime_logs, None)
        outcome.runtime_logs = await self.runtime.compose_logs(
            outcome.compose_file, outcome.compose_project, self._log_tail, service.name
        )
        message = (
            f"Service {service.name} exited with code {service.exit_code}"
            if service.state == "exited"
            else f"Service {service.name} is {service.state}"
        )
        return self._runtime_error(message, outcome.runtime_logs, service.exit_code)

    async def _settle(self, check: Callable[[], Awaitable[DeploymentError | None]]) -> DeploymentError | None:
        waited = 0.0
        while True:
            error = await check()
            if error is not None or waited >= self._settle_seconds:
                return error
            await self._sleep(self._poll_interval)
            waited += self._poll_interval

    async def _probe_until_ready(
        self,
        outcome: DeploymentOutcome,
        base_url: str,
        health_path: str,
        check: Callable[[], Awaitable[DeploymentError | None]],
        read_logs: Callable[[], Awaitable[list[str]]],
    ) -> DeploymentError | None:
        path = health_path if health_path.startswith("/") else f"/{health_path}"
        url = f"{base_url}{path}"
        status: int | None = None
        for attempt in range(self._probe_attempts):
            status = await self._probe(url)
            if status is not None and status < 500:
                outcome.deploy_url = base_url
                self._emit("deploy", f"Service answered {status} at {url}")
                return None
            error = await check()
            if error is not None:
                return error
            if attempt + 1 < self._probe_attempts:
                await self._sleep(self._probe_interval)

        logs = await read_logs()
        outcome.runtime_logs = logs
        detail = f" (last status {status})" if status is not None else ""
        return make_error(
            DeploymentErrorType.HEALTHCHECK_FAILED,
            DeploymentErrorStage.RUNTIME,
            f"Service did not respond at {url}{detail}",
            "\n".join(logs),
            context=logs[-20:],
        )

    async def _verify(self, plan: DeploymentPlan, outcome: DeploymentOutcome) -> DeploymentError | None:
        container = outcome.container_id

        async def check() -> DeploymentError | None:
            state = await self.runtime.get_status(container)
            return await self._crash_error(outcome, state) if self._crashed(state) else None

        error = await self._settle(check)
        if error is not None:
            return error

        tcp = [port for port in plan.ports if port.protocol == "tcp"]
        if not tcp:
            LOGGER.debug("http_probe_skipped", extra={"container": container})
            return None
        return await self._probe_until_ready(
            outcome,
            f"http://localhost:{tcp[0].host}",
            plan.health_path,
            check,
            lambda: self.runtime.get_logs(container, self._log_tail),
        )

    async def _verify_compose(
        self, plan: DeploymentPlan, outcome: DeploymentOutcome, declared: dict[str, list[int]]
    ) -> DeploymentError | None:
        services: list[ServiceState] = []

        async def check() -> DeploymentError | None:
            services[:] = await self.runtime.compose_ps(outcome.compose_file, outcome.compose_project)
            if not services:
                return await self._service_error(outcome, None)
            crashed = failed_service(services)
            return await self._service_error(outcome, crashed) if crashed is not None else None

        error = await self._settle(check)
        if error is not None:
            return error

        outcome.service_urls = service_urls(services, declared)
        if not outcome.service_urls:
            LOGGER.debug("http_probe_skipped", extra={"project": outcome.compose_project})
            return None
        return await self._probe_until_ready(
            outcome,
            next(iter(outcome.service_urls.values())),
            plan.health_path,
            check,
            lambda: self.runtime.compose_logs(outcome.compose_file, outcome.compose_project, self._log_tail),
        )

    # ------------------------------------------------------------------
    # Lifecycle after running
    # ------------------------------------------------------------------

    async def stop(self, outcome: DeploymentOutcome) -> DeploymentOutcome:
        if S.STOPPED not in ALLOWED_TRANSITIONS[outcome.status]:
            raise InvalidTransitionError(f"Cannot stop a deployment that is {outcome.status.value}.")
        if outcome.compose_file:
            await self.runtime.compose_stop(outcome.compose_file, outcome.compose_project)
        elif outcome.container_id:
            await self.runtime.stop(outcome.container_id)
        self._advance(outcome, S.STOPPED)
        return outcome

    async def terminate(self, outcome: DeploymentOutcome) -> DeploymentOutcome:
        if S.TERMINATED not in ALLOWED_TRANSITIONS[outcome.status]:
            raise InvalidTransitionError(f"Cannot terminate a deployment that is {outcome.status.value}.")
        if outcome.compose_file:
            await self.runtime.compose_down(outcome.compose_file, outcome.compose_project)
        elif outcome.container_id:
            await self.runtime.remove(outcome.container_id, force=True)
        self._advance(outcome, S.TERMINATED)
        return outcome
