import pytest

from deploy_pilot.docker import BuildResult, CommandResult, ContainerRuntime, ContainerState, RunResult, ServiceState
from deploy_pilot.events import ProgressChannel
from deploy_pilot.harness import ModelTurn
from deploy_pilot.models import DeploymentPlan, PortMapping, PreFlightCheck, ToolCall

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRuntime(ContainerRuntime):
    """In-memory container runtime. Each build/run/status call pops the next scripted result."""

    def __init__(self, builds=None, runs=None, states=None, logs=None, checks=None, services=None):
        self.builds = list(builds or [BuildResult(success=True, exit_code=0, image_id="sha256:abc", logs=["done"])])
        self.runs = list(runs or [RunResult(success=True, container_id="c0ffee")])
        self.states = list(states or [ContainerState(found=True, status="running", running=True)])
        self.logs = list(logs or ["listening on 3000"])
        self.checks = checks if checks is not None else [PreFlightCheck(name="Docker daemon", status="passed", message="ok")]
        self.services = list(
            services
            or [[ServiceState(name="web", state="running", published=[(8080, 3000)]), ServiceState(name="db", state="running")]]
        )
        self.calls: list[tuple] = []

    def _next(self, items):
        return items.pop(0) if len(items) > 1 else items[0]

    def check_installed(self):
        return True

    async def ping(self):
        return True

    async def build_image(self, context_dir, image_tag, dockerfile="Dockerfile", build_args=None, on_line=None):
        self.calls.append(("build", image_tag))
        result = self._next(self.builds)
        for line in result.logs:
            if on_line is not None:
                on_line(line)
        return result

    async def image_id(self, image_tag):
        return "sha256:abc"

    async def run_container(self, image_tag, name, ports, environment=None):
        self.calls.append(("run", name))
        return self._next(self.runs)

    async def start(self, container):
        self.calls.append(("start", container))
        return CommandResult(args=["start", container], returncode=0, stdout=container)

    async def stop(self, container):
        self.calls.append(("stop", container))
        return CommandResult(args=["stop", container], returncode=0, stdout=container)

    async def restart(self, container):
        self.calls.append(("restart", container))
        return CommandResult(args=["restart", container], returncode=0, stdout=container)

    async def remove(self, container, force=True):
        self.calls.append(("remove", container))
        return CommandResult(args=["rm", container], returncode=0)

    async def get_logs(self, container, tail=100):
        return self.logs[-tail:]

    async def get_status(self, container):
        return self._next(self.states)

    async def run_pre_flight_checks(self, context_dir, dockerfile="Dockerfile", ports=None):
        self.calls.append(("pre_flight", tuple(ports or [])))
        return list(self.checks)

    async def compose_build(self, compose_file, project, on_line=None):
        self.calls.append(("compose_build", project))
        result = self._next(self.builds)
        for line in result.logs:
            if on_line is not None:
                on_line(line)
        return result

    async def compose_up(self, compose_file, project):
        self.calls.append(("compose_up", project))
        return self._next(self.runs)

    async def compose_stop(self, compose_file, project):
        self.calls.append(("compose_stop", project))
        return CommandResult(args=["compose", "stop"], returncode=0)

    async def compose_down(self, compose_file, project, volumes=False):
        self.calls.append(("compose_down", project))
        return CommandResult(args=["compose", "down"], returncode=0)

    async def compose_ps(self, compose_file, project):
        return self._next(self.services)

    async def compose_logs(self, compose_file, project, tail=100, service=None):
        self.calls.append(("compose_logs", service))
        return self.logs[-tail:]

    async def run_compose_pre_flight_checks(self, compose_file, ports=None):
        self.calls.append(("compose_pre_flight", tuple(ports or [])))
        return list(self.checks)


class ScriptedModel:
    """ChatModel that replays a fixed list of turns and records what it was sent."""

    def __init__(self, turns):
        self.turns = list(turns)
        self.requests: list[list[dict]] = []

    async def complete(self, messages, tools):
        self.requests.append(list(messages))
        if not self.turns:
            return ModelTurn(text="done")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn


def call(name, index=0, **arguments):
    return ToolCall(id=f"call_{index}_{name}", name=name, input=arguments)


def tool_turn(*calls, text=None):
    return ModelTurn(text=text, tool_calls=list(calls))


async def no_sleep(_seconds):
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def channel():
    return ProgressChannel()


@pytest.fixture
def project(tmp_path):
    (tmp_path / "Dockerfile").write_text("FROM node:20-alpine\nEXPOSE 3000\nCMD [\"node\", \"server.js\"]\n")
    (tmp_path / "package.json").write_text('{"name": "demo", "dependencies": {"express": "^4.19.0"}}\n')
    (tmp_path / "server.js").write_text("require('express')().listen(3000)\n")
    return tmp_path


@pytest.fixture
def plan(project):
    return DeploymentPlan(
        config_path=str(project),
        image_tag="demo:latest",
        container_name="demo",
        ports=[PortMapping(host=8080, container=3000)],
    )


COMPOSE_FILE = """services:
  web:
    build: .
    ports:
      - "8080:3000"
  db:
    image: postgres:16
"""


@pytest.fixture
def compose_plan(project):
    (project / "docker-compose.yml").write_text(COMPOSE_FILE)
    return DeploymentPlan(
        config_path=str(project),
        image_tag="demo:latest",
        container_name="Demo.App",
        compose_file="docker-compose.yml",
    )
