import asyncio

from conftest import FakeRuntime
from deploy_pilot.deploy_tools import create_deployment_tools
from deploy_pilot.docker import BuildResult, ContainerState
from deploy_pilot.models import PreFlightCheck, ToolCall
from deploy_pilot.tools import create_project_analysis_tools


def run_tool(toolbox, name, **arguments):
    return asyncio.run(toolbox.execute(ToolCall(id="1", name=name, input=arguments), 0))


def test_registers_docker_tools(project):
    toolbox = create_deployment_tools(FakeRuntime(), str(project))
    assert toolbox.names() == [
        "runPreFlightChecks",
        "detectDockerfilePorts",
        "buildDockerImage",
        "runDockerContainer",
        "stopDockerContainer",
        "startDockerContainer",
        "restartDockerContainer",
        "removeDockerContainer",
        "getContainerLogs",
        "getContainerStatus",
        "writeEnvFile",
    ]


# ---------------------------------------------------------------------------
# Pre-flight and inspection
# ---------------------------------------------------------------------------


def test_pre_flight_summary(project, channel):
    runtime = FakeRuntime(
        checks=[
            PreFlightCheck(name="Docker daemon", status="passed", message="ok"),
            PreFlightCheck(name="Disk space", status="warning", message="Disk is 90% full"),
        ]
    )
    result = run_tool(create_deployment_tools(runtime, str(project), channel), "runPreFlightChecks", requestedPorts=[8080])

    assert result.output["passed"] is True
    assert result.output["summary"] == "1/2 checks passed"
    assert runtime.calls == [("pre_flight", (8080,))]
    assert channel.of_type("pre_flight")[0].message == "Running pre-flight checks"


def test_detect_dockerfile_ports(project):
    result = run_tool(create_deployment_tools(FakeRuntime(), str(project)), "detectDockerfilePorts")
    assert result.output == {"dockerfilePath": "Dockerfile", "ports": [3000]}


def test_detect_ports_missing_dockerfile(tmp_path):
    result = run_tool(create_deployment_tools(FakeRuntime(), str(tmp_path)), "detectDockerfilePorts")
    assert result.error == "Dockerfile not found: Dockerfile"


def test_container_status(project):
    runtime = FakeRuntime(states=[ContainerState(found=True, status="exited", exit_code=1)])
    result = run_tool(create_deployment_tools(runtime, str(project)), "getContainerStatus", containerId="demo")
    assert result.output["status"] == "exited"
    assert result.output["exitCode"] == 1
    assert result.output["running"] is False


def test_container_logs_tail_is_bounded(project):
    result = run_tool(create_deployment_tools(FakeRuntime(), str(project)), "getContainerLogs", containerId="demo", tail=5000)
    assert not result.ok


# ---------------------------------------------------------------------------
# Build and run
# ---------------------------------------------------------------------------


def test_build_success(project, channel):
    result = run_tool(create_deployment_tools(FakeRuntime(), str(project), channel), "buildDockerImage", imageTag="demo:1")
    assert result.output["success"] is True
    assert result.output["imageId"] == "sha256:abc"
    assert [e.message for e in channel.of_type("build")] == ["Building image demo:1", "done"]


def test_build_failure_is_classified(project):
    runtime = FakeRuntime(builds=[BuildResult(success=False, exit_code=1, logs=["npm ERR! code E404", "npm ERR! 404 'left-padd'"])])
    result = run_tool(create_deployment_tools(runtime, str(project)), "buildDockerImage", imageTag="demo:1")
    assert result.ok
    assert result.output["success"] is False
    assert result.output["errorType"] == "dependency_missing"
    assert result.output["error"] == "Package not found: left-padd"


def test_build_rejects_dockerfile_outside_config(project):
    result = run_tool(
        create_deployment_tools(FakeRuntime(), str(project)),
        "buildDockerImage",
        imageTag="demo:1",
        dockerfilePath="../Dockerfile",
    )
    assert not result.ok


def test_run_container_and_lifecycle(project):
    runtime = FakeRuntime()
    toolbox = create_deployment_tools(runtime, str(project))
    started = run_tool(
        toolbox,
        "runDockerContainer",
        imageTag="demo:1",
        containerName="demo",
        ports=[{"host": 8080, "container": 3000}],
    )
    assert started.output["containerId"] == "c0ffee"
    assert run_tool(toolbox, "restartDockerContainer", containerId="c0ffee").output["success"] is True
    assert run_tool(toolbox, "removeDockerContainer", containerId="c0ffee").output["success"] is True
    assert runtime.calls[-2:] == [("restart", "c0ffee"), ("remove", "c0ffee")]


# ---------------------------------------------------------------------------
# Env file
# ---------------------------------------------------------------------------


def test_write_env_file(project):
    result = run_tool(
        create_deployment_tools(FakeRuntime(), str(project)), "writeEnvFile", envVars={"PORT": "3000", "NAME": "my app"}
    )
    assert result.output == {"success": True, "filePath": ".env", "variables": 2}
    assert (project / ".env").read_text() == 'PORT=3000\nNAME="my app"\n'


def test_write_env_file_stays_in_config_dir(project):
    result = run_tool(
        create_deployment_tools(FakeRuntime(), str(project)), "writeEnvFile", envVars={"A": "1"}, fileName="../.env"
    )
    assert not result.ok
    assert not (project.parent / ".env").exists()


def test_merges_into_an_agent_toolbox(project):
    toolbox = create_project_analysis_tools(project).merged(create_deployment_tools(FakeRuntime(), str(project)))
    assert toolbox.names()[:2] == ["readFile", "grepSearch"]
    assert "buildDockerImage" in toolbox.names()
    assert run_tool(toolbox, "readFile", filePath="Dockerfile").ok
    assert run_tool(toolbox, "detectDockerfilePorts").output["ports"] == [3000]
