import asyncio

import pytest

from conftest import FakeRuntime, ScriptedModel, call, no_sleep, tool_turn
from deploy_pilot.classifier import classify_error
from deploy_pilot.deployment import DeploymentStateMachine
from deploy_pilot.docker import BuildResult, CommandExecutionError, ServiceState
from deploy_pilot.models import (
    DeploymentErrorStage,
    DeploymentOutcome,
    DeploymentStatus,
    RecoverySessionStatus,
    ToolCall,
)
from deploy_pilot.providers import ProviderError
from deploy_pilot.recovery import RecoveryAgent, validate_compose_text, validate_dockerfile_text

Status = RecoverySessionStatus

FIXED_DOCKERFILE = 'FROM node:20-alpine\nWORKDIR /app\nCOPY . .\nRUN npm ci\nCMD ["node", "server.js"]\n'


async def ok_probe(url):
    return 200


def machine(runtime, channel=None):
    return DeploymentStateMachine(runtime, channel, settle_seconds=0, probe=ok_probe, sleep=no_sleep)


def failing_builds():
    return FakeRuntime(builds=[BuildResult(success=False, exit_code=1, logs=["npm ERR! code ERESOLVE", "npm ERR! ERESOLVE"])])


def failed_outcome(raw="npm ERR! code ERESOLVE\nnpm ERR! ERESOLVE unable to resolve dependency tree"):
    return DeploymentOutcome(
        status=DeploymentStatus.FAILED,
        error=classify_error(raw, DeploymentErrorStage.BUILD),
        build_logs=raw.splitlines(),
        history=[DeploymentStatus.PENDING, DeploymentStatus.PRE_FLIGHT, DeploymentStatus.BUILDING, DeploymentStatus.FAILED],
    )


def agent(model, runtime, plan, channel=None, **kwargs):
    return RecoveryAgent(model, machine(runtime, channel), plan, channel, **kwargs)


def run_tool(recovery, name, **arguments):
    return asyncio.run(recovery.toolbox.execute(ToolCall(id="1", name=name, input=arguments), 0))


# ---------------------------------------------------------------------------
# Session outcomes
# ---------------------------------------------------------------------------


def test_agent_fixes_redeploys_and_completes(plan, project, channel):
    original = (project / "Dockerfile").read_text()
    model = ScriptedModel(
        [
            tool_turn(
                call("writeDeploymentFile", 0, filePath="Dockerfile", content=FIXED_DOCKERFILE, reason="install deps"),
                call("deployProject", 1),
            ),
            tool_turn(call("completeSession", success=True, summary="Installed dependencies before start")),
        ]
    )
    recovery = agent(model, FakeRuntime(), plan, channel)
    session = asyncio.run(recovery.recover(failed_outcome()))

    assert session.status == Status.COMPLETED
    assert session.attempt_number == 1
    assert session.summary == "Installed dependencies before start"
    assert session.deploy_url == "http://localhost:8080"
    assert session.completed_at is not None
    fix = session.fixes_applied[0]
    assert fix.before == original
    assert fix.after == FIXED_DOCKERFILE
    assert fix.reason == "install deps"
    assert (project / "Dockerfile").read_text() == FIXED_DOCKERFILE
    assert len(session.transcript) == 2


def test_first_prompt_carries_error_and_files(plan):
    model = ScriptedModel([tool_turn(call("completeSession", success=False, summary="give up"))])
    asyncio.run(agent(model, FakeRuntime(), plan).recover(failed_outcome()))

    prompt = model.requests[0][1]["content"]
    assert "Type: dependency_conflict" in prompt
    assert "EXPOSE 3000" in prompt
    assert "package.json" in prompt
    assert "npm ERR! code ERESOLVE" in prompt


def test_attempts_never_exceed_budget(plan):
    runtime = failing_builds()
    recovery = agent(ScriptedModel([]), runtime, plan, max_attempts=2)
    session = asyncio.run(recovery.recover(failed_outcome()))

    assert session.status == Status.FAILED
    assert session.attempt_number == 2
    assert [c for c in runtime.calls if c[0] == "build"] == [("build", "demo:latest")] * 2
    assert session.summary == "Deployment still failing after 2 attempts."
    assert session.suggestions


def test_deploy_tool_refuses_once_budget_is_spent(plan):
    runtime = failing_builds()
    model = ScriptedModel([tool_turn(call("deployProject", 0)), tool_turn(call("deployProject", 0))])
    session = asyncio.run(agent(model, runtime, plan, max_attempts=1).recover(failed_outcome()))

    assert session.status == Status.FAILED
    assert session.attempt_number == 1
    assert "No deployment attempts left" in session.transcript[1].tool_results[0].error


def test_agent_can_give_up_with_suggestions(plan):
    model = ScriptedModel(
        [tool_turn(call("completeSession", success=False, summary="Docker is down", suggestions=["Start Docker"]))]
    )
    session = asyncio.run(agent(model, FakeRuntime(), plan).recover(failed_outcome()))

    assert session.status == Status.FAILED
    assert session.summary == "Docker is down"
    assert [s.description for s in session.suggestions] == ["Start Docker"]
    assert session.attempt_number == 0


def test_success_claim_without_running_deployment_triggers_redeploy(plan):
    model = ScriptedModel([tool_turn(call("completeSession", success=True, summary="Should work now"))])
    runtime = FakeRuntime()
    recovery = agent(model, runtime, plan)
    session = asyncio.run(recovery.recover(failed_outcome()))

    assert session.transcript[0].tool_results[0].output["accepted"] is False
    assert session.status == Status.COMPLETED
    assert session.attempt_number == 1
    assert session.summary == "Should work now"
    assert recovery.latest_outcome.success


def test_without_failed_outcome_deploys_first(plan):
    model = ScriptedModel([])
    session = asyncio.run(agent(model, FakeRuntime(), plan).recover())
    assert session.status == Status.COMPLETED
    assert session.attempt_number == 1
    assert model.requests == []


def test_cancelled_session(plan):
    recovery = agent(ScriptedModel([]), FakeRuntime(), plan)
    recovery.cancel()
    session = asyncio.run(recovery.recover(failed_outcome()))
    assert session.status == Status.CANCELLED


def test_provider_failure_ends_session(plan):
    model = ScriptedModel([ProviderError("upstream exploded")])
    session = asyncio.run(agent(model, FakeRuntime(), plan).recover(failed_outcome()))
    assert session.status == Status.FAILED
    assert "upstream exploded" in session.summary
    assert session.suggestions


def test_session_timeout(plan):
    class SlowModel:
        async def complete(self, messages, tools):
            await asyncio.sleep(10)

    recovery = agent(SlowModel(), FakeRuntime(), plan, timeout=0.01)
    session = asyncio.run(recovery.recover(failed_outcome()))
    assert session.status == Status.FAILED
    assert "did not finish" in session.summary


def test_late_tool_calls_after_timeout_are_refused(plan, project):
    original = (project / "Dockerfile").read_text()

    class LateModel:
        async def complete(self, messages, tools):
            await asyncio.sleep(0.2)
            return tool_turn(
                call("writeDeploymentFile", 0, filePath="Dockerfile", content=FIXED_DOCKERFILE, reason="late fix"),
            )

    async def scenario():
        recovery = agent(LateModel(), FakeRuntime(), plan, timeout=0.05)
        session = await recovery.recover(failed_outcome())
        returned = session.status
        await asyncio.sleep(0.4)
        return recovery, returned

    recovery, returned = asyncio.run(scenario())
    assert returned == Status.FAILED
    assert recovery.session.status == Status.FAILED
    assert recovery.session.fixes_applied == []
    assert recovery.session.transcript == []
    assert (project / "Dockerfile").read_text() == original


def test_tools_refuse_after_session_ends(plan, project):
    original = (project / "Dockerfile").read_text()
    recovery = agent(ScriptedModel([]), FakeRuntime(), plan)
    assert run_tool(recovery, "completeSession", success=False, summary="Docker is down").ok
    assert recovery.session.status == Status.FAILED

    write = run_tool(recovery, "writeDeploymentFile", filePath="Dockerfile", content=FIXED_DOCKERFILE, reason="r")
    progress = run_tool(recovery, "reportProgress", message="fixing", progressType="fixing")
    assert "no longer active" in write.error
    assert not progress.ok
    assert recovery.session.status == Status.FAILED
    assert (project / "Dockerfile").read_text() == original


def test_runtime_command_error_reaches_model_as_tool_error(plan):
    class NoDockerRuntime(FakeRuntime):
        async def get_logs(self, container, tail=100):
            raise CommandExecutionError(["docker", "logs", container], None, "docker: command not found")

    model = ScriptedModel(
        [
            tool_turn(call("getContainerLogs", 0)),
            tool_turn(call("completeSession", success=False, summary="Install Docker first")),
        ]
    )
    session = asyncio.run(agent(model, NoDockerRuntime(), plan).recover(failed_outcome()))

    assert session.status == Status.FAILED
    assert "command not found" in session.transcript[0].tool_results[0].error
    assert "command not found" in model.requests[1][-1]["content"]


def test_unexpected_error_still_ends_session(plan):
    recovery = agent(ScriptedModel([RuntimeError("renderer exploded")]), FakeRuntime(), plan)
    with pytest.raises(RuntimeError):
        asyncio.run(recovery.recover(failed_outcome()))
    assert recovery.session.status == Status.FAILED
    assert "renderer exploded" in recovery.session.summary
    assert recovery.session.completed_at is not None


def test_model_without_tool_calling_is_rejected(plan):
    with pytest.raises(ProviderError):
        RecoveryAgent(object(), machine(FakeRuntime()), plan)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def test_write_cannot_escape_deployment_dir(plan, project):
    recovery = agent(ScriptedModel([]), FakeRuntime(), plan)
    result = run_tool(recovery, "writeDeploymentFile", filePath="../evil", content="x", reason="r")
    assert not result.ok
    assert recovery.session.fixes_applied == []


def test_list_files_recursive(plan, project):
    (project / "src").mkdir()
    (project / "src" / "app.js").write_text("")
    result = run_tool(agent(ScriptedModel([]), FakeRuntime(), plan), "listDeploymentFiles", recursive=True)
    assert result.output["files"] == ["Dockerfile", "package.json", "server.js", "src/app.js"]


def test_deployment_logs_by_type(plan):
    recovery = agent(ScriptedModel([]), FakeRuntime(), plan)
    recovery._latest = failed_outcome().model_copy(update={"runtime_logs": ["crash"]})
    assert run_tool(recovery, "getDeploymentLogs", type="runtime").output["logs"] == ["crash"]
    assert run_tool(recovery, "getDeploymentLogs", type="all", tail=2).output["logs"][-1] == "crash"


def test_endpoint_health_uses_http_check(plan):
    seen = []

    async def probe(url, timeout):
        seen.append((url, timeout))
        return 204

    recovery = agent(ScriptedModel([]), FakeRuntime(), plan, probe=probe)
    any_2xx = run_tool(recovery, "checkEndpointHealth", url="http://localhost:8080/health", expectedStatus=0, timeout=2500)
    exact = run_tool(recovery, "checkEndpointHealth", url="http://localhost:8080/health")

    assert any_2xx.output["healthy"] is True
    assert exact.output["healthy"] is False
    assert seen[0] == ("http://localhost:8080/health", 2.5)


def test_service_health_defaults_to_plan_container(plan):
    result = run_tool(agent(ScriptedModel([]), FakeRuntime(), plan), "checkServiceHealth")
    assert result.output["service"] == "demo"
    assert result.output["healthy"] is True


def test_compose_tools_target_the_project(compose_plan):
    runtime = FakeRuntime(
        services=[[ServiceState(name="web", state="running"), ServiceState(name="db", state="exited", exit_code=1)]],
        logs=["web-1  | listening", "db-1   | FATAL: role missing"],
    )
    recovery = agent(ScriptedModel([]), runtime, compose_plan)

    health = run_tool(recovery, "checkServiceHealth").output
    db_only = run_tool(recovery, "checkServiceHealth", service="db").output
    logs = run_tool(recovery, "getContainerLogs", tail=1).output
    checks = run_tool(recovery, "runPreFlightChecks").output

    assert health["project"] == "demo-app"
    assert [(s["name"], s["running"]) for s in health["services"]] == [("web", True), ("db", False)]
    assert health["healthy"] is False
    assert [s["name"] for s in db_only["services"]] == ["db"]
    assert logs == {"project": "demo-app", "logs": ["db-1   | FATAL: role missing"], "lines": 1}
    assert checks["passed"] is True
    assert ("compose_pre_flight", (8080,)) in runtime.calls
    assert ("compose_logs", None) in runtime.calls


def test_validate_dockerfile_tool(plan):
    result = run_tool(agent(ScriptedModel([]), FakeRuntime(), plan), "validateDockerfile")
    assert result.output == {"filePath": "Dockerfile", "valid": True, "errors": [], "warnings": []}


def test_validate_compose_tool_missing_file(plan):
    result = run_tool(agent(ScriptedModel([]), FakeRuntime(), plan), "validateDockerCompose")
    assert "Compose file not found" in result.error


def test_report_progress_updates_status(plan, channel):
    recovery = agent(ScriptedModel([]), FakeRuntime(), plan, channel)
    run_tool(recovery, "reportProgress", message="Editing the Dockerfile", progressType="fixing")
    assert recovery.session.status == Status.FIXING
    assert channel.of_type("status")[-1].message == "Editing the Dockerfile"


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def test_validate_dockerfile_text():
    assert validate_dockerfile_text("")["errors"] == ["Dockerfile is empty"]
    assert validate_dockerfile_text("ARG V=20\nFROM node:$V\nCMD node\n")["valid"]
    assert validate_dockerfile_text("RUN echo\nFROM node\n")["errors"] == ["First instruction must be FROM, found RUN"]
    assert validate_dockerfile_text("# comment\nRUN echo\n")["errors"] == ["Dockerfile has no FROM instruction"]
    assert validate_dockerfile_text("FROM node\n")["warnings"]


def test_validate_compose_text():
    assert validate_compose_text("services: [\n")["errors"][0].startswith("YAML syntax error")
    assert validate_compose_text("version: '3'\n")["errors"] == ["Compose file has no 'services' mapping"]
    result = validate_compose_text("services:\n  web:\n    build: .\n  db:\n    ports: ['5432:5432']\n")
    assert result["services"] == ["web", "db"]
    assert result["errors"] == ["Service 'db' needs an 'image' or a 'build' key"]
