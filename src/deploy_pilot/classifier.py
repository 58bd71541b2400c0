# classifier.py
# Deployment error classification.
#
# Matches raw Docker / build / runtime output against an ordered list of
# known failure signatures. The first match wins, so specific patterns sit
# above generic ones. Anything unmatched becomes `unknown` with the most
# error-looking line as its message. Suggestions are deterministic; the
# recovery agent is expected to do better.

import re
from collections.abc import Callable
from dataclasses import dataclass

from deploy_pilot.models import (
    DeploymentError,
    DeploymentErrorStage,
    DeploymentErrorType,
    ErrorAnalysis,
    ErrorLocation,
    FixSuggestion,
)

T = DeploymentErrorType

CONTEXT_BEFORE = 3
CONTEXT_AFTER = 7
MESSAGE_LIMIT = 200


@dataclass(frozen=True)
class ErrorPattern:
    pattern: re.Pattern
    type: DeploymentErrorType
    message: Callable[[re.Match, str], str] | None = None
    location: Callable[[re.Match, str], ErrorLocation | None] | None = None


def _search(regex: str, output: str, flags: int = re.IGNORECASE) -> re.Match | None:
    return re.search(regex, output, flags)


def _dockerfile_syntax_message(match: re.Match, output: str) -> str:
    line = _search(r"line (\d+):", output)
    return f"Dockerfile syntax error on line {line.group(1)}" if line else "Dockerfile syntax error"


def _dockerfile_syntax_location(match: re.Match, output: str) -> ErrorLocation | None:
    line = _search(r"line (\d+):", output)
    return ErrorLocation(file="Dockerfile", line=int(line.group(1))) if line else None


def _build_step_message(match: re.Match, output: str) -> str:
    command = _search(r">>>\s*(RUN|COPY|ADD|CMD|ENTRYPOINT)\s+(.+)", output)
    if command:
        return f"Build failed at: {command.group(1)} {command.group(2)[:100]}"
    return f"Build failed at Dockerfile line {match.group(1)}"


def _npm_conflict_message(match: re.Match, output: str) -> str:
    package = _search(r"Could not resolve dependency.*\n.*peer\s+(\S+)", output)
    return f"Dependency conflict with {package.group(1)}" if package else "npm dependency resolution conflict"


def _npm_404_message(match: re.Match, output: str) -> str:
    package = re.search(r"npm ERR! 404.*'([^']+)'", output)
    return f"Package not found: {package.group(1)}" if package else "npm package not found"


def _python_module_message(match: re.Match, output: str) -> str:
    return f"Python module not installed: {match.group(1)}"


def _compose_yaml_location(match: re.Match, output: str) -> ErrorLocation | None:
    line = _search(r"line\s+(\d+)", output)
    return ErrorLocation(file="docker-compose.yml", line=int(line.group(1))) if line else None


def _image_message(match: re.Match, output: str) -> str:
    image = _search(r"(?:manifest|image)\s+(?:for\s+)?[\"']?([^\"'\s]+)[\"']?.*not found", output)
    return f"Docker image not found: {image.group(1)}" if image else "Docker image not found"


def _port_message(match: re.Match, output: str) -> str:
    port = _search(r"(?:port\s*|:)(\d{2,5})", match.group(0)) or _search(r"(?:port\s*|:)(\d{2,5})", output)
    return f"Port {port.group(1)} is already in use" if port else "Port conflict detected"


def _permission_message(match: re.Match, output: str) -> str:
    path = _search(r"permission denied.*['\"]([^'\"]+)['\"]", output)
    return f"Permission denied: {path.group(1)}" if path else "Permission denied"


def _env_message(match: re.Match, output: str) -> str:
    name = _search(r"(?:variable|env)\s+['\"]?([A-Z_][A-Z0-9_]*)['\"]?", output)
    return f"Missing environment variable: {name.group(1)}" if name else "Required environment variable not set"


def _startup_message(match: re.Match, output: str) -> str:
    code = _search(r"exited with code (\d+)", output)
    return f"Container exited with code {code.group(1)}" if code else "Container failed to start"


def _fixed(text: str) -> Callable[[re.Match, str], str]:
    return lambda match, output: text


def _p(regex: str, flags: int = re.IGNORECASE) -> re.Pattern:
    return re.compile(regex, flags)


ERROR_PATTERNS: list[ErrorPattern] = [
    # Dockerfile
    ErrorPattern(_p(r"failed to solve:.*dockerfile parse error"), T.DOCKERFILE_INVALID,
                 _dockerfile_syntax_message, _dockerfile_syntax_location),
    ErrorPattern(_p(r"failed to read dockerfile|dockerfile.*no such file|dockerfile not found"
                    r"|cannot locate specified dockerfile"),
                 T.DOCKERFILE_INVALID, _fixed("Dockerfile not found in the build context"),
                 lambda match, output: ErrorLocation(file="Dockerfile")),
    ErrorPattern(_p(r"Dockerfile:(\d+)\s*[->\s]*.*\n.*(?:failed|error|exit code)"), T.BUILD_FAILED,
                 _build_step_message, lambda match, output: ErrorLocation(file="Dockerfile", line=int(match.group(1)))),
    ErrorPattern(_p(r"failed to solve:.*did not complete successfully.*exit code:\s*(\d+)"), T.BUILD_FAILED,
                 lambda match, output: f"Build process failed with exit code {match.group(1)}"),
    # Dependencies
    ErrorPattern(_p(r"npm ERR!.*ENOENT"), T.DEPENDENCY_MISSING, _fixed("npm could not find a required file or package")),
    ErrorPattern(_p(r"npm ERR!.*ERESOLVE"), T.DEPENDENCY_CONFLICT, _npm_conflict_message),
    ErrorPattern(_p(r"npm ERR! code E404"), T.DEPENDENCY_MISSING, _npm_404_message),
    ErrorPattern(_p(r"ModuleNotFoundError: No module named ['\"]?([\w.]+)", 0), T.DEPENDENCY_MISSING,
                 _python_module_message),
    ErrorPattern(_p(r"No matching distribution found for (\S+)"), T.DEPENDENCY_MISSING,
                 lambda match, output: f"pip could not find package: {match.group(1)}"),
    ErrorPattern(_p(r"ResolutionImpossible|conflicting dependencies"), T.DEPENDENCY_CONFLICT,
                 _fixed("pip dependency resolution conflict")),
    # Compose
    ErrorPattern(_p(r"yaml:\s*(line\s+\d+:|.*did not find expected)"), T.COMPOSE_INVALID,
                 lambda match, output: f"docker-compose.yml YAML error: {match.group(0)[:100]}",
                 _compose_yaml_location),
    ErrorPattern(_p(r"services\.[^:]+:?\s+Additional property.*not allowed"), T.COMPOSE_INVALID,
                 lambda match, output: f"Invalid property in docker-compose.yml: {match.group(0)[:100]}"),
    # Images
    ErrorPattern(_p(r"manifest.*not found|image.*not found|pull access denied"), T.IMAGE_NOT_FOUND, _image_message),
    ErrorPattern(_p(r"error.*pulling.*image|failed to pull"), T.IMAGE_PULL_FAILED,
                 _fixed("Failed to pull Docker image from registry")),
    # Host resources
    ErrorPattern(_p(r"bind:.*address already in use|port.*already allocated|port \d+ is already in use"), T.PORT_CONFLICT, _port_message),
    ErrorPattern(_p(r"OOMKilled|\bOOM\b|out of memory|memory.*exceeded|\bkilled\b"), T.MEMORY_EXCEEDED,
                 _fixed("Container ran out of memory")),
    ErrorPattern(_p(r"no space left on device|disk.*full"), T.DISK_FULL, _fixed("No disk space available")),
    ErrorPattern(_p(r"cannot connect to the docker daemon|is the docker daemon running"
                    r"|docker daemon is not reachable"),
                 T.NETWORK_ERROR, _fixed("Docker daemon is not reachable")),
    ErrorPattern(_p(r"permission denied|EACCES|access denied"), T.PERMISSION_DENIED, _permission_message),
    ErrorPattern(_p(r"network.*unreachable|connection.*refused|ECONNREFUSED|ETIMEDOUT"), T.NETWORK_ERROR,
                 _fixed("Network connection failed")),
    ErrorPattern(_p(r"timeout|timed out|deadline exceeded"), T.TIMEOUT, _fixed("Operation timed out")),
    # Configuration
    ErrorPattern(_p(r"environment variable.*not set|missing.*env|undefined.*variable|KeyError: ['\"][A-Z_]+['\"]"),
                 T.ENV_VAR_MISSING, _env_message),
    ErrorPattern(_p(r"invalid (?:value for )?environment variable|env(?:ironment)? var(?:iable)?.*invalid"),
                 T.ENV_VAR_INVALID, _fixed("An environment variable has an invalid value")),
    # Runtime
    ErrorPattern(_p(r"health.*check.*fail|unhealthy"), T.HEALTHCHECK_FAILED, _fixed("Container healthcheck failed")),
    ErrorPattern(_p(r"exited with code [1-9]|container.*stopped|failed to start"), T.STARTUP_FAILED, _startup_message),
]

_FALSE_POSITIVES = [
    re.compile(p, re.IGNORECASE)
    for p in (r"easier to read", r"for more information", r"learn how to", r"visit https?:", r"docker scan", r"snyk tests")
]

_ERROR_LINES = [
    re.compile(r"^(?:>?\s*)?(?:\[\d+/\d+\]\s+)?(?:ERROR|Error|error)[\s:]+(.+)"),
    re.compile(r"^(?:>?\s*)?(?:FAILED|Failed|failed)[\s:]+(.+)"),
    re.compile(r"^(?:>?\s*)?(?:FATAL|Fatal|fatal)[\s:]+(.+)"),
    re.compile(r"^(?:>?\s*)?npm ERR!\s*(.+)"),
    re.compile(r"^(?:>?\s*)?failed to solve:\s*(.+)", re.IGNORECASE),
    re.compile(r"^(?:>?\s*)?exit code:\s*(\d+)", re.IGNORECASE),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def context_lines(output: str, offset: int) -> list[str]:
    """Non-blank lines around the character offset of a match."""
    lines = output.split("\n")
    line_index = output[:offset].count("\n")
    start = max(0, line_index - CONTEXT_BEFORE)
    end = min(len(lines), line_index + CONTEXT_AFTER)
    return [line for line in lines[start:end] if line.strip()]


def _is_false_positive(line: str) -> bool:
    return any(p.search(line) for p in _FALSE_POSITIVES)


def first_error_line(output: str) -> str | None:
    """Best guess at the most relevant error line of unmatched output."""
    lines = output.split("\n")
    for line in lines:
        stripped = line.strip()
        if not stripped or _is_false_positive(stripped):
            continue
        for pattern in _ERROR_LINES:
            match = pattern.match(stripped)
            if match and len(match.group(1).strip()) > 5:
                return match.group(1).strip()[:MESSAGE_LIMIT]

    failed = re.search(r"failed to solve[^.]*\.\s*([^.]+)", output, re.IGNORECASE)
    if failed:
        return failed.group(1).strip()[:MESSAGE_LIMIT]

    for line in reversed(lines):
        stripped = line.strip()
        if len(stripped) > 20 and ("error" in stripped or "failed" in stripped) and not _is_false_positive(stripped):
            return stripped[:MESSAGE_LIMIT]
    return None


def extract_exit_code(output: str) -> int | None:
    match = re.search(r"exit(?:ed with)?\s*(?:code|status)?\s*[:\s]*(\d+)", output, re.IGNORECASE)
    return int(match.group(1)) if match else None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def make_error(
    type: DeploymentErrorType,
    stage: DeploymentErrorStage,
    message: str,
    raw: str = "",
    *,
    exit_code: int | None = None,
    context: list[str] | None = None,
    location: ErrorLocation | None = None,
) -> DeploymentError:
    """Build an error whose type is already known (e.g. a container that exited)."""
    return DeploymentError(
        type=type,
        stage=stage,
        message=message[:MESSAGE_LIMIT],
        raw_error=raw,
        context=context if context is not None else context_lines(raw, len(raw)),
        location=location,
        exit_code=exit_code if exit_code is not None else extract_exit_code(raw),
    )


def classify_error(
    raw: str,
    stage: DeploymentErrorStage,
    *,
    exit_code: int | None = None,
    default: DeploymentErrorType = DeploymentErrorType.UNKNOWN,
) -> DeploymentError:
    """Classify raw output. The first matching ERROR_PATTERNS entry decides the type."""
    for entry in ERROR_PATTERNS:
        match = entry.pattern.search(raw)
        if match is None:
            continue
        message = entry.message(match, raw) if entry.message else match.group(0)[:MESSAGE_LIMIT]
        return DeploymentError(
            type=entry.type,
            stage=stage,
            message=message,
            raw_error=raw,
            context=context_lines(raw, match.start()),
            location=entry.location(match, raw) if entry.location else None,
            exit_code=exit_code if exit_code is not None else extract_exit_code(raw),
        )

    return DeploymentError(
        type=default,
        stage=stage,
        message=first_error_line(raw) or "Unknown deployment error",
        raw_error=raw,
        context=context_lines(raw, 0),
        exit_code=exit_code if exit_code is not None else extract_exit_code(raw),
    )


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


def _at_line(error: DeploymentError, with_line: str, without: str) -> str:
    if error.location and error.location.line:
        return with_line.format(line=error.location.line)
    return without


def suggest_fixes(error: DeploymentError) -> list[FixSuggestion]:
    """Deterministic first-aid suggestions for a classified error."""
    kind = error.type
    if kind == T.BUILD_FAILED:
        return [FixSuggestion(
            description="Review the build command in the Dockerfile", confidence="medium", type="file_edit",
            details={"file": "Dockerfile", "instructions": _at_line(
                error, "Check line {line} of the Dockerfile", "Review the RUN commands in the Dockerfile")},
        )]
    if kind == T.DOCKERFILE_INVALID:
        return [FixSuggestion(
            description="Fix Dockerfile syntax", confidence="high", type="file_edit",
            details={"file": "Dockerfile", "instructions": _at_line(
                error, "Fix the syntax error on line {line}", "Review the Dockerfile for syntax errors")},
        )]
    if kind == T.COMPOSE_INVALID:
        return [FixSuggestion(
            description="Fix docker-compose.yml syntax", confidence="high", type="file_edit",
            details={"file": "docker-compose.yml", "instructions": _at_line(
                error, "Fix the YAML error on line {line}", "Review docker-compose.yml for YAML errors")},
        )]
    if kind == T.DEPENDENCY_MISSING:
        return [FixSuggestion(
            description="Check the dependency manifest for missing packages", confidence="medium", type="manual",
            details={"instructions": "Verify every dependency is listed in the package manager configuration"},
        )]
    if kind == T.DEPENDENCY_CONFLICT:
        return [FixSuggestion(
            description="Resolve dependency version conflicts", confidence="medium", type="manual",
            details={"instructions": "Check for conflicting peer dependencies and align their versions"},
        )]
    if kind == T.PORT_CONFLICT:
        return [FixSuggestion(
            description="Change the port mapping to avoid the conflict", confidence="high", type="config_change",
            details={"instructions": "Map the service to a different free host port"},
        )]
    if kind == T.IMAGE_NOT_FOUND:
        return [FixSuggestion(
            description="Verify the Docker image name and tag", confidence="high", type="file_edit",
            details={"file": "Dockerfile", "instructions": "Check the FROM instruction for a valid image and tag"},
        )]
    if kind == T.ENV_VAR_MISSING:
        return [FixSuggestion(
            description="Add the missing environment variable", confidence="high", type="env_var",
            details={"instructions": "Add the required variable to the deployment environment or .env file"},
        )]
    if kind == T.PERMISSION_DENIED:
        return [FixSuggestion(
            description="Fix file permissions in the Dockerfile", confidence="medium", type="file_edit",
            details={"file": "Dockerfile", "instructions": "Add chmod/chown steps or run as a non-root user"},
        )]
    if kind == T.MEMORY_EXCEEDED:
        return [FixSuggestion(
            description="Increase the container memory limit", confidence="high", type="config_change",
            details={"instructions": "Add or raise mem_limit for the service, or reduce build parallelism"},
        )]
    if kind == T.DISK_FULL:
        return [FixSuggestion(
            description="Free disk space", confidence="high", type="command",
            details={"command": "docker system prune -f", "instructions": "Remove unused images and build cache"},
        )]
    if kind == T.TIMEOUT:
        return [FixSuggestion(
            description="Increase build or startup timeout", confidence="medium", type="config_change",
            details={"instructions": "Optimize the build or allow more time for startup"},
        )]
    if kind == T.NETWORK_ERROR and "daemon" in error.message.lower():
        return [FixSuggestion(
            description="Start the Docker daemon", confidence="high", type="command",
            details={"instructions": "Start Docker Desktop or run 'sudo systemctl start docker'"},
        )]
    return [FixSuggestion(
        description="Let the recovery agent analyze and fix this error", confidence="medium", type="manual",
        details={"instructions": "Run the deployment with recovery enabled"},
    )]


POSSIBLE_CAUSES: dict[DeploymentErrorType, list[str]] = {
    T.BUILD_FAILED: [
        "Build command in the Dockerfile failed",
        "Dependencies not installed before the build step",
        "Wrong working directory in the Dockerfile",
    ],
    T.DOCKERFILE_INVALID: ["Invalid Dockerfile syntax", "Missing FROM instruction", "Dockerfile not in build context"],
    T.COMPOSE_INVALID: ["YAML syntax error", "Property not supported by Compose", "Missing required service fields"],
    T.DEPENDENCY_MISSING: ["Package not declared", "Private package without credentials", "Typo in package name"],
    T.DEPENDENCY_CONFLICT: ["Conflicting peer versions", "Runtime version incompatibility", "Stale lock file"],
    T.PORT_CONFLICT: ["Another process uses the port", "Previous deployment not cleaned up"],
    T.IMAGE_NOT_FOUND: ["Typo in image name or tag", "Private registry without login", "Architecture mismatch"],
    T.ENV_VAR_MISSING: ["Variable not configured", "Typo in variable name"],
    T.PERMISSION_DENIED: ["File ownership in the image", "Non-root user without access", "Volume mount permissions"],
    T.MEMORY_EXCEEDED: ["Memory leak", "Container memory limit too low", "Build exhausting memory"],
    T.TIMEOUT: ["Slow network during image pull", "Large build", "Application hangs during startup"],
    T.STARTUP_FAILED: ["Start command crashes", "Missing runtime configuration", "Application listens on wrong port"],
    T.HEALTHCHECK_FAILED: ["Application not listening on the mapped port", "Slow startup", "Bound to 127.0.0.1"],
}


def analyze_error(raw: str, stage: DeploymentErrorStage) -> ErrorAnalysis:
    error = classify_error(raw, stage)
    return ErrorAnalysis(
        error=error,
        possible_causes=POSSIBLE_CAUSES.get(error.type, ["Cause unknown; agent analysis recommended"]),
        suggested_fixes=suggest_fixes(error),
    )
