"""Two-stage image recipe: rendering and validation."""

import json
from typing import List, Tuple

from shipyard.core.exceptions import PackagingFailure
from shipyard.core.pipeline_config import ImageConfig

KNOWN_INSTRUCTIONS = {
    "FROM", "RUN", "CMD", "LABEL", "MAINTAINER", "EXPOSE", "ENV", "ADD", "COPY",
    "ENTRYPOINT", "VOLUME", "USER", "WORKDIR", "ARG", "ONBUILD", "STOPSIGNAL",
    "HEALTHCHECK", "SHELL",
}
PRIVILEGED_USERS = {"root", "0"}

DOCKERFILE_TEMPLATE = """\
# Generated by shipyard. The build stage is discarded; only the jar reaches
# the runtime image.
FROM {build_image} AS build
WORKDIR /workspace
ARG JAR_FILE={artifact_name}
COPY ${{JAR_FILE}} app.jar
RUN jar tf app.jar > /dev/null

FROM {runtime_image}
RUN groupadd --system --gid {uid} {user} \\
    && useradd --system --uid {uid} --gid {user} --no-create-home --shell /usr/sbin/nologin {user}
WORKDIR /app
COPY --from=build --chown={user}:{user} /workspace/app.jar /app/app.jar
USER {user}
EXPOSE {port}
ENV JAVA_OPTS={java_opts}
ENTRYPOINT ["sh", "-c", "exec java $JAVA_OPTS -jar /app/app.jar"]
"""


def render_dockerfile(config: ImageConfig, artifact_name: str, container_port: int) -> str:
    """Render the default recipe for a jar placed at the context root."""
    return DOCKERFILE_TEMPLATE.format(
        build_image=config.build_image,
        runtime_image=config.runtime_image,
        artifact_name=artifact_name,
        user=config.runtime_user,
        uid=config.runtime_uid,
        port=container_port,
        java_opts=json.dumps(" ".join(config.jvm_options)),
    )


def parse_instructions(text: str) -> List[Tuple[str, str]]:
    """Split a recipe into ``(INSTRUCTION, arguments)`` pairs.

    Comments are dropped and backslash continuations joined.
    """
    instructions = []
    pending = ""
    for raw in text.splitlines():
        line = raw.strip()
        if not pending and (not line or line.startswith("#")):
            continue
        if line.startswith("#"):
            # comment lines inside a continuation are ignored
            continue
        if line.endswith("\\"):
            pending += line[:-1].rstrip() + " "
            continue
        line = pending + line
        pending = ""
        if not line.strip():
            continue
        parts = line.split(None, 1)
        instructions.append((parts[0].upper(), parts[1] if len(parts) > 1 else ""))
    if pending.strip():
        parts = pending.split(None, 1)
        instructions.append((parts[0].upper(), parts[1] if len(parts) > 1 else ""))
    return instructions


def _user_name(args: str) -> str:
    # USER name[:group]
    return args.strip().split(":", 1)[0]


def validate_dockerfile(text: str) -> None:
    """Reject recipes that break the two-stage, non-root packaging policy."""
    problems = []
    instructions = parse_instructions(text)

    if not instructions:
        raise PackagingFailure("Dockerfile is empty", code="dockerfile_invalid")

    unknown = sorted({name for name, _ in instructions if name not in KNOWN_INSTRUCTIONS})
    if unknown:
        problems.append(f"unknown instructions: {', '.join(unknown)}")

    if instructions[0][0] not in ("FROM", "ARG"):
        problems.append("first instruction must be FROM")

    stage_starts = [i for i, (name, _) in enumerate(instructions) if name == "FROM"]
    if len(stage_starts) < 2:
        problems.append("recipe needs a build stage and a runtime stage (two FROM instructions)")
    else:
        final_stage = instructions[stage_starts[-1] + 1:]

        if not any(name == "COPY" and "--from=" in args for name, args in final_stage):
            problems.append("runtime stage must COPY --from the build stage")

        users = [_user_name(args) for name, args in final_stage if name == "USER"]
        if not users:
            problems.append("runtime stage must switch to a non-privileged USER")
        elif users[-1] in PRIVILEGED_USERS:
            problems.append(f"runtime stage runs as privileged user {users[-1]!r}")

        if not any(name in ("ENTRYPOINT", "CMD") for name, _ in final_stage):
            problems.append("runtime stage needs an ENTRYPOINT or CMD")

    if problems:
        raise PackagingFailure(
            "Malformed Dockerfile: " + "; ".join(problems),
            code="dockerfile_invalid",
        )
