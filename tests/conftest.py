"""
Pytest configuration and fixtures for Shipyard tests.
"""

import hashlib
import posixpath
import shlex
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from shipyard.build.tagging import generate_tag
from shipyard.core.config import Settings
from shipyard.core.exceptions import RemoteCommandError
from shipyard.core.models import RunRecord, RunStatus
from shipyard.core.pipeline_config import PipelineConfig
from shipyard.deploy.ssh import CommandResult

CI_ENV_VARS = [
    "GITHUB_HEAD_REF",
    "GITHUB_REF_NAME",
    "GITHUB_SHA",
    "GITHUB_OUTPUT",
    "CI_COMMIT_REF_NAME",
    "CI_COMMIT_SHA",
    "BRANCH_NAME",
    "GIT_COMMIT",
    "REMOTE_HOST",
    "REMOTE_USER",
    "REMOTE_PASSWORD",
    "REMOTE_PRIVATE_KEY",
    "REMOTE_KEY_PASSPHRASE",
    "REMOTE_PORT",
    "REMOTE_DEPLOY_DIR",
    "TRIGGER_TOKEN",
    "WEBHOOK_SECRET",
    "PIPELINE_FILE",
    "ARTIFACTS_DIR",
    "LOG_LEVEL",
    "LOG_FORMAT",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """
    Remove CI and deployment variables so tests never pick up the host's.

    Tests that need one set it themselves with monkeypatch.setenv().
    """
    for name in CI_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        remote_host="deploy.example.com",
        remote_user="deploy",
        remote_password="s3cret",
        remote_deploy_dir="/srv/orders",
        artifacts_dir=str(tmp_path / "artifacts"),
    )


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return PipelineConfig.for_app(
        "orders",
        project_dir=str(project),
        deploy={"container_name": "orders", "host_port": 8080, "container_port": 8080},
    )


class FakeRemote:
    """In-memory stand-in for ``RemoteHost`` with a tiny docker engine.

    Image archives are plain files whose content is the image reference, so
    ``docker load`` knows which image it restores.
    """

    def __init__(self):
        self.address = "deploy@deploy.example.com:22"
        self.files: Dict[str, bytes] = {}
        self.dirs = {"/", "/srv", "/srv/orders"}
        self.readonly_dirs = set()
        self.images = set()
        self.containers: Dict[str, dict] = {}
        self.crashing_images = set()
        self.commands: List[str] = []
        self.uploads: List[str] = []
        self.connected = False
        self.connect_error: Optional[Exception] = None
        self.upload_error: Optional[Exception] = None
        self.upload_truncate = 0
        self.has_sha256sum = True

    # connection

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return self

    def close(self):
        self.connected = False

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # helpers for tests

    def add_container(self, name: str, image: str, running: bool = True, port: int = 8080):
        self.images.add(image)
        self.containers[name] = {"id": uuid.uuid4().hex, "image": image, "running": running, "port": port}

    def running_containers(self, name: Optional[str] = None) -> List[dict]:
        return [
            dict(c, name=n)
            for n, c in self.containers.items()
            if c["running"] and (name is None or n == name)
        ]

    def docker_commands(self, verb: Optional[str] = None) -> List[List[str]]:
        calls = [shlex.split(c) for c in self.commands if c.startswith("docker ")]
        if verb is None:
            return calls
        return [c for c in calls if c[1] == verb]

    # SFTP

    def upload(self, local_path, remote_path: str, callback=None) -> int:
        self.uploads.append(remote_path)
        if self.upload_error is not None:
            raise self.upload_error
        parent = posixpath.dirname(remote_path)
        if parent in self.readonly_dirs:
            raise PermissionError(13, "Permission denied")
        data = Path(local_path).read_bytes()
        if self.upload_truncate:
            data = data[: -self.upload_truncate]
        self.files[remote_path] = data
        return len(data)

    def rename(self, src: str, dst: str) -> None:
        self.files[dst] = self.files.pop(src)

    def remove(self, remote_path: str) -> None:
        self.files.pop(remote_path, None)

    # commands

    def run(self, command: str, *, check: bool = True, timeout: Optional[float] = None) -> CommandResult:
        self.commands.append(command)
        result = CommandResult(command=command, exit_code=0)
        for part in command.split(" && "):
            result = self._execute(part)
            result.command = command
            if not result.ok:
                break
        if check and not result.ok:
            raise RemoteCommandError(
                f"Remote command exited with status {result.exit_code}: {command}",
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def _ok(self, stdout: str = "") -> CommandResult:
        return CommandResult(command="", exit_code=0, stdout=stdout)

    def _fail(self, stderr: str, code: int = 1) -> CommandResult:
        return CommandResult(command="", exit_code=code, stderr=stderr)

    def _execute(self, command: str) -> CommandResult:
        args = shlex.split(command)
        prog = args[0]

        if prog == "docker":
            return self._docker(args[1:])
        if prog == "mkdir":
            if args[1] == "-p":
                path = args[2]
                while path not in self.dirs:
                    self.dirs.add(path)
                    path = posixpath.dirname(path)
                return self._ok()
            path = args[1]
            if path in self.dirs:
                return self._fail(f"mkdir: cannot create directory '{path}': File exists")
            parent = posixpath.dirname(path)
            if parent not in self.dirs or parent in self.readonly_dirs:
                return self._fail(f"mkdir: cannot create directory '{path}': Permission denied")
            self.dirs.add(path)
            return self._ok()
        if prog == "test":
            flag, path = args[1], args[2]
            if flag == "-d":
                return self._ok() if path in self.dirs else self._fail("")
            if flag == "-w":
                return self._ok() if path in self.dirs and path not in self.readonly_dirs else self._fail("")
        if prog == "rm":
            path = args[-1]
            if "-rf" in args:
                self.dirs = {d for d in self.dirs if d != path and not d.startswith(path + "/")}
                self.files = {f: v for f, v in self.files.items() if not f.startswith(path + "/")}
            self.files.pop(path, None)
            return self._ok()
        if prog == "cat":
            if args[1] not in self.files:
                return self._fail(f"cat: {args[1]}: No such file or directory")
            return self._ok(self.files[args[1]].decode())
        if prog == "printf":
            # printf '%s' PAYLOAD > PATH
            self.files[args[4]] = args[2].encode()
            return self._ok()
        if prog == "sha256sum":
            if not self.has_sha256sum:
                return self._fail("sh: sha256sum: not found", 127)
            data = self.files.get(args[1])
            if data is None:
                return self._fail(f"sha256sum: {args[1]}: No such file or directory")
            return self._ok(f"{hashlib.sha256(data).hexdigest()}  {args[1]}\n")
        return self._fail(f"sh: {prog}: not found", 127)

    def _docker(self, args: List[str]) -> CommandResult:
        if args[:2] == ["container", "inspect"]:
            name = args[-1]
            container = self.containers.get(name)
            if container is None:
                return self._fail(f"Error: No such container: {name}")
            running = "true" if container["running"] else "false"
            return self._ok(f"{container['id']}|{container['image']}|{running}\n")
        if args[:2] == ["image", "inspect"]:
            image = args[-1]
            return self._ok("sha256:abc\n") if image in self.images else self._fail(f"Error: No such image: {image}")
        if args[0] == "load":
            data = self.files.get(args[-1])
            if data is None:
                return self._fail(f"open {args[-1]}: no such file or directory")
            image = data.decode().strip()
            self.images.add(image)
            return self._ok(f"Loaded image: {image}\n")
        if args[0] == "stop":
            self.containers[args[-1]]["running"] = False
            return self._ok(args[-1])
        if args[0] == "rm":
            name = args[-1]
            container = self.containers.get(name)
            if container is None:
                return self._fail(f"Error: No such container: {name}")
            if container["running"] and "--force" not in args:
                return self._fail(f"Error: cannot remove running container {name}")
            del self.containers[name]
            return self._ok(name)
        if args[0] == "run":
            name = args[args.index("--name") + 1]
            port = int(args[args.index("--publish") + 1].split(":")[0])
            image = args[-1]
            if name in self.containers:
                return self._fail(f'Conflict. The container name "/{name}" is already in use', 125)
            if any(c["running"] and c["port"] == port for c in self.containers.values()):
                return self._fail(f"Bind for 0.0.0.0:{port} failed: port is already allocated", 125)
            if image not in self.images:
                return self._fail(f"Unable to find image '{image}' locally", 125)
            container_id = uuid.uuid4().hex
            self.containers[name] = {
                "id": container_id,
                "image": image,
                "running": image not in self.crashing_images,
                "port": port,
            }
            return self._ok(container_id + "\n")
        if args[0] == "logs":
            return self._ok("Exception in thread main java.lang.IllegalStateException: boom\n")
        return self._fail(f"unknown docker command: {args[0]}")


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


class StubPipeline:
    """Records runs instead of building; ``finish=False`` leaves runs pending."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.calls: List[tuple] = []
        self.finish = True
        self.fail_with: Optional[Exception] = None
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def tag_for(self, branch: str, revision: str) -> str:
        return generate_tag(branch, revision, self.config.trigger.revision_length)

    def run(self, branch: str, revision: str, record: RunRecord) -> RunRecord:
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(0.01)
            self.calls.append((branch, revision, record.run_id))
            if not self.finish:
                return record
            if self.fail_with is not None:
                record.update_status(RunStatus.FAILED, {"error": str(self.fail_with)})
                raise self.fail_with
            record.update_status(RunStatus.SUCCEEDED)
            return record
        finally:
            with self._guard:
                self.active -= 1


@pytest.fixture
def stub_pipeline(pipeline_config) -> StubPipeline:
    return StubPipeline(pipeline_config)
