"""
ServiceController: the orchestrator capability homestack consumes.

The core only depends on the protocol. DockerComposeController is a thin
adapter over the docker CLI.
"""
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .errors import ServiceControlError, ServiceUnavailableError


@dataclass(frozen=True)
class ExecResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ServiceController(Protocol):
    def ping(self) -> bool:
        ...

    def known_services(self) -> Optional[List[str]]:
        ...

    def stop(self, names: Sequence[str]) -> None:
        ...

    def start(self, names: Sequence[str]) -> None:
        ...

    def exists(self, name: str) -> bool:
        ...

    def is_running(self, name: str) -> bool:
        ...

    def health_status(self, name: str) -> Optional[str]:
        ...

    def exec(self, name: str, argv: Sequence[str], timeout: float = 5.0) -> ExecResult:
        ...


class DockerComposeController:
    """Drive the stack with `docker compose` from the compose project directory."""

    def __init__(self, compose_dir: Path, docker_bin: str = "docker", command_timeout: float = 300.0):
        self.compose_dir = Path(compose_dir)
        self.docker_bin = docker_bin
        self.command_timeout = command_timeout

    def _run(self, args: Sequence[str], timeout: Optional[float] = None, cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.docker_bin, *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
            )
        except FileNotFoundError as e:
            raise ServiceUnavailableError(f"'{self.docker_bin}' is not installed.") from e

    def ping(self) -> bool:
        try:
            return self._run(["info"], timeout=10).returncode == 0
        except (ServiceUnavailableError, subprocess.TimeoutExpired):
            return False

    def _names(self, all_containers: bool) -> List[str]:
        args = ["ps", "--format", "{{.Names}}"]
        if all_containers:
            args.insert(1, "-a")
        try:
            proc = self._run(args, timeout=30)
        except subprocess.TimeoutExpired as e:
            raise ServiceUnavailableError("docker ps timed out; is the daemon responding?") from e
        if proc.returncode != 0:
            raise ServiceUnavailableError(f"docker ps failed: {proc.stderr.strip()}")
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def known_services(self) -> Optional[List[str]]:
        try:
            proc = self._run(["compose", "config", "--services"], timeout=30, cwd=self.compose_dir)
        except subprocess.TimeoutExpired:
            return None
        if proc.returncode != 0:
            return None
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def _compose(self, action: List[str], names: Sequence[str]) -> None:
        if not names:
            return
        try:
            proc = self._run(["compose", *action, *names], cwd=self.compose_dir)
        except subprocess.TimeoutExpired as e:
            raise ServiceControlError(f"docker compose {' '.join(action)} timed out") from e
        if proc.returncode != 0:
            raise ServiceControlError(
                f"docker compose {' '.join(action)} failed for {', '.join(names)}: {proc.stderr.strip()}"
            )

    def stop(self, names: Sequence[str]) -> None:
        self._compose(["stop"], names)

    def start(self, names: Sequence[str]) -> None:
        self._compose(["up", "-d"], names)

    def exists(self, name: str) -> bool:
        return name in self._names(all_containers=True)

    def is_running(self, name: str) -> bool:
        return name in self._names(all_containers=False)

    def health_status(self, name: str) -> Optional[str]:
        proc = self._run(
            ["inspect", "--format", "{{if .State.Health}}{{.State.Health.Status}}{{end}}", name],
            timeout=30,
        )
        status = proc.stdout.strip()
        if proc.returncode != 0 or not status:
            return None
        return status

    def exec(self, name: str, argv: Sequence[str], timeout: float = 5.0) -> ExecResult:
        try:
            proc = self._run(["exec", name, *argv], timeout=timeout)
        except subprocess.TimeoutExpired:
            return ExecResult(returncode=-1, timed_out=True)
        return ExecResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
