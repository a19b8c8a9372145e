"""Container runtime gateway and live-container resolution.

Everything here shells out to the ``docker`` CLI through
:func:`runs_manager.process.run_command`. Build and launch failures raise;
kill and volume removal are best-effort and report failures to the caller
instead of raising, because they run on teardown paths.
"""

from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path
from typing import Iterable, Sequence

from runs_manager.models import CommandError, PipelineError
from runs_manager.process import Runner, run_command
from runs_manager.utils import output_lines

_log = logging.getLogger("runs_manager.docker")
_DIGEST_RE = re.compile(r"sha256:([0-9a-f]{12,64})")


def is_live(container_id: str, active: Iterable[str]) -> bool:
    """Whether *container_id* names one of the *active* containers.

    The registry may hold a full id while ``docker ps`` reports the short
    form, or the other way around, so either side may be a prefix.
    """
    candidate = container_id.strip()
    if not candidate:
        return False
    for active_id in active:
        if not active_id:
            continue
        if active_id.startswith(candidate) or candidate.startswith(active_id):
            return True
    return False


def parse_image_digest(output: str) -> str:
    matches = _DIGEST_RE.findall(output)
    if not matches:
        raise PipelineError(
            f"Could not parse an image digest from build output: {output.strip()!r}"
        )
    return matches[-1]


class ContainerRuntime:
    def __init__(self, *, executable: str = "docker", runner: Runner = run_command):
        self.executable = executable
        self._run = runner

    def _argv(self, *parts: str) -> list[str]:
        return [self.executable, *parts]

    def build(
        self, *, dockerfile: str, context: str, tag: str, stream: bool = False
    ) -> str:
        """Build *tag* and return its image digest.

        With ``stream`` the build output goes to the terminal and the digest
        is read back from an ``--iidfile``; otherwise the build runs quietly
        and the digest is parsed from stdout.
        """
        if stream:
            digest = self._build_streamed(dockerfile, context, tag)
        else:
            result = self._run(
                self._argv("build", "-q", "-f", dockerfile, "-t", tag, context),
                capture=True,
                check=True,
            )
            digest = parse_image_digest(result.stdout)
        _log.info("image_built tag=%s digest=%s", tag, digest)
        return digest

    def _build_streamed(self, dockerfile: str, context: str, tag: str) -> str:
        with tempfile.TemporaryDirectory(prefix="runs-build-") as tmp:
            iidfile = Path(tmp) / "image.id"
            argv = self._argv("build", "--iidfile", str(iidfile))
            argv += ["-f", dockerfile, "-t", tag, context]
            self._run(argv, capture=False, check=True)
            try:
                output = iidfile.read_text(encoding="utf-8")
            except OSError as exc:
                raise PipelineError(f"Build wrote no image id file: {exc}") from exc
        return parse_image_digest(output)

    def run(
        self,
        *,
        image: str,
        name: str,
        volume: str,
        mount_path: str,
        run_args: Sequence[str] = (),
        label: str | None = None,
        command_args: Sequence[str] = (),
    ) -> str:
        argv = self._argv("run", "-d", "--rm", *run_args, "--name", name)
        argv += ["-v", f"{volume}:{mount_path}"]
        if label:
            argv += ["--label", label]
        argv += [image, *command_args]
        result = self._run(argv, capture=True, check=True)
        lines = output_lines(result.stdout)
        if not lines:
            raise CommandError(
                f"Container runtime returned no id for run {name!r}",
                argv=tuple(argv),
                exit_code=result.exit_code,
                output=result.stdout,
            )
        container_id = lines[-1]
        _log.info("container_started name=%s container_id=%s", name, container_id)
        return container_id

    def kill(self, container_ids: Sequence[str]) -> list[str]:
        """Kill each container; return the ids that could not be killed."""
        failures: list[str] = []
        for container_id in container_ids:
            if not container_id:
                continue
            try:
                result = self._run(self._argv("kill", container_id), capture=True)
            except CommandError as exc:
                _log.warning("kill_failed container_id=%s error=%s", container_id, exc)
                failures.append(container_id)
                continue
            if not result.ok:
                _log.warning(
                    "kill_failed container_id=%s exit_code=%s",
                    container_id,
                    result.exit_code,
                )
                failures.append(container_id)
        return failures

    def remove_volumes(self, volumes: Sequence[str]) -> list[str]:
        """Remove each volume; return the names that could not be removed."""
        failures: list[str] = []
        for volume in volumes:
            if not volume:
                continue
            try:
                result = self._run(
                    self._argv("volume", "rm", "-f", volume), capture=True
                )
            except CommandError as exc:
                _log.warning("volume_rm_failed volume=%s error=%s", volume, exc)
                failures.append(volume)
                continue
            if not result.ok:
                _log.warning(
                    "volume_rm_failed volume=%s exit_code=%s", volume, result.exit_code
                )
                failures.append(volume)
        return failures

    def active_containers(self, label: str | None = None) -> set[str]:
        argv = self._argv("ps", "-q", "--no-trunc")
        if label:
            argv += ["--filter", f"label={label}"]
        result = self._run(argv, capture=True, check=True)
        return set(output_lines(result.stdout))

    def existing_volumes(self, candidates: Iterable[str]) -> set[str]:
        wanted = {name for name in candidates if name}
        if not wanted:
            return set()
        result = self._run(self._argv("volume", "ls", "-q"), capture=True, check=True)
        return wanted & set(output_lines(result.stdout))

    def logs(self, container_id: str, *, follow: bool = False) -> int:
        argv = self._argv("logs")
        if follow:
            argv.append("-f")
        argv.append(container_id)
        return self._run(argv, capture=False).exit_code
