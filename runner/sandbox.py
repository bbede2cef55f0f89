import shlex
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import docker
import requests

from dispatcher.constant import RunStatus
from dispatcher.exception import SandboxError
from dispatcher.utils import logger
from runner.path_utils import PathTranslator

__all__ = [
    'Result',
    'Sandbox',
    'read_usage',
]

# compile must be done in 20 seconds with at most 1GB memory
COMPILE_TIME_LIMIT = 20000  # ms
COMPILE_MEM_LIMIT = 1048576  # KB


@dataclass
class Result:
    status: RunStatus
    stdout: str = ''
    stderr: str = ''
    exit_code: int = 0
    duration: int = 0  # ms
    mem_usage: int = 0  # KB


def read_usage(path: Path) -> tuple[Optional[int], Optional[int]]:
    '''
    Parse the `%e %M` report of GNU time into (ms, KB).
    The report is the last line; earlier lines may hold signal notes.
    '''
    try:
        lines = path.read_text().strip().splitlines()
    except FileNotFoundError:
        return None, None
    if not lines:
        return None, None
    try:
        elapsed, max_rss = lines[-1].split()
        return int(float(elapsed) * 1000), int(max_rss)
    except ValueError:
        return None, None


class Sandbox:
    '''
    Run commands inside disposable docker containers.

    Every call creates a fresh container with no network, a read-only
    root filesystem and cgroup memory/pid limits. `run` also executes in
    a fresh scratch copy of the build directory, removed afterwards.
    '''

    def __init__(
        self,
        image: Optional[str] = None,
        docker_url: str = 'unix://var/run/docker.sock',
        scratch_root: Optional[str | Path] = None,
        wall_overhead_ms: int = 1000,
        pids_limit: int = 64,
        max_output_bytes: int = 64 * 1024 * 1024,
        usage_wrapper: Optional[List[str]] = None,
        translator: Optional[PathTranslator] = None,
        client: Optional[docker.APIClient] = None,
    ):
        self.image = image
        self.docker_url = docker_url
        self.scratch_root = Path(scratch_root) if scratch_root else None
        self.wall_overhead_ms = wall_overhead_ms
        self.pids_limit = pids_limit
        self.max_output_bytes = max_output_bytes
        self.usage_wrapper = list(usage_wrapper or [])
        self.translator = translator
        self._client = client

    @property
    def client(self) -> docker.APIClient:
        if self._client is None:
            try:
                self._client = docker.APIClient(base_url=self.docker_url)
            except docker.errors.DockerException as e:
                raise SandboxError(f'docker unavailable: {e}') from e
        return self._client

    def compile(
        self,
        command: List[str],
        build_dir: str | Path,
        time_limit: int = COMPILE_TIME_LIMIT,
        mem_limit: int = COMPILE_MEM_LIMIT,
        image: Optional[str] = None,
    ) -> Result:
        # artifacts have to stay in the build directory
        return self._execute(
            command=command,
            workdir=Path(build_dir),
            stdin_file=None,
            time_limit=time_limit,
            mem_limit=mem_limit,
            measure=False,
            image=image,
        )

    def run(
        self,
        command: List[str],
        build_dir: str | Path,
        stdin: str,
        time_limit: int,
        mem_limit: int,
        image: Optional[str] = None,
    ) -> Result:
        if self.scratch_root is not None:
            self.scratch_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(
            tempfile.mkdtemp(prefix='run-',
                             dir=str(self.scratch_root)
                             if self.scratch_root else None))
        try:
            shutil.copytree(build_dir, scratch, dirs_exist_ok=True)
            (scratch / '.stdin').write_text(stdin)
            return self._execute(
                command=command,
                workdir=scratch,
                stdin_file='.stdin',
                time_limit=time_limit,
                mem_limit=mem_limit,
                measure=True,
                image=image,
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _host_path(self, path: Path) -> str:
        if self.translator is None:
            return str(path.resolve())
        return str(self.translator.to_host(path))

    def _execute(
        self,
        command: List[str],
        workdir: Path,
        stdin_file: Optional[str],
        time_limit: int,
        mem_limit: int,
        measure: bool,
        image: Optional[str] = None,
    ) -> Result:
        image = image or self.image
        if not image:
            raise SandboxError('no image to run in')
        argv = (self.usage_wrapper if measure else []) + list(command)
        shell = ' '.join(shlex.quote(arg) for arg in argv)
        if stdin_file:
            shell += f' < {stdin_file}'
        client = self.client
        try:
            host_config = client.create_host_config(
                binds={
                    self._host_path(workdir): {
                        'bind': '/sandbox',
                        'mode': 'rw',
                    },
                },
                network_mode='none',
                mem_limit=f'{mem_limit}k',
                memswap_limit=f'{mem_limit}k',
                pids_limit=self.pids_limit,
                read_only=True,
                tmpfs={'/tmp': 'rw,noexec,nosuid,size=64m'},
                cap_drop=['ALL'],
                security_opt=['no-new-privileges'],
            )
            container = client.create_container(
                image=image,
                command=['/bin/sh', '-c', shell],
                working_dir='/sandbox',
                network_disabled=True,
                host_config=host_config,
            )
        except (docker.errors.DockerException,
                requests.exceptions.RequestException) as e:
            raise SandboxError(f'cannot create container: {e}') from e
        try:
            return self._supervise(container, workdir, time_limit,
                                   mem_limit, measure)
        finally:
            try:
                client.remove_container(container, v=True, force=True)
            except (docker.errors.DockerException,
                    requests.exceptions.RequestException) as e:
                logger().warning(f'failed to remove container: {e}')

    def _supervise(
        self,
        container,
        workdir: Path,
        time_limit: int,
        mem_limit: int,
        measure: bool,
    ) -> Result:
        client = self.client
        deadline = (time_limit + self.wall_overhead_ms) / 1000
        timed_out = False
        exit_code = -1
        try:
            client.start(container)
        except (docker.errors.DockerException,
                requests.exceptions.RequestException) as e:
            raise SandboxError(f'cannot start container: {e}') from e
        started = time.monotonic()
        try:
            exit_status = client.wait(container, timeout=deadline)
            exit_code = exit_status.get('StatusCode', -1)
        except (requests.exceptions.ReadTimeout,
                requests.exceptions.ConnectionError):
            timed_out = True
            try:
                client.kill(container)
            except docker.errors.APIError as e:
                # it may have exited right at the deadline
                logger().debug(f'kill after deadline failed: {e}')
        elapsed = int((time.monotonic() - started) * 1000)
        try:
            state = client.inspect_container(container).get('State', {})
            stdout = client.logs(container, stdout=True, stderr=False)
            stderr = client.logs(container, stdout=False, stderr=True)
        except (docker.errors.DockerException,
                requests.exceptions.RequestException) as e:
            raise SandboxError(f'cannot collect container result: {e}') from e
        duration, mem_usage = (read_usage(workdir / '.usage')
                               if measure else (None, None))
        # the shell could not start the usage wrapper at all
        if (measure and self.usage_wrapper and not timed_out
                and duration is None and exit_code in (126, 127)):
            raise SandboxError(
                f'usage wrapper {self.usage_wrapper[0]} failed '
                f'[exit={exit_code}]: '
                f'{stderr[:512].decode("utf-8", "replace").strip()}')
        duration = elapsed if duration is None else duration
        mem_usage = 0 if mem_usage is None else mem_usage
        if timed_out or duration > time_limit:
            status = RunStatus.TIME_LIMIT
        elif state.get('OOMKilled') or mem_usage >= mem_limit:
            status = RunStatus.MEMORY_LIMIT
        else:
            status = RunStatus.EXITED
        return Result(
            status=status,
            stdout=stdout[:self.max_output_bytes].decode('utf-8', 'replace'),
            stderr=stderr[:self.max_output_bytes].decode('utf-8', 'replace'),
            exit_code=exit_code,
            duration=duration,
            mem_usage=mem_usage,
        )
