"""
Local sandbox backend for hosts without a docker daemon.

Each run gets its own scratch directory and process group, bounded by
rlimits and a wall-clock watchdog. Network isolation relies on
`unshare --net` and is only as strong as the host's user namespaces.
"""
import math
import os
import resource
import shutil
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional

from dispatcher.constant import RunStatus
from dispatcher.exception import SandboxError
from dispatcher.utils import logger
from runner.sandbox import COMPILE_MEM_LIMIT, COMPILE_TIME_LIMIT, Result

UNSHARE_NET = ['unshare', '--map-root-user', '--net', '--']
# stderr markers of allocation failures under RLIMIT_AS
OOM_MARKERS = (
    'MemoryError',
    'std::bad_alloc',
    'Cannot allocate memory',
    'OutOfMemoryError',
)


def apply_rlimits(cpu_seconds: int, memory_bytes: int, nofile: int,
                  fsize: int) -> None:
    resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
    resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
    resource.setrlimit(resource.RLIMIT_NOFILE, (nofile, nofile))
    resource.setrlimit(resource.RLIMIT_FSIZE, (fsize, fsize))
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))


class ProcessSandbox:

    def __init__(
        self,
        scratch_root: Optional[str | Path] = None,
        wall_overhead_ms: int = 1000,
        max_output_bytes: int = 64 * 1024 * 1024,
        isolate_network: bool = True,
        nofile: int = 64,
    ):
        self.scratch_root = Path(scratch_root) if scratch_root else None
        self.wall_overhead_ms = wall_overhead_ms
        self.max_output_bytes = max_output_bytes
        self.isolate_network = isolate_network
        self.nofile = nofile
        self._isolation_checked = False

    def check_isolation(self):
        '''
        Raise SandboxError when `unshare` cannot create the namespaces.
        A failure is not cached, the host may recover.
        '''
        if not self.isolate_network or self._isolation_checked:
            return
        try:
            proc = subprocess.run(UNSHARE_NET + ['true'],
                                  capture_output=True,
                                  timeout=10)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SandboxError(f'network isolation unavailable: {e}') from e
        if proc.returncode != 0:
            reason = proc.stderr.decode('utf-8', 'replace').strip()
            raise SandboxError(f'network isolation unavailable '
                               f'[exit={proc.returncode}]: {reason}')
        self._isolation_checked = True

    def compile(
        self,
        command: List[str],
        build_dir: str | Path,
        time_limit: int = COMPILE_TIME_LIMIT,
        mem_limit: int = COMPILE_MEM_LIMIT,
        image: Optional[str] = None,
    ) -> Result:
        # images only apply to the docker backend
        build_dir = Path(build_dir)
        stdin_path = build_dir / '.stdin'
        stdin_path.write_text('')
        try:
            return self._execute(command, build_dir, stdin_path, time_limit,
                                 mem_limit)
        finally:
            # later runs copy the build directory
            for name in ('.stdin', '.stdout', '.stderr'):
                (build_dir / name).unlink(missing_ok=True)

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
            stdin_path = scratch / '.stdin'
            stdin_path.write_text(stdin)
            return self._execute(command, scratch, stdin_path, time_limit,
                                 mem_limit)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _read(self, path: Path) -> str:
        with path.open('rb') as f:
            return f.read(self.max_output_bytes).decode('utf-8', 'replace')

    def _execute(
        self,
        command: List[str],
        workdir: Path,
        stdin_path: Path,
        time_limit: int,
        mem_limit: int,
    ) -> Result:
        self.check_isolation()
        argv = (UNSHARE_NET if self.isolate_network else []) + list(command)
        cpu_seconds = math.ceil(time_limit / 1000) + 1
        memory_bytes = mem_limit * 1024
        env = {
            'PATH': os.environ.get('PATH', '/usr/bin:/bin'),
            'LANG': 'C.UTF-8',
            'HOME': str(workdir),
        }

        def _preexec():
            os.setsid()
            apply_rlimits(cpu_seconds, memory_bytes, self.nofile,
                          self.max_output_bytes)

        stdout_path = workdir / '.stdout'
        stderr_path = workdir / '.stderr'
        with stdin_path.open('rb') as fin, \
                stdout_path.open('wb') as fout, \
                stderr_path.open('wb') as ferr:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=fin,
                    stdout=fout,
                    stderr=ferr,
                    cwd=str(workdir),
                    env=env,
                    preexec_fn=_preexec,
                )
            except OSError as e:
                raise SandboxError(f'cannot launch {argv[0]}: {e}') from e
            started = time.monotonic()
            deadline = started + (time_limit + self.wall_overhead_ms) / 1000
            timed_out = False
            while True:
                pid, wait_status, rusage = os.wait4(proc.pid, os.WNOHANG)
                if pid:
                    break
                if time.monotonic() >= deadline:
                    timed_out = True
                    try:
                        os.killpg(proc.pid, signal.SIGKILL)
                    except ProcessLookupError:
                        pass
                    pid, wait_status, rusage = os.wait4(proc.pid, 0)
                    break
                time.sleep(0.005)
            elapsed = int((time.monotonic() - started) * 1000)
            exit_code = os.waitstatus_to_exitcode(wait_status)
            # the child was reaped here, not by Popen
            proc.returncode = exit_code
        # kill whatever the program left behind in its group
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        stdout = self._read(stdout_path)
        stderr = self._read(stderr_path)
        mem_usage = rusage.ru_maxrss
        if timed_out or elapsed > time_limit or exit_code == -signal.SIGXCPU:
            status = RunStatus.TIME_LIMIT
        elif mem_usage >= mem_limit or (exit_code != 0 and any(
                marker in stderr for marker in OOM_MARKERS)):
            status = RunStatus.MEMORY_LIMIT
        else:
            status = RunStatus.EXITED
        logger().debug(f'process finished [status={status.value}, '
                       f'exit={exit_code}, time={elapsed}ms, '
                       f'mem={mem_usage}KB]')
        return Result(
            status=status,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration=elapsed,
            mem_usage=mem_usage,
        )
