import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dispatcher.constant import RunStatus, SubmissionStatus
from dispatcher.exception import MalformedJobError
from dispatcher.meta import Comparison
from dispatcher.repository import CaseData
from dispatcher.utils import logger, truncate
from runner import comparator


@dataclass
class CompileOutcome:
    ok: bool
    message: str = ''


@dataclass
class TestOutcome:
    __test__ = False

    case_id: int
    status: SubmissionStatus
    stdout: str = ''
    stderr: str = ''
    exit_code: int = 0
    duration: int = 0  # ms
    mem_usage: int = 0  # KB
    points: int = 0

    @property
    def passed(self) -> bool:
        return self.status == SubmissionStatus.ACCEPTED


class SubmissionRunner:
    '''
    Owns the build directory of one submission: writes the source,
    compiles it once and runs the artifact against test cases.
    '''

    def __init__(
        self,
        submission_id: int,
        lang: str,
        profile: dict,
        sandbox,
        working_dir: str | Path,
        max_error_length: int = 4096,
    ):
        if not profile or not profile.get('run'):
            raise MalformedJobError(f'unsupported language {lang!r}')
        self.submission_id = submission_id
        self.lang = lang
        self.profile = profile
        self.sandbox = sandbox
        self.working_dir = Path(working_dir)
        self.max_error_length = max_error_length

    @property
    def build_dir(self) -> Path:
        return self.working_dir / str(self.submission_id) / 'src'

    @property
    def compile_need(self) -> bool:
        return bool(self.profile.get('compile'))

    def prepare(self, source_code: str):
        submission_dir = self.build_dir.parent
        # leftovers of an interrupted delivery
        if submission_dir.exists():
            shutil.rmtree(submission_dir)
        self.build_dir.mkdir(parents=True)
        source = self.build_dir / self.profile.get('source', 'main')
        source.write_text(source_code)
        logger().debug(f'source written [id={self.submission_id}]')

    def compile(self) -> CompileOutcome:
        if not self.compile_need:
            return CompileOutcome(ok=True)
        result = self.sandbox.compile(
            command=self.profile['compile'],
            build_dir=self.build_dir,
            image=self.profile.get('image'),
        )
        if result.status == RunStatus.EXITED and result.exit_code == 0:
            return CompileOutcome(ok=True)
        if result.status == RunStatus.TIME_LIMIT:
            message = 'compilation timed out'
        elif result.status == RunStatus.MEMORY_LIMIT:
            message = 'compilation exceeded the memory limit'
        else:
            message = result.stderr or result.stdout
        return CompileOutcome(
            ok=False,
            message=truncate(message, self.max_error_length),
        )

    def run(
        self,
        case: CaseData,
        time_limit: int,  # ms
        mem_limit: int,  # KB
        policy: Optional[Comparison] = None,
        allow_nonzero_exit: bool = False,
    ) -> TestOutcome:
        result = self.sandbox.run(
            command=self.profile['run'],
            build_dir=self.build_dir,
            stdin=case.input_data,
            time_limit=time_limit,
            mem_limit=mem_limit,
            image=self.profile.get('image'),
        )
        status = comparator.classify(
            result,
            case.expected_output,
            policy,
            allow_nonzero_exit,
        )
        return TestOutcome(
            case_id=case.id,
            status=status,
            stdout=result.stdout,
            stderr=truncate(result.stderr, self.max_error_length),
            exit_code=result.exit_code,
            duration=result.duration,
            mem_usage=result.mem_usage,
            points=case.points if status == SubmissionStatus.ACCEPTED else 0,
        )
