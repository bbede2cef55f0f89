import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

import redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from .constant import FAILED_ATTEMPT_STATUSES, SubmissionStatus
from .database import Database
from .exception import StorageError
from .models import (
    Contest,
    ContestParticipant,
    ContestProblem,
    ContestProblemResult,
    ContestScoringEvent,
    Submission,
)
from .utils import logger


@dataclass(frozen=True)
class ScoreChange:
    contest_id: int
    user_id: int
    problem_id: int
    score_delta: int
    penalty_delta: int


@dataclass(frozen=True)
class Standing:
    rank: int
    user_id: int
    score: int
    penalty: int


class ContestScorer:
    '''
    Turn judged contest submissions into participant score and penalty.

    Scoring events of one contest are serialized by `lock`: a thread lock
    by default, a redis lock when dispatchers in several processes share
    the database.
    '''

    def __init__(
        self,
        db: Database,
        penalty_per_wrong: int = 20,
        redis_client: Optional[redis.Redis] = None,
        lock_timeout: float = 30,
    ):
        self.db = db
        self.penalty_per_wrong = penalty_per_wrong
        self.redis_client = redis_client
        self.lock_timeout = lock_timeout
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def _thread_lock(self, contest_id: int) -> threading.Lock:
        with self._locks_lock:
            return self._locks.setdefault(contest_id, threading.Lock())

    @contextmanager
    def lock(self, contest_id: int) -> Iterator[None]:
        if self.redis_client is None:
            with self._thread_lock(contest_id):
                yield
            return
        lock = self.redis_client.lock(
            f'contest-{contest_id}-scoring-lock',
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        )
        try:
            acquired = lock.acquire()
        except redis.exceptions.RedisError as e:
            raise StorageError(f'cannot take scoring lock: {e}') from e
        if not acquired:
            raise StorageError(
                f'timed out waiting for the scoring lock of contest {contest_id}'
            )
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                logger().warning(
                    f'scoring lock expired before release [contest={contest_id}]: {e}'
                )

    def apply(self, session: Session,
              submission: Submission) -> Optional[ScoreChange]:
        '''
        Apply one terminal submission to its contest standings.
        Must run inside the contest's `lock` and the caller's transaction.
        '''
        if submission.contest_id is None:
            return None
        contest_id = submission.contest_id
        contest = session.get(Contest, contest_id)
        if contest is None:
            logger().warning(f'contest {contest_id} not found '
                             f'[id={submission.id}]')
            return None
        if not contest.is_active_at(submission.submitted_at):
            logger().debug(f'submission outside contest window '
                           f'[id={submission.id}, contest={contest_id}]')
            return None
        status = SubmissionStatus(submission.status)
        if status == SubmissionStatus.INTERNAL_ERROR:
            return None
        problem = session.scalar(
            select(ContestProblem).where(
                ContestProblem.contest_id == contest_id,
                ContestProblem.problem_id == submission.problem_id,
            ))
        if problem is None:
            logger().warning(f'problem {submission.problem_id} is not in '
                             f'contest {contest_id} [id={submission.id}]')
            return None
        if session.get(ContestScoringEvent, submission.id) is not None:
            logger().info(f'submission already scored [id={submission.id}]')
            return None
        participant = self._participant(session, contest_id,
                                        submission.user_id)
        result = self._problem_result(session, contest_id,
                                      submission.user_id,
                                      submission.problem_id)
        score_delta = penalty_delta = 0
        if result.solved_at is None:
            if status == SubmissionStatus.ACCEPTED:
                elapsed = submission.submitted_at - contest.start_time
                penalty_delta = (int(elapsed.total_seconds() // 60) +
                                 result.wrong_attempts *
                                 self.penalty_per_wrong)
                score_delta = problem.points
                result.solved_at = submission.submitted_at
                result.points_awarded = score_delta
                result.penalty = penalty_delta
                participant.score += score_delta
                participant.penalty += penalty_delta
            elif status in FAILED_ATTEMPT_STATUSES:
                result.wrong_attempts += 1
        session.add(
            ContestScoringEvent(
                submission_id=submission.id,
                contest_id=contest_id,
                user_id=submission.user_id,
                problem_id=submission.problem_id,
                verdict=status.value,
                score_delta=score_delta,
                penalty_delta=penalty_delta,
            ))
        session.flush()
        self.standings(session, contest_id)
        logger().info(f'contest scored [id={submission.id}, '
                      f'contest={contest_id}, user={submission.user_id}, '
                      f'score+={score_delta}, penalty+={penalty_delta}]')
        return ScoreChange(
            contest_id=contest_id,
            user_id=submission.user_id,
            problem_id=submission.problem_id,
            score_delta=score_delta,
            penalty_delta=penalty_delta,
        )

    def standings(self, session: Session, contest_id: int) -> List[Standing]:
        '''
        Recompute and store the dense ranking of a contest: higher score
        first, then lower penalty; equal pairs share a rank.
        '''
        participants = session.scalars(
            select(ContestParticipant).where(
                ContestParticipant.contest_id == contest_id).order_by(
                    ContestParticipant.score.desc(),
                    ContestParticipant.penalty.asc(),
                    ContestParticipant.user_id.asc(),
                )).all()
        ret = []
        rank = 0
        prev = None
        for p in participants:
            key = (p.score, p.penalty)
            if key != prev:
                rank += 1
                prev = key
            p.rank = rank
            ret.append(
                Standing(
                    rank=rank,
                    user_id=p.user_id,
                    score=p.score,
                    penalty=p.penalty,
                ))
        return ret

    def leaderboard(self, contest_id: int) -> List[Standing]:
        with self.lock(contest_id):
            with self.db.session_scope() as session:
                return self.standings(session, contest_id)

    def _participant(self, session: Session, contest_id: int,
                     user_id: int) -> ContestParticipant:
        participant = session.scalar(
            select(ContestParticipant).where(
                ContestParticipant.contest_id == contest_id,
                ContestParticipant.user_id == user_id,
            ))
        if participant is None:
            participant = ContestParticipant(
                contest_id=contest_id,
                user_id=user_id,
                score=0,
                penalty=0,
            )
            session.add(participant)
        return participant

    def _problem_result(self, session: Session, contest_id: int,
                        user_id: int,
                        problem_id: int) -> ContestProblemResult:
        result = session.scalar(
            select(ContestProblemResult).where(
                ContestProblemResult.contest_id == contest_id,
                ContestProblemResult.user_id == user_id,
                ContestProblemResult.problem_id == problem_id,
            ))
        if result is None:
            result = ContestProblemResult(
                contest_id=contest_id,
                user_id=user_id,
                problem_id=problem_id,
                wrong_attempts=0,
                points_awarded=0,
                penalty=0,
            )
            session.add(result)
        return result
