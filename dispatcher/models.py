"""
Tables read and written by the judge pipeline.

``submissions`` and the contest tables are shared with the web backend;
``test_cases``, ``contests`` and ``contest_problems`` are read-only here.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .constant import SubmissionStatus
from .utils import utcnow


class Base(DeclarativeBase):
    pass


class Submission(Base):
    __tablename__ = 'submissions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    problem_id: Mapped[int] = mapped_column(Integer,
                                            nullable=False,
                                            index=True)
    contest_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey('contests.id'),
        nullable=True,
        index=True,
    )
    language: Mapped[str] = mapped_column(String(50), nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=SubmissionStatus.PENDING.value,
    )
    verdict: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    # ms
    execution_time: Mapped[Optional[int]] = mapped_column(Integer,
                                                          nullable=True)
    # KB
    memory_used: Mapped[Optional[int]] = mapped_column(Integer,
                                                       nullable=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    test_cases_passed: Mapped[int] = mapped_column(Integer,
                                                   nullable=False,
                                                   default=0)
    total_test_cases: Mapped[int] = mapped_column(Integer,
                                                  nullable=False,
                                                  default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    judged_at: Mapped[Optional[datetime]] = mapped_column(DateTime,
                                                          nullable=True)

    @property
    def current_status(self) -> SubmissionStatus:
        return SubmissionStatus(self.status)

    def __repr__(self):
        return f'<Submission id={self.id} status={self.status}>'


class TestCase(Base):
    __tablename__ = 'test_cases'
    # keep pytest from collecting the model
    __test__ = False

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    problem_id: Mapped[int] = mapped_column(Integer,
                                            nullable=False,
                                            index=True)
    input_data: Mapped[str] = mapped_column(Text, nullable=False, default='')
    expected_output: Mapped[Optional[str]] = mapped_column(Text,
                                                           nullable=True)
    is_sample: Mapped[bool] = mapped_column(Boolean,
                                            nullable=False,
                                            default=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class Contest(Base):
    __tablename__ = 'contests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default='')
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def is_active_at(self, moment: datetime) -> bool:
        return self.start_time <= moment <= self.end_time


class ContestProblem(Base):
    __tablename__ = 'contest_problems'
    __table_args__ = (UniqueConstraint('contest_id', 'problem_id'), )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contest_id: Mapped[int] = mapped_column(Integer,
                                            ForeignKey('contests.id'),
                                            nullable=False)
    problem_id: Mapped[int] = mapped_column(Integer, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=500)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ContestParticipant(Base):
    __tablename__ = 'contest_participants'
    __table_args__ = (UniqueConstraint('contest_id', 'user_id'), )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contest_id: Mapped[int] = mapped_column(Integer,
                                            ForeignKey('contests.id'),
                                            nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # minutes
    penalty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ContestProblemResult(Base):
    __tablename__ = 'contest_problem_results'
    __table_args__ = (UniqueConstraint('contest_id', 'user_id',
                                       'problem_id'), )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contest_id: Mapped[int] = mapped_column(Integer,
                                            ForeignKey('contests.id'),
                                            nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    problem_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wrong_attempts: Mapped[int] = mapped_column(Integer,
                                                nullable=False,
                                                default=0)
    solved_at: Mapped[Optional[datetime]] = mapped_column(DateTime,
                                                          nullable=True)
    points_awarded: Mapped[int] = mapped_column(Integer,
                                                nullable=False,
                                                default=0)
    penalty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ContestScoringEvent(Base):
    '''One row per scored submission, so redelivered jobs score once.'''
    __tablename__ = 'contest_scoring_events'

    submission_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey('submissions.id'),
        primary_key=True,
    )
    contest_id: Mapped[int] = mapped_column(Integer,
                                            ForeignKey('contests.id'),
                                            nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    problem_id: Mapped[int] = mapped_column(Integer, nullable=False)
    verdict: Mapped[str] = mapped_column(String(50), nullable=False)
    score_delta: Mapped[int] = mapped_column(Integer,
                                             nullable=False,
                                             default=0)
    penalty_delta: Mapped[int] = mapped_column(Integer,
                                               nullable=False,
                                               default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime,
                                                 nullable=False,
                                                 default=utcnow)


class ProblemStatistics(Base):
    __tablename__ = 'problem_statistics'

    problem_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_submissions: Mapped[int] = mapped_column(Integer,
                                                   nullable=False,
                                                   default=0)
    accepted_submissions: Mapped[int] = mapped_column(Integer,
                                                      nullable=False,
                                                      default=0)
