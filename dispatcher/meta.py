from typing import List, Optional
from pydantic import (
    BaseModel,
    Field,
    field_validator,
    conlist,
)
from .constant import ComparisonMode, GradingMode


class Comparison(BaseModel):
    mode: ComparisonMode = ComparisonMode.EXACT
    abs_tolerance: float = Field(default=1e-6, ge=0)
    rel_tolerance: float = Field(default=1e-6, ge=0)


class JudgeJob(BaseModel):
    '''
    A queue message asking the dispatcher to judge one submission.
    '''
    submission_id: int
    problem_id: int
    contest_id: Optional[int] = None
    language: str
    source_code: str
    time_limit_ms: int = Field(gt=0)
    memory_limit_mb: int = Field(gt=0)
    test_case_refs: conlist(int, min_length=1)
    grading_mode: GradingMode = GradingMode.BINARY
    comparison: Comparison = Field(default_factory=Comparison)
    allow_nonzero_exit: bool = False

    @field_validator('language', mode='before')
    @classmethod
    def _normalize_language(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            v = {'c++': 'cpp', 'py': 'python', 'python3': 'python'}.get(v, v)
        return v

    @field_validator('test_case_refs')
    @classmethod
    def _unique_refs(cls, v: List[int]):
        if len(set(v)) != len(v):
            raise ValueError('duplicated test case reference')
        return v

    @property
    def memory_limit_kb(self) -> int:
        return self.memory_limit_mb * 1024

    def sorted_refs(self) -> List[int]:
        return sorted(self.test_case_refs)
