import pytest

from dagflow.errors import (
    CycleError,
    DagflowError,
    ErrorInfo,
    InfrastructureError,
    PermanentTaskFailure,
    TaskTimeout,
    describe_exception,
    error_from_info,
    is_retryable,
)
from dagflow.utils.retry import compute_backoff, total_attempts


def test_error_info_round_trip_keeps_class():
    info = CycleError("cycle at a", details={"visited": 1}).to_info()
    assert info.code == "CYCLE_DETECTED"

    rebuilt = error_from_info(info)
    assert isinstance(rebuilt, CycleError)
    assert rebuilt.details == {"visited": 1}
    assert str(rebuilt) == "[CYCLE_DETECTED] cycle at a"


def test_unknown_code_falls_back_to_base_error():
    rebuilt = error_from_info(ErrorInfo(code="SOMETHING_ELSE", message="boom"))
    assert type(rebuilt) is DagflowError
    assert rebuilt.code == "SOMETHING_ELSE"


def test_describe_plain_exception_is_transient():
    info = describe_exception(RuntimeError("nope"))
    assert info.code == "TASK_ERROR"
    assert info.message == "nope"
    assert info.details == {"exception": "RuntimeError"}


@pytest.mark.parametrize(
    "exc, expected",
    [
        (RuntimeError("x"), True),
        (TaskTimeout("slow"), True),
        (PermanentTaskFailure("gone"), False),
        (InfrastructureError("down"), False),
    ],
)
def test_is_retryable(exc, expected):
    assert is_retryable(exc) is expected


def test_backoff_doubles_per_retry():
    assert [compute_backoff(n, 100) for n in (1, 2, 3)] == [100, 200, 400]


def test_backoff_jitter_is_bounded():
    delay = compute_backoff(2, 100, jitter=50)
    assert 200 <= delay <= 250


def test_total_attempts():
    assert total_attempts(0) == 1
    assert total_attempts(3) == 4
    assert total_attempts(-1) == 1
