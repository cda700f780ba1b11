"""Tests for run requests and run results."""

import pytest
from pydantic import ValidationError

from driverpack.core.config import Vendor
from driverpack.core.errors import (
    InvalidRunRequestError,
    LaunchError,
    RunCancelledError,
    RuntimeFailure,
)
from driverpack.core.models import RunRequest, RunResult, RunState


def test_request_accepts_vendor_names():
    request = RunRequest(vendor="lenovo", csv_path="models.csv")
    assert request.vendor is Vendor.LENOVO
    assert request.uses_csv
    assert not request.include_firmware


def test_request_is_immutable():
    request = RunRequest(vendor=Vendor.DELL)
    with pytest.raises(ValidationError):
        request.model_name = "Latitude"


def test_empty_scope_values_count_as_unset():
    RunRequest(vendor=Vendor.HP, model_name="", csv_path="").check_scope()
    assert not RunRequest(vendor=Vendor.HP, csv_path="").uses_csv


def test_model_and_csv_together_violate_scope():
    request = RunRequest(vendor=Vendor.LENOVO, model_name="T14", csv_path="models.csv")
    with pytest.raises(InvalidRunRequestError) as excinfo:
        request.check_scope()
    assert isinstance(excinfo.value, ValueError)


def test_success_result_passes_through():
    result = RunResult(state=RunState.SUCCESS, exit_code=0, lines=("a", "b"))
    assert result.raise_for_state() is result
    assert result.output == "a\nb"


def test_non_zero_exit_raises_runtime_failure():
    result = RunResult(state=RunState.NON_ZERO_EXIT, exit_code=5, lines=("boom",))
    with pytest.raises(RuntimeFailure) as excinfo:
        result.raise_for_state()
    assert excinfo.value.exit_code == 5
    assert excinfo.value.lines == ("boom",)


def test_launch_failure_raises_launch_error():
    error = FileNotFoundError(2, "No such file or directory", "pwsh")
    result = RunResult(state=RunState.LAUNCH_FAILURE, error=error)
    with pytest.raises(LaunchError) as excinfo:
        result.raise_for_state()
    assert excinfo.value.os_error is error
    assert excinfo.value.__cause__ is error


def test_cancelled_result_reports_timeout():
    with pytest.raises(RunCancelledError, match="timed out") as excinfo:
        RunResult(state=RunState.CANCELLED, timed_out=True).raise_for_state()
    assert excinfo.value.timed_out
    with pytest.raises(RunCancelledError, match="cancelled"):
        RunResult(state=RunState.CANCELLED).raise_for_state()
