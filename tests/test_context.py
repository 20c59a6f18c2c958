"""Tests for timing traces."""

import logging

import pytest

from image_builder.context import trace_context


def test_nested_traces(caplog: pytest.LogCaptureFixture) -> None:
    """Test nested blocks are logged under the enclosing block."""
    caplog.set_level(logging.DEBUG, logger="image_builder.context")
    with trace_context("Build all"):
        with trace_context("Build 'app'"):
            pass
        with trace_context("Build 'web'"):
            pass
    messages = [record.getMessage() for record in caplog.records]
    assert [message.split(" (")[0] for message in messages] == [
        "[Trace] > Build all",
        "[Trace] > Build all > Build 'app'",
        "[Trace] < Build all > Build 'app'",
        "[Trace] > Build all > Build 'web'",
        "[Trace] < Build all > Build 'web'",
        "[Trace] < Build all",
    ]


def test_trace_exception(caplog: pytest.LogCaptureFixture) -> None:
    """Test a block that raises is still logged as finished."""
    caplog.set_level(logging.DEBUG, logger="image_builder.context")
    with pytest.raises(ValueError):
        with trace_context("creating pod"):
            raise ValueError("failed")
    with trace_context("after"):
        pass
    messages = [record.getMessage() for record in caplog.records]
    assert messages[1].startswith("[Trace] < creating pod (")
    assert messages[2] == "[Trace] > after"
