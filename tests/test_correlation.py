"""Tests for request correlation ids."""

import asyncio

import pytest

from appmetrics.utils.correlation import get_request_id, set_request_id


def test_set_request_id_generates_when_empty():
    generated = set_request_id(None)
    assert generated
    assert get_request_id() == generated
    assert set_request_id("req-7") == "req-7"
    assert get_request_id() == "req-7"


@pytest.mark.asyncio
async def test_request_id_is_isolated_per_task():
    async def handle(req_id: str) -> str:
        set_request_id(req_id)
        await asyncio.sleep(0)
        return get_request_id()

    assert await asyncio.gather(handle("a"), handle("b")) == ["a", "b"]


def test_log_filter_stamps_current_request_id():
    import logging

    from appmetrics.observability import RequestIdFilter

    set_request_id("req-log")
    record = logging.LogRecord("appmetrics", logging.INFO, __file__, 1, "x", None, None)
    assert RequestIdFilter().filter(record) is True
    assert record.req_id == "req-log"

    explicit = logging.LogRecord("appmetrics", logging.INFO, __file__, 1, "x", None, None)
    explicit.req_id = "from-extra"
    RequestIdFilter().filter(explicit)
    assert explicit.req_id == "from-extra"
