import asyncio

import pytest

from hnchat.errors import InvalidToolCall, UnknownTool
from hnchat.tool_registry import ToolRegistry, schema_errors
from tests.fakes import RecordingTool


def test_missing_required_query_is_rejected(registry):
    errors = registry.validate("search_items", {"limit": 10})
    assert len(errors) == 1
    assert errors[0].field == "/query"
    assert errors[0].error_type == "required"


@pytest.mark.asyncio
async def test_invalid_call_is_not_dispatched_and_metrics_unchanged(registry):
    before = registry.metrics("search_items")
    with pytest.raises(InvalidToolCall) as excinfo:
        await registry.execute("search_items", {"limit": 10})
    assert excinfo.value.errors[0].field == "/query"
    after = registry.metrics("search_items")
    assert after == before
    assert after.total_executions == 0


def test_nested_and_range_errors_carry_path_and_value(registry):
    errors = registry.validate(
        "filter_items",
        {"score_range": {"min": -1}, "item_type": "blog", "limit": 5000},
    )
    by_field = {err.field: err for err in errors}
    assert by_field["/score_range/min"].error_type == "minimum"
    assert by_field["/score_range/min"].actual == -1
    assert by_field["/item_type"].error_type == "enum"
    assert by_field["/limit"].error_type == "maximum"


def test_schema_errors_reports_each_missing_property_once():
    schema = {"type": "object", "required": ["a", "b"], "properties": {"a": {"type": "string"}}}
    errors = schema_errors(schema, {})
    assert [err.field for err in errors] == ["/a", "/b"]
    assert schema_errors(schema, {"a": "x", "b": 1}) == []


def test_register_replaces_tool_with_same_name():
    registry = ToolRegistry()
    registry.register(RecordingTool("lookup", result={"v": 1}))
    registry.register(RecordingTool("lookup", category="Analytics", result={"v": 2}))
    assert registry.names() == ["lookup"]
    assert registry.describe_by_name("lookup").category == "Analytics"
    assert registry.describe_by_name("missing") is None


def test_describe_by_category(registry):
    names = {tool.name for tool in registry.describe_by_category("DataQuery")}
    assert names == {"search_items", "filter_items"}
    assert [tool.name for tool in registry.describe_by_category("RelationExploration")] == ["explore_relations"]
    assert registry.describe_by_category("Analytics") == []


@pytest.mark.asyncio
async def test_unknown_tool_raises():
    registry = ToolRegistry()
    with pytest.raises(UnknownTool):
        await registry.execute("nope", {})
    with pytest.raises(UnknownTool):
        registry.validate("nope", {})


@pytest.mark.asyncio
async def test_metrics_track_successes_failures_and_mean():
    registry = ToolRegistry()
    registry.register(RecordingTool("good", result={"ok": True}))
    registry.register(RecordingTool("bad", error="boom"))

    first = await registry.execute("good", {})
    second = await registry.execute("good", {})
    failed = await registry.execute("bad", {})

    assert first.success and first.data == {"ok": True}
    assert second.success
    assert failed.success is False
    assert failed.error == "boom"

    good = registry.metrics("good")
    assert good.total_executions == 2
    assert good.successful_executions == 2
    assert good.failed_executions == 0
    assert good.last_execution is not None
    assert good.average_execution_time_ms >= 0

    bad = registry.metrics("bad")
    assert bad.total_executions == 1
    assert bad.failed_executions == 1

    registry.reset_metrics()
    assert registry.metrics("good").total_executions == 0


@pytest.mark.asyncio
async def test_metrics_are_copies():
    registry = ToolRegistry()
    registry.register(RecordingTool("good"))
    snapshot = registry.metrics("good")
    snapshot.total_executions = 99
    assert registry.metrics("good").total_executions == 0


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    registry = ToolRegistry()
    registry.register(RecordingTool("slow_search", delay_seconds=1.0))
    with pytest.raises(asyncio.TimeoutError):
        await registry.execute("slow_search", {}, timeout_seconds=0.01)
    assert registry.metrics("slow_search").failed_executions == 1
