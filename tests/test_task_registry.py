# tests/test_task_registry.py

from __future__ import annotations

import pytest

from taskwatch.core.errors import NotRegistered
from taskwatch.tasks.task_registry import TaskRegistry

from .fakes import add


def test_decorator_registers_and_returns_function() -> None:
    reg = TaskRegistry()

    @reg.task("images.resize", max_retries=2, retry_delay_seconds=5)
    def resize(path, width):
        return f"{path}@{width}"

    assert resize("a.png", 10) == "a.png@10"
    assert "images.resize" in reg
    definition = reg.get("images.resize")
    assert definition.func is resize
    assert definition.max_retries == 2
    assert definition.retry_delay_seconds == 5.0


def test_default_name_is_module_and_qualname() -> None:
    reg = TaskRegistry()
    definition = reg.register(add)
    assert definition.name == "tests.fakes.add"
    assert reg.names() == ["tests.fakes.add"]
    assert len(reg) == 1


def test_same_name_different_function_is_rejected() -> None:
    reg = TaskRegistry()
    reg.register(add, name="math.add")
    reg.register(add, name="math.add")

    with pytest.raises(ValueError):
        reg.register(lambda x, y: x - y, name="math.add")


def test_unknown_name() -> None:
    reg = TaskRegistry()
    with pytest.raises(NotRegistered) as excinfo:
        reg.get("nope")
    assert excinfo.value.name == "nope"
    assert "nope" not in reg


def test_negative_retries_rejected() -> None:
    with pytest.raises(ValueError):
        TaskRegistry().register(add, name="x", max_retries=-1)
