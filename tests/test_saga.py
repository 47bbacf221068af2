import pytest

from advisor_credits.core.saga import Saga

pytestmark = pytest.mark.asyncio


class Boom(Exception):
    pass


async def test_saga_runs_steps_in_order():
    calls = []

    async def act(name):
        calls.append(name)
        return name.upper()

    saga = Saga("ok")
    saga.step("a", lambda: act("a")).step("b", lambda: act("b"))
    results = await saga.run()
    assert calls == ["a", "b"]
    assert results == {"a": "A", "b": "B"}


async def test_saga_unwinds_in_reverse_with_results():
    undone = []

    async def ok(value):
        return value

    async def fail():
        raise Boom("third step")

    async def undo(result):
        undone.append(result)

    saga = Saga("unwind")
    saga.step("first", lambda: ok(1), undo)
    saga.step("second", lambda: ok(2), undo)
    saga.step("third", fail, undo)
    with pytest.raises(Boom):
        await saga.run()
    assert undone == [2, 1]


async def test_saga_keeps_unwinding_after_compensation_failure():
    undone = []

    async def ok():
        return "x"

    async def fail():
        raise Boom("step")

    async def bad_undo(_):
        raise RuntimeError("undo failed")

    async def undo(result):
        undone.append(result)

    saga = Saga("partial")
    saga.step("first", ok, undo)
    saga.step("second", ok, bad_undo)
    saga.step("third", fail)
    with pytest.raises(Boom):
        await saga.run()
    assert undone == ["x"]
    assert saga.compensation_failures == ["second"]
