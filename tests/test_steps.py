"""
Tests for the reversible step runner.

Run with: pytest tests/test_steps.py -v
"""
import pytest


class TestStepRunner:
    """Tests for StepRunner."""

    @pytest.mark.asyncio
    async def test_success_runs_no_undo(self):
        from dockhand.services.deployment.steps import StepRunner

        undone = []
        async with StepRunner("demo-app") as steps:
            result = await steps.run("first", lambda: 42, undo=lambda: undone.append("first"))

        assert result == 42
        assert steps.completed == ["first"]
        assert undone == []

    @pytest.mark.asyncio
    async def test_failure_unwinds_in_reverse_and_reraises(self):
        from dockhand.services.deployment.steps import StepRunner

        undone = []

        async def explode():
            raise RuntimeError("disk full")

        async def undo_second():
            undone.append("second")

        with pytest.raises(RuntimeError, match="disk full"):
            async with StepRunner("demo-app") as steps:
                await steps.run("first", lambda: None, undo=lambda: undone.append("first"))
                steps.on_failure("cleanup", lambda: undone.append("cleanup"))
                await steps.run("second", explode, undo=undo_second)

        # The failing step's own undo is armed before it runs
        assert undone == ["second", "cleanup", "first"]
        assert steps.failed_step == "second"
        assert steps.completed == ["first"]

    @pytest.mark.asyncio
    async def test_failing_undo_does_not_stop_the_others(self):
        from dockhand.services.deployment.steps import StepRunner

        undone = []

        def broken_undo():
            raise OSError("permission denied")

        with pytest.raises(ValueError):
            async with StepRunner("demo-app") as steps:
                await steps.run("first", lambda: None, undo=lambda: undone.append("first"))
                await steps.run("second", lambda: None, undo=broken_undo)
                raise ValueError("late failure")

        assert undone == ["first"]
        assert steps.undo_failures == ["second"]

    @pytest.mark.asyncio
    async def test_arguments_are_forwarded(self):
        from dockhand.services.deployment.steps import StepRunner

        async def add(a, b, scale=1):
            return (a + b) * scale

        async with StepRunner("demo-app") as steps:
            assert await steps.run("add", add, 1, 2, scale=10) == 30
