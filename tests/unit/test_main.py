"""Unit tests for __main__.py entry point."""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatcore.config import AppConfig
from chatcore.domain.entities.repair import RepairKind, RepairTask
from chatcore.domain.errors import TransientStoreError


def repair_task() -> RepairTask:
    return RepairTask(kind=RepairKind.THREAD, target_id="M1")


class TestParseArgs:
    """Test cases for parse_args function."""

    def test_default_config_path(self) -> None:
        """TC-07-008: Default config path should be config.yaml."""
        from chatcore.__main__ import parse_args

        args = parse_args([])
        assert args.config == Path("config.yaml")

    def test_config_path_with_short_option(self) -> None:
        """Config can be specified with -c option."""
        from chatcore.__main__ import parse_args

        args = parse_args(["-c", "custom.yaml"])
        assert args.config == Path("custom.yaml")

    def test_config_path_with_long_option(self) -> None:
        from chatcore.__main__ import parse_args

        args = parse_args(["--config", "custom.yaml"])
        assert args.config == Path("custom.yaml")


class TestMainWithConfigErrors:
    """Test cases for main function with configuration errors."""

    def test_config_file_not_found(self, capsys: pytest.CaptureFixture[str]) -> None:
        """TC-07-002: Non-existent config file should cause exit with error."""
        from chatcore.__main__ import main

        with patch.object(sys, "argv", ["chatcore", "-c", "nonexistent.yaml"]):
            with pytest.raises(SystemExit) as exc_info:
                main()

            assert exc_info.value.code == 1
            captured = capsys.readouterr()
            assert "nonexistent.yaml" in captured.err
            assert "not found" in captured.err

    def test_invalid_config_file(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """TC-07-003: Invalid config file should cause exit with error."""
        from chatcore.__main__ import main

        invalid_config = tmp_path / "invalid.yaml"
        invalid_config.write_text("invalid: yaml: content:")

        with patch.object(sys, "argv", ["chatcore", "-c", str(invalid_config)]):
            with pytest.raises(SystemExit) as exc_info:
                main()

            assert exc_info.value.code == 1
            assert "Error" in capsys.readouterr().err

    def test_invalid_values(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        from chatcore.__main__ import main

        config_file = tmp_path / "config.yaml"
        config_file.write_text("realtime:\n  outbox_size: 0\n")

        with patch.object(sys, "argv", ["chatcore", "-c", str(config_file)]):
            with pytest.raises(SystemExit) as exc_info:
                main()

            assert exc_info.value.code == 1
            assert "validation" in capsys.readouterr().err


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    from chatcore.config import DatabaseConfig, LoggingConfig, ServerConfig

    return AppConfig(
        server=ServerConfig(host="127.0.0.1", port=0),
        logging=LoggingConfig(level="INFO", format="text"),
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}"),
    )


class TestMainAsync:
    """Test cases for main_async function."""

    async def test_normal_startup_and_shutdown(self, app_config: AppConfig) -> None:
        """TC-07-001: Normal startup and shutdown."""
        from chatcore.__main__ import main_async

        with (
            patch("chatcore.__main__.load_config", return_value=app_config),
            patch("chatcore.__main__.setup_logging") as mock_setup_logging,
            patch("chatcore.__main__.HTTPServer") as mock_server_class,
        ):
            mock_server = AsyncMock()
            mock_server_class.return_value = mock_server

            task = asyncio.create_task(main_async(Path("config.yaml")))
            await asyncio.sleep(0.1)
            task.cancel()
            exit_code = await task

            assert exit_code == 0
            mock_setup_logging.assert_called_once_with(app_config.logging)
            mock_server.start.assert_called_once()
            mock_server.stop.assert_called_once()

    async def test_shutdown_timeout_forces_termination(
        self, app_config: AppConfig
    ) -> None:
        """TC-07-007: Shutdown timeout forces termination with warning log."""
        import os
        import signal as signal_module

        from chatcore.__main__ import main_async

        with (
            patch("chatcore.__main__.load_config", return_value=app_config),
            patch("chatcore.__main__.setup_logging"),
            patch("chatcore.__main__.HTTPServer") as mock_server_class,
            patch("chatcore.__main__.get_logger") as mock_get_logger,
        ):
            mock_logger = MagicMock()
            mock_get_logger.return_value = mock_logger

            async def slow_stop() -> None:
                await asyncio.sleep(10)

            mock_server = AsyncMock()
            mock_server.stop = slow_stop
            mock_server_class.return_value = mock_server

            task = asyncio.create_task(
                main_async(Path("config.yaml"), shutdown_timeout=0.1)
            )
            await asyncio.sleep(0.05)
            os.kill(os.getpid(), signal_module.SIGTERM)
            exit_code = await asyncio.wait_for(task, timeout=5.0)

            assert exit_code == 0
            warnings = [c.args[0] for c in mock_logger.warning.call_args_list]
            assert "Shutdown timed out, forcing termination" in warnings

    def test_shutdown_timeout_constant(self) -> None:
        from chatcore.__main__ import SHUTDOWN_TIMEOUT

        assert SHUTDOWN_TIMEOUT == 30


class TestRunMainLoop:
    """Test cases for run_main_loop function."""

    async def test_processes_repairs_until_shutdown(self) -> None:
        """TC-07-004: Queued repairs are applied until shutdown."""
        from chatcore.__main__ import run_main_loop
        from chatcore.infrastructure.repair_queue import RepairQueue

        repair_queue = RepairQueue()
        task = repair_task()
        await repair_queue.enqueue(task)
        aggregator = MagicMock()
        aggregator.repair = AsyncMock()
        shutdown_event = asyncio.Event()

        loop_task = asyncio.create_task(
            run_main_loop(
                repair_queue=repair_queue,
                aggregator=aggregator,
                shutdown_event=shutdown_event,
                running_check=lambda: not shutdown_event.is_set(),
                logger=MagicMock(),
            )
        )
        await asyncio.sleep(0.05)
        shutdown_event.set()
        await asyncio.wait_for(loop_task, timeout=1.0)

        aggregator.repair.assert_called_once_with(task)
        assert repair_queue.processing_count == 0

    async def test_failed_repair_logged(self) -> None:
        """TC-07-005: A failing repair is logged and the loop continues."""
        from chatcore.__main__ import run_main_loop
        from chatcore.infrastructure.repair_queue import RepairQueue

        repair_queue = RepairQueue()
        first = repair_task()
        second = RepairTask(kind=RepairKind.THREAD, target_id="M2")
        await repair_queue.enqueue(first)
        await repair_queue.enqueue(second)
        aggregator = MagicMock()
        aggregator.repair = AsyncMock(
            side_effect=[TransientStoreError("database is locked"), None]
        )
        logger = MagicMock()
        shutdown_event = asyncio.Event()

        loop_task = asyncio.create_task(
            run_main_loop(
                repair_queue=repair_queue,
                aggregator=aggregator,
                shutdown_event=shutdown_event,
                running_check=lambda: not shutdown_event.is_set(),
                logger=logger,
            )
        )
        await asyncio.sleep(0.05)
        shutdown_event.set()
        await asyncio.wait_for(loop_task, timeout=1.0)

        assert aggregator.repair.call_count == 2
        assert repair_queue.processing_count == 0
        logger.error.assert_called_once()

    async def test_repair_in_progress_finishes_on_shutdown(self) -> None:
        """TC-07-006: A repair running at shutdown is completed and marked done."""
        from chatcore.__main__ import run_main_loop
        from chatcore.infrastructure.repair_queue import RepairQueue

        repair_queue = RepairQueue()
        await repair_queue.enqueue(repair_task())
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_repair(task: RepairTask) -> None:
            started.set()
            await release.wait()

        aggregator = MagicMock()
        aggregator.repair = slow_repair
        shutdown_event = asyncio.Event()

        loop_task = asyncio.create_task(
            run_main_loop(
                repair_queue=repair_queue,
                aggregator=aggregator,
                shutdown_event=shutdown_event,
                running_check=lambda: not shutdown_event.is_set(),
                logger=MagicMock(),
            )
        )
        await started.wait()
        shutdown_event.set()
        release.set()
        await asyncio.wait_for(loop_task, timeout=1.0)

        assert repair_queue.processing_count == 0


class TestRunPeriodic:
    """Test cases for run_periodic function."""

    async def test_runs_until_shutdown(self) -> None:
        from chatcore.__main__ import run_periodic

        shutdown_event = asyncio.Event()
        action = AsyncMock()

        task = asyncio.create_task(
            run_periodic(0.01, action, shutdown_event, MagicMock(), "sweep")
        )
        await asyncio.sleep(0.08)
        shutdown_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert action.await_count >= 2

    async def test_failure_logged_and_continues(self) -> None:
        from chatcore.__main__ import run_periodic

        shutdown_event = asyncio.Event()
        action = AsyncMock(side_effect=TransientStoreError("database is locked"))
        logger = MagicMock()

        task = asyncio.create_task(
            run_periodic(0.01, action, shutdown_event, logger, "reconcile")
        )
        await asyncio.sleep(0.08)
        shutdown_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert action.await_count >= 2
        logger.error.assert_called_with(
            "Periodic task failed", task="reconcile", error="database is locked"
        )

    async def test_no_run_when_already_shut_down(self) -> None:
        from chatcore.__main__ import run_periodic

        shutdown_event = asyncio.Event()
        shutdown_event.set()
        action = AsyncMock()

        await run_periodic(0.01, action, shutdown_event, MagicMock(), "sweep")

        action.assert_not_called()
