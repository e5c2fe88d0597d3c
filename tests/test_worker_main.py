"""Tests for chunkferry.__main__ module."""

import contextlib
import os
from unittest import mock

import pytest


def close_coroutine(coro):
    """Close a coroutine to prevent 'coroutine was never awaited' warnings."""
    with contextlib.suppress(Exception):
        coro.close()


def clean_env(**overrides) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if not k.startswith("CHUNKFERRY_")}
    env.update(overrides)
    return env


class TestMain:
    """Tests for the main() entry point."""

    def test_invalid_config_exits_with_error(self):
        with (
            mock.patch.dict(os.environ, clean_env(CHUNKFERRY_SESSION_TTL="-1"), clear=True),
            mock.patch("sys.exit", side_effect=SystemExit(1)) as mock_exit,
        ):
            from chunkferry.__main__ import main

            with pytest.raises(SystemExit):
                main()

            mock_exit.assert_called_once_with(1)

    def test_defaults_start_worker(self):
        with (
            mock.patch.dict(os.environ, clean_env(), clear=True),
            mock.patch("asyncio.run", side_effect=close_coroutine) as mock_run,
        ):
            from chunkferry.__main__ import main

            main()

            mock_run.assert_called_once()

    def test_config_is_read_from_environment(self):
        env = clean_env(
            CHUNKFERRY_PUBLIC_BUCKET="assets",
            CHUNKFERRY_RECONCILE_INTERVAL="60",
        )
        with (
            mock.patch.dict(os.environ, env, clear=True),
            mock.patch("asyncio.run"),
            mock.patch("chunkferry.__main__._run") as mock_run,
        ):
            from chunkferry.__main__ import main

            main()

        config = mock_run.call_args.args[0]
        assert config.public_bucket == "assets"
        assert config.reconcile_interval == 60.0

    def test_worker_failure_exits_with_error(self):
        def fail(coro):
            close_coroutine(coro)
            raise RuntimeError("boom")

        with (
            mock.patch.dict(os.environ, clean_env(), clear=True),
            mock.patch("asyncio.run", side_effect=fail),
            mock.patch("sys.exit", side_effect=SystemExit(1)) as mock_exit,
        ):
            from chunkferry.__main__ import main

            with pytest.raises(SystemExit):
                main()

            mock_exit.assert_called_once_with(1)

    def test_keyboard_interrupt_is_clean(self):
        def interrupt(coro):
            close_coroutine(coro)
            raise KeyboardInterrupt

        with (
            mock.patch.dict(os.environ, clean_env(), clear=True),
            mock.patch("asyncio.run", side_effect=interrupt),
            mock.patch("sys.exit") as mock_exit,
        ):
            from chunkferry.__main__ import main

            main()

            mock_exit.assert_not_called()

    def test_runs_manager_until_shutdown(self):
        manager = mock.MagicMock()
        manager.run_until_shutdown = mock.AsyncMock()

        with (
            mock.patch.dict(os.environ, clean_env(), clear=True),
            mock.patch(
                "chunkferry.__main__.UploadManager.from_config",
                new_callable=mock.AsyncMock,
                return_value=manager,
            ) as mock_from_config,
        ):
            from chunkferry.__main__ import main

            main()

        mock_from_config.assert_awaited_once()
        manager.run_until_shutdown.assert_awaited_once()
