"""
Tests for SessionManager: lazy startup, the startup handshake and teardown.

Uses the fake interpreter from conftest, which connects to the real
rendezvous socket.
"""

import gc
import os
import asyncio
import contextlib

import pytest

from notebook_kernel.errors import EnvironmentResolutionError, KernelStartupError
from notebook_kernel.process import StaticDiagnostics
from notebook_kernel.session import SessionManager, interpreter_arguments

from conftest import FakeEnvironment, FakeLauncher, wait_until


@pytest.fixture
async def loop_errors():
    """Contexts that reach the event loop's exception handler during the test."""
    loop = asyncio.get_running_loop()
    errors = []
    previous = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: errors.append(context))
    yield errors
    loop.set_exception_handler(previous)


@pytest.fixture
async def manager(launcher, environment, test_settings):
    m = SessionManager(
        launcher=launcher,
        environment=environment,
        diagnostics=StaticDiagnostics("diag-pipe"),
        display_name="Notebook Kernel ~/analysis.jl",
        config=test_settings,
    )
    yield m
    await m.stop()


class TestInterpreterArguments:
    def test_argument_order(self, test_settings):
        args = interpreter_arguments(
            test_settings, "/work/env", "/tmp/nbk-1.sock", "diag", base_path="/ext"
        )
        assert args == [
            "--color=yes",
            "--project=/work/env",
            "--startup-file=no",
            "--history-file=no",
            os.path.join("/ext", "scripts", "notebook", "notebook.jl"),
            "/tmp/nbk-1.sock",
            "diag",
        ]

    def test_color_disabled(self, test_settings):
        config = test_settings.model_copy(update={"COLOR_OUTPUT": False})
        args = interpreter_arguments(config, "/env", "addr", "")
        assert args[0] == "--color=no"

    def test_absolute_driver_not_rebased(self, test_settings):
        config = test_settings.model_copy(update={"DRIVER_SCRIPT": "/opt/driver.jl"})
        args = interpreter_arguments(config, "/env", "addr", "", base_path="/ext")
        assert args[4] == "/opt/driver.jl"


class TestStartup:
    async def test_ensure_started_spawns_and_connects(self, manager, launcher):
        await manager.ensure_started()

        assert manager.is_started
        assert launcher.last.connected.is_set()
        assert manager.session.channel is not None
        assert manager.session.pid == launcher.last.pid
        assert manager.spawn_count == 1

    async def test_spawn_receives_executable_args_and_label(self, manager, launcher):
        await manager.ensure_started()

        executable, args, display_name = launcher.calls[0]
        assert executable == "/opt/julia/bin/julia"
        assert "--project=/work/env" in args
        assert args[-2] == manager.session.address
        assert args[-1] == "diag-pipe"
        assert display_name == "Notebook Kernel ~/analysis.jl"

    async def test_ensure_started_is_noop_when_live(self, manager, launcher):
        await manager.ensure_started()
        session = manager.session
        await manager.ensure_started()
        assert manager.session is session
        assert len(launcher.calls) == 1

    async def test_concurrent_callers_share_one_startup(self, manager, launcher, environment):
        await asyncio.gather(*(manager.ensure_started() for _ in range(10)))
        assert len(launcher.calls) == 1
        assert environment.calls == 1

    async def test_on_connected_fires_with_session(self, manager):
        sessions = []
        manager.on_connected.subscribe(sessions.append)
        await manager.ensure_started()
        assert sessions == [manager.session]

    async def test_configure_channel_runs_before_dispatch(self, launcher, environment, test_settings):
        configured = []
        m = SessionManager(
            launcher,
            environment,
            StaticDiagnostics(""),
            configure_channel=lambda ch: configured.append(ch.is_listening),
            config=test_settings,
        )
        try:
            await m.ensure_started()
            assert configured == [False]
        finally:
            await m.stop()


class TestStartupFailure:
    async def test_environment_error_propagates_and_cleans_up(self, test_settings):
        class Broken(FakeEnvironment):
            async def get_executable_path(self):
                raise EnvironmentResolutionError("no julia on PATH")

        launcher = FakeLauncher()
        m = SessionManager(launcher, Broken(), StaticDiagnostics(""), config=test_settings)

        with pytest.raises(EnvironmentResolutionError):
            await m.ensure_started()

        assert not m.is_started
        assert launcher.calls == []

    async def test_unexpected_resolver_error_is_wrapped(self, test_settings):
        class Broken(FakeEnvironment):
            async def get_environment_path(self):
                raise FileNotFoundError("Project.toml")

        m = SessionManager(FakeLauncher(), Broken(), StaticDiagnostics(""), config=test_settings)
        with pytest.raises(EnvironmentResolutionError) as exc_info:
            await m.ensure_started()
        assert isinstance(exc_info.value.__cause__, FileNotFoundError)

    async def test_no_connection_times_out(self, environment, test_settings, loop_errors):
        config = test_settings.model_copy(update={"STARTUP_TIMEOUT": 0.2})
        launcher = FakeLauncher(connect=False)
        m = SessionManager(launcher, environment, StaticDiagnostics(""), config=config)

        with pytest.raises(KernelStartupError, match="did not connect"):
            await m.ensure_started()

        assert not m.is_started
        # The process is torn down with its transport
        assert launcher.last.returncode is not None

        gc.collect()
        await asyncio.sleep(0)
        assert loop_errors == []

    async def test_exit_before_connect(self, environment, test_settings, loop_errors):
        class ExitingLauncher(FakeLauncher):
            async def spawn(self, executable, args, display_name):
                process = await super().spawn(executable, args, display_name)
                process.exit(1)
                return process

        m = SessionManager(
            ExitingLauncher(connect=False), environment, StaticDiagnostics(""), config=test_settings
        )
        with pytest.raises(KernelStartupError, match="exited with code 1 during startup"):
            await m.ensure_started()

        gc.collect()
        await asyncio.sleep(0)
        assert loop_errors == []

    async def test_next_call_after_failure_starts_over(self, environment, test_settings):
        config = test_settings.model_copy(update={"STARTUP_TIMEOUT": 0.2})
        launcher = FakeLauncher(connect=False)
        m = SessionManager(launcher, environment, StaticDiagnostics(""), config=config)

        with pytest.raises(KernelStartupError):
            await m.ensure_started()

        launcher.connect = True
        try:
            await m.ensure_started()
            assert m.is_started
            assert len(launcher.calls) == 2
        finally:
            await m.stop()


class TestTeardown:
    async def test_stop_terminates_and_clears(self, manager, launcher):
        await manager.ensure_started()
        address = manager.session.address

        await manager.stop()

        assert not manager.is_started
        assert launcher.last.terminate_calls == 1
        assert launcher.last.returncode is not None
        assert not os.path.exists(address)

    async def test_stop_is_idempotent(self, manager, launcher):
        await manager.stop()
        await manager.ensure_started()
        await manager.stop()
        await manager.stop()
        assert launcher.last.terminate_calls == 1

    async def test_stop_fires_session_end_once(self, manager):
        reasons = []
        manager.on_session_end.subscribe(reasons.append)
        await manager.ensure_started()
        await manager.stop()
        await manager.stop()
        assert reasons == ["Kernel stopped"]

    async def test_external_exit_clears_session(self, manager, launcher):
        reasons = []
        manager.on_session_end.subscribe(reasons.append)
        await manager.ensure_started()

        launcher.last.exit(0)
        await wait_until(lambda: not manager.is_started)

        assert len(reasons) == 1
        assert launcher.last.terminate_calls == 0

    async def test_restart_after_exit_uses_new_address_and_ids(self, manager, launcher):
        await manager.ensure_started()
        first = manager.session
        first.next_request_id()
        first.next_request_id()

        launcher.last.exit(0)
        await wait_until(lambda: not manager.is_started)
        await manager.ensure_started()

        assert manager.session is not first
        assert manager.session.address != first.address
        assert manager.session.next_request_id() == 1
        assert manager.spawn_count == 2

    async def test_connection_loss_terminates_process(self, manager, launcher):
        await manager.ensure_started()
        process = launcher.last

        # Garbage on the wire breaks framing and closes the channel
        process.send_raw(b"not a header\r\n\r\n")
        await wait_until(lambda: not manager.is_started)
        await wait_until(lambda: process.returncode is not None)

        assert process.terminate_calls == 1

    async def test_unresponsive_process_is_killed(self, manager, launcher):
        await manager.ensure_started()
        launcher.last.ignore_terminate = True

        await manager.stop()

        assert launcher.last.terminate_calls == 1
        assert launcher.last.returncode == -9

    async def test_stop_cancels_startup_in_progress(self, environment, test_settings):
        launcher = FakeLauncher(connect=False)
        m = SessionManager(launcher, environment, StaticDiagnostics(""), config=test_settings)

        startup = asyncio.create_task(m.ensure_started())
        await wait_until(lambda: launcher.calls)
        await m.stop()

        with pytest.raises(KernelStartupError, match="stopped during startup"):
            await startup
        assert not m.is_started
        assert launcher.last.returncode is not None


class TestStartupRaces:
    async def test_hang_up_during_startup_tears_down_pair(self, environment, test_settings):
        async def hang_up_first(process):
            if process is launcher.processes[0]:
                process.hang_up()

        launcher = FakeLauncher(on_connect=hang_up_first)
        m = SessionManager(launcher, environment, StaticDiagnostics(""), config=test_settings)
        try:
            with contextlib.suppress(KernelStartupError):
                await m.ensure_started()

            first = launcher.processes[0]
            await wait_until(lambda: not m.is_started)
            await wait_until(lambda: first.returncode is not None)
            assert first.terminate_calls == 1

            session = await m.ensure_started()
            assert not session.channel.is_closed
            assert len(launcher.calls) == 2
        finally:
            await m.stop()

    async def test_ensure_started_returns_live_session(self, manager):
        session = await manager.ensure_started()
        assert session is manager.session
        assert await manager.ensure_started() is session
