"""SSH execution engine for rcommand."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

import asyncssh

from .config import HostSpec, Settings
from .errors import Cancelled, HostError, SessionLost
from .framer import CHUNK_SIZE, LineFramer, PromptDetector, prompt_marker
from .session import PROG, Session, open_session
from .summary import FAILURE_EXIT_CODE, Outcome

logger = logging.getLogger(__name__)

# Stop launching new hosts once more than this many have failed
FAILURE_THRESHOLD = 2


class HostState(Enum):
    """Where a host's driver is in its lifecycle."""

    PENDING = "pending"
    OPENING = "opening"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"


# Type aliases for callbacks
OutputCallback = Callable[[str, str, bool], None]  # (host, line, is_stderr) -> None
StatusCallback = Callable[[str, HostState], None]  # (host, state) -> None
OutcomeCallback = Callable[[Outcome], None]


class HostDriver:
    """Runs the command on one host, from connect to cleanup."""

    def __init__(
        self,
        spec: HostSpec,
        settings: Settings,
        command: list[str],
        *,
        emit: OutputCallback,
        cancelled: asyncio.Event,
        script: Path | None = None,
        sudo: bool = False,
        password: str | None = None,
        on_status: StatusCallback | None = None,
        prog: str = PROG,
    ) -> None:
        self.spec = spec
        self.settings = settings
        self.command = command
        self.script = script
        self.sudo = sudo
        self.password = password
        self.emit = emit
        self.cancelled = cancelled
        self.on_status = on_status
        self.detector = PromptDetector(prompt_marker(prog))
        self.state = HostState.PENDING
        self._stdout = LineFramer(CHUNK_SIZE)
        self._stderr = LineFramer(CHUNK_SIZE)
        self._reads: dict[asyncio.Future[bytes], bool] = {}  # read -> is_stderr
        self._cancel_wait: asyncio.Future | None = None

    def _set_state(self, state: HostState) -> None:
        self.state = state
        if self.on_status:
            self.on_status(self.spec.name, state)

    def _emit_lines(self, lines: list[str], is_stderr: bool) -> None:
        for line in lines:
            self.emit(self.spec.name, line, is_stderr)

    async def run(self) -> tuple[int, str | None]:
        """Drive the host to completion and return ``(exit_code, signal)``.

        Errors propagate as HostError subclasses; every path out of here has
        closed the session and removed any staged script.
        """
        self._set_state(HostState.OPENING)
        self._cancel_wait = asyncio.ensure_future(self.cancelled.wait())
        try:
            if self.cancelled.is_set():
                raise Cancelled(self.spec.name)
            async with contextlib.AsyncExitStack() as stack:
                session = await self._open(
                    stack.enter_async_context(
                        open_session(
                            self.spec,
                            self.settings,
                            self.command,
                            self.detector.marker,
                            script=self.script,
                            sudo=self.sudo,
                        )
                    )
                )
                try:
                    self._set_state(HostState.RUNNING)
                    await self._pump(session)
                    self._set_state(HostState.DRAINING)
                    return await self._drain(session)
                except (asyncssh.Error, OSError) as e:
                    raise SessionLost(self.spec.name, str(e) or type(e).__name__) from e
        finally:
            for task in [*self._reads, self._cancel_wait]:
                if task.done() and not task.cancelled():
                    # Retrieve it so a failed read is not reported as unhandled
                    task.exception()
                else:
                    task.cancel()
            self._reads.clear()
            self._set_state(HostState.DONE)

    async def _open(self, opening: Awaitable[Session]) -> Session:
        """Open the session unless the run is interrupted first."""
        task = asyncio.ensure_future(opening)
        await asyncio.wait([task, self._cancel_wait], return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            return task.result()

        # Cancelling unwinds open_session; a session that finished opening
        # anyway is already on the exit stack and gets closed with it
        task.cancel()
        await asyncio.wait([task])
        if not task.cancelled():
            task.exception()
        raise Cancelled(self.spec.name)

    def _schedule_read(self, session: Session, is_stderr: bool) -> None:
        stream = session.stderr if is_stderr else session.stdout
        if stream is not None:
            self._reads[asyncio.ensure_future(stream.read(CHUNK_SIZE))] = is_stderr

    async def _wait(self, session: Session) -> set[asyncio.Future]:
        done, _ = await asyncio.wait(
            [*self._reads, self._cancel_wait],
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._cancel_wait in done:
            session.terminate()
            raise Cancelled(self.spec.name)
        return done

    def _handle_stderr(self, session: Session, chunk: bytes) -> None:
        if not chunk:
            self._emit_lines(self._stderr.flush(), True)
            session.close_stderr()
            return
        self._emit_lines(self._stderr.feed(chunk), True)
        self._schedule_read(session, True)

    async def _pump(self, session: Session) -> None:
        """Multiplex the pty and stderr until the pty reaches end of stream."""
        self._schedule_read(session, False)
        self._schedule_read(session, True)

        while True:
            await session.answer_prompt(self.password)

            for task in await self._wait(session):
                is_stderr = self._reads.pop(task)
                chunk = task.result()
                if is_stderr:
                    self._handle_stderr(session, chunk)
                    continue

                if not chunk:
                    self._emit_lines(self._stdout.flush(), False)
                    return

                self._emit_lines(self._stdout.feed(chunk), False)
                prompt = self.detector.check(self._stdout)
                if prompt is not None:
                    self.emit(self.spec.name, prompt, False)
                    session.need_password = True
                self._schedule_read(session, False)

    async def _drain(self, session: Session) -> tuple[int, str | None]:
        """Finish reading stderr and collect the exit status."""
        while self._reads:
            for task in await self._wait(session):
                self._reads.pop(task)
                self._handle_stderr(session, task.result())

        exit_status, signal = await session.wait()
        if signal is not None or exit_status is None:
            return FAILURE_EXIT_CODE, signal
        return exit_status, None


class Executor:
    """Manages SSH execution across multiple hosts."""

    def __init__(
        self,
        settings: Settings,
        hosts: list[HostSpec],
        command: list[str],
        script: Path | None = None,
        sudo: bool = False,
        password: str | None = None,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        on_outcome: OutcomeCallback | None = None,
    ):
        self.settings = settings
        self.hosts = hosts
        self.command = command
        self.script = script
        self.sudo = sudo
        self.password = password
        self.on_output = on_output
        self.on_status = on_status
        self.on_outcome = on_outcome
        self.outcomes: dict[str, Outcome] = {}
        self.skipped: list[str] = []
        self._log_dir: Path | None = None
        self._log_files: dict[str, Path] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cancelled: asyncio.Event | None = None
        self._cancel_requested = False

    def _setup_logging(self) -> None:
        """Set up the transcript directory with timestamp."""
        if self.settings.log_dir is None:
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._log_dir = self.settings.log_dir / timestamp
        self._log_dir.mkdir(parents=True, exist_ok=True)

        # Copy the settings file to the log directory
        if self.settings.source_path and self.settings.source_path.exists():
            shutil.copy(self.settings.source_path, self._log_dir / "config.yaml")

        for spec in self.hosts:
            safe_name = spec.name.replace("/", "_")
            self._log_files[spec.name] = self._log_dir / f"{safe_name}.log"

    def _emit_output(self, host: str, line: str, is_stderr: bool) -> None:
        """Emit an output line for a host."""
        log_file = self._log_files.get(host)
        if log_file:
            with open(log_file, "a") as f:
                f.write(("STDERR: " if is_stderr else "") + line + "\n")

        if self.on_output:
            self.on_output(host, line, is_stderr)

    def _emit_status(self, host: str, state: HostState) -> None:
        logger.debug("%s: %s", host, state.value)
        if self.on_status:
            self.on_status(host, state)

    def _record(self, outcome: Outcome) -> None:
        """Insert an outcome; the first one recorded for a host wins."""
        if outcome.host in self.outcomes:
            logger.error("%s: outcome already recorded, ignoring %s", outcome.host, outcome)
            return
        self.outcomes[outcome.host] = outcome
        if self.on_outcome:
            self.on_outcome(outcome)

    def failure_count(self) -> int:
        return sum(1 for outcome in self.outcomes.values() if not outcome.succeeded)

    def cancel(self) -> None:
        """Interrupt every running host. Safe to call from another thread."""
        self._cancel_requested = True
        if self._loop is not None and self._cancelled is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._cancelled.set)

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def _should_stop(self) -> bool:
        if self._cancel_requested:
            return True
        return self.failure_count() > FAILURE_THRESHOLD

    async def run_all(self) -> dict[str, Outcome]:
        """Run the command on all hosts, at most ``concurrency`` at a time."""
        self._setup_logging()
        self._loop = asyncio.get_running_loop()
        self._cancelled = asyncio.Event()
        if self._cancel_requested:
            self._cancelled.set()

        pending: asyncio.Queue[HostSpec] = asyncio.Queue()
        for spec in self.hosts:
            pending.put_nowait(spec)
        results: asyncio.Queue[Outcome] = asyncio.Queue()

        collector = asyncio.create_task(self._collect(results))
        workers = [
            asyncio.create_task(self._worker(pending, results))
            for _ in range(min(self.settings.concurrency, len(self.hosts)))
        ]
        try:
            await asyncio.gather(*workers)
            await results.join()
        finally:
            collector.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await collector

        while not pending.empty():
            self.skipped.append(pending.get_nowait().name)
        if self.skipped:
            logger.warning(
                "Skipped %d host(s) after %d failure(s)%s: %s",
                len(self.skipped),
                self.failure_count(),
                " and an interrupt" if self._cancel_requested else "",
                ", ".join(self.skipped),
            )
        return self.outcomes

    async def _collect(self, results: asyncio.Queue[Outcome]) -> None:
        """Record outcomes one at a time as workers report them."""
        while True:
            outcome = await results.get()
            try:
                self._record(outcome)
            finally:
                results.task_done()

    async def _worker(
        self, pending: asyncio.Queue[HostSpec], results: asyncio.Queue[Outcome]
    ) -> None:
        while not self._should_stop():
            try:
                spec = pending.get_nowait()
            except asyncio.QueueEmpty:
                return
            await results.put(await self._run_host(spec))
            # Wait until our outcome is recorded before deciding on the next host
            await results.join()

    async def _run_host(self, spec: HostSpec) -> Outcome:
        """Run one host and turn whatever happens into an Outcome."""
        driver = HostDriver(
            spec,
            self.settings,
            self.command,
            emit=self._emit_output,
            cancelled=self._cancelled,
            script=self.script,
            sudo=self.sudo,
            password=self.password,
            on_status=self._emit_status,
        )
        try:
            exit_code, signal = await driver.run()
        except Cancelled as e:
            return Outcome.failure(spec.name, e.reason, signal="INT")
        except HostError as e:
            logger.debug("%s failed: %s", spec.name, e)
            self._emit_output(spec.name, f"ERROR: {e.reason}", True)
            return Outcome.failure(spec.name, f"{type(e).__name__}: {e.reason}")
        except Exception as e:
            logger.exception("%s: unexpected error", spec.name)
            return Outcome.failure(spec.name, f"{type(e).__name__}: {e}")
        return Outcome(host=spec.name, exit_code=exit_code, signal=signal)
