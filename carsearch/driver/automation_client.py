"""Process automation client for the external browser-automation command.

This module contains the client that owns one external automation session
(one browser context) and exposes its primitive operations:

- open, goto, click, fill, select, check, type_text, press, evaluate and
  close each map to exactly one invocation of
  ``<command> [session option] <subcommand> [args]``
- snapshot runs the ``snapshot`` subcommand with bounded retry and
  normalizes the payload (inline text or a path to a ``.yml`` file)
- wait is a local, cancellable sleep

Every invocation has a deadline. On expiry the whole process group is
killed and CommandTimeoutException is raised. An optional asyncio.Event
acts as the cancellation signal: every suspension point races against it
and raises TaskCancelledException once it is set.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from carsearch.common.exceptions import (
    CommandFailedException,
    CommandTimeoutException,
    SnapshotPayloadException,
    SnapshotUnavailableException,
    TaskCancelledException,
    TransientException,
)
from carsearch.common.snapshot import Snapshot
from carsearch.config import AutomationOptions
from carsearch.data_types import ElementReference

logger = logging.getLogger(__name__)

# [Snapshot](.playwright-cli/page-2025-01-01T00-00-00.yml)
_MARKDOWN_LINK_PATTERN = re.compile(r"\[.*?\]\((.+?\.ya?ml)\)", re.IGNORECASE)
_YAML_SUFFIXES = (".yml", ".yaml")

# Grace period for pipes to drain after the process group was killed.
_TERMINATE_GRACE_SECONDS = 5.0


def find_snapshot_path(output: str) -> str | None:
    """Find a snapshot file path in the snapshot command's output.

    Recognizes a markdown link ``[label](path.yml)`` or a line that holds
    nothing but a path ending in ``.yml``/``.yaml``. Snapshot lines such as
    ``- /url: /media/brochure.yml`` are not paths. The first line that
    matches either form wins.

    Args:
        output: Captured standard output of the snapshot command.

    Returns:
        The path as printed, or None if the output holds no path.
    """
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue

        link_match = _MARKDOWN_LINK_PATTERN.search(stripped)
        if link_match:
            return link_match.group(1).strip()

        if _is_bare_path(stripped):
            return stripped

    return None


def _is_bare_path(text: str) -> bool:
    if not text.lower().endswith(_YAML_SUFFIXES):
        return False
    if text.startswith("-"):
        return False
    return not any(char.isspace() or char in "\"'" for char in text)


def _inline_text(output: str, path_text: str) -> str:
    """Return output without the lines that only name the snapshot file."""
    return "\n".join(
        line
        for line in output.splitlines()
        if path_text not in line
    )


def resolve_snapshot_payload(output: str, base_dir: Path | None = None) -> str:
    """Normalize snapshot command output to the snapshot text.

    A named file that cannot be read falls back to the inline output when
    the output holds snapshot text besides the path.

    Args:
        output: Captured standard output of the snapshot command.
        base_dir: Directory relative paths are resolved against. None
            uses the current working directory.

    Returns:
        The snapshot text, read from disk when the output names a readable
        file and taken inline otherwise.

    Raises:
        SnapshotPayloadException: If the named file cannot be read and no
            inline text exists, or the payload is empty.
    """
    path_text = find_snapshot_path(output)

    if path_text is not None:
        path = Path(path_text)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        try:
            payload = path.read_text(encoding="utf-8")
        except OSError as e:
            if not _inline_text(output, path_text).strip():
                raise SnapshotPayloadException(
                    f"Snapshot file could not be read: {path} ({e})",
                    path=str(path),
                ) from e
            logger.debug(
                f"Snapshot file {path} could not be read ({e}); "
                "using inline output"
            )
            payload = output
    else:
        payload = output

    if not payload.strip():
        raise SnapshotPayloadException("Snapshot payload was empty")

    return payload


@dataclass(frozen=True)
class CommandResult:
    """Captured result of one external command invocation."""

    exit_code: int
    stdout: str
    stderr: str


class AutomationSession(Protocol):
    """Protocol for one stateful browser-automation session.

    AutomationClient is the production implementation. Extraction tasks
    only depend on this protocol so tests can substitute an in-memory
    session.
    """

    async def open(self, url: str | None = None) -> None: ...

    async def snapshot(self) -> Snapshot: ...

    async def click(self, ref: ElementReference) -> None: ...

    async def fill(self, ref: ElementReference, text: str) -> None: ...

    async def select(self, ref: ElementReference, value: str) -> None: ...

    async def evaluate(self, script: str) -> None: ...

    async def wait(self, seconds: float) -> None: ...

    async def close(self) -> None: ...


class AutomationClient:
    """Drives one session of the external automation command.

    Example usage:
        client = AutomationClient(options, session_name="auto_trader")
        await client.open("https://www.autotrader.ca")
        snapshot = await client.snapshot()
        ref = snapshot.require(Selector("button", "Accept"), "cookie banner")
        await client.click(ref)
        await client.close()
    """

    def __init__(
        self,
        options: AutomationOptions | None = None,
        session_name: str | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            options: Command, timeout and retry options. Defaults apply when
                None.
            session_name: Name of the browser session this client owns.
                Used in log messages and, when options.session_option is
                set, passed to the command to select the session.
            stop_event: Optional asyncio.Event used as the cancellation
                signal. When set, pending and future operations raise
                TaskCancelledException.
        """
        self.options = options or AutomationOptions()
        self.session_name = session_name
        self.stop_event = stop_event
        self._command = shlex.split(self.options.command)
        if not self._command:
            raise ValueError("Automation command must not be empty")
        self.commands_run = 0

    @property
    def label(self) -> str:
        return self.session_name or "automation"

    def build_argv(self, subcommand: str, *args: str) -> list[str]:
        """Build the argument vector for one invocation.

        Arguments are passed to the process unchanged; no shell is
        involved, so quotes inside an argument need no escaping.
        """
        argv = list(self._command)
        if self.options.session_option and self.session_name:
            argv.append(
                self.options.session_option.format(session=self.session_name)
            )
        argv.append(subcommand)
        argv.extend(args)
        return argv

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        subcommand: str,
        *args: str,
        timeout: float | None = None,
        honor_stop: bool = True,
    ) -> str:
        """Run one subcommand and return its trimmed standard output.

        Args:
            subcommand: Subcommand name (``open``, ``snapshot``, ...).
            *args: Subcommand arguments.
            timeout: Deadline in seconds. None uses the configured default.
            honor_stop: If False, the cancellation signal is ignored. Used
                by close() so cleanup still runs after cancellation.

        Returns:
            Captured standard output with surrounding whitespace removed.

        Raises:
            CommandFailedException: If the command exits non-zero or cannot
                be started.
            CommandTimeoutException: If the deadline expires.
            TaskCancelledException: If the cancellation signal is set.
        """
        argv = self.build_argv(subcommand, *args)
        command_line = shlex.join(argv)
        deadline = self.options.default_timeout if timeout is None else timeout

        if honor_stop:
            self._raise_if_stopped(subcommand)

        logger.debug(f"[{self.label}] Executing: {command_line}")
        result = await self._run_process(
            argv, command_line, subcommand, deadline, honor_stop
        )
        self.commands_run += 1

        if result.exit_code != 0:
            logger.warning(
                f"[{self.label}] Command exited with code "
                f"{result.exit_code}: {result.stderr}"
            )
            raise CommandFailedException(
                command=command_line,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

        output = result.stdout
        logger.debug(
            f"[{self.label}] Output: "
            f"{output[:200] + '...' if len(output) > 200 else output}"
        )
        return output

    async def _run_process(
        self,
        argv: list[str],
        command_line: str,
        subcommand: str,
        timeout: float,
        honor_stop: bool,
    ) -> CommandResult:
        """Spawn the process and wait for it, the deadline or the signal."""
        spawn_kwargs: dict[str, object] = {}
        if os.name == "posix":
            # Own process group, so the whole tree can be killed at once
            spawn_kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.options.working_dir,
                **spawn_kwargs,  # type: ignore[arg-type]
            )
        except OSError as e:
            raise CommandFailedException(
                command=command_line, exit_code=-1, stderr=str(e)
            ) from e

        communicate = asyncio.ensure_future(process.communicate())
        waiters: set[asyncio.Future] = {communicate}
        stop_waiter: asyncio.Future | None = None
        if honor_stop and self.stop_event is not None:
            stop_waiter = asyncio.ensure_future(self.stop_event.wait())
            waiters.add(stop_waiter)

        try:
            done, _pending = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._terminate(process, communicate)
            raise
        finally:
            if stop_waiter is not None:
                stop_waiter.cancel()

        if communicate not in done:
            await self._terminate(process, communicate)
            if stop_waiter is not None and stop_waiter in done:
                logger.info(
                    f"[{self.label}] Cancelled while running '{subcommand}'"
                )
                raise TaskCancelledException(subcommand)
            logger.warning(
                f"[{self.label}] Command timed out after {timeout}s: "
                f"{command_line}"
            )
            raise CommandTimeoutException(command_line, timeout)

        stdout, stderr = communicate.result()
        return CommandResult(
            exit_code=process.returncode
            if process.returncode is not None
            else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )

    async def _terminate(
        self,
        process: asyncio.subprocess.Process,
        communicate: asyncio.Future,
    ) -> None:
        """Kill the process tree and wait for its pipes to close."""
        if process.returncode is None:
            try:
                if os.name == "posix":
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except ProcessLookupError:
                pass

        try:
            await asyncio.wait_for(
                asyncio.shield(communicate), timeout=_TERMINATE_GRACE_SECONDS
            )
        except TimeoutError:
            communicate.cancel()
            logger.warning(
                f"[{self.label}] Process {process.pid} did not exit after kill"
            )
        except Exception as e:
            logger.debug(
                f"[{self.label}] Error draining killed process: {e}"
            )

    def _raise_if_stopped(self, operation: str) -> None:
        if self.stop_event is not None and self.stop_event.is_set():
            raise TaskCancelledException(operation)

    async def _sleep(self, seconds: float, operation: str) -> None:
        """Sleep, returning early with TaskCancelledException on the signal."""
        self._raise_if_stopped(operation)
        if self.stop_event is None:
            await asyncio.sleep(seconds)
            return

        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise TaskCancelledException(operation)

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    async def open(self, url: str | None = None) -> None:
        """Open the browser, optionally navigating to url."""
        if url is None:
            await self.execute("open")
        else:
            await self.execute("open", url)

    async def goto(self, url: str) -> None:
        await self.execute("goto", url)

    async def take_snapshot(self) -> str:
        """Take one snapshot without retrying.

        Returns:
            The snapshot text.

        Raises:
            TransientException: If the command fails or the payload is
                empty or unreadable.
        """
        output = await self.execute("snapshot")
        base_dir = (
            Path(self.options.working_dir)
            if self.options.working_dir is not None
            else None
        )
        return resolve_snapshot_payload(output, base_dir)

    async def snapshot(self) -> Snapshot:
        """Take a snapshot, retrying transient failures.

        Makes up to options.retry_count attempts with options.retry_delay
        seconds between them.

        Returns:
            The parsed Snapshot.

        Raises:
            SnapshotUnavailableException: If every attempt failed.
            TaskCancelledException: If the cancellation signal is set.
        """
        attempts = self.options.retry_count
        last_error: TransientException | None = None

        for attempt in range(1, attempts + 1):
            try:
                return Snapshot(await self.take_snapshot())
            except TransientException as e:
                last_error = e
                logger.warning(
                    f"[{self.label}] Snapshot attempt {attempt}/{attempts} "
                    f"failed: {e}"
                )

            if attempt < attempts:
                await self._sleep(self.options.retry_delay, "snapshot retry")

        raise SnapshotUnavailableException(attempts, last_error) from last_error

    async def click(self, ref: ElementReference) -> None:
        await self.execute("click", ref)

    async def fill(self, ref: ElementReference, text: str) -> None:
        await self.execute("fill", ref, text)

    async def select(self, ref: ElementReference, value: str) -> None:
        await self.execute("select", ref, value)

    async def check(self, ref: ElementReference) -> None:
        await self.execute("check", ref)

    async def type_text(self, text: str) -> None:
        await self.execute("type", text)

    async def press(self, key: str) -> None:
        await self.execute("press", key)

    async def evaluate(self, script: str) -> None:
        """Run a script against the page (``run-code``)."""
        await self.execute("run-code", script)

    async def wait(self, seconds: float) -> None:
        """Wait for the page to settle. Honors the cancellation signal."""
        await self._sleep(seconds, "wait")

    async def close(self) -> None:
        """Close the browser session.

        Failures are logged and never raised; a failed cleanup must not
        fail the owning task.
        """
        try:
            await self.execute("close", honor_stop=False)
        except (TransientException, OSError) as e:
            logger.warning(f"[{self.label}] Error closing browser: {e}")

    async def __aenter__(self) -> AutomationClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
