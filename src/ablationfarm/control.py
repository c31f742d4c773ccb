from __future__ import annotations

import _thread
from dataclasses import dataclass
import os
import select
import sys
import threading
import time
from typing import Any, Callable, Protocol

from rich.console import Console
from rich.text import Text

from .commands import Signal


INTERRUPT_KEY = "\x01"  # Ctrl+A
ABORT_KEY = "\x03"  # Ctrl+C

CheckFn = Callable[[], bool]
ReadLineFn = Callable[[str], str]
RunCommandFn = Callable[[str], Any]


class InterruptController:
    """Abort and interrupt flags shared between the monitor thread and the run."""

    def __init__(self) -> None:
        self._abort = threading.Event()
        self._interrupt = threading.Event()
        self._abort_mode = threading.Event()

    @property
    def abort_mode(self) -> bool:
        return self._abort_mode.is_set()

    def enable_abort_mode(self) -> None:
        self._abort_mode.set()

    def disable_abort_mode(self) -> None:
        self._abort_mode.clear()

    def request_abort(self) -> None:
        self._abort.set()

    def request_interrupt(self) -> None:
        self._interrupt.set()

    def is_abort_requested(self) -> bool:
        return self._abort.is_set()

    def is_interrupt_requested(self) -> bool:
        return self._interrupt.is_set()

    def reset_abort(self) -> None:
        self._abort.clear()

    def reset_interrupt(self) -> None:
        self._interrupt.clear()

    def reset(self) -> None:
        self._abort.clear()
        self._interrupt.clear()

    def cancel_predicate(self, *extra: CheckFn) -> CheckFn:
        def cancelled() -> bool:
            if self._abort.is_set() or self._interrupt.is_set():
                return True
            return any(check() for check in extra)

        return cancelled

    def wait(self, seconds: float, cancel: CheckFn, *, poll: float = 0.1) -> bool:
        """Sleep up to ``seconds``; return True if ``cancel`` fired first."""
        deadline = time.monotonic() + seconds
        while True:
            if cancel():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll, remaining))


class KeySource(Protocol):
    def open(self) -> None:
        ...

    def read_key(self, timeout: float) -> str | None:
        ...

    def close(self) -> None:
        ...


class TerminalKeySource:
    """Single-key reads from a POSIX tty with echo, canonical mode and signals off."""

    def __init__(self, fd: int | None = None) -> None:
        self.fd = sys.stdin.fileno() if fd is None else fd
        self._saved: list[Any] | None = None

    @staticmethod
    def available() -> bool:
        try:
            import termios  # noqa: F401
        except ImportError:
            return False
        return sys.stdin.isatty()

    def open(self) -> None:
        import termios

        if self._saved is not None:
            return
        self._saved = termios.tcgetattr(self.fd)
        attrs = termios.tcgetattr(self.fd)
        attrs[3] &= ~(termios.ICANON | termios.ECHO | termios.ISIG)
        attrs[6][termios.VMIN] = 1
        attrs[6][termios.VTIME] = 0
        termios.tcsetattr(self.fd, termios.TCSANOW, attrs)

    def read_key(self, timeout: float) -> str | None:
        ready, _, _ = select.select([self.fd], [], [], timeout)
        if not ready:
            return None
        data = os.read(self.fd, 1)
        if not data:
            return None
        return data.decode("utf-8", errors="ignore")

    def close(self) -> None:
        import termios

        if self._saved is None:
            return
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)
        self._saved = None


class InputMonitor(threading.Thread):
    """Watches raw keys during a run. Only ever sets controller flags."""

    def __init__(
        self,
        *,
        controller: InterruptController,
        source: KeySource,
        poll_seconds: float = 0.1,
    ) -> None:
        super().__init__(daemon=True, name="ablation-input-monitor")
        self._controller = controller
        self._source = source
        self._poll_seconds = poll_seconds
        self._stop_event = threading.Event()
        self._paused = threading.Event()
        self._released = threading.Event()
        self._released.set()

    def run(self) -> None:
        try:
            while not self._stop_event.is_set():
                if self._paused.is_set():
                    self._release()
                    self._stop_event.wait(0.05)
                    continue
                self._acquire()
                key = self._source.read_key(self._poll_seconds)
                if key:
                    self.handle_key(key)
        finally:
            self._release()

    def handle_key(self, key: str) -> None:
        if key == INTERRUPT_KEY:
            self._controller.request_interrupt()
        elif key == ABORT_KEY:
            if self._controller.abort_mode:
                self._controller.request_abort()
            else:
                _thread.interrupt_main()

    def pause(self, timeout: float = 1.0) -> None:
        """Hand the terminal back (for line input) until ``resume``."""
        self._paused.set()
        if self.is_alive():
            self._released.wait(timeout)

    def resume(self) -> None:
        self._paused.clear()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)

    def _acquire(self) -> None:
        if self._released.is_set():
            self._source.open()
            self._released.clear()

    def _release(self) -> None:
        if not self._released.is_set():
            self._source.close()
            self._released.set()


@dataclass(frozen=True)
class PauseOutcome:
    aborted: bool = False
    signal: Signal | None = None


class PauseSession:
    """Interactive pause loop entered when an interrupt is observed.

    Accepts slash commands and free text (both run through ``run_command``),
    ``/abort`` to abort, and an empty line to resume.
    """

    def __init__(
        self,
        *,
        controller: InterruptController,
        run_command: RunCommandFn,
        read_line: ReadLineFn | None = None,
        console: Console | None = None,
        monitor: InputMonitor | None = None,
    ) -> None:
        self.controller = controller
        self.run_command = run_command
        self.console = console or Console()
        self.read_line = read_line or self.console.input
        self.monitor = monitor

    def run(self) -> PauseOutcome:
        if self.monitor is not None:
            self.monitor.pause()
        try:
            return self._loop()
        finally:
            if self.monitor is not None:
                self.monitor.resume()

    def _loop(self) -> PauseOutcome:
        self.console.print(
            "[yellow]⏸ Paused.[/yellow] [dim]Enter a /command or a message; "
            "empty line resumes, /abort skips the rest of this model.[/dim]"
        )
        while True:
            if self.controller.is_abort_requested():
                return PauseOutcome(aborted=True)
            try:
                line = self.read_line("paused> ").strip()
            except (EOFError, KeyboardInterrupt):
                self.controller.request_abort()
                return PauseOutcome(aborted=True)

            if not line:
                self.controller.reset_interrupt()
                self.console.print("[green]▶ Resumed[/green]")
                return PauseOutcome()

            if line.lower() in ("/abort", "@abort"):
                self.controller.request_abort()
                return PauseOutcome(aborted=True)

            self.controller.reset_interrupt()
            try:
                result = self.run_command(line)
            except Exception as exc:
                self.console.print(Text(f"✗ {exc}", style="red"))
                continue

            signal = getattr(result, "signal", None)
            if signal is not None:
                self.controller.reset_interrupt()
                return PauseOutcome(signal=signal)
            if self.controller.is_abort_requested():
                return PauseOutcome(aborted=True)
