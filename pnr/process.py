from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Protocol, Sequence


@dataclass(frozen=True)
class RunResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    error: str | None = None  # set when the command could not be started or timed out

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def launched(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        detail = self.error or self.stderr.strip() or self.stdout.strip() or f"exit {self.returncode}"
        return f"`{' '.join(self.args)}` failed: {detail}"


class ProcessRunner(Protocol):
    """Narrow capability for running external commands.

    Reconcilers only ever reach docker, nginx, dnsmasq, sudo and friends through this.
    """

    def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        cwd: str | None = None,
        input: str | None = None,
    ) -> RunResult: ...


class SubprocessRunner:
    def __init__(self, default_timeout: float | None = 60) -> None:
        self.default_timeout = default_timeout

    def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        cwd: str | None = None,
        input: str | None = None,
    ) -> RunResult:
        argv = tuple(str(a) for a in args)
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                cwd=cwd,
                input=input,
                timeout=timeout if timeout is not None else self.default_timeout,
            )
        except FileNotFoundError:
            return RunResult(argv, 127, error=f"{argv[0]}: command not found")
        except subprocess.TimeoutExpired:
            return RunResult(argv, 124, error=f"timed out after {timeout or self.default_timeout}s")
        except OSError as e:
            return RunResult(argv, 126, error=f"{type(e).__name__}: {e}")
        return RunResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")
