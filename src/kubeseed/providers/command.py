"""Thin subprocess wrapper shared by every host-facing provider."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when a host command is missing or exits non-zero."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Capture the command line and its output for diagnostics."""
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        """Return stderr and stdout joined for pattern matching."""
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


@dataclass(slots=True)
class CommandRunner:
    """Run host commands, capturing text output.

    *env* entries are layered over the inherited environment.
    """

    timeout: float | None = None
    env: Mapping[str, str] | None = None

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* and return the completed process.

        Raises :class:`CommandError` when the binary does not exist, the command
        times out, or ``check`` is set and the exit status is non-zero.
        """
        command = [str(item) for item in args]
        LOGGER.debug("run: %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout if timeout is not None else self.timeout,
                env={**os.environ, **self.env} if self.env else None,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{command[0]} not found: {exc}", args=command) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"{command[0]} timed out after {exc.timeout}s",
                args=command,
            ) from exc
        if check and result.returncode != 0:
            raise error_from_result(result)
        return result


def error_from_result(result: subprocess.CompletedProcess[str]) -> CommandError:
    """Build a :class:`CommandError` describing a failed *result*."""
    args = result.args
    if isinstance(args, (list, tuple)):
        command = [str(item) for item in args]
    else:
        command = [str(args)]
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    message = stderr or stdout or "no output"
    return CommandError(
        f"{' '.join(command[:3])} failed (exit {result.returncode}): {message}",
        args=command,
        returncode=result.returncode,
        stdout=stdout,
        stderr=stderr,
    )


__all__ = ["CommandError", "CommandRunner", "error_from_result"]
