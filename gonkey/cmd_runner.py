"""Running an external script with a time limit."""

from __future__ import annotations

import logging
import os
import signal
import subprocess

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3
_DRAIN_TIMEOUT = 5


def cmd_run(script_path: str, timeout: int = 0) -> None:
    """Run a script, killing it after ``timeout`` seconds, and print its output.

    A non-positive timeout means the default of three seconds. A script that
    exits with a non-zero status raises ``subprocess.CalledProcessError``.
    """
    if timeout <= 0:
        timeout = DEFAULT_TIMEOUT

    command = script_path.rstrip("\n")
    posix = os.name != "nt"

    process = subprocess.Popen(
        [command],
        stdout=subprocess.PIPE,
        env=dict(os.environ),
        text=True,
        start_new_session=posix,
    )

    try:
        output, _ = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _terminate(process, posix)
        print(f"Process killed as timeout({timeout}) reached")
        output = _drain(process)
    else:
        if process.returncode != 0:
            raise subprocess.CalledProcessError(process.returncode, command, output=output)
        logger.info("Process finished successfully")

    for line in (output or "").splitlines():
        print(line)


def _terminate(process: subprocess.Popen, posix: bool) -> None:
    if posix:
        os.killpg(os.getpgid(process.pid), signal.SIGTERM)
    else:
        process.kill()


def _drain(process: subprocess.Popen) -> str:
    try:
        output, _ = process.communicate(timeout=_DRAIN_TIMEOUT)
    except subprocess.TimeoutExpired:
        process.kill()
        output, _ = process.communicate()
    return output or ""