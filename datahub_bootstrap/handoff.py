"""Hand control to the target process.

On POSIX the bootstrap process image is replaced with ``os.execvpe``, so the
scoped credential directory is inherited as-is. Elsewhere the command runs as
a child, signals are forwarded and its exit code becomes ours; the parent
never deletes the credential directory while the child runs.
"""
import logging
import os
import shutil
import signal
import subprocess
import sys

from .assembler import BootstrapResult
from .errors import MissingConfiguration

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


def supports_exec() -> bool:
    return os.name == "posix"


def _warn_if_missing(command: str, env: dict[str, str]):
    if os.sep in command:
        if not os.path.isfile(command):
            logger.warning("Command file does not exist: %s", command)
        return
    if shutil.which(command, path=env.get("PATH")) is None:
        logger.warning("Command not found on PATH: %s", command)


def spawn_and_wait(argv: list[str], env: dict[str, str]) -> int:
    """Run ``argv`` as a child, forwarding termination signals, and return its exit code."""
    child = subprocess.Popen(argv, env=env)

    def _forward(signum, frame):
        logger.info("Forwarding signal %s to child pid %d", signum, child.pid)
        child.send_signal(signum)

    previous = {}
    for sig in FORWARDED_SIGNALS:
        try:
            previous[sig] = signal.signal(sig, _forward)
        except (OSError, ValueError):
            continue
    try:
        return child.wait()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def exec_process(result: BootstrapResult, base_env: dict[str, str] | None = None):
    """Replace the current process with ``result.argv``; never returns.

    Raises:
        MissingConfiguration: If there is no command to run
    """
    if not result.argv:
        raise MissingConfiguration("command", "entrypoint requires a command to execute")

    env = result.full_environment(os.environ if base_env is None else base_env)
    command = result.argv[0]
    _warn_if_missing(command, env)

    logger.info("Launching: %s", " ".join(result.argv))
    for handler in logging.getLogger().handlers:
        handler.flush()
    sys.stdout.flush()
    sys.stderr.flush()

    if supports_exec():
        os.execvpe(command, result.argv, env)

    sys.exit(spawn_and_wait(result.argv, env))
