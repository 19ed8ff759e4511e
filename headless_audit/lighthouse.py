"""
Runs lighthouse-cli against an already started renderer and captures its output.
"""

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import psutil

from .errors import AuditCancelled, AuditTimeout, ExecutionError

logger = logging.getLogger(__name__)

# How often the waiting thread checks the deadline and the cancel event.
_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class AuditResult:
    stdout: bytes
    stderr: bytes
    returncode: int


def build_audit_command(lighthouse_bin: str, url: str, fmt: str) -> List[str]:
    return [lighthouse_bin, "--skip-autolaunch", "--verbose", f"--output={fmt}", url]


def build_audit_env(port: int, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    env.update({
        "PORT": str(port),
        "DEBUG_FD": "2",      # debug package logs to stderr
        "DEBUG_COLORS": "0",  # no color escapes in logs
    })
    return env


def describe_exit(returncode: int) -> str:
    if returncode < 0:
        return f"signal: killed by signal {-returncode}"
    return f"exit status {returncode}"


def _kill_tree(proc: subprocess.Popen) -> None:
    try:
        parent = psutil.Process(proc.pid)
        for child in parent.children(recursive=True):
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        parent.kill()
    except psutil.NoSuchProcess:
        pass
    except psutil.Error as e:
        logger.warning(f"Cannot inspect process tree of lighthouse {proc.pid} ({e}), killing it directly")
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def _drain_after_kill(proc: subprocess.Popen, grace: float):
    try:
        return proc.communicate(timeout=grace)
    except subprocess.TimeoutExpired:
        # Something outside the tree still holds the pipes open.
        logger.error(f"lighthouse {proc.pid}: output pipes still open {grace}s after kill")
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                pipe.close()
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.error(f"Leaked lighthouse process {proc.pid}: still running {grace}s after kill")
        return b"", b""


def run_audit(
    url: str,
    fmt: str,
    port: int,
    lighthouse_bin: str,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    kill_grace: float = 5.0,
) -> AuditResult:
    """
    Run lighthouse-cli for `url` against the renderer listening on `port`.

    Stdout and stderr are drained concurrently until both close, then the exit
    status is collected. Stderr is always logged; stdout is returned only on
    a clean exit.

    Args:
        url: Page to audit, passed as the positional argument.
        fmt: One of the lighthouse output formats (pretty, html, json).
        port: Remote debugging port of the renderer, passed via $PORT.
        lighthouse_bin: Path to the lighthouse executable.
        timeout: Wall-clock limit in seconds, or None for no limit.
        cancel: Event that aborts the run when set.
        kill_grace: Seconds to wait for the pipes to close after a kill.

    Returns:
        AuditResult: Captured output of a successful run.

    Raises:
        AuditTimeout: If the run exceeded `timeout`.
        AuditCancelled: If `cancel` was set during the run.
        ExecutionError: If the tool could not be started, exited non-zero,
                        or its output could not be read.
    """
    cmd = build_audit_command(lighthouse_bin, url, fmt)
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=build_audit_env(port),
        )
    except OSError as e:
        raise ExecutionError(f"lighthouse: {e}")

    deadline = None if timeout is None else time.monotonic() + timeout
    try:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                # Output read so far is kept by Popen, retrying loses nothing.
                if cancel is not None and cancel.is_set():
                    _kill_tree(proc)
                    _, stderr = _drain_after_kill(proc, kill_grace)
                    logger.warning(f"lighthouse cancelled on {url} ({fmt})\n{stderr.decode('utf-8', 'replace')}")
                    raise AuditCancelled("audit cancelled: client went away", stderr=stderr)
                if deadline is not None and time.monotonic() >= deadline:
                    _kill_tree(proc)
                    _, stderr = _drain_after_kill(proc, kill_grace)
                    logger.warning(f"lighthouse timed out on {url} ({fmt})\n{stderr.decode('utf-8', 'replace')}")
                    raise AuditTimeout(timeout, stderr=stderr)
    except OSError as e:
        _kill_tree(proc)
        proc.wait()
        raise ExecutionError(f"lighthouse: reading output: {e}")

    logger.info(f"lighthouse stderr on {url} ({fmt})\n{stderr.decode('utf-8', 'replace')}")
    if proc.returncode != 0:
        logger.info(f"lighthouse stdout on {url} ({fmt}), discarded\n{stdout.decode('utf-8', 'replace')}")
        raise ExecutionError(
            f"{describe_exit(proc.returncode)}: {stderr.decode('utf-8', 'replace')}",
            stderr=stderr,
            returncode=proc.returncode,
        )
    return AuditResult(stdout=stdout, stderr=stderr, returncode=proc.returncode)
