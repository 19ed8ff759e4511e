"""
Lifecycle management for headless renderer processes.

Each audit gets its own renderer bound to its own debugging port and its own
profile directory. The directory and the process are acquired together and
released together:

    with renderer_session(port, settings) as renderer:
        ...  # renderer.port is ready to be handed to the audit tool

On exit, whether the body succeeded or raised, the renderer's process tree is
terminated (SIGTERM, bounded wait, then SIGKILL) and the profile directory is
removed. Teardown failures are logged as leaked resources and never replace
the outcome of the request.
"""

import enum
import logging
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Iterator, List

import psutil

from .config import Settings
from .errors import CleanupError, SpawnError

logger = logging.getLogger(__name__)


class RendererState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    TERMINATED = "terminated"


def build_renderer_args(port: int, scratch_dir: str, extra_flags=()) -> List[str]:
    """Command line flags for the renderer, excluding the binary itself."""
    return [
        f"--remote-debugging-port={port}",
        f"--user-data-dir={scratch_dir}",
        "--no-sandbox",
        *extra_flags,
        "about:blank",
    ]


class RendererProcess:
    """
    Handle to one running renderer and the scratch directory it owns.
    """

    def __init__(self, popen: subprocess.Popen, port: int, scratch_dir: str):
        self._popen = popen
        self.port = port
        self.scratch_dir = scratch_dir
        self.state = RendererState.STARTING

    @property
    def pid(self) -> int:
        return self._popen.pid

    def poll(self) -> RendererState:
        """
        Refresh the state from the OS.

        A renderer that has exited on its own is still owned by the request
        until terminate() removes its directory, so the state only moves from
        STARTING to RUNNING here.

        Raises:
            SpawnError: If the process already exited before being used.
        """
        if self.state is RendererState.TERMINATED:
            return self.state
        returncode = self._popen.poll()
        if returncode is not None:
            raise SpawnError(f"headless_shell: exited early with status {returncode}")
        self.state = RendererState.RUNNING
        return self.state

    def terminate(self, grace: float = 5.0) -> None:
        """
        Stop the renderer and remove its scratch directory. Safe to call twice.

        Errors are logged, not raised.
        """
        if self.state is RendererState.TERMINATED:
            return
        try:
            self._stop_process_tree(grace)
        except (CleanupError, psutil.Error, OSError) as e:
            logger.error(f"Leaked renderer process {self.pid} on port {self.port}: {e}")
        finally:
            self.state = RendererState.TERMINATED
            remove_scratch_dir(self.scratch_dir)

    def _stop_process_tree(self, grace: float) -> None:
        try:
            parent = psutil.Process(self.pid)
            procs = parent.children(recursive=True)
            procs.append(parent)
        except psutil.NoSuchProcess:
            # Already exited and reaped
            self._popen.poll()
            return
        except psutil.Error as e:
            logger.warning(f"Cannot inspect process tree of renderer {self.pid} ({e}), killing it directly")
            self._kill_directly(grace)
            return

        try:
            for p in procs:
                try:
                    p.terminate()
                except psutil.NoSuchProcess:
                    pass

            _, alive = psutil.wait_procs(procs, timeout=grace)
            if alive:
                logger.warning(
                    f"Renderer {self.pid} did not exit within {grace}s, killing {len(alive)} process(es)"
                )
                for p in alive:
                    try:
                        p.kill()
                    except psutil.NoSuchProcess:
                        pass
                _, alive = psutil.wait_procs(alive, timeout=grace)
        except psutil.Error as e:
            logger.warning(f"Cannot signal process tree of renderer {self.pid} ({e}), killing it directly")
            self._kill_directly(grace)
            return

        # Let Popen record the exit status so no zombie is left behind.
        self._popen.poll()

        if alive:
            raise CleanupError(f"processes still alive after kill: {[p.pid for p in alive]}")
        logger.info(f"Renderer {self.pid} on port {self.port} terminated")

    def _kill_directly(self, grace: float) -> None:
        """SIGKILL the renderer through its Popen handle, without touching its children."""
        try:
            self._popen.kill()
            self._popen.wait(timeout=grace)
        except ProcessLookupError:
            self._popen.poll()
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CleanupError(f"unable to kill renderer: {e}")
        logger.info(f"Renderer {self.pid} on port {self.port} killed")

    def __repr__(self):
        return (
            f"RendererProcess(pid={self.pid}, port={self.port}, "
            f"scratch_dir={self.scratch_dir!r}, state={self.state.value})"
        )


def remove_scratch_dir(path: str) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Leaked scratch directory {path}: {e}")


def start_renderer(port: int, settings: Settings) -> RendererProcess:
    """
    Start a new headless renderer with remote debugging on `port`.

    Returns as soon as the process is spawned. Waiting for the debugging
    endpoint to accept connections is left to the audit tool.

    Raises:
        SpawnError: If the scratch directory or the process cannot be created.
    """
    try:
        scratch_dir = tempfile.mkdtemp(prefix="headless")
    except OSError as e:
        raise SpawnError(f"headless_shell: unable to create profile dir: {e}")

    args = build_renderer_args(port, scratch_dir, settings.headless_extra_flags)
    logger.info(f"headless_shell {args!r}")
    try:
        # stdout/stderr are inherited: renderer output is operational logging only
        popen = subprocess.Popen([settings.headless_bin, *args], stdin=subprocess.DEVNULL)
    except OSError as e:
        remove_scratch_dir(scratch_dir)
        raise SpawnError(f"headless_shell: {e}")

    return RendererProcess(popen, port, scratch_dir)


@contextmanager
def renderer_session(port: int, settings: Settings) -> Iterator[RendererProcess]:
    """Start a renderer and guarantee its teardown when the block exits."""
    renderer = start_renderer(port, settings)
    try:
        yield renderer
    finally:
        renderer.terminate(settings.kill_grace)
