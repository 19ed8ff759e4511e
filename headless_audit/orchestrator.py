"""
Sequences port allocation, renderer startup and the lighthouse run for one
audit request, and maps the outcome to a payload and a content type.

Any failure short-circuits the remaining steps. Whatever was acquired before
the failure is released before the error reaches the caller.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from .concurrency import ConcurrencyGate
from .config import Settings
from .errors import ValidationError
from .lighthouse import run_audit
from .ports import allocate_port
from .renderer import renderer_session

logger = logging.getLogger(__name__)

# DEFAULT_FORMAT has to be one of OUTPUT_FORMATS keys.
DEFAULT_FORMAT = "html"

# Lighthouse output formats and their mime types.
OUTPUT_FORMATS = {
    "pretty": "text/plain; charset=utf-8",
    "html": "text/html; charset=utf-8",
    "json": "application/json; charset=utf-8",
}


class AuditRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    fmt: str = DEFAULT_FORMAT


@dataclass(frozen=True)
class AuditOutcome:
    payload: bytes
    mime_type: str


class Stage(enum.Enum):
    VALIDATING = "validating"
    ALLOCATING = "allocating"
    RENDERING = "rendering"
    AUDITING = "auditing"
    RESPONDING = "responding"
    FAILED = "failed"


def parse_request(url: Optional[str], fmt: Optional[str]) -> AuditRequest:
    """
    Validate raw request parameters.

    An unknown or missing format silently falls back to DEFAULT_FORMAT.

    Raises:
        ValidationError: If url is missing or empty.
    """
    if not url:
        raise ValidationError("url param is empty")
    if fmt not in OUTPUT_FORMATS:
        fmt = DEFAULT_FORMAT
    return AuditRequest(url=url, fmt=fmt)


class Orchestrator:
    """
    Runs audits with a bounded number of renderer/lighthouse pairs alive at once.

    Holds no per-request state: every call to audit() owns its own port,
    renderer and scratch directory.
    """

    def __init__(
        self,
        settings: Settings,
        gate: Optional[ConcurrencyGate] = None,
        port_allocator: Optional[Callable[[str], int]] = None,
    ):
        self.settings = settings
        self.gate = gate or ConcurrencyGate(settings.max_concurrent, settings.max_queued)
        self._allocate_port = port_allocator or allocate_port

    def audit(self, request: AuditRequest, cancel: Optional[threading.Event] = None) -> AuditOutcome:
        """
        Run one audit end to end.

        Raises:
            ResourceAllocationError: No free port or the renderer failed to start.
            ExecutionError: Lighthouse failed, timed out or was cancelled.
            Overloaded: The admission queue is full.
        """
        with self.gate.slot(cancel):
            return self._run(request, cancel)

    def _run(self, request: AuditRequest, cancel: Optional[threading.Event]) -> AuditOutcome:
        stage = Stage.VALIDATING
        try:
            stage = self._advance(request, stage, Stage.ALLOCATING)
            port = self._allocate_port(self.settings.bind_host)

            stage = self._advance(request, stage, Stage.RENDERING)
            with renderer_session(port, self.settings) as renderer:
                renderer.poll()

                stage = self._advance(request, stage, Stage.AUDITING)
                result = run_audit(
                    request.url,
                    request.fmt,
                    renderer.port,
                    self.settings.lighthouse_bin,
                    timeout=self.settings.audit_timeout,
                    cancel=cancel,
                    kill_grace=self.settings.kill_grace,
                )

            stage = self._advance(request, stage, Stage.RESPONDING)
            return AuditOutcome(payload=result.stdout, mime_type=OUTPUT_FORMATS[request.fmt])
        except Exception as e:
            logger.error(f"Audit of {request.url} ({request.fmt}): {stage.value} -> {Stage.FAILED.value}: {e}")
            raise

    @staticmethod
    def _advance(request: AuditRequest, current: Stage, target: Stage) -> Stage:
        logger.debug(f"Audit of {request.url} ({request.fmt}): {current.value} -> {target.value}")
        return target
